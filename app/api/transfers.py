"""
Transfers API - payouts to each tour's beneficiary.

An admin marks a transfer as sent, then the receiver confirms or disputes it.
"""
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from typing import Optional
import logging

from app.api.auth import get_current_user, require_admin
from app.core.exceptions import PermissionDeniedError
from app.db.connection import get_db_session
from app.db.models import User
from app.services.sol_service import SolService
from app.services.transfer_service import TransferService, transfer_to_dict

logger = logging.getLogger(__name__)

router = APIRouter()


class TransferNotesRequest(BaseModel):
    notes: Optional[str] = Field(None, max_length=2000)


@router.post("/transfers/initialize/{sol_id}")
async def initialize_transfers(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    sol = await SolService.get_sol_or_404(db, sol_id)
    SolService.ensure_can_manage(sol, current_user)

    created = await TransferService.initialize_transfers_for_sol(db, sol_id)
    return {
        "message": f"{len(created)} transfer(s) initialized",
        "transfers": [transfer_to_dict(t, sol.nom) for t in created],
    }


@router.get("/transfers/sol/{sol_id}/current")
async def get_current_transfer(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    sol = await SolService.get_sol_or_404(db, sol_id)
    await SolService.ensure_can_view(db, sol, current_user)
    return {"transfer": await TransferService.get_current_transfer_by_sol(db, sol_id)}


@router.get("/transfers/sol/{sol_id}")
async def list_sol_transfers(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    sol = await SolService.get_sol_or_404(db, sol_id)
    await SolService.ensure_can_view(db, sol, current_user)
    return await TransferService.list_by_sol(db, sol_id)


@router.get("/transfers/pending")
async def list_pending_transfers(
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    return await TransferService.find_pending(db)


@router.get("/transfers/my-history")
async def get_my_transfer_history(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    return await TransferService.get_user_transfer_history(db, current_user.id)


@router.get("/transfers/stats")
async def get_transfer_stats(
    sol_id: Optional[int] = Query(None),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    """Stats for one sol, or platform-wide for admins."""
    if sol_id:
        sol = await SolService.get_sol_or_404(db, sol_id)
        await SolService.ensure_can_view(db, sol, current_user)
    elif not current_user.is_admin:
        raise PermissionDeniedError("sol_id is required")
    return await TransferService.get_transfer_stats(db, sol_id)


@router.get("/transfers/{transfer_id}")
async def get_transfer(
    transfer_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    transfer = await TransferService.get_transfer(db, transfer_id)
    sol = await SolService.get_sol_or_404(db, transfer.sol_id)
    await SolService.ensure_can_view(db, sol, current_user)
    receiver = await db.get(User, transfer.receiver_id)
    return transfer_to_dict(transfer, sol.nom, receiver)


@router.post("/transfers/{transfer_id}/mark-transferred")
async def mark_transferred(
    transfer_id: int,
    request: TransferNotesRequest,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    transfer = await TransferService.mark_as_transferred(db, transfer_id, admin.id, request.notes)
    return {"message": "Transfer marked as sent", "transfer": transfer_to_dict(transfer)}


@router.post("/transfers/{transfer_id}/confirm-receipt")
async def confirm_receipt(
    transfer_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    transfer = await TransferService.confirm_receipt(db, transfer_id, current_user.id)
    return {"message": "Transfer confirmed", "transfer": transfer_to_dict(transfer)}


@router.post("/transfers/{transfer_id}/dispute")
async def dispute_transfer(
    transfer_id: int,
    request: TransferNotesRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    transfer = await TransferService.mark_as_disputed(db, transfer_id, current_user.id, request.notes)
    return {"message": "Transfer disputed", "transfer": transfer_to_dict(transfer)}
