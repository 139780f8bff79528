"""
Sols API - savings groups, membership, rotation order and tour checks.
"""
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List
import logging

from app.api.auth import get_current_user, require_admin
from app.core.exceptions import NotFoundError
from app.db.connection import get_db_session
from app.db.models import User, SolFrequency
from app.services.sol_service import SolService
from app.services.tour_detection_service import TourDetectionService
from app.services.transfer_service import TransferService

logger = logging.getLogger(__name__)

router = APIRouter()


# ============================================
# Pydantic Models
# ============================================

class CreateSolRequest(BaseModel):
    nom: str = Field(..., min_length=3, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    montant_par_periode: float = Field(..., gt=0)
    frequence: SolFrequency
    max_participants: int = Field(12, ge=2, le=100)


class UpdateSolRequest(BaseModel):
    nom: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    statut: Optional[str] = None


class UpdateOrderRequest(BaseModel):
    """Participation ids (or user ids), first beneficiary first"""
    order: List[int] = Field(..., min_length=1)


class SolResponse(BaseModel):
    id: int
    nom: str
    description: Optional[str] = None
    montant_par_periode: float
    frequence: str
    max_participants: int
    tour_actuel: int
    statut: str
    date_debut: Optional[datetime] = None
    created_by: int
    created_at: Optional[datetime] = None
    participants_count: Optional[int] = None
    creator_name: Optional[str] = None

    class Config:
        from_attributes = True


class MySolResponse(SolResponse):
    participation_id: int
    ordre: int
    statut_tour: str
    is_beneficiary: bool


def sol_to_response(row: dict) -> SolResponse:
    """Build a SolResponse from a SolService row ({"sol": Sol, ...extras})."""
    sol = row["sol"]
    return SolResponse(
        id=sol.id,
        nom=sol.nom,
        description=sol.description,
        montant_par_periode=sol.montant_par_periode,
        frequence=sol.frequence.value,
        max_participants=sol.max_participants,
        tour_actuel=sol.tour_actuel,
        statut=sol.statut.value,
        date_debut=sol.date_debut,
        created_by=sol.created_by,
        created_at=sol.created_at,
        participants_count=row.get("participants_count"),
        creator_name=row.get("creator_name"),
    )


# ============================================
# Sols
# ============================================

@router.get("/sols/available", response_model=List[SolResponse])
async def list_available_sols(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    """Active sols with room left that the caller hasn't joined."""
    rows = await SolService.list_available_sols(db, current_user.id)
    return [sol_to_response(row) for row in rows]


@router.post("/sols", response_model=SolResponse, status_code=status.HTTP_201_CREATED)
async def create_sol(
    request: CreateSolRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    sol = await SolService.create_sol(db, request.model_dump(), current_user)
    return sol_to_response(await SolService.get_sol(db, sol.id))


@router.get("/sols/my-sols", response_model=List[MySolResponse])
async def list_my_sols(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    rows = await SolService.list_user_sols(db, current_user.id)
    return [
        MySolResponse(
            **sol_to_response(row).model_dump(),
            participation_id=row["participation_id"],
            ordre=row["ordre"],
            statut_tour=row["statut_tour"].value,
            is_beneficiary=row["is_beneficiary"],
        )
        for row in rows
    ]


@router.get("/sols", response_model=List[SolResponse])
async def list_sols(
    statut: Optional[str] = Query(None),
    created_by: Optional[int] = Query(None),
    user_id: Optional[int] = Query(None),
    search: Optional[str] = Query(None, max_length=100),
    limit: int = Query(100, ge=1, le=500),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    rows = await SolService.list_sols(db, statut, created_by, user_id, search, limit)
    return [sol_to_response(row) for row in rows]


@router.get("/sols/{sol_id}", response_model=SolResponse)
async def get_sol(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    return sol_to_response(await SolService.get_sol(db, sol_id))


@router.get("/sols/{sol_id}/details")
async def get_sol_details(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    """Sol, participants and statistics; members, the creator and admins only."""
    details = await SolService.get_sol_details(db, sol_id, current_user)
    return {
        "sol": sol_to_response(details),
        "participants": details["participants"],
        "statistics": details["statistics"],
        "is_creator": details["is_creator"],
        "is_participant": details["is_participant"],
    }


@router.put("/sols/{sol_id}", response_model=SolResponse)
async def update_sol(
    sol_id: int,
    request: UpdateSolRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    await SolService.update_sol(db, sol_id, current_user, request.model_dump(exclude_none=True))
    return sol_to_response(await SolService.get_sol(db, sol_id))


@router.delete("/sols/{sol_id}")
async def delete_sol(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    await SolService.delete_sol(db, sol_id, current_user)
    return {"message": "Sol cancelled successfully", "sol_id": sol_id}


# ============================================
# Membership
# ============================================

@router.post("/sols/{sol_id}/join", status_code=status.HTTP_201_CREATED)
async def join_sol(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    participation = await SolService.add_participant(db, sol_id, current_user.id)
    return {
        "message": "Joined sol successfully",
        "participation_id": participation.id,
        "ordre": participation.ordre,
    }


@router.post("/sols/{sol_id}/leave")
async def leave_sol(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    await SolService.remove_participant(db, sol_id, current_user.id)
    return {"message": "Left sol successfully"}


@router.get("/sols/{sol_id}/statistics")
async def get_sol_statistics(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    return await SolService.get_statistics(db, sol_id)


@router.get("/sols/{sol_id}/participants")
async def get_sol_participants(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    return await SolService.get_participants(db, sol_id)


@router.put("/sols/{sol_id}/order")
async def update_participants_order(
    sol_id: int,
    request: UpdateOrderRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    participants = await SolService.update_participants_order(db, sol_id, current_user, request.order)
    return {"message": "Order updated successfully", "participants": participants}


@router.post("/sols/{sol_id}/randomize-order")
async def randomize_participants_order(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    participants = await SolService.randomize_order(db, sol_id, current_user)
    return {"message": "Order randomized successfully", "participants": participants}


# ============================================
# Tours
# ============================================

@router.post("/sols/{sol_id}/check-tour")
async def check_tour(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    """Advance the rotation if every participant's payment for this tour is in."""
    return await TourDetectionService.check_and_advance_tour(db, sol_id)


@router.get("/sols/{sol_id}/tour-status")
async def get_tour_status(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    return await TourDetectionService.get_tour_status(db, sol_id)


@router.post("/sols/{sol_id}/force-advance")
async def force_advance_tour(
    sol_id: int,
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    return await TourDetectionService.force_advance_tour(db, sol_id, admin.id)


@router.get("/sols/{sol_id}/beneficiary")
async def get_current_beneficiary(
    sol_id: int,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    sol = await SolService.get_sol_or_404(db, sol_id)
    await SolService.ensure_can_view(db, sol, current_user)

    beneficiary = await TourDetectionService.get_current_beneficiary(db, sol_id)
    if not beneficiary:
        raise NotFoundError("Beneficiary")
    return beneficiary


@router.post("/sols/{sol_id}/transfer-all")
async def transfer_all_payments(
    sol_id: int,
    tour_number: Optional[int] = Query(None, ge=1),
    admin: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session)
):
    """Pay out a tour (oldest unpaid one by default): its validated payments become transferred."""
    result = await TransferService.transfer_all_payments(db, sol_id, admin.id, tour_number)
    return {"message": f"{result['transferred_count']} payment(s) transferred", **result}
