"""
Tours API - manual control of a sol's rotation (start, complete, next).
"""
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from pydantic import BaseModel
from datetime import datetime
from typing import Optional

from app.api.auth import get_current_user
from app.db.connection import get_db_session
from app.db.models import User
from app.services.tour_detection_service import TourDetectionService

router = APIRouter()


class TourRequest(BaseModel):
    sol_id: int


class CompleteTourRequest(TourRequest):
    tour_number: Optional[int] = None


class StartTourRequest(TourRequest):
    date_debut: Optional[datetime] = None


@router.post("/tours/start")
async def start_tour(
    request: StartTourRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    sol = await TourDetectionService.start_tour(db, request.sol_id, current_user, request.date_debut)
    return {
        "message": f"Tour {sol.tour_actuel} started",
        "sol_id": sol.id,
        "tour_actuel": sol.tour_actuel,
        "date_debut": sol.date_debut,
    }


@router.post("/tours/complete")
async def complete_tour(
    request: CompleteTourRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    return await TourDetectionService.complete_tour(db, request.sol_id, current_user, request.tour_number)


@router.post("/tours/next")
async def next_tour(
    request: CompleteTourRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db_session)
):
    """Complete the tour awaiting closure and start the following one."""
    return await TourDetectionService.next_tour(db, request.sol_id, current_user, request.tour_number)
