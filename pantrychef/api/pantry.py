"""Pantry API endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from pantrychef.api.dependencies import get_current_user_id, get_pantry_service
from pantrychef.schemas.pantry import PantryStatsResponse
from pantrychef.services.pantry_service import PantryService

router = APIRouter(prefix="/api/v1/pantry", tags=["pantry"])


@router.get("/stats", response_model=PantryStatsResponse)
def get_pantry_stats(
    user_id: Annotated[int, Depends(get_current_user_id)],
    pantry: Annotated[PantryService, Depends(get_pantry_service)],
    within_days: Annotated[int | None, Query(ge=0, le=365)] = None,
):
    """Summary of the user's pantry, including items about to expire."""
    return pantry.stats(user_id, within_days)
