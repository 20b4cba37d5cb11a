"""Recipe matching API endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from pantrychef.api.dependencies import get_cache, get_current_user_id
from pantrychef.schemas.recipe import MatchOptions, MatchResult
from pantrychef.services.match_cache import MatchCache

router = APIRouter(prefix="/api/v1/recipes", tags=["recipes"])


@router.get("/matches", response_model=list[MatchResult])
def list_recipe_matches(
    user_id: Annotated[int, Depends(get_current_user_id)],
    cache: Annotated[MatchCache, Depends(get_cache)],
    min_score: Annotated[float, Query(ge=0, le=1)] = 0.0,
    limit: Annotated[int | None, Query(ge=1, le=200)] = 20,
):
    """Rank recipes by how well they match the current user's pantry."""
    return cache.get_or_compute(user_id, MatchOptions(min_score=min_score, limit=limit))
