"""Pydantic schemas for the recognition pipeline and API."""

from pantrychef.schemas.pantry import (
    ItemOutcome,
    PantryStatsResponse,
    ReconciliationItem,
    ReconciliationReport,
)
from pantrychef.schemas.recipe import MatchOptions, MatchResult
from pantrychef.schemas.recognition import (
    BoundingRegion,
    RecognitionCandidate,
    RecognitionJobCreateResponse,
    RecognitionJobResponse,
    ResolvedIngredient,
)

__all__ = [
    "BoundingRegion",
    "RecognitionCandidate",
    "ResolvedIngredient",
    "RecognitionJobCreateResponse",
    "RecognitionJobResponse",
    "ItemOutcome",
    "ReconciliationItem",
    "ReconciliationReport",
    "PantryStatsResponse",
    "MatchOptions",
    "MatchResult",
]
