"""Recipe matching schemas."""

from pydantic import BaseModel, ConfigDict, Field


class MatchOptions(BaseModel):
    """Filters applied to a ranked match list."""

    model_config = ConfigDict(frozen=True)

    min_score: float = Field(0.0, ge=0, le=1)
    limit: int | None = Field(None, ge=1)


class MatchResult(BaseModel):
    """How well one recipe fits a pantry snapshot."""

    model_config = ConfigDict(frozen=True)

    recipe_id: int
    recipe_name: str
    score: float = Field(..., ge=0, le=1)
    matched_ingredients: list[str] = Field(default_factory=list)
    missing_ingredients: list[str] = Field(default_factory=list)
    expiring_ingredients: list[str] = Field(default_factory=list)
