"""Recognition schemas."""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from pantrychef.models.enums import IngredientCategory
from pantrychef.schemas.pantry import ReconciliationReport


class BoundingRegion(BaseModel):
    """Axis-aligned box in image coordinates (any consistent unit)."""

    model_config = ConfigDict(frozen=True)

    x: float = Field(..., ge=0)
    y: float = Field(..., ge=0)
    width: float = Field(..., ge=0)
    height: float = Field(..., ge=0)

    @property
    def area(self) -> float:
        return self.width * self.height

    def iou(self, other: "BoundingRegion") -> float:
        """Intersection over union with another region."""
        ix = max(0.0, min(self.x + self.width, other.x + other.width) - max(self.x, other.x))
        iy = max(0.0, min(self.y + self.height, other.y + other.height) - max(self.y, other.y))
        intersection = ix * iy
        union = self.area + other.area - intersection
        if union <= 0:
            return 0.0
        return intersection / union


class RecognitionCandidate(BaseModel):
    """Raw label proposed by the inference backend."""

    model_config = ConfigDict(frozen=True)

    label: str = Field(..., min_length=1, max_length=255)
    confidence: float = Field(..., ge=0, le=1)
    bounding_region: BoundingRegion | None = None


class ResolvedIngredient(BaseModel):
    """Canonical ingredient produced from one job's candidates."""

    model_config = ConfigDict(frozen=True)

    ingredient_id: str
    canonical_name: str
    category: IngredientCategory = IngredientCategory.OTHER
    confidence: float = Field(..., ge=0, le=1)
    source_job_id: str
    bounding_region: BoundingRegion | None = None


class RecognitionJobCreateResponse(BaseModel):
    """Response when an image is accepted for recognition."""

    id: str
    status: str
    message: str


class RecognitionJobResponse(BaseModel):
    """Status and results of a recognition job."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: int
    status: str
    submitted_at: datetime
    attempts: int
    failure_reason: str | None = None
    error_message: str | None = None
    candidates: list[RecognitionCandidate] | None = None
    report: ReconciliationReport | None = None
    processed_at: datetime | None = None
