"""Collapse raw recognition candidates into canonical ingredients."""

import logging
from collections.abc import Iterable

from pantrychef.config import get_settings
from pantrychef.schemas.recognition import RecognitionCandidate, ResolvedIngredient
from pantrychef.services.taxonomy import IngredientTaxonomy, get_default_taxonomy

logger = logging.getLogger(__name__)


class ConfidenceResolver:
    """Deduplicate, threshold and spatially de-conflict model output.

    Stateless and deterministic: the same candidates always resolve to the same
    list, ordered by confidence (descending) then canonical name.
    """

    def __init__(
        self,
        taxonomy: IngredientTaxonomy | None = None,
        threshold: float | None = None,
        overlap_iou_threshold: float | None = None,
    ):
        settings = get_settings()
        self.taxonomy = taxonomy or get_default_taxonomy()
        self.threshold = settings.confidence_threshold if threshold is None else threshold
        self.overlap_iou_threshold = (
            settings.overlap_iou_threshold
            if overlap_iou_threshold is None
            else overlap_iou_threshold
        )

    def resolve(
        self,
        candidates: Iterable[RecognitionCandidate],
        source_job_id: str = "",
    ) -> list[ResolvedIngredient]:
        """Resolve one job's candidates.

        Args:
            candidates: Raw (label, confidence, region) entries from inference
            source_job_id: Job the candidates came from

        Returns:
            At most one ResolvedIngredient per ingredient id
        """
        best: dict[str, RecognitionCandidate] = {}
        for candidate in candidates:
            ingredient_id = self.taxonomy.canonicalize(candidate.label)
            if not ingredient_id:
                logger.debug(f"Dropping unrecognizable label '{candidate.label}'")
                continue
            current = best.get(ingredient_id)
            if current is None or self._prefer(candidate, current):
                best[ingredient_id] = candidate

        above = [
            (ingredient_id, candidate)
            for ingredient_id, candidate in best.items()
            if candidate.confidence >= self.threshold
        ]
        above.sort(key=lambda pair: (-pair[1].confidence, pair[0]))

        kept: list[tuple[str, RecognitionCandidate]] = []
        for ingredient_id, candidate in above:
            rival = self._overlapping(candidate, kept)
            if rival is not None:
                logger.info(
                    f"Suppressing '{ingredient_id}' ({candidate.confidence:.2f}): "
                    f"same region as '{rival}'"
                )
                continue
            kept.append((ingredient_id, candidate))

        return [
            ResolvedIngredient(
                ingredient_id=ingredient_id,
                canonical_name=self.taxonomy.display_name(ingredient_id),
                category=self.taxonomy.category_of(ingredient_id),
                confidence=candidate.confidence,
                source_job_id=source_job_id,
                bounding_region=candidate.bounding_region,
            )
            for ingredient_id, candidate in kept
        ]

    @staticmethod
    def _prefer(candidate: RecognitionCandidate, current: RecognitionCandidate) -> bool:
        """Order-independent choice between two candidates of one ingredient."""
        if candidate.confidence != current.confidence:
            return candidate.confidence > current.confidence
        if (candidate.bounding_region is None) != (current.bounding_region is None):
            return candidate.bounding_region is not None
        return candidate.label < current.label

    def _overlapping(
        self,
        candidate: RecognitionCandidate,
        kept: list[tuple[str, RecognitionCandidate]],
    ) -> str | None:
        region = candidate.bounding_region
        if region is None:
            return None
        for ingredient_id, other in kept:
            if other.bounding_region is None:
                continue
            if region.iou(other.bounding_region) >= self.overlap_iou_threshold:
                return ingredient_id
        return None
