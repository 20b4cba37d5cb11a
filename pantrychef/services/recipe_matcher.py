"""Recipe matching: rank the corpus against a pantry snapshot."""

import logging
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy.orm import Session, selectinload

from pantrychef.config import get_settings
from pantrychef.models.recipe import Recipe
from pantrychef.schemas.recipe import MatchOptions, MatchResult
from pantrychef.services.pantry_service import PantryService, PantrySnapshot, PantrySnapshotItem
from pantrychef.services.taxonomy import IngredientTaxonomy, get_default_taxonomy
from pantrychef.utils_time import as_utc

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RequiredIngredient:
    ingredient_id: str
    quantity: float | None = None
    unit: str | None = None
    weight: float = 1.0


@dataclass(frozen=True)
class CorpusRecipe:
    """Read-only view of a recipe used for scoring."""

    recipe_id: int
    name: str
    ingredients: tuple[RequiredIngredient, ...]
    tags: tuple[str, ...] = ()
    created_at: datetime | None = None


class RecipeCorpus(Protocol):
    """Streams recipes for matching."""

    def iter_recipes(self) -> Iterator[CorpusRecipe]: ...


class SqlRecipeCorpus:
    """Recipe corpus read from the database in id-ordered pages."""

    def __init__(self, db: Session, page_size: int | None = None):
        self.db = db
        self.page_size = page_size or get_settings().recipe_page_size

    def iter_recipes(self) -> Iterator[CorpusRecipe]:
        last_id = 0
        while True:
            page = (
                self.db.query(Recipe)
                .options(selectinload(Recipe.ingredients))
                .filter(Recipe.live(), Recipe.id > last_id)
                .order_by(Recipe.id)
                .limit(self.page_size)
                .all()
            )
            if not page:
                return
            for recipe in page:
                yield CorpusRecipe(
                    recipe_id=recipe.id,
                    name=recipe.name,
                    ingredients=tuple(
                        RequiredIngredient(
                            ingredient_id=ing.ingredient_id,
                            quantity=ing.quantity,
                            unit=ing.unit,
                            weight=ing.weight if ing.weight is not None else 1.0,
                        )
                        for ing in recipe.ingredients
                    ),
                    tags=tuple(recipe.tags or ()),
                    created_at=as_utc(recipe.created_at),
                )
            last_id = page[-1].id
            if len(page) < self.page_size:
                return


def apply_match_options(
    results: Iterable[MatchResult], options: MatchOptions | None
) -> list[MatchResult]:
    """Filter an already ranked list by min_score and limit."""
    options = options or MatchOptions()
    kept = [result for result in results if result.score >= options.min_score]
    if options.limit is not None:
        kept = kept[: options.limit]
    return kept


class RecipeMatcher:
    """Scores recipes by weighted ingredient coverage of a pantry.

    Per required ingredient, credit is min(1, have / required) after unit
    conversion. Present ingredients that expire soon add a small bonus, so
    recipes that use them rank higher.
    """

    def __init__(
        self,
        corpus: RecipeCorpus,
        pantry: PantryService | None = None,
        taxonomy: IngredientTaxonomy | None = None,
        expiring_soon_days: int | None = None,
        expiry_bonus: float | None = None,
    ):
        settings = get_settings()
        self.corpus = corpus
        self.pantry = pantry
        self.taxonomy = taxonomy or (pantry.taxonomy if pantry else get_default_taxonomy())
        self.expiring_window = timedelta(
            days=settings.expiring_soon_days if expiring_soon_days is None else expiring_soon_days
        )
        self.expiry_bonus = settings.expiry_bonus if expiry_bonus is None else expiry_bonus

    def match(self, user_id: int, options: MatchOptions | None = None) -> list[MatchResult]:
        """Rank recipes for the user's current pantry."""
        if self.pantry is None:
            raise RuntimeError("RecipeMatcher.match needs a PantryService")
        return apply_match_options(self.rank(self.pantry.snapshot(user_id)), options)

    def rank(self, snapshot: PantrySnapshot) -> list[MatchResult]:
        """Score every recipe against one snapshot.

        Ordered by score (desc), fewer missing ingredients, newer recipe, then id.
        """
        have = snapshot.by_ingredient()
        scored: list[tuple[MatchResult, float]] = []
        for recipe in self.corpus.iter_recipes():
            result = self.score(recipe, have, snapshot.taken_at)
            if result is None:
                continue
            recency = recipe.created_at.timestamp() if recipe.created_at else 0.0
            scored.append((result, recency))

        scored.sort(
            key=lambda pair: (
                -pair[0].score,
                len(pair[0].missing_ingredients),
                -pair[1],
                pair[0].recipe_id,
            )
        )
        logger.debug(f"Ranked {len(scored)} recipes for user {snapshot.user_id}")
        return [result for result, _ in scored]

    def score(
        self,
        recipe: CorpusRecipe,
        have: dict[str, list[PantrySnapshotItem]],
        now: datetime,
    ) -> MatchResult | None:
        """Score one recipe, or None if it has nothing to score."""
        total_weight = sum(max(0.0, req.weight) for req in recipe.ingredients)
        if total_weight <= 0:
            return None

        earned = 0.0
        expiring_weight = 0.0
        matched: list[str] = []
        missing: list[str] = []
        expiring: list[str] = []
        for req in recipe.ingredients:
            weight = max(0.0, req.weight)
            items = have.get(req.ingredient_id)
            if not items:
                missing.append(req.ingredient_id)
                continue
            matched.append(req.ingredient_id)
            earned += weight * self._credit(req, items)
            if any(self._expires_soon(item, now) for item in items):
                expiring_weight += weight
                expiring.append(req.ingredient_id)

        base = earned / total_weight
        bonus = self.expiry_bonus * expiring_weight / total_weight
        return MatchResult(
            recipe_id=recipe.recipe_id,
            recipe_name=recipe.name,
            score=round(min(1.0, base + bonus), 6),
            matched_ingredients=matched,
            missing_ingredients=missing,
            expiring_ingredients=expiring,
        )

    def _credit(self, req: RequiredIngredient, items: list[PantrySnapshotItem]) -> float:
        """Quantity sufficiency in [0, 1]. Unknown quantities get full credit."""
        if req.quantity is None or req.quantity <= 0:
            return 1.0
        available = 0.0
        comparable = False
        for item in items:
            converted = self.taxonomy.convert(item.quantity, item.unit, req.unit)
            if converted is not None:
                available += converted
                comparable = True
        if not comparable:
            return 1.0
        return min(1.0, available / req.quantity)

    def _expires_soon(self, item: PantrySnapshotItem, now: datetime) -> bool:
        if item.expiration_date is None:
            return False
        return now <= item.expiration_date <= now + self.expiring_window
