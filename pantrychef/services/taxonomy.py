"""Ingredient taxonomy: label normalization, categories, shelf life, units.

The pipeline only talks to the ``IngredientTaxonomy`` protocol, so the tables
can be swapped (fixed tables in tests, localized tables per market).
"""

import logging
import re
from collections.abc import Iterable, Mapping
from typing import Protocol, runtime_checkable

from pantrychef.models.enums import IngredientCategory, StorageLocation

logger = logging.getLogger(__name__)

# Words that describe an ingredient without changing what it is
DEFAULT_MODIFIERS = {
    "fresh",
    "organic",
    "raw",
    "ripe",
    "whole",
    "large",
    "small",
    "medium",
    "free range",
    "free-range",
    "local",
    "frozen",
    "dried",
    "chopped",
    "sliced",
    "diced",
}

# alias -> canonical ingredient id
DEFAULT_SYNONYMS = {
    "roma tomato": "tomato",
    "cherry tomato": "tomato",
    "tomatoes": "tomato",
    "scallion": "green onion",
    "spring onion": "green onion",
    "yellow onion": "onion",
    "red onion": "onion",
    "eggs": "egg",
    "hen egg": "egg",
    "bell pepper": "capsicum",
    "sweet pepper": "capsicum",
    "cilantro": "coriander",
    "courgette": "zucchini",
    "aubergine": "eggplant",
    "all purpose flour": "flour",
    "plain flour": "flour",
    "whole milk": "milk",
    "skim milk": "milk",
    "chicken breast": "chicken",
    "chicken thigh": "chicken",
    "ground beef": "beef",
    "minced beef": "beef",
}

DEFAULT_CATEGORIES = {
    "tomato": IngredientCategory.PRODUCE,
    "onion": IngredientCategory.PRODUCE,
    "green onion": IngredientCategory.PRODUCE,
    "garlic": IngredientCategory.PRODUCE,
    "potato": IngredientCategory.PRODUCE,
    "carrot": IngredientCategory.PRODUCE,
    "capsicum": IngredientCategory.PRODUCE,
    "coriander": IngredientCategory.PRODUCE,
    "zucchini": IngredientCategory.PRODUCE,
    "eggplant": IngredientCategory.PRODUCE,
    "apple": IngredientCategory.PRODUCE,
    "banana": IngredientCategory.PRODUCE,
    "lemon": IngredientCategory.PRODUCE,
    "spinach": IngredientCategory.PRODUCE,
    "chicken": IngredientCategory.MEAT,
    "beef": IngredientCategory.MEAT,
    "pork": IngredientCategory.MEAT,
    "bacon": IngredientCategory.MEAT,
    "milk": IngredientCategory.DAIRY,
    "egg": IngredientCategory.DAIRY,
    "butter": IngredientCategory.DAIRY,
    "cheese": IngredientCategory.DAIRY,
    "yogurt": IngredientCategory.DAIRY,
    "cream": IngredientCategory.DAIRY,
    "flour": IngredientCategory.GRAINS,
    "rice": IngredientCategory.GRAINS,
    "pasta": IngredientCategory.GRAINS,
    "bread": IngredientCategory.GRAINS,
    "oats": IngredientCategory.GRAINS,
    "salt": IngredientCategory.SPICES,
    "pepper": IngredientCategory.SPICES,
    "cumin": IngredientCategory.SPICES,
    "paprika": IngredientCategory.SPICES,
    "cinnamon": IngredientCategory.SPICES,
    "olive oil": IngredientCategory.CONDIMENTS,
    "ketchup": IngredientCategory.CONDIMENTS,
    "mustard": IngredientCategory.CONDIMENTS,
    "soy sauce": IngredientCategory.CONDIMENTS,
    "sugar": IngredientCategory.CONDIMENTS,
    "orange juice": IngredientCategory.BEVERAGES,
    "coffee": IngredientCategory.BEVERAGES,
}

DEFAULT_LOCATIONS = {
    IngredientCategory.PRODUCE: StorageLocation.REFRIGERATOR,
    IngredientCategory.MEAT: StorageLocation.REFRIGERATOR,
    IngredientCategory.DAIRY: StorageLocation.REFRIGERATOR,
    IngredientCategory.GRAINS: StorageLocation.PANTRY,
    IngredientCategory.SPICES: StorageLocation.SPICE_RACK,
    IngredientCategory.CONDIMENTS: StorageLocation.PANTRY,
    IngredientCategory.BEVERAGES: StorageLocation.REFRIGERATOR,
    IngredientCategory.OTHER: StorageLocation.PANTRY,
}

# Average shelf life in days: (refrigerated, frozen, pantry)
DEFAULT_SHELF_LIFE_DAYS = {
    IngredientCategory.PRODUCE: (7, 240, 5),
    IngredientCategory.MEAT: (3, 180, 1),
    IngredientCategory.DAIRY: (10, 90, 1),
    IngredientCategory.GRAINS: (60, 365, 180),
    IngredientCategory.SPICES: (730, 730, 730),
    IngredientCategory.CONDIMENTS: (180, 365, 365),
    IngredientCategory.BEVERAGES: (10, 180, 180),
    IngredientCategory.OTHER: (14, 180, 30),
}

# Quantity added to the pantry when one object is recognized in a photo
DEFAULT_PORTIONS = {
    "flour": (1000.0, "g"),
    "rice": (1000.0, "g"),
    "pasta": (500.0, "g"),
    "sugar": (1000.0, "g"),
    "oats": (500.0, "g"),
    "milk": (1000.0, "ml"),
    "cream": (250.0, "ml"),
    "olive oil": (500.0, "ml"),
    "orange juice": (1000.0, "ml"),
    "soy sauce": (250.0, "ml"),
    "chicken": (500.0, "g"),
    "beef": (500.0, "g"),
    "pork": (500.0, "g"),
    "cheese": (200.0, "g"),
    "butter": (250.0, "g"),
}

# unit -> (family, factor to family base unit)
UNIT_TABLE = {
    "g": ("mass", 1.0),
    "kg": ("mass", 1000.0),
    "oz": ("mass", 28.3495),
    "lb": ("mass", 453.592),
    "ml": ("volume", 1.0),
    "l": ("volume", 1000.0),
    "tsp": ("volume", 4.92892),
    "tbsp": ("volume", 14.7868),
    "cup": ("volume", 236.588),
    "each": ("count", 1.0),
}

UNIT_ALIASES = {
    "gram": "g",
    "grams": "g",
    "kilogram": "kg",
    "kilograms": "kg",
    "ounce": "oz",
    "ounces": "oz",
    "pound": "lb",
    "pounds": "lb",
    "lbs": "lb",
    "milliliter": "ml",
    "milliliters": "ml",
    "litre": "l",
    "liter": "l",
    "liters": "l",
    "litres": "l",
    "teaspoon": "tsp",
    "teaspoons": "tsp",
    "tablespoon": "tbsp",
    "tablespoons": "tbsp",
    "cups": "cup",
    "unit": "each",
    "units": "each",
    "pc": "each",
    "pcs": "each",
    "piece": "each",
    "pieces": "each",
    "": "each",
}

_NON_WORD = re.compile(r"[^\w\s-]")


def _normalize_token(value: str) -> str:
    """Case-fold, drop punctuation, and collapse whitespace."""
    if not value:
        return ""
    collapsed = _NON_WORD.sub(" ", value.casefold()).replace("_", " ")
    return " ".join(collapsed.split())


def _singular_forms(phrase: str) -> list[str]:
    """Naive singulars for the last word of a phrase."""
    head, _, last = phrase.rpartition(" ")
    prefix = f"{head} " if head else ""
    forms = []
    if last.endswith("ies") and len(last) > 3:
        forms.append(prefix + last[:-3] + "y")
    if last.endswith("oes") and len(last) > 3:
        forms.append(prefix + last[:-2])
    if last.endswith("s") and not last.endswith("ss") and len(last) > 1:
        forms.append(prefix + last[:-1])
    return forms


def normalize_unit(unit: str | None) -> str | None:
    """Map a unit spelling onto the table's key, or None if unknown."""
    key = _normalize_token(unit or "")
    key = UNIT_ALIASES.get(key, key)
    return key if key in UNIT_TABLE else None


@runtime_checkable
class IngredientTaxonomy(Protocol):
    """Lookup service consulted by the resolver, reconciler and matcher."""

    def canonicalize(self, label: str) -> str | None:
        """Return the canonical ingredient id for a raw label, or None."""
        ...

    def display_name(self, ingredient_id: str) -> str: ...

    def category_of(self, ingredient_id: str) -> IngredientCategory: ...

    def default_location(self, category: IngredientCategory) -> StorageLocation: ...

    def shelf_life_days(self, category: IngredientCategory, location: StorageLocation) -> int: ...

    def portion(self, ingredient_id: str) -> tuple[float, str]:
        """Quantity and unit of one recognized object of this ingredient."""
        ...

    def convert(self, quantity: float, from_unit: str | None, to_unit: str | None) -> float | None:
        """Convert between units of one family, or None when incompatible."""
        ...


class StaticTaxonomy:
    """Taxonomy backed by in-memory tables."""

    def __init__(
        self,
        synonyms: Mapping[str, str] | None = None,
        modifiers: Iterable[str] | None = None,
        categories: Mapping[str, IngredientCategory] | None = None,
        shelf_life_days: Mapping[IngredientCategory, tuple[int, int, int]] | None = None,
        portions: Mapping[str, tuple[float, str]] | None = None,
        display_names: Mapping[str, str] | None = None,
    ):
        self.synonyms = {
            _normalize_token(alias): _normalize_token(target)
            for alias, target in (DEFAULT_SYNONYMS if synonyms is None else synonyms).items()
        }
        # Longest first so multi-word modifiers are removed whole
        self.modifiers = sorted(
            {_normalize_token(m) for m in (DEFAULT_MODIFIERS if modifiers is None else modifiers)},
            key=len,
            reverse=True,
        )
        self.categories = {
            _normalize_token(k): v
            for k, v in (DEFAULT_CATEGORIES if categories is None else categories).items()
        }
        self.shelf_life = dict(DEFAULT_SHELF_LIFE_DAYS if shelf_life_days is None else shelf_life_days)
        self.portions = dict(DEFAULT_PORTIONS if portions is None else portions)
        self.display_names = dict(display_names or {})
        self._known = set(self.categories) | set(self.synonyms.values())

    def _strip_modifiers(self, phrase: str) -> str:
        padded = f" {phrase} "
        for modifier in self.modifiers:
            padded = padded.replace(f" {modifier} ", " ")
        return " ".join(padded.split())

    def canonicalize(self, label: str) -> str | None:
        phrase = _normalize_token(label)
        if not phrase:
            return None

        # Synonym on the full phrase first ("whole milk" is a synonym, not a modifier case)
        if phrase in self.synonyms:
            return self.synonyms[phrase]

        stripped = self._strip_modifiers(phrase)
        if not stripped:
            return None
        if stripped in self.synonyms:
            return self.synonyms[stripped]
        if stripped in self._known:
            return stripped

        for singular in _singular_forms(stripped):
            if singular in self.synonyms:
                return self.synonyms[singular]
            if singular in self._known:
                return singular

        return stripped

    def display_name(self, ingredient_id: str) -> str:
        return self.display_names.get(ingredient_id, ingredient_id)

    def category_of(self, ingredient_id: str) -> IngredientCategory:
        return self.categories.get(ingredient_id, IngredientCategory.OTHER)

    def default_location(self, category: IngredientCategory) -> StorageLocation:
        return DEFAULT_LOCATIONS.get(category, StorageLocation.PANTRY)

    def shelf_life_days(self, category: IngredientCategory, location: StorageLocation) -> int:
        refrigerated, frozen, pantry = self.shelf_life.get(
            category, DEFAULT_SHELF_LIFE_DAYS[IngredientCategory.OTHER]
        )
        if location == StorageLocation.FREEZER:
            return frozen
        if location == StorageLocation.REFRIGERATOR:
            return refrigerated
        return pantry

    def portion(self, ingredient_id: str) -> tuple[float, str]:
        return self.portions.get(ingredient_id, (1.0, "each"))

    def convert(self, quantity: float, from_unit: str | None, to_unit: str | None) -> float | None:
        source = normalize_unit(from_unit)
        target = normalize_unit(to_unit)
        if source is None or target is None:
            return None
        source_family, source_factor = UNIT_TABLE[source]
        target_family, target_factor = UNIT_TABLE[target]
        if source_family != target_family:
            return None
        return quantity * source_factor / target_factor


_default_taxonomy: StaticTaxonomy | None = None


def get_default_taxonomy() -> StaticTaxonomy:
    """Get the shared taxonomy built from the default tables."""
    global _default_taxonomy
    if _default_taxonomy is None:
        _default_taxonomy = StaticTaxonomy()
        logger.debug(f"Loaded default taxonomy with {len(_default_taxonomy.categories)} ingredients")
    return _default_taxonomy
