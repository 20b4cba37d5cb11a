"""SQLAlchemy models."""

from pantrychef.models.pantry import PantryItem
from pantrychef.models.pantry_observation import PantryObservation
from pantrychef.models.recipe import Recipe, RecipeIngredient
from pantrychef.models.recognition_job import RecognitionJob

__all__ = [
    "RecognitionJob",
    "PantryItem",
    "PantryObservation",
    "Recipe",
    "RecipeIngredient",
]
