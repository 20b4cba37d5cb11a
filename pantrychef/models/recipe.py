"""Recipe and RecipeIngredient models."""

from sqlalchemy import JSON, Column, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from pantrychef.database import Base
from pantrychef.models.mixins import SoftDeleteMixin, TimestampMixin


class Recipe(Base, TimestampMixin, SoftDeleteMixin):
    """Recipe in the shared corpus. Read-only to the matching pipeline."""

    __tablename__ = "recipes"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)
    instructions = Column(Text, nullable=True)

    # Relationships
    ingredients = relationship(
        "RecipeIngredient", back_populates="recipe", cascade="all, delete-orphan"
    )


class RecipeIngredient(Base):
    """Required ingredient within a recipe."""

    __tablename__ = "recipe_ingredients"

    id = Column(Integer, primary_key=True, index=True)
    recipe_id = Column(Integer, ForeignKey("recipes.id"), nullable=False, index=True)
    ingredient_id = Column(String(100), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    quantity = Column(Float, nullable=True)  # None means "some"
    unit = Column(String(20), nullable=True)
    weight = Column(Float, nullable=False, default=1.0)  # Relative importance in scoring

    # Relationships
    recipe = relationship("Recipe", back_populates="ingredients")
