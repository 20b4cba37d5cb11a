"""Pytest configuration and fixtures."""

import os
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from pantrychef.api.dependencies import get_cache, get_image_ingestor
from pantrychef.database import Base, get_db
from pantrychef.main import app
from pantrychef.models import PantryItem, Recipe, RecipeIngredient
from pantrychef.services.auth import create_access_token
from pantrychef.services.ingestion import ImageIngestor
from pantrychef.services.match_cache import MatchCache
from pantrychef.services.storage import FileSystemObjectStore
from pantrychef.utils_time import utcnow


class AuthHeaders(dict):
    """Dict subclass that also stores user_id."""

    def __init__(self, *args, user_id: int | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.user_id = user_id


# Use test database - PostgreSQL in Docker, SQLite locally
if os.getenv("DATABASE_URL"):
    # Running in Docker - use PostgreSQL test database
    SQLALCHEMY_DATABASE_URL = os.getenv("DATABASE_URL").replace("/pantrychef", "/pantrychef_test")
else:
    # Running locally - use SQLite
    SQLALCHEMY_DATABASE_URL = "sqlite:///./test.db"

connect_args = {"check_same_thread": False} if "sqlite" in SQLALCHEMY_DATABASE_URL else {}
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args=connect_args)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)



@pytest.fixture(scope="session", autouse=True)
def setup_test_database():
    """Create test database schema once at the start of the test session."""
    if "postgresql" in SQLALCHEMY_DATABASE_URL:
        # For PostgreSQL, create the test database
        from sqlalchemy_utils import create_database, database_exists

        # Create test database if it doesn't exist
        if not database_exists(SQLALCHEMY_DATABASE_URL):
            create_database(SQLALCHEMY_DATABASE_URL)

    Base.metadata.create_all(bind=engine)
    yield
    # Don't drop database - just leave it for next run (each test cleans up after itself)


@pytest.fixture(scope="function", autouse=True)
def db():
    """Create a fresh database session for each test with cleanup."""
    session = TestingSessionLocal()

    yield session

    # Clean up all data after test
    session.rollback()
    for table in reversed(Base.metadata.sorted_tables):
        session.execute(table.delete())
    session.commit()
    session.close()


@pytest.fixture
def store(tmp_path):
    """Object store rooted in a per-test temp directory."""
    return FileSystemObjectStore(tmp_path / "images")


@pytest.fixture
def match_cache():
    """Match cache reading pantries through the test database."""
    return MatchCache(session_factory=TestingSessionLocal, capacity=16, ttl_seconds=60)


@pytest.fixture
def dispatched():
    """Job ids handed to the dispatcher by the API."""
    return []


@pytest.fixture(scope="function")
def client(db, store, match_cache, dispatched):
    """Create a test client with database, storage, dispatch and cache overrides."""

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_image_ingestor] = lambda: ImageIngestor(
        db, store=store, dispatch=dispatched.append
    )
    app.dependency_overrides[get_cache] = lambda: match_cache
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Auth headers for user 1, signed like the auth service would."""
    token = create_access_token(1, email="test@example.com")
    return AuthHeaders({"Authorization": f"Bearer {token}"}, user_id=1)


@pytest.fixture
def add_recipe(db):
    """Factory: add_recipe(name, [(ingredient_id, quantity, unit), ...]) -> Recipe."""

    def _add(name, ingredients, weights=None):
        recipe = Recipe(name=name, tags=[])
        recipe.ingredients = [
            RecipeIngredient(
                ingredient_id=ingredient_id,
                name=ingredient_id,
                quantity=quantity,
                unit=unit,
                weight=(weights or {}).get(ingredient_id, 1.0),
            )
            for ingredient_id, quantity, unit in ingredients
        ]
        db.add(recipe)
        db.commit()
        db.refresh(recipe)
        return recipe

    return _add


@pytest.fixture
def add_pantry_item(db):
    """Factory for pantry rows; expires_in_days=None means no expiration date."""

    def _add(
        user_id,
        ingredient_id,
        quantity,
        unit="each",
        location="refrigerator",
        expires_in_days=30,
        notes=None,
    ):
        now = utcnow()
        item = PantryItem(
            user_id=user_id,
            ingredient_id=ingredient_id,
            name=ingredient_id,
            quantity=quantity,
            unit=unit,
            storage_location=location,
            expiration_date=now + timedelta(days=expires_in_days)
            if expires_in_days is not None
            else None,
            last_updated_at=now,
            notes=notes,
        )
        db.add(item)
        db.commit()
        db.refresh(item)
        return item

    return _add


@pytest.fixture
def session_factory():
    """Factory for extra sessions on the test database (another worker, another process)."""
    return TestingSessionLocal


@pytest.fixture
def png_bytes():
    """Tiny PNG header; content is never decoded by the pipeline."""
    return b"\x89PNG\r\n\x1a\n" + b"\x00" * 64
