"""FastAPI dependencies for authentication and pipeline services."""

from typing import Annotated

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from pantrychef.database import get_db
from pantrychef.services.auth import decode_access_token
from pantrychef.services.ingestion import ImageIngestor
from pantrychef.services.match_cache import MatchCache, get_match_cache
from pantrychef.services.pantry_service import PantryService
from pantrychef.services.storage import FileSystemObjectStore

security = HTTPBearer()


def get_current_user_id(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(security)],
) -> int:
    """Get the verified user id from the JWT bearer token."""
    payload = decode_access_token(credentials.credentials)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    try:
        return int(user_id)
    except (TypeError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
            headers={"WWW-Authenticate": "Bearer"},
        ) from None


def _dispatch_recognition(job_id: str) -> None:
    from pantrychef.tasks.recognition import process_recognition_job

    process_recognition_job.delay(job_id)


def get_image_ingestor(db: Annotated[Session, Depends(get_db)]) -> ImageIngestor:
    """Dependency that provides the image ingestor."""
    return ImageIngestor(db, store=FileSystemObjectStore(), dispatch=_dispatch_recognition)


def get_pantry_service(db: Annotated[Session, Depends(get_db)]) -> PantryService:
    """Dependency that provides the pantry service."""
    return PantryService(db)


def get_cache() -> MatchCache:
    """Dependency that provides the process-wide match cache."""
    return get_match_cache()
