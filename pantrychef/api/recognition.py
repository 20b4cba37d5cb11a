"""Ingredient recognition API endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile, status

from pantrychef.api.dependencies import get_current_user_id, get_image_ingestor
from pantrychef.exceptions import (
    JobNotFoundError,
    JobStateError,
    StorageError,
    ValidationError,
)
from pantrychef.schemas.recognition import RecognitionJobCreateResponse, RecognitionJobResponse
from pantrychef.services.ingestion import ImageIngestor

router = APIRouter(prefix="/api/v1/recognition", tags=["recognition"])


@router.post(
    "/images",
    response_model=RecognitionJobCreateResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def submit_image(
    file: Annotated[UploadFile, File(description="Ingredient photo (JPEG, PNG, GIF, or WebP)")],
    user_id: Annotated[int, Depends(get_current_user_id)],
    ingestor: Annotated[ImageIngestor, Depends(get_image_ingestor)],
):
    """Upload a photo of ingredients for recognition.

    The image is processed asynchronously. Poll the job endpoint to check
    when processing is complete.

    Note: This endpoint must remain async because UploadFile.read() is async.
    """
    image_data = await file.read()

    try:
        job = ingestor.submit(user_id, image_data, file.content_type or "")
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e
    except StorageError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Image storage is unavailable, please retry",
        ) from e

    return RecognitionJobCreateResponse(
        id=job.id,
        status=job.status,
        message="Image uploaded successfully. Processing in background.",
    )


@router.get("/jobs/{job_id}", response_model=RecognitionJobResponse)
def get_recognition_job(
    job_id: str,
    user_id: Annotated[int, Depends(get_current_user_id)],
    ingestor: Annotated[ImageIngestor, Depends(get_image_ingestor)],
):
    """Get the status and results of a recognition job."""
    try:
        return ingestor.get_job(user_id, job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e


@router.delete("/jobs/{job_id}", response_model=RecognitionJobResponse)
def cancel_recognition_job(
    job_id: str,
    user_id: Annotated[int, Depends(get_current_user_id)],
    ingestor: Annotated[ImageIngestor, Depends(get_image_ingestor)],
):
    """Cancel a job that has not started processing."""
    try:
        return ingestor.cancel(user_id, job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except JobStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
