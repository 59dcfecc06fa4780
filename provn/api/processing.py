"""
Upload, derivative and job status routes.

Uploads are saved to disk, a pending job row is created and the pipeline
runs as a background task; clients poll ``/processing/{id}/status``.
"""

import json
import mimetypes
import os
import structlog
from typing import Any, Dict, Type

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, Request, UploadFile, status
from pydantic import BaseModel, ValidationError

from provn import config
from provn.core.database import find_video_by_file_hash, get_video_by_token
from provn.core.utils import calculate_file_hash, cleanup_temp_file, file_extension, save_temp_upload
from provn.models.jobs import JobStatusResponse, JobType, UploadAccepted
from provn.models.video import DerivativeMetadata, VideoMetadata
from provn.services.auth import require_wallet
from provn.services.pipeline import (
    LicenseRequiredError, ParentNotFoundError, RemixNotAllowedError,
    check_derivative_permission, create_processing_job, get_job_status,
)

logger = structlog.get_logger()

router = APIRouter(tags=["processing"])


async def validate_video_upload(file: UploadFile):
    """Reject uploads by name, declared size and content type before saving them."""
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Filename is required"
        )

    if file.size and file.size > config.MAX_VIDEO_SIZE:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File size exceeds limit of {config.MAX_VIDEO_SIZE_MB}MB"
        )

    content_type = file.content_type or mimetypes.guess_type(file.filename)[0]
    extension = file_extension(file.filename)
    if content_type not in config.ALLOWED_VIDEO_TYPES and extension not in config.ALLOWED_VIDEO_FORMATS:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Unsupported video type: {content_type or extension}. "
                   f"Allowed formats: {', '.join(config.ALLOWED_VIDEO_FORMATS)}"
        )


def parse_metadata(raw: str, model: Type[BaseModel]) -> BaseModel:
    try:
        return model.model_validate(json.loads(raw))
    except json.JSONDecodeError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Metadata must be valid JSON"
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=[{"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in e.errors()]
        )


async def queue_upload(
    request: Request,
    background_tasks: BackgroundTasks,
    file: UploadFile,
    wallet: str,
    job_type: str,
    metadata: Dict[str, Any],
) -> Dict[str, Any]:
    temp_path = save_temp_upload(file, config.TEMP_UPLOAD_DIR)
    try:
        size = os.path.getsize(temp_path)
        if size > config.MAX_VIDEO_SIZE:
            raise HTTPException(
                status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=f"File size exceeds limit of {config.MAX_VIDEO_SIZE_MB}MB"
            )

        file_hash = calculate_file_hash(temp_path)
        existing = find_video_by_file_hash(file_hash)
        if existing:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"This video has already been minted as token {existing['token_id']}"
            )

        pipeline = request.app.state.pipeline
        running = pipeline.find_in_flight(file_hash)
        if running:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"This video is already being processed as job {running}"
            )

        job = create_processing_job(wallet, job_type, metadata)
        pipeline.track_upload(job["processing_id"], file_hash)

    except Exception:
        cleanup_temp_file(temp_path)
        raise

    background_tasks.add_task(
        pipeline.run_job, job, temp_path, file.filename, size
    )
    processing_id = job["processing_id"]
    logger.info("Upload queued", processing_id=processing_id, job_type=job_type,
               wallet=wallet, filename=file.filename, size=size)

    return UploadAccepted(
        processing_id=processing_id,
        status_url=f"/processing/{processing_id}/status",
        message="Video accepted for processing",
    ).model_dump()


@router.post("/videos/upload", response_model=UploadAccepted, status_code=status.HTTP_202_ACCEPTED)
async def upload_video(
    request: Request,
    background_tasks: BackgroundTasks,
    video: UploadFile = File(...),
    metadata: str = Form(...),
    wallet: str = Depends(require_wallet),
):
    """
    Queue a video to be transcoded, fingerprinted, pinned and minted.

    - **video**: Video file (mp4, mov, avi, mkv, webm)
    - **metadata**: JSON object with title, description, tags and licensing terms
    """
    await validate_video_upload(video)
    video_metadata = parse_metadata(metadata, VideoMetadata)
    return await queue_upload(
        request, background_tasks, video, wallet, JobType.UPLOAD.value, video_metadata.model_dump()
    )


@router.post("/derivatives/create", response_model=UploadAccepted, status_code=status.HTTP_202_ACCEPTED)
async def create_derivative(
    request: Request,
    background_tasks: BackgroundTasks,
    video: UploadFile = File(...),
    metadata: str = Form(...),
    wallet: str = Depends(require_wallet),
):
    """Queue a derivative of an existing IP-NFT; metadata must name ``parent_token_id``."""
    await validate_video_upload(video)
    derivative_metadata = parse_metadata(metadata, DerivativeMetadata)

    parent = get_video_by_token(derivative_metadata.parent_token_id)
    try:
        check_derivative_permission(parent, wallet)
    except ParentNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (RemixNotAllowedError, LicenseRequiredError) as e:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))

    return await queue_upload(
        request, background_tasks, video, wallet, JobType.DERIVATIVE.value,
        derivative_metadata.model_dump(),
    )


@router.get("/processing/{processing_id}/status", response_model=JobStatusResponse)
async def processing_status(processing_id: str):
    job_status = get_job_status(processing_id)
    if job_status is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Processing job not found"
        )
    return job_status


@router.get("/queue/status")
async def queue_status(request: Request):
    return request.app.state.pipeline.queue_status()
