"""
Pydantic models for upload and derivative processing jobs.
"""

from datetime import datetime
from typing import List, Optional, Dict, Any
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum


class JobType(str, Enum):
    UPLOAD = "upload"
    DERIVATIVE = "derivative"


class JobStatus(str, Enum):
    """Lifecycle of a processing job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class StepStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ProcessingStep(BaseModel):
    id: str
    status: StepStatus

    model_config = ConfigDict(use_enum_values=True)


class ProcessingResult(BaseModel):
    """Outcome of a completed job, stored on the job row."""
    video_id: str = Field(..., description="ID of the stored video row")
    token_id: str = Field(..., description="Minted IP-NFT token ID")
    transaction_hash: str
    contract_address: str
    block_number: Optional[int] = None
    ipfs_hash: str = Field(..., description="CID of the HLS directory")
    thumbnail_ipfs_hash: str
    metadata_uri: str
    video_url: str
    thumbnail_url: str
    explorer_url: str
    perceptual_hash: str
    duration: float
    resolution: str
    file_size: int
    parent_token_id: Optional[str] = None
    lineage_depth: int = 0
    dry_run: bool = False


class JobStatusResponse(BaseModel):
    """Polled by the client while a job runs."""
    processing_id: str
    job_type: JobType
    status: JobStatus
    current_step: str
    progress: int = Field(..., ge=0, le=100)
    steps: List[ProcessingStep]
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    duplicate_of: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(use_enum_values=True)


class UploadAccepted(BaseModel):
    """Returned immediately when an upload is queued."""
    success: bool = True
    processing_id: str
    status: JobStatus = JobStatus.PENDING
    status_url: str
    message: str

    model_config = ConfigDict(use_enum_values=True)
