"""
Upload-to-mint processing pipeline.

A job moves pending -> processing -> completed | failed. Every step is
written to the job row as it starts, so clients polling the status endpoint
see which step is running and how far along the job is. Jobs share a
bounded semaphore; ffmpeg, database and HTTP work runs in worker threads.
"""

import asyncio
import os
import threading
import time
import structlog
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from provn import config
from provn.core.database import (
    fail_stale_jobs, get_fingerprint_candidates, get_processing_job, get_queue_counts,
    get_video_by_token, insert_minted_video, insert_processing_job, update_job_status,
)
from provn.core.licensing import has_active_license
from provn.core.profiles import ensure_profile
from provn.core.storage import IPFSClient, StorageError, create_video_metadata, get_ipfs_url
from provn.core.utils import (
    calculate_file_hash, cleanup_directory, cleanup_temp_file, new_processing_id, normalize_address,
    sanitize_filename,
)
from provn.models.jobs import JobStatus, JobType, ProcessingResult, StepStatus
from provn.services import perceptual_hash, video_processing
from provn.services.blockchain import BlockchainService, MintError, get_explorer_url

logger = structlog.get_logger()

STEPS = {
    JobType.UPLOAD.value: [
        "validate", "transcode", "thumbnail", "hash",
        "check_duplicate", "upload_ipfs", "mint_nft",
    ],
    JobType.DERIVATIVE.value: [
        "validate", "analyze_parent", "transcode", "thumbnail", "hash",
        "check_duplicate", "upload_ipfs", "mint_derivative",
    ],
}

ID_PREFIXES = {
    JobType.UPLOAD.value: "proc",
    JobType.DERIVATIVE.value: "deriv",
}

# Errors from external services worth another attempt
RETRYABLE_ERRORS = (StorageError, MintError)


class PipelineError(Exception):
    """A step failure whose message is safe to show to the uploader."""
    pass


class DuplicateVideoError(PipelineError):
    def __init__(self, duplicate_of: str, similarity: float):
        super().__init__(
            f"Video is a duplicate of existing video {duplicate_of} "
            f"(similarity {similarity:.1%})"
        )
        self.duplicate_of = duplicate_of
        self.similarity = similarity


class ParentNotFoundError(PipelineError):
    pass


class RemixNotAllowedError(PipelineError):
    pass


class LicenseRequiredError(PipelineError):
    pass


class JobFinishedError(PipelineError):
    """The job row was completed or failed elsewhere, e.g. by stale-job cleanup."""
    pass


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _candidate_id(candidate: Dict[str, Any]) -> str:
    return candidate.get("token_id") or candidate.get("processing_id") or str(candidate["video_id"])


def step_progress(steps: List[str], step: str) -> int:
    """Progress recorded when ``step`` starts."""
    return int(steps.index(step) * 100 / len(steps))


def expand_steps(job: Dict[str, Any]) -> List[Dict[str, str]]:
    """Per-step status derived from the job's status and current step."""
    steps = job["steps"] or []
    status = job["status"]
    current = job["current_step"]

    if status == JobStatus.COMPLETED.value:
        return [{"id": step, "status": StepStatus.COMPLETED.value} for step in steps]

    current_index = steps.index(current) if current in steps else -1
    expanded = []
    for index, step in enumerate(steps):
        if index < current_index:
            step_status = StepStatus.COMPLETED
        elif index == current_index and status == JobStatus.FAILED.value:
            step_status = StepStatus.FAILED
        elif index == current_index and status == JobStatus.PROCESSING.value:
            step_status = StepStatus.PROCESSING
        else:
            step_status = StepStatus.PENDING
        expanded.append({"id": step, "status": step_status.value})
    return expanded


def check_derivative_permission(parent: Optional[Dict[str, Any]], wallet_address: str):
    """Raise unless ``wallet_address`` may publish a derivative of ``parent``."""
    if parent is None:
        raise ParentNotFoundError("Parent video not found")
    if not parent.get("allow_remixing"):
        raise RemixNotAllowedError("The original creator does not allow derivatives of this video")
    if normalize_address(parent["creator_wallet"]) == normalize_address(wallet_address):
        return
    if not has_active_license(parent["token_id"], wallet_address):
        raise LicenseRequiredError("An active license for the parent video is required")


def build_lineage(parent: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "parent_token_id": parent["token_id"],
        "parent_creator": parent["creator_wallet"],
        "lineage_depth": (parent.get("lineage_depth") or 0) + 1,
        "parent_chain": list(parent.get("parent_chain") or []) + [parent["token_id"]],
        "revenue_split": {
            "creator": config.DERIVATIVE_CREATOR_SHARE,
            "original_creator": 100 - config.DERIVATIVE_CREATOR_SHARE,
        },
    }


def create_processing_job(user_address: str, job_type: str, metadata: Dict[str, Any]) -> Dict:
    """Insert a pending job for the uploader and return the row."""
    if job_type not in STEPS:
        raise ValueError(f"Unknown job type: {job_type}")

    processing_id = new_processing_id(ID_PREFIXES[job_type])
    job = insert_processing_job(
        processing_id, normalize_address(user_address), job_type, STEPS[job_type], metadata
    )
    logger.info("Processing job created", processing_id=processing_id, job_type=job_type)
    return job


def get_job_status(processing_id: str) -> Optional[Dict[str, Any]]:
    job = get_processing_job(processing_id)
    if job is None:
        return None

    return {
        "processing_id": job["processing_id"],
        "job_type": job["job_type"],
        "status": job["status"],
        "current_step": job["current_step"],
        "progress": job["progress"],
        "steps": expand_steps(job),
        "result": job.get("result"),
        "error": job.get("error_message"),
        "duplicate_of": job.get("duplicate_of"),
        "created_at": job.get("created_at"),
        "updated_at": job.get("updated_at"),
        "completed_at": job.get("completed_at"),
    }


def recover_stale_jobs() -> int:
    """Fail jobs left running by a previous process."""
    return fail_stale_jobs(config.STALE_JOB_MINUTES)


class ProcessingPipeline:
    """Runs processing jobs with bounded concurrency."""

    def __init__(
        self,
        ipfs_client: IPFSClient,
        blockchain: BlockchainService,
        max_concurrent_jobs: Optional[int] = None,
    ):
        self.ipfs_client = ipfs_client
        self.blockchain = blockchain
        self.max_concurrent_jobs = max_concurrent_jobs or config.MAX_CONCURRENT_JOBS
        self._semaphore = asyncio.Semaphore(self.max_concurrent_jobs)
        self._active = 0
        self._waiting = 0

        # Jobs that passed the duplicate check but are not stored yet, by processing ID
        self._in_flight: Dict[str, Dict[str, Any]] = {}
        self._in_flight_lock = threading.Lock()

        self._handlers: Dict[str, Callable[[Dict[str, Any]], None]] = {
            "validate": self._validate,
            "analyze_parent": self._analyze_parent,
            "transcode": self._transcode,
            "thumbnail": self._thumbnail,
            "hash": self._hash,
            "check_duplicate": self._check_duplicate,
            "upload_ipfs": self._upload_ipfs,
            "mint_nft": self._mint,
            "mint_derivative": self._mint,
        }

    def queue_status(self) -> Dict[str, Any]:
        counts = get_queue_counts()
        return {
            **counts,
            "active_jobs": self._active,
            "waiting_jobs": self._waiting,
            "max_concurrent_jobs": self.max_concurrent_jobs,
        }

    def track_upload(self, processing_id: str, file_hash: str):
        """Hold ``file_hash`` for a queued job until the job ends."""
        with self._in_flight_lock:
            self._in_flight[processing_id] = {"processing_id": processing_id, "file_hash": file_hash}

    def find_in_flight(self, file_hash: str) -> Optional[str]:
        """Processing ID of a queued or running job for the same file, if any."""
        with self._in_flight_lock:
            for processing_id, entry in self._in_flight.items():
                if entry.get("file_hash") == file_hash:
                    return processing_id
        return None

    def _release(self, processing_id: str):
        with self._in_flight_lock:
            self._in_flight.pop(processing_id, None)

    async def run_job(
        self,
        job: Dict[str, Any],
        video_path: str,
        original_name: str,
        file_size: int,
    ) -> Optional[Dict[str, Any]]:
        """
        Run every step of ``job`` against the uploaded file.

        The uploaded file and the job's working directory are removed when
        the job ends, whatever the outcome.

        Returns:
            The ProcessingResult as a dict, or None when the job failed
        """
        self._waiting += 1
        try:
            await self._semaphore.acquire()
        finally:
            self._waiting -= 1

        self._active += 1
        try:
            return await self._execute(job, video_path, original_name, file_size)
        finally:
            self._active -= 1
            self._semaphore.release()

    async def _execute(self, job, video_path, original_name, file_size):
        processing_id = job["processing_id"]
        steps = job["steps"]
        ctx = {
            "processing_id": processing_id,
            "job_type": job["job_type"],
            "creator": normalize_address(job["user_address"]),
            "metadata": job["metadata"] or {},
            "video_path": video_path,
            "original_name": original_name,
            "file_size": file_size,
            "work_dir": os.path.join(config.TEMP_UPLOAD_DIR, processing_id),
        }
        history: List[Dict[str, Any]] = []
        step = steps[0]
        progress = 0
        start_time = time.time()

        logger.info("Processing job started", processing_id=processing_id,
                   job_type=job["job_type"], original_name=original_name, file_size=file_size)
        try:
            for step in steps:
                progress = step_progress(steps, step)
                entry = {"step": step, "status": "processing", "started_at": _now(), "completed_at": None}
                history.append(entry)
                active = await asyncio.to_thread(
                    update_job_status, processing_id, JobStatus.PROCESSING.value, step, progress, history
                )
                if not active:
                    raise JobFinishedError("Job was ended before processing finished")

                await asyncio.to_thread(self._handlers[step], ctx)

                entry["status"] = "completed"
                entry["completed_at"] = _now()
                logger.debug("Processing step completed", processing_id=processing_id, step=step)

            result = await asyncio.to_thread(self._finalize, ctx)
            recorded = await asyncio.to_thread(
                update_job_status, processing_id, JobStatus.COMPLETED.value, "completed", 100,
                history, result=result, video_id=result["video_id"],
            )
            if not recorded:
                logger.warning("Video stored for a job that was already ended",
                              processing_id=processing_id, video_id=result["video_id"])
            logger.info("Processing job completed", processing_id=processing_id,
                       token_id=result["token_id"], video_id=result["video_id"],
                       processing_time_seconds=round(time.time() - start_time, 2))
            return result

        except Exception as e:
            if history:
                history[-1]["status"] = "failed"
                history[-1]["completed_at"] = _now()
                history[-1]["error"] = str(e)

            duplicate_of = e.duplicate_of if isinstance(e, DuplicateVideoError) else None
            recovery = None
            if isinstance(e, (PipelineError, video_processing.VideoValidationError)):
                error_message = str(e)
                logger.warning("Processing job rejected", processing_id=processing_id,
                              step=step, error=error_message, duplicate_of=duplicate_of)
            elif "mint" in ctx:
                # The token exists on chain; keep what is needed to store it later
                mint = ctx["mint"]
                recovery = {"mint": mint.model_dump(), "ipfs": ctx["ipfs"]}
                error_message = f"Minted token {mint.token_id} could not be saved: {e}"
                logger.error("Minted video could not be saved", processing_id=processing_id,
                            token_id=mint.token_id, transaction_hash=mint.transaction_hash,
                            error=str(e), exc_info=True)
            else:
                error_message = f"Step '{step}' failed: {e}"
                logger.error("Processing job failed", processing_id=processing_id,
                            step=step, error=str(e), exc_info=True)

            try:
                await asyncio.to_thread(
                    update_job_status, processing_id, JobStatus.FAILED.value, step, progress,
                    history, result=recovery, error_message=error_message, duplicate_of=duplicate_of,
                )
            except Exception as db_error:
                logger.error("Failed to record job failure",
                            processing_id=processing_id, error=str(db_error))
            return None

        finally:
            self._release(processing_id)
            cleanup_directory(ctx["work_dir"])
            cleanup_temp_file(video_path)

    def _with_retry(self, operation: str, func: Callable, *args, **kwargs):
        """Call ``func`` with exponential backoff on storage and mint errors."""
        attempts = max(1, config.STEP_MAX_ATTEMPTS)

        def log_retry(retry_state):
            logger.warning("Operation failed, retrying", operation=operation,
                          attempt=retry_state.attempt_number, max_attempts=attempts,
                          delay_seconds=retry_state.next_action.sleep,
                          error=str(retry_state.outcome.exception()))

        retrying = Retrying(
            retry=retry_if_exception_type(RETRYABLE_ERRORS),
            stop=stop_after_attempt(attempts),
            wait=wait_exponential(multiplier=config.STEP_RETRY_DELAY),
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            return retrying(func, *args, **kwargs)
        except RETRYABLE_ERRORS as e:
            logger.error("Giving up after retries", operation=operation,
                        attempts=attempts, error=str(e))
            raise

    # Steps. Each receives the job context and adds its outputs to it.
    def _validate(self, ctx):
        info = video_processing.validate_video_file(
            ctx["video_path"], ctx["original_name"], ctx["file_size"]
        )
        ctx["video_info"] = video_processing.get_video_info(ctx["video_path"], info)

    def _analyze_parent(self, ctx):
        parent = get_video_by_token(ctx["metadata"].get("parent_token_id"))
        check_derivative_permission(parent, ctx["creator"])
        ctx["parent"] = parent
        ctx["lineage"] = build_lineage(parent)
        logger.info("Parent video verified", processing_id=ctx["processing_id"],
                   parent_token_id=parent["token_id"], lineage_depth=ctx["lineage"]["lineage_depth"])

    def _transcode(self, ctx):
        ctx["hls"] = video_processing.transcode_to_hls(
            ctx["video_path"],
            os.path.join(ctx["work_dir"], "hls"),
            has_audio=ctx["video_info"]["has_audio"],
        )

    def _thumbnail(self, ctx):
        ctx["thumbnail_path"] = video_processing.generate_thumbnail(
            ctx["video_path"],
            os.path.join(ctx["work_dir"], "thumbnail"),
            duration=ctx["video_info"]["duration"],
        )

    def _hash(self, ctx):
        frame_paths = video_processing.extract_hash_frames(
            ctx["video_path"],
            os.path.join(ctx["work_dir"], "frames"),
            duration=ctx["video_info"]["duration"],
        )
        ctx["fingerprint"] = perceptual_hash.video_fingerprint(frame_paths)
        ctx["file_hash"] = calculate_file_hash(ctx["video_path"])

    def _check_duplicate(self, ctx):
        processing_id = ctx["processing_id"]
        lineage = ctx.get("lineage")
        ancestors = set(lineage["parent_chain"]) if lineage else set()

        # Stored videos and jobs past this step are read under one lock so a
        # job finishing in between cannot be missed by both
        with self._in_flight_lock:
            candidates = get_fingerprint_candidates() + [
                entry for key, entry in self._in_flight.items()
                if key != processing_id and entry.get("perceptual_hash")
            ]
            # A derivative is expected to resemble its own ancestors
            candidates = [c for c in candidates if not c.get("token_id") or c["token_id"] not in ancestors]

            for candidate in candidates:
                if candidate.get("file_hash") and candidate["file_hash"] == ctx["file_hash"]:
                    raise DuplicateVideoError(_candidate_id(candidate), 1.0)

            match = perceptual_hash.find_duplicate(
                ctx["fingerprint"], [c for c in candidates if c.get("perceptual_hash")]
            )
            if match:
                raise DuplicateVideoError(_candidate_id(match), match["similarity"])

            self._in_flight[processing_id] = {
                "processing_id": processing_id,
                "file_hash": ctx["file_hash"],
                "perceptual_hash": ctx["fingerprint"]["perceptual_hash"],
                "frame_hashes": ctx["fingerprint"]["frame_hashes"],
            }

    def _upload_ipfs(self, ctx):
        processing_id = ctx["processing_id"]
        key_values = {
            "processing_id": processing_id,
            "creator": ctx["creator"],
            "filename": sanitize_filename(ctx["original_name"]),
        }

        hls_files = {video_processing.HLS_PLAYLIST_NAME: ctx["hls"]["playlist_path"]}
        hls_files.update({os.path.basename(path): path for path in ctx["hls"]["segment_paths"]})
        video_upload = self._with_retry(
            "upload_video", self.ipfs_client.upload_directory,
            hls_files, f"{processing_id}-video", key_values,
        )
        thumbnail_upload = self._with_retry(
            "upload_thumbnail", self.ipfs_client.upload_directory,
            {video_processing.THUMBNAIL_NAME: ctx["thumbnail_path"]},
            f"{processing_id}-thumbnail", key_values,
        )

        metadata = ctx["metadata"]
        lineage = ctx.get("lineage") or {}
        token_metadata = create_video_metadata(
            title=metadata["title"],
            description=metadata.get("description") or "",
            creator=ctx["creator"],
            tags=metadata.get("tags") or [],
            video_hash=video_upload.ipfs_hash,
            thumbnail_hash=thumbnail_upload.ipfs_hash,
            duration=ctx["video_info"]["duration"],
            resolution=ctx["video_info"]["resolution"],
            allow_remixing=metadata.get("allow_remixing", False),
            file_size=video_upload["size"],
            parent_token_id=lineage.get("parent_token_id"),
            parent_creator=lineage.get("parent_creator"),
        )
        metadata_upload = self._with_retry(
            "upload_metadata", self.ipfs_client.upload_json,
            token_metadata, f"{processing_id}-metadata.json", key_values,
        )

        ctx["ipfs"] = {
            "video_hash": video_upload.ipfs_hash,
            "thumbnail_hash": thumbnail_upload.ipfs_hash,
            "metadata_hash": metadata_upload.ipfs_hash,
            "metadata_uri": f"ipfs://{metadata_upload.ipfs_hash}",
        }

    def _mint(self, ctx):
        royalty_bps = int(round(
            float(ctx["metadata"].get("royalty_percentage", config.DEFAULT_ROYALTY_PERCENTAGE)) * 100
        ))
        lineage = ctx.get("lineage") or {}
        ctx["mint"] = self._with_retry(
            "mint", self.blockchain.mint_ipnft,
            ctx["ipfs"]["metadata_uri"], ctx["creator"], royalty_bps, lineage.get("parent_token_id"),
        )

    def _finalize(self, ctx) -> Dict[str, Any]:
        """Persist the minted video and build the job result."""
        metadata = ctx["metadata"]
        lineage = ctx.get("lineage") or {}
        mint = ctx["mint"]
        ipfs = ctx["ipfs"]
        info = ctx["video_info"]
        fingerprint = ctx["fingerprint"]

        ensure_profile(ctx["creator"])
        video = insert_minted_video({
            "token_id": mint.token_id,
            "creator_wallet": ctx["creator"],
            "title": metadata["title"],
            "description": metadata.get("description"),
            "tags": metadata.get("tags") or [],
            "category": metadata.get("category"),
            "ipfs_hash": ipfs["video_hash"],
            "thumbnail_ipfs_hash": ipfs["thumbnail_hash"],
            "metadata_uri": ipfs["metadata_uri"],
            "transaction_hash": mint.transaction_hash,
            "contract_address": mint.contract_address,
            "block_number": mint.block_number,
            "perceptual_hash": fingerprint["perceptual_hash"],
            "duration": info["duration"],
            "resolution": info["resolution"],
            "file_size": ctx["file_size"],
            "allow_remixing": metadata.get("allow_remixing", False),
            "royalty_percentage": metadata.get("royalty_percentage", config.DEFAULT_ROYALTY_PERCENTAGE),
            "license_price": metadata.get("license_price", 0),
            "license_duration_days": metadata.get("license_duration_days", config.LICENSE_PERIOD_DAYS),
            "commercial_rights": metadata.get("commercial_rights", False),
            "parent_token_id": lineage.get("parent_token_id"),
            "lineage_depth": lineage.get("lineage_depth", 0),
            "parent_chain": lineage.get("parent_chain") or [],
            "revenue_split": lineage.get("revenue_split"),
            "processing_id": ctx["processing_id"],
        }, {
            "perceptual_hash": fingerprint["perceptual_hash"],
            "frame_hashes": fingerprint["frame_hashes"],
            "file_hash": ctx["file_hash"],
        })
        video_id = str(video["id"])

        result = ProcessingResult(
            video_id=video_id,
            token_id=mint.token_id,
            transaction_hash=mint.transaction_hash,
            contract_address=mint.contract_address,
            block_number=mint.block_number,
            ipfs_hash=ipfs["video_hash"],
            thumbnail_ipfs_hash=ipfs["thumbnail_hash"],
            metadata_uri=ipfs["metadata_uri"],
            video_url=get_ipfs_url(ipfs["video_hash"], video_processing.HLS_PLAYLIST_NAME),
            thumbnail_url=get_ipfs_url(ipfs["thumbnail_hash"], video_processing.THUMBNAIL_NAME),
            explorer_url=get_explorer_url(mint.transaction_hash),
            perceptual_hash=fingerprint["perceptual_hash"],
            duration=info["duration"],
            resolution=info["resolution"],
            file_size=ctx["file_size"],
            parent_token_id=lineage.get("parent_token_id"),
            lineage_depth=lineage.get("lineage_depth", 0),
            dry_run=mint.dry_run,
        )
        return result.model_dump()
