import structlog
from typing import List, Any, Dict, Optional, Tuple
from psycopg2 import extras
from psycopg2.pool import SimpleConnectionPool
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from provn import config

logger = structlog.get_logger()

# Global connection pool
_connection_pool = None

VIDEO_COLUMNS = """
    v.id, v.token_id, v.creator_wallet, v.title, v.description, v.tags, v.category,
    v.ipfs_hash, v.thumbnail_ipfs_hash, v.metadata_uri, v.transaction_hash,
    v.contract_address, v.block_number, v.perceptual_hash, v.duration, v.resolution,
    v.file_size, v.allow_remixing, v.royalty_percentage, v.license_price,
    v.license_duration_days, v.commercial_rights, v.parent_token_id, v.lineage_depth,
    v.parent_chain, v.revenue_split, v.status, v.is_public, v.moderation_status,
    v.created_at, v.updated_at,
    p.handle AS creator_handle, p.display_name AS creator_display_name,
    p.avatar_url AS creator_avatar_url, p.verified AS creator_verified
"""


def initialize_connection_pool():
    """Initialize the database connection pool."""
    global _connection_pool
    if _connection_pool is None:
        try:
            _connection_pool = SimpleConnectionPool(
                config.DB_MIN_CONNECTIONS,
                config.DB_MAX_CONNECTIONS,
                config.DB_DSN
            )
            logger.info("Database connection pool initialized",
                       min_connections=config.DB_MIN_CONNECTIONS,
                       max_connections=config.DB_MAX_CONNECTIONS)
        except Exception as e:
            logger.error("Failed to initialize database connection pool", error=str(e))
            raise


def close_connection_pool():
    global _connection_pool
    if _connection_pool is not None:
        _connection_pool.closeall()
        _connection_pool = None
        logger.info("Database connection pool closed")


@contextmanager
def get_db_connection():
    """Context manager for pooled database connections with automatic cleanup."""
    if _connection_pool is None:
        initialize_connection_pool()

    conn = None
    try:
        conn = _connection_pool.getconn()
        yield conn
    except Exception as e:
        if conn:
            conn.rollback()
        logger.error("Database operation failed", error=str(e))
        raise
    finally:
        if conn:
            _connection_pool.putconn(conn)


def fetch_one(sql: str, params: Optional[Tuple] = None) -> Optional[Dict]:
    with get_db_connection() as conn:
        with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
            cur.execute(sql, params)
            row = cur.fetchone()
            conn.commit()
    return dict(row) if row else None


def fetch_all(sql: str, params: Optional[Tuple] = None) -> List[Dict]:
    with get_db_connection() as conn:
        with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
            cur.execute(sql, params)
            rows = cur.fetchall()
            conn.commit()
    return [dict(row) for row in rows]


def execute(sql: str, params: Optional[Tuple] = None) -> int:
    """Run a write statement and return the affected row count."""
    with get_db_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(sql, params)
            rowcount = cur.rowcount
            conn.commit()
    return rowcount


# Processing job management
def insert_processing_job(
    processing_id: str,
    user_address: str,
    job_type: str,
    steps: List[str],
    metadata: Dict[str, Any],
) -> Dict:
    """Insert a new pending processing job."""
    sql = """
    INSERT INTO processing_jobs (
        processing_id, user_address, job_type, status, current_step,
        progress, steps, step_history, metadata
    )
    VALUES (%s, %s, %s, 'pending', %s, 0, %s, '[]', %s)
    RETURNING *
    """
    try:
        job = fetch_one(sql, (
            processing_id, user_address, job_type, steps[0],
            extras.Json(steps), extras.Json(metadata)
        ))
        logger.info("Processing job inserted",
                   processing_id=processing_id, job_type=job_type, user_address=user_address)
        return job

    except Exception as e:
        logger.error("Failed to insert processing job",
                    processing_id=processing_id, error=str(e))
        raise


def update_job_status(
    processing_id: str,
    status: str,
    current_step: str,
    progress: int,
    step_history: Optional[List[Dict]] = None,
    result: Optional[Dict] = None,
    error_message: Optional[str] = None,
    duplicate_of: Optional[str] = None,
    video_id: Optional[str] = None,
) -> bool:
    """
    Update job status, keeping previously stored values for omitted fields.

    Completed and failed jobs are final; returns False when the job is
    already in one of those states and nothing was written.
    """
    sql = """
    UPDATE processing_jobs
    SET status = %s, current_step = %s, progress = %s,
        step_history = COALESCE(%s, step_history),
        result = COALESCE(%s, result),
        error_message = COALESCE(%s, error_message),
        duplicate_of = COALESCE(%s, duplicate_of),
        video_id = COALESCE(%s, video_id),
        completed_at = CASE WHEN %s IN ('completed', 'failed') THEN NOW() ELSE completed_at END,
        updated_at = NOW()
    WHERE processing_id = %s AND status NOT IN ('completed', 'failed')
    """
    try:
        updated = execute(sql, (
            status, current_step, progress,
            extras.Json(step_history) if step_history is not None else None,
            extras.Json(result) if result is not None else None,
            error_message, duplicate_of, video_id,
            status, processing_id
        )) > 0
        if updated:
            logger.debug("Processing job updated",
                        processing_id=processing_id, status=status,
                        current_step=current_step, progress=progress)
        else:
            logger.warning("Processing job already finished, update skipped",
                          processing_id=processing_id, status=status, current_step=current_step)
        return updated

    except Exception as e:
        logger.error("Failed to update processing job",
                    processing_id=processing_id, status=status, error=str(e))
        raise


def get_processing_job(processing_id: str) -> Optional[Dict]:
    """Get a processing job by its processing ID."""
    try:
        return fetch_one("SELECT * FROM processing_jobs WHERE processing_id = %s", (processing_id,))
    except Exception as e:
        logger.error("Failed to get processing job", processing_id=processing_id, error=str(e))
        raise


def get_queue_counts() -> Dict[str, Any]:
    """Count processing jobs grouped by status and by job type."""
    try:
        by_status = fetch_all(
            "SELECT status, COUNT(*) AS count FROM processing_jobs GROUP BY status"
        )
        by_type = fetch_all(
            "SELECT job_type, status, COUNT(*) AS count FROM processing_jobs GROUP BY job_type, status"
        )
        status_counts = {row["status"]: int(row["count"]) for row in by_status}
        type_counts: Dict[str, Dict[str, int]] = {}
        for row in by_type:
            type_counts.setdefault(row["job_type"], {})[row["status"]] = int(row["count"])
        return {"by_status": status_counts, "by_type": type_counts}

    except Exception as e:
        logger.error("Failed to get queue counts", error=str(e))
        raise


def fail_stale_jobs(minutes: int) -> int:
    """Mark jobs stuck in processing for longer than ``minutes`` as failed."""
    sql = """
    UPDATE processing_jobs
    SET status = 'failed',
        error_message = 'Job timed out',
        completed_at = NOW(),
        updated_at = NOW()
    WHERE status IN ('pending', 'processing')
      AND updated_at < NOW() - make_interval(mins => %s)
    """
    try:
        count = execute(sql, (minutes,))
        if count:
            logger.warning("Marked stale processing jobs as failed", count=count, minutes=minutes)
        return count
    except Exception as e:
        logger.error("Failed to mark stale jobs", error=str(e))
        raise


# Video management
def insert_minted_video(video: Dict[str, Any], fingerprint: Dict[str, Any]) -> Dict:
    """
    Store a minted video, its fingerprint and the creator's video count in one transaction.

    Args:
        video: Column values for the ``videos`` row
        fingerprint: ``perceptual_hash``, ``frame_hashes`` and ``file_hash``

    Returns:
        The stored video row
    """
    video_sql = """
    INSERT INTO videos (
        token_id, creator_wallet, title, description, tags, category,
        ipfs_hash, thumbnail_ipfs_hash, metadata_uri, transaction_hash,
        contract_address, block_number, perceptual_hash, duration, resolution,
        file_size, allow_remixing, royalty_percentage, license_price,
        license_duration_days, commercial_rights, parent_token_id,
        lineage_depth, parent_chain, revenue_split, processing_id
    )
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s,
            %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
    RETURNING *
    """
    fingerprint_sql = """
    INSERT INTO video_fingerprints (video_id, perceptual_hash, frame_hashes, file_hash)
    VALUES (%s, %s, %s, %s)
    """
    count_sql = """
    UPDATE profiles SET videos_count = videos_count + 1, updated_at = NOW()
    WHERE wallet_address = %s
    """
    try:
        with get_db_connection() as conn:
            with conn.cursor(cursor_factory=extras.RealDictCursor) as cur:
                cur.execute(video_sql, _video_params(video))
                row = dict(cur.fetchone())
                cur.execute(fingerprint_sql, (
                    row["id"], fingerprint["perceptual_hash"],
                    extras.Json(fingerprint["frame_hashes"]), fingerprint.get("file_hash"),
                ))
                cur.execute(count_sql, (video["creator_wallet"],))
                conn.commit()

        logger.info("Video record inserted",
                   video_id=str(row["id"]), token_id=video.get("token_id"),
                   creator=video["creator_wallet"],
                   frame_count=len(fingerprint["frame_hashes"]))
        return row

    except Exception as e:
        logger.error("Failed to insert video record",
                    token_id=video.get("token_id"), error=str(e))
        raise


def _video_params(video: Dict[str, Any]) -> Tuple:
    return (
        video.get("token_id"),
        video["creator_wallet"],
        video["title"],
        video.get("description"),
        extras.Json(video.get("tags") or []),
        video.get("category"),
        video.get("ipfs_hash"),
        video.get("thumbnail_ipfs_hash"),
        video.get("metadata_uri"),
        video.get("transaction_hash"),
        video.get("contract_address"),
        video.get("block_number"),
        video.get("perceptual_hash"),
        video.get("duration"),
        video.get("resolution"),
        video.get("file_size"),
        video.get("allow_remixing", False),
        video.get("royalty_percentage", config.DEFAULT_ROYALTY_PERCENTAGE),
        video.get("license_price", 0),
        video.get("license_duration_days", config.LICENSE_PERIOD_DAYS),
        video.get("commercial_rights", False),
        video.get("parent_token_id"),
        video.get("lineage_depth", 0),
        extras.Json(video.get("parent_chain") or []),
        extras.Json(video["revenue_split"]) if video.get("revenue_split") else None,
        video.get("processing_id"),
    )


def get_video(video_id: str) -> Optional[Dict]:
    """Get a video by row ID or token ID, joined with its creator profile."""
    sql = f"""
    SELECT {VIDEO_COLUMNS}
    FROM videos v
    LEFT JOIN profiles p ON p.wallet_address = v.creator_wallet
    WHERE v.id::text = %s OR v.token_id = %s
    LIMIT 1
    """
    try:
        return fetch_one(sql, (video_id, video_id))
    except Exception as e:
        logger.error("Failed to get video", video_id=video_id, error=str(e))
        raise


def get_video_by_token(token_id: str) -> Optional[Dict]:
    sql = f"""
    SELECT {VIDEO_COLUMNS}
    FROM videos v
    LEFT JOIN profiles p ON p.wallet_address = v.creator_wallet
    WHERE v.token_id = %s
    """
    try:
        return fetch_one(sql, (token_id,))
    except Exception as e:
        logger.error("Failed to get video by token", token_id=token_id, error=str(e))
        raise


def get_derivatives(token_id: str) -> List[Dict]:
    """Get direct derivatives of a token, newest first."""
    sql = f"""
    SELECT {VIDEO_COLUMNS}
    FROM videos v
    LEFT JOIN profiles p ON p.wallet_address = v.creator_wallet
    WHERE v.parent_token_id = %s
    ORDER BY v.created_at DESC
    """
    try:
        return fetch_all(sql, (token_id,))
    except Exception as e:
        logger.error("Failed to get derivatives", token_id=token_id, error=str(e))
        raise


def list_videos(
    creator_wallet: Optional[str] = None,
    include_derivatives: bool = True,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[Dict], int]:
    """List videos with optional creator filter and return ``(rows, total)``."""
    where = ["v.status = 'ready'"]
    params: List[Any] = []

    if creator_wallet:
        where.append("v.creator_wallet = %s")
        params.append(creator_wallet)

    if not include_derivatives:
        where.append("v.parent_token_id IS NULL")

    where_sql = " AND ".join(where)
    sql = f"""
    SELECT {VIDEO_COLUMNS}
    FROM videos v
    LEFT JOIN profiles p ON p.wallet_address = v.creator_wallet
    WHERE {where_sql}
    ORDER BY v.created_at DESC
    LIMIT %s OFFSET %s
    """
    count_sql = f"SELECT COUNT(*) AS total FROM videos v WHERE {where_sql}"

    try:
        rows = fetch_all(sql, tuple(params + [limit, offset]))
        total = fetch_one(count_sql, tuple(params))["total"]
        logger.debug("Listed videos", creator=creator_wallet, count=len(rows), total=total)
        return rows, int(total)

    except Exception as e:
        logger.error("Failed to list videos", creator=creator_wallet, error=str(e))
        raise


# Video fingerprint management
def find_video_by_file_hash(file_hash: str) -> Optional[Dict]:
    """Exact content match against stored fingerprints."""
    sql = """
    SELECT f.video_id, v.token_id
    FROM video_fingerprints f
    JOIN videos v ON v.id = f.video_id
    WHERE f.file_hash = %s
    LIMIT 1
    """
    try:
        return fetch_one(sql, (file_hash,))
    except Exception as e:
        logger.error("Failed to search file hash", file_hash=file_hash, error=str(e))
        raise


def get_fingerprint_candidates() -> List[Dict]:
    """Load stored fingerprints joined with their token IDs."""
    sql = """
    SELECT f.video_id, v.token_id, f.perceptual_hash, f.frame_hashes, f.file_hash
    FROM video_fingerprints f
    JOIN videos v ON v.id = f.video_id
    """
    try:
        rows = fetch_all(sql)
        logger.debug("Loaded fingerprint candidates", count=len(rows))
        return rows
    except Exception as e:
        logger.error("Failed to load fingerprint candidates", error=str(e))
        raise


# Database utility functions
def check_database_connection() -> bool:
    """Check if the database connection is working."""
    try:
        with get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1")
                result = cur.fetchone()

        logger.info("Database connection check successful")
        return result[0] == 1

    except Exception as e:
        logger.error("Database connection check failed", error=str(e))
        return False


def get_database_stats() -> Dict:
    """Get table counts for the stats endpoint."""
    try:
        with get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    SELECT
                        (SELECT COUNT(*) FROM profiles) as profiles_count,
                        (SELECT COUNT(*) FROM videos) as videos_count,
                        (SELECT COUNT(*) FROM videos WHERE parent_token_id IS NOT NULL) as derivatives_count,
                        (SELECT COUNT(*) FROM processing_jobs) as jobs_count,
                        (SELECT COUNT(*) FROM licenses) as licenses_count,
                        (SELECT COUNT(*) FROM disputes) as disputes_count,
                        (SELECT version()) as postgres_version
                """)

                result = cur.fetchone()

                return {
                    "profiles_count": result[0],
                    "videos_count": result[1],
                    "derivatives_count": result[2],
                    "processing_jobs_count": result[3],
                    "licenses_count": result[4],
                    "disputes_count": result[5],
                    "postgres_version": result[6],
                    "connection_pool_size": len(_connection_pool._pool) if _connection_pool else 0,
                }

    except Exception as e:
        logger.error("Failed to get database stats", error=str(e))
        return {"error": str(e)}


def cleanup_old_records(days_old: int = 30) -> Dict:
    """Clean up finished processing jobs older than ``days_old`` (for maintenance)."""
    try:
        cutoff_date = datetime.now(timezone.utc) - timedelta(days=days_old)

        with get_db_connection() as conn:
            with conn.cursor() as cur:
                cur.execute("""
                    DELETE FROM processing_jobs
                    WHERE status = 'failed' AND created_at < %s
                """, (cutoff_date,))
                failed_jobs_deleted = cur.rowcount

                cur.execute("""
                    DELETE FROM processing_jobs
                    WHERE status = 'completed' AND created_at < %s
                """, (cutoff_date,))
                completed_jobs_deleted = cur.rowcount

                conn.commit()

        result = {
            "failed_jobs_deleted": failed_jobs_deleted,
            "completed_jobs_deleted": completed_jobs_deleted,
            "cutoff_date": cutoff_date.isoformat()
        }

        logger.info("Database cleanup completed", **result)
        return result

    except Exception as e:
        logger.error("Database cleanup failed", error=str(e))
        raise
