import hashlib
import os
import re
import secrets
import shutil
import tempfile
import time
from pathlib import Path
from typing import Optional

import structlog

logger = structlog.get_logger()

WALLET_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")
HANDLE_RE = re.compile(r"^[a-zA-Z0-9_]+$")
HANDLE_MIN_LENGTH = 3
HANDLE_MAX_LENGTH = 30


def save_temp_upload(upload_file, directory: Optional[str] = None) -> str:
    """Save uploaded file to temporary location and return path."""
    try:
        suffix = Path(upload_file.filename).suffix if upload_file.filename else ""
        if directory:
            ensure_dir_exists(directory)

        temp_fd, temp_path = tempfile.mkstemp(suffix=suffix, dir=directory)

        try:
            size = 0
            with os.fdopen(temp_fd, "wb") as f:
                for chunk in iter(lambda: upload_file.file.read(1024 * 1024), b""):
                    f.write(chunk)
                    size += len(chunk)

            upload_file.file.seek(0)

            logger.info("Saved temporary upload",
                       filename=upload_file.filename, temp_path=temp_path, size=size)
            return temp_path

        except Exception:
            cleanup_temp_file(temp_path)
            raise

    except Exception as e:
        logger.error("Failed to save temporary upload",
                    filename=getattr(upload_file, "filename", "unknown"), error=str(e))
        raise


def new_processing_id(prefix: str = "proc") -> str:
    """Generate a processing ID like ``proc_<epoch ms>_<16 hex>``."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


def calculate_file_hash(file_path: str, algorithm: str = "sha256") -> str:
    """Calculate hash of file content."""
    try:
        hash_obj = hashlib.new(algorithm)

        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(8192), b""):
                hash_obj.update(chunk)

        file_hash = hash_obj.hexdigest()
        logger.debug("Calculated file hash", file_path=file_path, hash=file_hash, algorithm=algorithm)
        return file_hash

    except Exception as e:
        logger.error("Failed to calculate file hash", file_path=file_path, error=str(e))
        raise


def cleanup_temp_file(file_path: Optional[str]) -> bool:
    """Clean up temporary file safely."""
    try:
        if file_path and os.path.exists(file_path):
            os.unlink(file_path)
            logger.debug("Cleaned up temporary file", file_path=file_path)
            return True
        return False
    except OSError as e:
        logger.warning("Failed to cleanup temporary file", file_path=file_path, error=str(e))
        return False


def cleanup_directory(dir_path: Optional[str]) -> bool:
    if not dir_path or not os.path.isdir(dir_path):
        return False
    shutil.rmtree(dir_path, ignore_errors=True)
    logger.debug("Cleaned up directory", dir_path=dir_path)
    return True


def ensure_dir_exists(dir_path: str) -> str:
    """Ensure directory exists, create if it doesn't."""
    try:
        Path(dir_path).mkdir(parents=True, exist_ok=True)
        return dir_path
    except OSError as e:
        logger.error("Failed to create directory", dir_path=dir_path, error=str(e))
        raise


def format_file_size(size_bytes: float) -> str:
    """Format file size in human-readable format."""
    if size_bytes == 0:
        return "0 B"

    size_names = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while size_bytes >= 1024 and i < len(size_names) - 1:
        size_bytes /= 1024.0
        i += 1

    return f"{size_bytes:.1f} {size_names[i]}"


def format_duration(seconds: float) -> str:
    """Format seconds as ``m:ss`` or ``h:mm:ss``."""
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def sanitize_filename(filename: str) -> str:
    """Sanitize filename for safe storage."""
    if not filename:
        return "unnamed_file"

    sanitized = re.sub(r"[^\w\-_\.]", "_", filename)
    sanitized = re.sub(r"_{2,}", "_", sanitized)

    # No hidden files
    if sanitized.startswith("."):
        sanitized = "file_" + sanitized

    if len(sanitized) > 255:
        name, ext = os.path.splitext(sanitized)
        sanitized = name[:255 - len(ext)] + ext

    return sanitized


def generate_safe_filename(original_name: str) -> str:
    """Build ``<name>_<epoch ms><ext>`` with the stem reduced to 50 safe chars."""
    stem, ext = os.path.splitext(original_name or "")
    safe_stem = re.sub(r"[^a-zA-Z0-9]", "_", stem)[:50] or "video"
    return f"{safe_stem}_{int(time.time() * 1000)}{ext.lower()}"


def file_extension(filename: str) -> str:
    return os.path.splitext(filename or "")[1].lower().lstrip(".")


def is_valid_wallet_address(address: Optional[str]) -> bool:
    return bool(address) and WALLET_ADDRESS_RE.match(address) is not None


def normalize_address(address: str) -> str:
    return address.strip().lower()


def is_wallet_address_like(identifier: str) -> bool:
    """Profile identifiers are either a 42-char 0x address or a handle."""
    return identifier.startswith("0x") and len(identifier) == 42


def validate_handle(handle: Optional[str]) -> Optional[str]:
    """Return an error message for an invalid handle, or None when it is acceptable."""
    if not handle:
        return "Handle is required"
    if not HANDLE_RE.match(handle):
        return "Handle can only contain letters, numbers, and underscores"
    if len(handle) < HANDLE_MIN_LENGTH or len(handle) > HANDLE_MAX_LENGTH:
        return f"Handle must be between {HANDLE_MIN_LENGTH} and {HANDLE_MAX_LENGTH} characters"
    return None


def default_handle_for(address: str) -> str:
    """Placeholder handle for auto-created profiles."""
    return f"user_{normalize_address(address)[2:10]}"
