"""
Perceptual hashing for duplicate video detection.
Frames sampled from a video are hashed individually and compared as a sequence.
"""

import numpy as np
import structlog
from PIL import Image
from typing import Any, Dict, List, Optional, Sequence
import cv2

from provn import config

logger = structlog.get_logger()


def _bits_to_hex(bits: np.ndarray) -> str:
    hash_bits = ''.join('1' if b else '0' for b in bits.flatten())
    return hex(int(hash_bits, 2))[2:].rjust(len(hash_bits) // 4, '0')


def dhash(image_path: str, hash_size: int = 8) -> str:
    """
    Generate difference hash (dHash) for an image.
    Good for detecting duplicates with minor modifications.
    """
    try:
        image = Image.open(image_path).convert('L')
        image = image.resize((hash_size + 1, hash_size), Image.Resampling.LANCZOS)
        pixels = np.array(image)

        # Horizontal gradient
        diff = pixels[:, 1:] > pixels[:, :-1]
        return _bits_to_hex(diff)

    except Exception as e:
        logger.error("Failed to generate dHash", image_path=image_path, error=str(e))
        raise


def phash(image_path: str, hash_size: int = 8) -> str:
    """
    Generate perceptual hash (pHash) using DCT.
    Very robust for detecting re-encoded or rescaled copies.
    """
    try:
        image = Image.open(image_path).convert('L')
        image = image.resize((hash_size * 4, hash_size * 4), Image.Resampling.LANCZOS)
        pixels = np.array(image, dtype=np.float32)

        dct = cv2.dct(pixels)

        # Low frequencies only
        dct_low = dct[:hash_size, :hash_size]
        median = np.median(dct_low)
        return _bits_to_hex(dct_low > median)

    except Exception as e:
        logger.error("Failed to generate pHash", image_path=image_path, error=str(e))
        raise


def ahash(image_path: str, hash_size: int = 8) -> str:
    """Generate average hash (aHash)."""
    try:
        image = Image.open(image_path).convert('L')
        image = image.resize((hash_size, hash_size), Image.Resampling.LANCZOS)
        pixels = np.array(image)
        return _bits_to_hex(pixels > np.mean(pixels))

    except Exception as e:
        logger.error("Failed to generate aHash", image_path=image_path, error=str(e))
        raise


def hamming_distance(hash1: str, hash2: str) -> float:
    """Calculate Hamming distance between two hex hash strings."""
    if len(hash1) != len(hash2):
        return float('inf')  # Different lengths = not comparable

    try:
        return bin(int(hash1, 16) ^ int(hash2, 16)).count("1")
    except ValueError:
        return float('inf')


def hash_similarity(hash1: str, hash2: str) -> float:
    """Similarity in [0, 1] where 1 means identical hashes."""
    if not hash1 or not hash2:
        return 0.0
    distance = hamming_distance(hash1, hash2)
    if distance == float('inf'):
        return 0.0
    max_distance = len(hash1) * 4  # 4 bits per hex char
    return 1.0 - (distance / max_distance)


def sequence_similarity(frames_a: Sequence[str], frames_b: Sequence[str]) -> float:
    """Mean over ``frames_a`` of the best match found in ``frames_b``."""
    if not frames_a or not frames_b:
        return 0.0
    best_matches = [max(hash_similarity(a, b) for b in frames_b) for a in frames_a]
    return float(sum(best_matches) / len(best_matches))


def video_fingerprint(frame_paths: List[str]) -> Dict[str, Any]:
    """
    Hash sampled frames of a video.

    Returns:
        Dictionary with ``frame_hashes`` (pHash per frame, in order) and
        ``perceptual_hash`` (pHash of the middle frame) used as the primary key
    """
    if not frame_paths:
        raise ValueError("At least one frame is required to fingerprint a video")

    frame_hashes = [phash(path) for path in frame_paths]
    fingerprint = {
        "perceptual_hash": frame_hashes[len(frame_hashes) // 2],
        "frame_hashes": frame_hashes,
    }
    logger.info("Video fingerprint generated",
               frame_count=len(frame_hashes), perceptual_hash=fingerprint["perceptual_hash"])
    return fingerprint


def fingerprint_similarity(fingerprint: Dict[str, Any], candidate: Dict[str, Any]) -> float:
    frames_a = fingerprint.get("frame_hashes") or []
    frames_b = candidate.get("frame_hashes") or []
    if frames_a and frames_b:
        return sequence_similarity(frames_a, frames_b)
    return hash_similarity(fingerprint.get("perceptual_hash"), candidate.get("perceptual_hash"))


def find_duplicate(
    fingerprint: Dict[str, Any],
    candidates: List[Dict[str, Any]],
    threshold: Optional[float] = None,
) -> Optional[Dict[str, Any]]:
    """
    Find the stored video most similar to ``fingerprint``.

    Args:
        fingerprint: Output of ``video_fingerprint``
        candidates: Stored fingerprints with ``perceptual_hash`` and ``frame_hashes``
        threshold: Minimum similarity for a duplicate (defaults to DUPLICATE_THRESHOLD)

    Returns:
        The best matching candidate with a ``similarity`` key added, or None
    """
    threshold = config.DUPLICATE_THRESHOLD if threshold is None else threshold
    best = None
    best_score = 0.0

    for candidate in candidates:
        score = fingerprint_similarity(fingerprint, candidate)
        if score >= threshold and score > best_score:
            best, best_score = candidate, score

    if best is None:
        logger.debug("No duplicate found", candidates=len(candidates), threshold=threshold)
        return None

    logger.info("Duplicate video detected",
               similarity=round(best_score, 4), threshold=threshold,
               token_id=best.get("token_id"), video_id=str(best.get("video_id")))
    return {**best, "similarity": best_score}
