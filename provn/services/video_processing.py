import json
import os
import subprocess
import structlog
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image

from provn import config
from provn.core.utils import cleanup_temp_file, ensure_dir_exists, file_extension

logger = structlog.get_logger()

HLS_SEGMENT_SECONDS = 10
HLS_PLAYLIST_NAME = "video.m3u8"
THUMBNAIL_NAME = "thumbnail.jpg"
HASH_FRAME_SIZE = 256


class VideoValidationError(ValueError):
    """Raised when an upload is not an acceptable video."""
    pass


def probe_video(video_path: str) -> Dict[str, Any]:
    """Run ffprobe and return its parsed JSON output."""
    cmd = [
        "ffprobe",
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        video_path
    ]
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
        return json.loads(result.stdout)
    except subprocess.CalledProcessError as e:
        logger.error("FFprobe failed", video_path=video_path, error=e.stderr)
        raise VideoValidationError(f"Invalid video file: {e.stderr.strip() or 'ffprobe failed'}")
    except json.JSONDecodeError as e:
        raise VideoValidationError(f"Invalid video file: unreadable probe output ({e})")


def _streams(info: Dict[str, Any]) -> Tuple[Optional[Dict], Optional[Dict]]:
    video_stream = None
    audio_stream = None
    for stream in info.get("streams", []):
        if stream.get("codec_type") == "video" and video_stream is None:
            video_stream = stream
        elif stream.get("codec_type") == "audio" and audio_stream is None:
            audio_stream = stream
    return video_stream, audio_stream


def validate_video_file(video_path: str, original_name: str, size: int) -> Dict[str, Any]:
    """Check size, extension, presence and decodability of an uploaded video."""
    if size > config.MAX_VIDEO_SIZE:
        raise VideoValidationError(
            f"File size exceeds limit of {config.MAX_VIDEO_SIZE_MB}MB"
        )

    extension = file_extension(original_name)
    if extension not in config.ALLOWED_VIDEO_FORMATS:
        raise VideoValidationError(
            f"Unsupported format: {extension or 'none'}. "
            f"Allowed: {', '.join(config.ALLOWED_VIDEO_FORMATS)}"
        )

    if not os.path.exists(video_path):
        raise VideoValidationError("Video file not found")

    info = probe_video(video_path)
    video_stream, _ = _streams(info)
    if not video_stream:
        raise VideoValidationError("No video stream found in file")

    logger.info("Video validation completed", video_path=video_path, extension=extension, size=size)
    return info


def get_video_info(video_path: str, info: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Duration, resolution, container format, bitrate and audio presence."""
    info = info or probe_video(video_path)
    video_stream, audio_stream = _streams(info)
    if not video_stream:
        raise VideoValidationError("No video stream found")

    fmt = info.get("format", {})
    video_info = {
        "duration": float(fmt.get("duration") or 0),
        "resolution": f"{video_stream.get('width', 0)}x{video_stream.get('height', 0)}",
        "format": fmt.get("format_name", "unknown"),
        "bitrate": int(fmt.get("bit_rate") or 0),
        "has_audio": audio_stream is not None,
        "video_codec": video_stream.get("codec_name"),
    }
    logger.debug("Video info", video_path=video_path, **video_info)
    return video_info


def transcode_to_hls(video_path: str, output_dir: str, has_audio: bool = True) -> Dict[str, Any]:
    """Transcode to a 720p HLS playlist with 10 second segments."""
    ensure_dir_exists(output_dir)
    playlist_path = os.path.join(output_dir, HLS_PLAYLIST_NAME)

    cmd = [
        "ffmpeg",
        "-i", video_path,
        "-f", "hls",
        "-hls_time", str(HLS_SEGMENT_SECONDS),
        "-hls_list_size", "0",
        "-hls_segment_filename", os.path.join(output_dir, "segment_%03d.ts"),
        "-c:v", "libx264",
        "-preset", "fast",
        "-crf", "23",
        "-maxrate", "1500k",
        "-bufsize", "3000k",
        "-vf", "scale=-2:720",
    ]
    cmd += ["-c:a", "aac"] if has_audio else ["-an"]
    cmd += [playlist_path, "-y", "-loglevel", "error"]

    logger.debug("Running ffmpeg command", cmd=" ".join(cmd))
    try:
        subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as e:
        logger.error("FFmpeg HLS transcoding failed", video_path=video_path, error=e.stderr)
        raise RuntimeError(f"HLS transcoding failed: {e.stderr.strip()}")

    segment_paths = sorted(str(p) for p in Path(output_dir).glob("segment_*.ts"))
    if not os.path.exists(playlist_path) or not segment_paths:
        raise RuntimeError("HLS transcoding produced no output")

    logger.info("HLS transcoding completed", video_path=video_path, segment_count=len(segment_paths))
    return {
        "playlist_path": playlist_path,
        "segment_paths": segment_paths,
        "segment_count": len(segment_paths),
    }


def thumbnail_timestamp(duration: Optional[float], timestamp: float) -> float:
    # Short clips: use the middle of the video
    if duration and timestamp >= duration:
        return duration / 2
    return timestamp


def generate_thumbnail(
    video_path: str,
    output_dir: str,
    timestamp: float = 5.0,
    size: Tuple[int, int] = (1280, 720),
    quality: int = 85,
    duration: Optional[float] = None,
) -> str:
    """Grab one frame with ffmpeg and re-encode it as an optimized JPEG."""
    ensure_dir_exists(output_dir)
    if duration is None:
        duration = get_video_info(video_path)["duration"]

    timestamp = thumbnail_timestamp(duration, timestamp)

    raw_path = os.path.join(output_dir, "thumbnail_raw.jpg")
    thumbnail_path = os.path.join(output_dir, THUMBNAIL_NAME)
    cmd = [
        "ffmpeg",
        "-ss", str(timestamp),
        "-i", video_path,
        "-vframes", "1",
        "-q:v", "2",
        raw_path,
        "-y",
        "-loglevel", "error"
    ]
    try:
        subprocess.run(cmd, capture_output=True, text=True, check=True)
    except subprocess.CalledProcessError as e:
        logger.error("FFmpeg thumbnail extraction failed", video_path=video_path, error=e.stderr)
        raise RuntimeError(f"Thumbnail generation failed: {e.stderr.strip()}")

    if not os.path.exists(raw_path) or os.path.getsize(raw_path) == 0:
        raise RuntimeError("Thumbnail extraction produced empty file")

    try:
        with Image.open(raw_path) as image:
            image = image.convert("RGB")
            image.thumbnail(size, Image.Resampling.LANCZOS)
            image.save(thumbnail_path, "JPEG", quality=quality, optimize=True)
    finally:
        cleanup_temp_file(raw_path)

    logger.info("Thumbnail generated", video_path=video_path, thumbnail_path=thumbnail_path,
               timestamp=timestamp)
    return thumbnail_path


def frame_timestamps(duration: float, count: int) -> List[float]:
    """Evenly spaced sample points that skip the very first and last instants."""
    if count <= 0:
        return []
    if duration <= 0:
        return [0.0]
    step = duration / (count + 1)
    return [round(step * (i + 1), 3) for i in range(count)]


def extract_hash_frames(video_path: str, output_dir: str, count: Optional[int] = None,
                        duration: Optional[float] = None) -> List[str]:
    """Extract evenly spaced grayscale frames used for perceptual hashing."""
    count = count or config.HASH_FRAME_COUNT
    ensure_dir_exists(output_dir)
    if duration is None:
        duration = get_video_info(video_path)["duration"]

    frame_paths = []
    for index, timestamp in enumerate(frame_timestamps(duration, count)):
        frame_path = os.path.join(output_dir, f"hash_frame_{index:03d}.png")
        cmd = [
            "ffmpeg",
            "-ss", str(timestamp),
            "-i", video_path,
            "-vframes", "1",
            "-vf", f"scale={HASH_FRAME_SIZE}:{HASH_FRAME_SIZE},format=gray",
            frame_path,
            "-y",
            "-loglevel", "error"
        ]
        try:
            subprocess.run(cmd, capture_output=True, text=True, check=True)
        except subprocess.CalledProcessError as e:
            logger.warning("Frame extraction failed", video_path=video_path,
                          timestamp=timestamp, error=e.stderr)
            continue
        if os.path.exists(frame_path) and os.path.getsize(frame_path) > 0:
            frame_paths.append(frame_path)

    if not frame_paths:
        raise RuntimeError("No frames could be extracted for hashing")

    logger.info("Hash frames extracted", video_path=video_path, frame_count=len(frame_paths))
    return frame_paths


def check_ffmpeg_installation() -> bool:
    """Check if FFmpeg is installed and accessible."""
    try:
        result = subprocess.run(
            ["ffmpeg", "-version"],
            capture_output=True,
            text=True,
            check=True
        )
        logger.info("FFmpeg is available", version_info=result.stdout.split('\n')[0])
        return True
    except (subprocess.CalledProcessError, FileNotFoundError):
        logger.error("FFmpeg is not installed or not accessible")
        return False


def health_check() -> Dict[str, Any]:
    ffmpeg_ok = check_ffmpeg_installation()
    directories_ok = os.path.isdir(config.TEMP_UPLOAD_DIR)
    return {
        "status": "healthy" if ffmpeg_ok and directories_ok else "degraded",
        "ffmpeg": ffmpeg_ok,
        "directories": directories_ok,
    }
