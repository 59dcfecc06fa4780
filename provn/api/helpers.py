from typing import Any, Dict, List, Optional

from fastapi import HTTPException, Request, status

from provn.core.database import get_video
from provn.core.storage import get_ipfs_url
from provn.core.utils import format_duration, is_valid_wallet_address, normalize_address
from provn.services.video_processing import HLS_PLAYLIST_NAME, THUMBNAIL_NAME


def video_response(row: Dict[str, Any]) -> Dict[str, Any]:
    """Shape a video row for the client, adding gateway URLs and nesting the creator."""
    video = dict(row)
    video["id"] = str(video["id"])
    video["video_url"] = get_ipfs_url(video["ipfs_hash"], HLS_PLAYLIST_NAME) if video.get("ipfs_hash") else None
    video["thumbnail_url"] = (
        get_ipfs_url(video["thumbnail_ipfs_hash"], THUMBNAIL_NAME) if video.get("thumbnail_ipfs_hash") else None
    )
    video["is_derivative"] = video.get("parent_token_id") is not None
    video["duration_formatted"] = format_duration(video["duration"]) if video.get("duration") else None
    video["creator"] = {
        "wallet_address": video.get("creator_wallet"),
        "handle": video.pop("creator_handle", None),
        "display_name": video.pop("creator_display_name", None),
        "avatar_url": video.pop("creator_avatar_url", None),
        "verified": bool(video.pop("creator_verified", False)),
    }
    return video


def videos_response(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [video_response(row) for row in rows]


def page_response(items_key: str, items: List[Any], total: int, limit: int, offset: int) -> Dict[str, Any]:
    return {
        items_key: items,
        "total": total,
        "has_more": offset + len(items) < total,
        "pagination": {"limit": limit, "offset": offset, "total": total},
    }


def get_video_or_404(video_id: str) -> Dict[str, Any]:
    video = get_video(video_id)
    if not video:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Video not found"
        )
    return video


def require_address(value: Optional[str], field: str = "address") -> str:
    if not is_valid_wallet_address(value):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {field} format"
        )
    return normalize_address(value)


def client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None
