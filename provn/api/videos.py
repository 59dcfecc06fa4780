import asyncio
import structlog
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import RedirectResponse

from provn import config
from provn.api.helpers import (
    client_ip, get_video_or_404, page_response, video_response, videos_response,
)
from provn.core.database import get_derivatives, get_video_by_token, list_videos
from provn.core.engagement import (
    get_like_status, get_video_stats, get_view_count, record_share, record_view, toggle_like,
)
from provn.core.profiles import resolve_wallet
from provn.core.storage import extract_hash_from_url, get_ipfs_url, get_redundant_urls, is_valid_ipfs_hash
from provn.models.video import LicenseTerms, ShareRequest, VideoList, ViewRequest
from provn.services.auth import get_current_wallet, require_wallet
from provn.services.blockchain import get_explorer_url, get_token_url

logger = structlog.get_logger()

router = APIRouter(tags=["videos"])


@router.get("/videos", response_model=VideoList)
async def get_videos(
    creator: Optional[str] = Query(None, description="Creator wallet address or handle"),
    include_derivatives: bool = Query(True),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    creator_wallet = None
    if creator:
        creator_wallet = resolve_wallet(creator)
        if creator_wallet is None:
            return page_response("videos", [], 0, limit, offset)

    rows, total = list_videos(creator_wallet, include_derivatives, limit, offset)
    return page_response("videos", videos_response(rows), total, limit, offset)


@router.get("/videos/{video_id}")
async def get_video_details(video_id: str):
    return video_response(get_video_or_404(video_id))


@router.get("/video/{token_id}")
async def get_video_by_token_id(token_id: str):
    """Video by token ID with its creator, parent and direct derivatives."""
    video = get_video_by_token(token_id)
    if not video:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Video not found"
        )

    parent = get_video_by_token(video["parent_token_id"]) if video.get("parent_token_id") else None
    response = video_response(video)
    response["explorer_url"] = get_explorer_url(video["transaction_hash"]) if video.get("transaction_hash") else None
    response["token_url"] = get_token_url(token_id)
    response["lineage"] = {
        "depth": video.get("lineage_depth") or 0,
        "parent_chain": video.get("parent_chain") or [],
        "parent": video_response(parent) if parent else None,
        "derivatives": videos_response(get_derivatives(token_id)),
    }
    return response


@router.get("/video/{token_id}/metadata")
async def token_metadata(token_id: str, request: Request):
    """The token's metadata document as pinned to IPFS."""
    video = get_video_by_token(token_id)
    metadata_hash = extract_hash_from_url(video["metadata_uri"]) if video and video.get("metadata_uri") else None
    if not metadata_hash:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Token metadata not found"
        )

    metadata = await asyncio.to_thread(request.app.state.ipfs_client.fetch_json, metadata_hash)
    if metadata is None:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail="Token metadata could not be fetched from IPFS"
        )
    return metadata


@router.post("/videos/{video_id}/like")
async def like_video(video_id: str, wallet: str = Depends(require_wallet)):
    """Toggle the caller's like."""
    video = get_video_or_404(video_id)
    liked, like_count = toggle_like(str(video["id"]), wallet)
    return {"success": True, "liked": liked, "like_count": like_count}


@router.get("/videos/{video_id}/like")
async def like_status(video_id: str, wallet: Optional[str] = Depends(get_current_wallet)):
    video = get_video_or_404(video_id)
    return get_like_status(str(video["id"]), wallet)


@router.post("/videos/{video_id}/view")
async def view_video(
    video_id: str,
    request: Request,
    body: Optional[ViewRequest] = None,
    wallet: Optional[str] = Depends(get_current_wallet),
):
    video = get_video_or_404(video_id)
    row_id = str(video["id"])
    recorded = record_view(
        row_id,
        viewer_wallet=wallet,
        viewer_ip=client_ip(request),
        watch_duration=body.watch_duration if body else None,
    )
    return {"success": True, "recorded": recorded, "view_count": get_view_count(row_id)}


@router.get("/videos/{video_id}/view")
async def view_count(video_id: str):
    video = get_video_or_404(video_id)
    return {"view_count": get_view_count(str(video["id"]))}


@router.post("/videos/{video_id}/share")
async def share_video(
    video_id: str,
    body: Optional[ShareRequest] = None,
    wallet: Optional[str] = Depends(get_current_wallet),
):
    video = get_video_or_404(video_id)
    platform = (body.platform if body else "link").lower()
    share_count = record_share(str(video["id"]), platform, wallet)
    return {"success": True, "platform": platform, "share_count": share_count}


@router.get("/videos/{video_id}/stats")
async def video_stats(video_id: str):
    video = get_video_or_404(video_id)
    stats = get_video_stats(str(video["id"]), video.get("token_id"))
    return {"video_id": str(video["id"]), "token_id": video.get("token_id"), **stats}


@router.get("/videos/{video_id}/license", response_model=LicenseTerms)
async def video_license(video_id: str):
    video = get_video_or_404(video_id)
    return LicenseTerms(
        token_id=video.get("token_id"),
        price_per_period=float(video.get("license_price") or 0),
        currency=config.PAYMENT_CURRENCY,
        duration_days=video.get("license_duration_days") or config.LICENSE_PERIOD_DAYS,
        royalty_percentage=float(video.get("royalty_percentage") or 0),
        commercial_rights=bool(video.get("commercial_rights")),
        derivative_rights=bool(video.get("allow_remixing")),
    )


@router.get("/stream/{ipfs_hash}")
async def stream_video(ipfs_hash: str, file: Optional[str] = Query(None, description="File inside the CID")):
    """Redirect to the primary gateway; the other gateways are listed in ``X-IPFS-Gateways``."""
    if not is_valid_ipfs_hash(ipfs_hash):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid IPFS hash"
        )

    return RedirectResponse(
        url=get_ipfs_url(ipfs_hash, file),
        status_code=status.HTTP_307_TEMPORARY_REDIRECT,
        headers={
            "X-IPFS-Gateways": ", ".join(get_redundant_urls(ipfs_hash, file)),
            "Cache-Control": "public, max-age=31536000, immutable",
        },
    )
