import structlog
from typing import Optional

from fastapi import APIRouter, Query

from provn.api.helpers import require_address, videos_response
from provn.core.licensing import FEED_ORDERING, get_creator_analytics, get_daily_views, get_feed, search_videos
from provn.core.profiles import get_profile_by_wallet

logger = structlog.get_logger()

router = APIRouter(tags=["explore"])


@router.get("/explore/feed")
async def explore_feed(
    sort: str = Query("latest", pattern=f"^({'|'.join(FEED_ORDERING)})$"),
    category: Optional[str] = Query(None),
    tags: Optional[str] = Query(None, description="Comma separated tags"),
    limit: int = Query(20, ge=1, le=50),
    offset: int = Query(0, ge=0),
):
    tag_list = [tag.strip().lower() for tag in tags.split(",") if tag.strip()] if tags else None
    rows = get_feed(sort, category, tag_list, limit, offset)
    videos = videos_response(rows)
    for video in videos:
        video["views_count"] = int(video.get("views_count") or 0)
        video["likes_count"] = int(video.get("likes_count") or 0)
    return {
        "videos": videos,
        "sort": sort,
        "pagination": {"limit": limit, "offset": offset, "has_more": len(videos) == limit},
    }


@router.get("/explore/search")
async def explore_search(
    q: str = Query(..., min_length=1, max_length=100),
    limit: int = Query(20, ge=1, le=50),
    offset: int = Query(0, ge=0),
):
    rows = search_videos(q.strip(), limit, offset)
    return {"query": q, "videos": videos_response(rows), "count": len(rows)}


@router.get("/analytics/dashboard")
async def analytics_dashboard(
    address: str = Query(..., description="Creator wallet address"),
    days: int = Query(30, ge=1, le=365),
):
    wallet = require_address(address)
    profile = get_profile_by_wallet(wallet)
    return {
        "wallet_address": wallet,
        "handle": profile["handle"] if profile else None,
        **get_creator_analytics(wallet),
        "daily_views": get_daily_views(wallet, days),
    }
