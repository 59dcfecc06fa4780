import structlog
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from provn.api.helpers import page_response, require_address, videos_response
from provn.core.database import list_videos
from provn.core.engagement import is_following
from provn.core.licensing import get_creator_analytics
from provn.core.profiles import (
    get_profile, get_profile_by_handle, get_profile_by_wallet, get_profile_stats,
    is_handle_available, list_follows, update_profile, upsert_profile,
)
from provn.core.utils import normalize_address, validate_handle
from provn.models.social import FollowType, ProfileUpdate, ProfileUpsert
from provn.services.auth import get_current_wallet, require_wallet

logger = structlog.get_logger()

router = APIRouter(tags=["profiles"])


def get_profile_or_404(identifier: str):
    profile = get_profile(identifier)
    if not profile:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Profile not found"
        )
    return profile


def profile_with_stats(profile):
    return {**profile, "id": str(profile["id"]), "stats": get_profile_stats(profile["wallet_address"])}


@router.get("/users")
async def get_user(
    wallet: Optional[str] = Query(None, description="Wallet address"),
    handle: Optional[str] = Query(None, description="Profile handle"),
):
    if not wallet and not handle:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Either wallet or handle is required"
        )

    if wallet:
        profile = get_profile_by_wallet(require_address(wallet, "wallet address"))
    else:
        profile = get_profile_by_handle(handle.lstrip("@"))

    if not profile:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Profile not found"
        )
    return profile_with_stats(profile)


@router.post("/users")
async def create_or_update_user(body: ProfileUpsert, wallet: str = Depends(require_wallet)):
    if normalize_address(body.wallet_address) != wallet:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the profile owner can edit this profile"
        )

    if not is_handle_available(body.handle, exclude_wallet=body.wallet_address):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Handle is already taken"
        )

    profile = upsert_profile(
        body.wallet_address, body.handle, body.display_name, body.bio, body.avatar_url, body.banner_url
    )
    return {"success": True, "profile": {**profile, "id": str(profile["id"])}}


@router.get("/users/check-handle")
async def check_handle(handle: str = Query(..., description="Handle to check")):
    error = validate_handle(handle)
    if error:
        return {"handle": handle, "available": False, "error": error}
    return {"handle": handle.lower(), "available": is_handle_available(handle)}


@router.get("/users/by-handle/{handle}")
async def user_by_handle(handle: str):
    profile = get_profile_by_handle(handle.lstrip("@"))
    if not profile:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Profile not found"
        )
    return profile_with_stats(profile)


@router.get("/profile/{identifier}")
async def profile_details(identifier: str):
    """Profile by wallet address or handle."""
    return profile_with_stats(get_profile_or_404(identifier))


@router.put("/profile/{identifier}")
async def edit_profile(identifier: str, body: ProfileUpdate, wallet: str = Depends(require_wallet)):
    profile = get_profile_or_404(identifier)
    if profile["wallet_address"] != normalize_address(wallet):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Only the profile owner can edit this profile"
        )

    fields = body.model_dump(exclude_none=True)
    if "handle" in fields and not is_handle_available(fields["handle"], exclude_wallet=wallet):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Handle is already taken"
        )

    updated = update_profile(wallet, fields)
    return {"success": True, "profile": {**updated, "id": str(updated["id"])}}


@router.get("/profile/{identifier}/videos")
async def profile_videos(
    identifier: str,
    include_derivatives: bool = Query(True),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    profile = get_profile_or_404(identifier)
    rows, total = list_videos(profile["wallet_address"], include_derivatives, limit, offset)
    return page_response("videos", videos_response(rows), total, limit, offset)


@router.get("/profile/{identifier}/follows")
async def profile_follows(
    identifier: str,
    type: FollowType = Query(FollowType.FOLLOWERS),
    limit: int = Query(50, ge=1, le=100),
    offset: int = Query(0, ge=0),
    wallet: Optional[str] = Depends(get_current_wallet),
):
    """Followers or followed users, plus whether the caller follows this profile."""
    profile = get_profile_or_404(identifier)
    follows = list_follows(profile["wallet_address"], type.value, limit, offset)
    total = profile["followers_count"] if type == FollowType.FOLLOWERS else profile["following_count"]
    following = bool(wallet) and wallet != profile["wallet_address"] and is_following(wallet, profile["wallet_address"])
    return {
        "type": type.value,
        "is_following": following,
        **page_response("users", follows, int(total or 0), limit, offset),
    }


@router.get("/profile/{identifier}/analytics")
async def profile_analytics(identifier: str):
    profile = get_profile_or_404(identifier)
    return {
        "wallet_address": profile["wallet_address"],
        "handle": profile["handle"],
        **get_creator_analytics(profile["wallet_address"]),
    }
