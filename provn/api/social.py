import structlog
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from provn.api.helpers import get_video_or_404, page_response, require_address
from provn.core.engagement import create_follow, delete_follow, insert_comment, insert_tip, list_comments, list_tips
from provn.core.profiles import ensure_profile
from provn.models.social import CommentCreate, FollowRequest, TipCreate
from provn.services.auth import require_wallet

logger = structlog.get_logger()

router = APIRouter(tags=["social"])


def _check_not_self(wallet: str, target: str, action: str):
    if wallet == target:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"You cannot {action} yourself"
        )


@router.post("/follow")
async def follow(body: FollowRequest, wallet: str = Depends(require_wallet)):
    _check_not_self(wallet, body.target_address, "follow")
    ensure_profile(wallet)
    ensure_profile(body.target_address)

    if not create_follow(wallet, body.target_address):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Already following this user"
        )
    return {"success": True, "following": True, "target_address": body.target_address}


@router.delete("/follow")
async def unfollow(body: FollowRequest, wallet: str = Depends(require_wallet)):
    _check_not_self(wallet, body.target_address, "unfollow")
    if not delete_follow(wallet, body.target_address):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Not following this user"
        )
    return {"success": True, "following": False, "target_address": body.target_address}


@router.get("/social/comments")
async def get_comments(
    content_id: str = Query(..., description="Token ID or video ID"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    rows, total = list_comments(content_id, limit, offset)
    comments = [
        {
            "id": str(row["id"]),
            "content_id": row["content_id"],
            "text": row["text"],
            "created_at": row["created_at"],
            "author": {
                "wallet_address": row["author_wallet"],
                "handle": row.get("author_handle"),
                "display_name": row.get("author_display_name"),
                "avatar_url": row.get("author_avatar_url"),
                "verified": bool(row.get("author_verified")),
            },
        }
        for row in rows
    ]
    return page_response("comments", comments, total, limit, offset)


@router.post("/social/comments", status_code=status.HTTP_201_CREATED)
async def post_comment(body: CommentCreate, wallet: str = Depends(require_wallet)):
    # Commenters may not have set up a profile yet
    author = ensure_profile(wallet)
    comment = insert_comment(body.content_id, wallet, body.text)
    return {
        "success": True,
        "comment": {
            **comment,
            "id": str(comment["id"]),
            "author": {
                "wallet_address": author["wallet_address"],
                "handle": author["handle"],
                "display_name": author["display_name"],
                "avatar_url": author["avatar_url"],
                "verified": bool(author["verified"]),
            },
        },
    }


@router.post("/tips", status_code=status.HTTP_201_CREATED)
async def send_tip(body: TipCreate, wallet: str = Depends(require_wallet)):
    _check_not_self(wallet, body.creator_address, "tip")

    video_id = None
    if body.video_id:
        video = get_video_or_404(body.video_id)
        if video["creator_wallet"] != body.creator_address:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Video does not belong to this creator"
            )
        video_id = str(video["id"])

    ensure_profile(body.creator_address)
    tip = insert_tip(wallet, body.creator_address, body.amount, body.message, video_id, body.transaction_hash)
    return {"success": True, "tip": {**tip, "id": str(tip["id"]), "amount": float(tip["amount"])}}


@router.get("/tips")
async def get_tips(
    creator: Optional[str] = Query(None, description="Creator wallet address"),
    sender: Optional[str] = Query(None, description="Sender wallet address"),
    limit: int = Query(50, ge=1, le=100),
):
    if not creator and not sender:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Either creator or sender is required"
        )
    rows, total_amount = list_tips(
        require_address(creator, "creator address") if creator else None,
        require_address(sender, "sender address") if sender else None,
        limit,
    )
    tips = [{**row, "id": str(row["id"]), "amount": float(row["amount"])} for row in rows]
    return {"tips": tips, "count": len(tips), "total_amount": total_amount}
