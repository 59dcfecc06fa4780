import structlog
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from provn.api.helpers import require_address
from provn.core.database import get_video_by_token
from provn.core.licensing import get_dispute, insert_dispute, insert_license, list_licenses
from provn.models.social import DisputeCreate, LicenseCreate
from provn.services.auth import get_current_wallet, require_wallet

logger = structlog.get_logger()

router = APIRouter(tags=["licenses"])


def _license_response(row):
    return {**row, "id": str(row["id"]), "total_cost": float(row["total_cost"])}


@router.post("/licenses", status_code=status.HTTP_201_CREATED)
async def purchase_license(body: LicenseCreate, wallet: str = Depends(require_wallet)):
    video = get_video_by_token(body.token_id)
    if not video:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Video not found"
        )
    if video["creator_wallet"] == wallet:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Creators cannot license their own video"
        )

    # Part of a derivative's license revenue goes to the original creator
    parent = get_video_by_token(video["parent_token_id"]) if video.get("parent_token_id") else None
    license_row = insert_license(
        body.token_id, wallet, body.periods, body.total_cost, body.transaction_hash, parent=parent
    )

    return {"success": True, "license": _license_response(license_row)}


@router.get("/licenses")
async def get_licenses(
    token_id: Optional[str] = Query(None),
    purchaser: Optional[str] = Query(None, description="Purchaser wallet address"),
):
    rows = list_licenses(token_id, require_address(purchaser, "purchaser address") if purchaser else None)
    return {"licenses": [_license_response(row) for row in rows], "count": len(rows)}


@router.post("/disputes", status_code=status.HTTP_201_CREATED)
async def file_dispute(body: DisputeCreate, wallet: Optional[str] = Depends(get_current_wallet)):
    if not get_video_by_token(body.target_token_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Target video not found"
        )

    dispute = insert_dispute(
        body.target_token_id, body.reason.value, body.description, body.contact_email,
        reporter_wallet=wallet, evidence_urls=body.evidence_urls,
    )
    return {
        "success": True,
        "dispute": {**dispute, "id": str(dispute["id"])},
        "message": f"Dispute {dispute['case_number']} filed and pending review",
    }


@router.get("/disputes/{dispute_id}")
async def dispute_details(dispute_id: str):
    """Dispute by ID or case number."""
    dispute = get_dispute(dispute_id)
    if not dispute:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Dispute not found"
        )
    return {**dispute, "id": str(dispute["id"])}
