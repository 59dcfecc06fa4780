import structlog

from fastapi import APIRouter, HTTPException, status

from provn import config
from provn.core.profiles import ensure_profile, record_login
from provn.models.social import NonceRequest, WalletAuthRequest
from provn.services.auth import (
    create_access_token, generate_auth_message, parse_expires_in, verify_signature,
)

logger = structlog.get_logger()

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/nonce")
async def auth_nonce(body: NonceRequest):
    """Message for the wallet to sign, valid for 15 minutes."""
    message, timestamp = generate_auth_message(body.address, body.chain_id)
    return {
        "message": message,
        "timestamp": timestamp,
        "expires_in": config.SIGNATURE_EXPIRY_SECONDS,
    }


@router.post("/wallet")
async def auth_wallet(body: WalletAuthRequest):
    """Exchange a signed login message for a JWT."""
    valid, error = verify_signature(body.message, body.signature, body.address, body.timestamp)
    if not valid:
        logger.warning("Wallet authentication rejected", address=body.address, reason=error)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error
        )

    profile = ensure_profile(body.address)
    record_login(body.address)
    token = create_access_token(body.address, body.chain_id, verified=True)
    logger.info("Wallet authenticated", address=body.address)

    return {
        "success": True,
        "token": token,
        "token_type": "bearer",
        "expires_in": parse_expires_in(config.JWT_EXPIRES_IN),
        "user": {**profile, "id": str(profile["id"])},
    }
