"""
Wallet authentication.

Clients sign a one-time message with their wallet; a verified signature is
exchanged for an HS256 JWT. Routes resolve the caller through the FastAPI
dependencies below, falling back to the ``x-wallet-address`` header that
older clients send.
"""

import re
import secrets
import time
import structlog
from typing import Any, Dict, Optional, Tuple

import jwt
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from provn import config
from provn.core.utils import is_valid_wallet_address, normalize_address
from provn.services.blockchain import verify_signed_message

logger = structlog.get_logger()

EXPIRES_IN_RE = re.compile(r"^(\d+)([smhd])$")
EXPIRES_IN_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

bearer_scheme = HTTPBearer(auto_error=False)


class AuthError(Exception):
    pass


def parse_expires_in(value: str) -> int:
    """Convert ``<n>[smhd]`` (or plain seconds) to seconds."""
    value = value.strip()
    if value.isdigit():
        return int(value)
    match = EXPIRES_IN_RE.match(value)
    if not match:
        raise ValueError(f"Invalid expiry format: {value}")
    amount, unit = match.groups()
    return int(amount) * EXPIRES_IN_UNITS[unit]


def generate_auth_message(address: str, chain_id: Optional[int] = None) -> Tuple[str, int]:
    """Build the message a wallet signs to log in. Returns ``(message, timestamp_ms)``."""
    timestamp = int(time.time() * 1000)
    nonce = secrets.token_hex(16)
    message = (
        "Welcome to Provn!\n\n"
        "Sign this message to authenticate your wallet and access the platform.\n\n"
        f"Wallet: {address}\n"
        f"Chain ID: {chain_id or config.CHAIN_ID}\n"
        f"Timestamp: {timestamp}\n"
        f"Nonce: {nonce}\n\n"
        "This request will not trigger a blockchain transaction or cost any gas fees."
    )
    return message, timestamp


def verify_signature(message: str, signature: str, address: str, timestamp: int) -> Tuple[bool, Optional[str]]:
    """Returns ``(is_valid, error_message)``."""
    age_ms = int(time.time() * 1000) - int(timestamp)
    if age_ms > config.SIGNATURE_EXPIRY_SECONDS * 1000:
        return False, "Signature expired. Please try again."

    if f"wallet: {address.lower()}" not in message.lower():
        return False, "Message does not belong to this wallet"

    if not verify_signed_message(message, signature, address):
        return False, "Invalid signature"

    return True, None


def create_access_token(address: str, chain_id: Optional[int] = None, verified: bool = False) -> str:
    now = int(time.time())
    payload = {
        "sub": normalize_address(address),
        "address": normalize_address(address),
        "chainId": chain_id or config.CHAIN_ID,
        "isVerified": verified,
        "iat": now,
        "exp": now + parse_expires_in(config.JWT_EXPIRES_IN),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> Dict[str, Any]:
    try:
        return jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as e:
        raise AuthError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise AuthError("Invalid token") from e


# FastAPI dependencies
def get_current_wallet(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    x_wallet_address: Optional[str] = Header(None, alias="x-wallet-address"),
) -> Optional[str]:
    """Caller's wallet from a Bearer JWT, else from the legacy header, else None."""
    if credentials is not None:
        try:
            payload = decode_access_token(credentials.credentials)
        except AuthError as e:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail=str(e),
                headers={"WWW-Authenticate": "Bearer"},
            )
        return payload["address"]

    if x_wallet_address:
        if not is_valid_wallet_address(x_wallet_address):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid wallet address format",
            )
        return normalize_address(x_wallet_address)

    return None


def require_wallet(wallet: Optional[str] = Depends(get_current_wallet)) -> str:
    if not wallet:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Wallet authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return wallet
