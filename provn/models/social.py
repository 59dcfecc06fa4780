"""
Request bodies for profiles, social features, licensing, disputes and auth.
"""

import re
from typing import List, Optional
from pydantic import BaseModel, Field, field_validator
from enum import Enum

from provn import config
from provn.core.utils import is_valid_wallet_address, normalize_address, validate_handle

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _wallet(v: str) -> str:
    if not is_valid_wallet_address(v):
        raise ValueError("Invalid wallet address format")
    return normalize_address(v)


class DisputeReason(str, Enum):
    DUPLICATE = "duplicate"
    INFRINGEMENT = "infringement"
    INAPPROPRIATE = "inappropriate"
    OTHER = "other"


class FollowType(str, Enum):
    FOLLOWERS = "followers"
    FOLLOWING = "following"


class ProfileUpsert(BaseModel):
    wallet_address: str
    handle: str
    display_name: Optional[str] = Field(None, max_length=100)
    bio: Optional[str] = Field(None, max_length=500)
    avatar_url: Optional[str] = None
    banner_url: Optional[str] = None

    @field_validator("wallet_address")
    @classmethod
    def check_wallet(cls, v):
        return _wallet(v)

    @field_validator("handle")
    @classmethod
    def check_handle(cls, v):
        error = validate_handle(v)
        if error:
            raise ValueError(error)
        return v.lower()


class ProfileUpdate(BaseModel):
    """Partial profile update; omitted fields are left unchanged."""
    handle: Optional[str] = None
    display_name: Optional[str] = Field(None, max_length=100)
    bio: Optional[str] = Field(None, max_length=500)
    avatar_url: Optional[str] = None
    banner_url: Optional[str] = None
    website: Optional[str] = Field(None, max_length=200)
    twitter_handle: Optional[str] = Field(None, max_length=50)

    @field_validator("handle")
    @classmethod
    def check_handle(cls, v):
        if v is None:
            return v
        error = validate_handle(v)
        if error:
            raise ValueError(error)
        return v.lower()


class FollowRequest(BaseModel):
    target_address: str = Field(..., description="Wallet to follow or unfollow")

    @field_validator("target_address")
    @classmethod
    def check_target(cls, v):
        return _wallet(v)


class CommentCreate(BaseModel):
    content_id: str = Field(..., min_length=1)
    text: str

    @field_validator("text")
    @classmethod
    def check_text(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Comment text is required")
        if len(v) > config.MAX_COMMENT_LENGTH:
            raise ValueError(f"Comment must be at most {config.MAX_COMMENT_LENGTH} characters")
        return v


class TipCreate(BaseModel):
    creator_address: str
    amount: float = Field(..., gt=0)
    message: Optional[str] = Field(None, max_length=280)
    video_id: Optional[str] = None
    transaction_hash: Optional[str] = None

    @field_validator("creator_address")
    @classmethod
    def check_creator(cls, v):
        return _wallet(v)


class LicenseCreate(BaseModel):
    token_id: str = Field(..., min_length=1)
    periods: int = Field(..., ge=1)
    total_cost: float = Field(..., ge=0)
    transaction_hash: Optional[str] = None


class DisputeCreate(BaseModel):
    target_token_id: str = Field(..., min_length=1)
    reason: DisputeReason
    description: str = Field(..., min_length=1, max_length=5000)
    contact_email: str
    evidence_urls: List[str] = Field(default_factory=list)

    @field_validator("contact_email")
    @classmethod
    def check_email(cls, v):
        if not EMAIL_RE.match(v):
            raise ValueError("Invalid contact email")
        return v


class NonceRequest(BaseModel):
    address: str
    chain_id: Optional[int] = None

    @field_validator("address")
    @classmethod
    def check_address(cls, v):
        return _wallet(v)


class WalletAuthRequest(BaseModel):
    address: str
    signature: str
    message: str
    timestamp: int
    chain_id: Optional[int] = None

    @field_validator("address")
    @classmethod
    def check_address(cls, v):
        return _wallet(v)
