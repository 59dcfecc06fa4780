"""
Pydantic models for video uploads and video records.
"""

from typing import List, Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator

from provn import config

MAX_TAGS = 10


class VideoMetadata(BaseModel):
    """Metadata sent as the JSON ``metadata`` form field with an upload."""
    title: str = Field(..., min_length=1, max_length=200, description="Video title")
    description: str = Field(default="", max_length=5000, description="Video description")
    tags: List[str] = Field(default_factory=list, description="Free-form tags")
    category: Optional[str] = Field(None, max_length=50, description="Content category")
    allow_remixing: bool = Field(default=False, description="Whether derivatives may be created")
    royalty_percentage: float = Field(
        default=config.DEFAULT_ROYALTY_PERCENTAGE, ge=0.0, le=50.0,
        description="Royalty paid to the creator on secondary sales"
    )
    license_price: float = Field(default=0.0, ge=0.0, description="Price per license period")
    license_duration_days: int = Field(default=config.LICENSE_PERIOD_DAYS, ge=1, le=365)
    commercial_rights: bool = Field(default=False, description="Whether licensees may use commercially")

    @field_validator("title")
    @classmethod
    def strip_title(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Title is required")
        return v

    @field_validator("tags")
    @classmethod
    def normalize_tags(cls, v):
        tags = []
        for tag in v:
            tag = tag.strip().lower()
            if tag and tag not in tags:
                tags.append(tag)
        if len(tags) > MAX_TAGS:
            raise ValueError(f"At most {MAX_TAGS} tags are allowed")
        return tags


class DerivativeMetadata(VideoMetadata):
    """Upload metadata for a derivative of an existing IP-NFT."""
    parent_token_id: str = Field(..., min_length=1, description="Token ID of the original video")


class VideoList(BaseModel):
    videos: List[Dict[str, Any]]
    total: int
    has_more: bool
    pagination: Dict[str, int]


class LicenseTerms(BaseModel):
    """Licensing terms advertised for a video."""
    token_id: Optional[str]
    price_per_period: float
    currency: str = config.PAYMENT_CURRENCY
    duration_days: int
    royalty_percentage: float
    commercial_rights: bool
    derivative_rights: bool


class ShareRequest(BaseModel):
    platform: str = Field(default="link", max_length=50)


class ViewRequest(BaseModel):
    watch_duration: float = Field(default=0.0, ge=0.0)
