import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from app.core.clock import ensure_utc

HEX_COLOR = re.compile(r"^#[0-9A-Fa-f]{6}$")
ERROR_CORRECTION_LEVELS = ("L", "M", "Q", "H")

DEFAULT_STYLE: Dict[str, Any] = {
    "foregroundColor": "#000000",
    "backgroundColor": "#ffffff",
    "errorCorrectionLevel": "M",
    "margin": 2,
}


def resolve_style(requested: Optional[Dict[str, Any]], base: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Merge a requested style over ``base``, dropping any value that is out of range."""
    merged = dict(DEFAULT_STYLE)
    merged.update({k: v for k, v in (base or {}).items() if k in DEFAULT_STYLE})
    requested = requested or {}

    for key in ("foregroundColor", "backgroundColor"):
        color = requested.get(key)
        if isinstance(color, str) and HEX_COLOR.match(color):
            merged[key] = color

    if requested.get("errorCorrectionLevel") in ERROR_CORRECTION_LEVELS:
        merged["errorCorrectionLevel"] = requested["errorCorrectionLevel"]

    margin = requested.get("margin")
    if isinstance(margin, int) and not isinstance(margin, bool) and 0 <= margin <= 10:
        merged["margin"] = margin

    return merged


class QRCodeCreate(BaseModel):
    """QR code creation request."""
    name: str = Field(min_length=1, max_length=255)
    type: str = Field(default="dynamic", pattern=r"^(static|dynamic)$")
    content_type: str = Field(default="url", max_length=30)
    content: Dict[str, Any]
    style: Optional[Dict[str, Any]] = None
    expires_at: Optional[datetime] = None
    active_from: Optional[datetime] = None
    active_until: Optional[datetime] = None

    @field_validator("expires_at", "active_from", "active_until")
    @classmethod
    def to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class QRCodeUpdate(BaseModel):
    """QR code update request. Only the fields provided are changed."""
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    content: Optional[Dict[str, Any]] = None
    destination_url: Optional[str] = Field(default=None, max_length=2000)
    style: Optional[Dict[str, Any]] = None
    expires_at: Optional[datetime] = None
    active_from: Optional[datetime] = None
    active_until: Optional[datetime] = None

    @field_validator("expires_at", "active_from", "active_until")
    @classmethod
    def to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)


class QRCodeResponse(BaseModel):
    """QR code response with derived links."""
    id: int
    name: str
    type: str
    content_type: str
    content: Dict[str, Any]
    style: Dict[str, Any]
    short_code: Optional[str]
    destination_url: Optional[str]
    scan_count: int
    expires_at: Optional[datetime]
    active_from: Optional[datetime]
    active_until: Optional[datetime]
    created_at: datetime
    redirect_url: Optional[str]  # served by the public web app at APP_URL


class QRCodeListResponse(BaseModel):
    """Paginated QR code list."""
    qr_codes: List[QRCodeResponse]
    total: int
    limit: int
    offset: int


class UsageResponse(BaseModel):
    """API usage for the calling key."""
    monthly_request_count: int
    monthly_limit: int
    monthly_remaining: int
    monthly_reset_at: Optional[datetime]
    rate_limit: int
    rate_limit_remaining: int
    rate_limit_reset_at: Optional[float]
