from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from app.core.clock import ensure_utc
from app.models.api_key import API_KEY_ENVIRONMENTS


class APIKeyCreate(BaseModel):
    """API key creation request."""
    name: str = Field(min_length=1, max_length=255)
    environment: str = Field(default="production")
    expires_at: Optional[datetime] = None
    ip_whitelist: List[str] = Field(default_factory=list, max_length=50)
    permissions: List[str] = Field(default_factory=list)

    @field_validator("expires_at")
    @classmethod
    def to_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(value)

    @field_validator("environment")
    @classmethod
    def check_environment(cls, value: str) -> str:
        if value not in API_KEY_ENVIRONMENTS:
            raise ValueError(f"environment must be one of: {', '.join(API_KEY_ENVIRONMENTS)}")
        return value

    @field_validator("ip_whitelist")
    @classmethod
    def check_ip_whitelist(cls, value: List[str]) -> List[str]:
        return [ip.strip() for ip in value if ip.strip()]


class APIKeyResponse(BaseModel):
    """API key response."""
    id: int
    name: str
    key: Optional[str] = None  # Only returned on creation
    key_prefix: str
    environment: str
    ip_whitelist: List[str]
    permissions: List[str]
    expires_at: Optional[datetime]
    created_at: datetime


class APIKeyListResponse(BaseModel):
    """API key list item. Never includes the hash."""
    id: int
    name: str
    key_prefix: str
    environment: str
    permissions: List[str]
    request_count: int
    monthly_request_count: int
    last_used_at: Optional[datetime]
    expires_at: Optional[datetime]
    revoked_at: Optional[datetime]
    created_at: datetime
