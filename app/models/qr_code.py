from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Column, JSON
from sqlmodel import Field

from app.models.base import BaseModel


class QRCode(BaseModel, table=True):
    """QR code created through the dashboard or the programmatic API."""
    user_id: int = Field(foreign_key="user.id", index=True)
    name: str = Field(max_length=255)
    type: str = Field(default="dynamic", max_length=10)  # static, dynamic
    content_type: str = Field(default="url", index=True, max_length=30)
    content: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    style: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    # Dynamic codes redirect through /r/<short_code>
    short_code: Optional[str] = Field(default=None, unique=True, index=True, max_length=16)
    destination_url: Optional[str] = Field(default=None, max_length=2000)
    scan_count: int = Field(default=0)

    expires_at: Optional[datetime] = Field(default=None)
    active_from: Optional[datetime] = Field(default=None)
    active_until: Optional[datetime] = Field(default=None)
