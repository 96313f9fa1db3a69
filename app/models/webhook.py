from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, JSON
from sqlmodel import Field

from app.models.base import BaseModel

WEBHOOK_EVENTS = ("scan",)
DELIVERY_STATUSES = ("pending", "success", "failed", "exhausted")


class WebhookConfig(BaseModel, table=True):
    """Scan webhook for one QR code. At most one per code."""
    qr_code_id: int = Field(foreign_key="qrcode.id", unique=True, index=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    url: str = Field(max_length=2000)
    secret: str = Field(max_length=64)  # HMAC signing secret, shown once
    is_active: bool = Field(default=True)
    events: List[str] = Field(default_factory=lambda: ["scan"], sa_column=Column(JSON))


class WebhookDelivery(BaseModel, table=True):
    """One delivery of an event to a webhook, with its retry state."""
    webhook_config_id: int = Field(foreign_key="webhookconfig.id", index=True)
    scan_id: Optional[str] = Field(default=None, max_length=64)
    event_type: str = Field(default="scan", max_length=20)
    payload: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    status: str = Field(default="pending", index=True, max_length=20)  # pending, success, failed, exhausted
    http_status: Optional[int] = Field(default=None)
    response_body: Optional[str] = Field(default=None, max_length=1024)
    error_message: Optional[str] = Field(default=None, max_length=500)
    attempt_number: int = Field(default=0)
    max_attempts: int = Field(default=5)
    next_retry_at: Optional[datetime] = Field(default=None)
    delivered_at: Optional[datetime] = Field(default=None)
