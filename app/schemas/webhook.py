from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from app.models.webhook import WEBHOOK_EVENTS


class WebhookUpsert(BaseModel):
    """Create or replace the webhook of a QR code."""
    url: str = Field(min_length=1, max_length=2000)
    is_active: Optional[bool] = None
    events: Optional[List[str]] = None

    @field_validator("events")
    @classmethod
    def check_events(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        unknown = [event for event in value if event not in WEBHOOK_EVENTS]
        if unknown or not value:
            raise ValueError(f"events must be a non-empty list drawn from: {', '.join(WEBHOOK_EVENTS)}")
        return list(dict.fromkeys(value))


class WebhookResponse(BaseModel):
    """Webhook configuration. The secret is never included."""
    id: int
    qr_code_id: int
    url: str
    is_active: bool
    events: List[str]
    created_at: datetime
    updated_at: datetime


class WebhookEnvelope(BaseModel):
    webhook: Optional[WebhookResponse]
    secret: Optional[str] = None  # Only returned when the webhook is created


class WebhookDeliveryResponse(BaseModel):
    id: int
    event_type: str
    payload: Optional[dict]
    status: str
    http_status: Optional[int]
    response_body: Optional[str]
    error_message: Optional[str]
    attempt_number: int
    max_attempts: int
    next_retry_at: Optional[datetime]
    created_at: datetime
    delivered_at: Optional[datetime]


class WebhookDeliveryListResponse(BaseModel):
    deliveries: List[WebhookDeliveryResponse]
    total: int
    page: int
    limit: int


class WebhookTestResponse(BaseModel):
    success: bool
    delivery_id: int
    status: str
    http_status: Optional[int]
    error_message: Optional[str]
