"""Scan webhook management for a QR code, behind the API key gate."""
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from app.api.deps import (
    get_qr_code_store,
    get_quota_tracker,
    get_webhook_deliverer,
    require_api_caller,
)
from app.core.clock import utcnow
from app.core.errors import NotFound, ValidationFailed
from app.core.logging import get_logger
from app.models.qr_code import QRCode
from app.models.webhook import DELIVERY_STATUSES, WebhookConfig, WebhookDelivery
from app.schemas.webhook import (
    WebhookDeliveryListResponse,
    WebhookDeliveryResponse,
    WebhookEnvelope,
    WebhookResponse,
    WebhookTestResponse,
    WebhookUpsert,
)
from app.services.authenticator import CallerIdentity
from app.services.qr_code_store import QRCodeStore
from app.services.quota import QuotaTracker
from app.services.webhooks import (
    WebhookDeliverer,
    build_payload,
    generate_webhook_secret,
    is_valid_webhook_url,
)

router = APIRouter()
logger = get_logger(__name__)

TEST_SCAN = {
    "scanned_at": None,
    "device_type": "mobile",
    "os": "iOS",
    "browser": "Safari",
    "country": "US",
    "city": "San Francisco",
    "region": "California",
}


def owned_qr_code(store: QRCodeStore, qr_id: int, caller: CallerIdentity) -> QRCode:
    qr = store.get_owned(qr_id, caller.account_id)
    if not qr:
        raise NotFound("QR code not found")
    return qr


def to_response(config: WebhookConfig) -> WebhookResponse:
    return WebhookResponse(
        id=config.id,
        qr_code_id=config.qr_code_id,
        url=config.url,
        is_active=config.is_active,
        events=config.events or ["scan"],
        created_at=config.created_at,
        updated_at=config.updated_at,
    )


@router.get("/{qr_id}/webhook", response_model=WebhookEnvelope)
async def get_webhook(
    qr_id: int,
    caller: CallerIdentity = Depends(require_api_caller),
    quota: QuotaTracker = Depends(get_quota_tracker),
    store: QRCodeStore = Depends(get_qr_code_store)
):
    """Get the webhook of a QR code. ``webhook`` is null when none is configured."""
    owned_qr_code(store, qr_id, caller)
    config = store.get_webhook(qr_id)

    response = WebhookEnvelope(webhook=to_response(config) if config else None)
    quota.record_usage(caller.key_hash)
    return response


@router.put("/{qr_id}/webhook", response_model=WebhookEnvelope, response_model_exclude_none=True)
async def put_webhook(
    qr_id: int,
    webhook_data: WebhookUpsert,
    response: Response,
    caller: CallerIdentity = Depends(require_api_caller),
    quota: QuotaTracker = Depends(get_quota_tracker),
    store: QRCodeStore = Depends(get_qr_code_store)
):
    """Create or replace the webhook. The signing secret is returned only on creation."""
    owned_qr_code(store, qr_id, caller)
    if not is_valid_webhook_url(webhook_data.url):
        raise ValidationFailed("Webhook URL must be a public https:// URL")

    config = store.get_webhook(qr_id)
    secret = None
    if config:
        config.url = webhook_data.url
        config.is_active = True if webhook_data.is_active is None else webhook_data.is_active
        config.events = webhook_data.events or ["scan"]
    else:
        secret = generate_webhook_secret()
        config = WebhookConfig(
            qr_code_id=qr_id,
            user_id=caller.account_id,
            url=webhook_data.url,
            secret=secret,
            is_active=True if webhook_data.is_active is None else webhook_data.is_active,
            events=webhook_data.events or ["scan"],
        )
        response.status_code = status.HTTP_201_CREATED

    config = store.save(config)
    logger.info(f"Webhook {config.id} {'created' if secret else 'updated'} for QR code {qr_id}")

    envelope = WebhookEnvelope(webhook=to_response(config), secret=secret)
    quota.record_usage(caller.key_hash)
    return envelope


@router.delete("/{qr_id}/webhook", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook(
    qr_id: int,
    caller: CallerIdentity = Depends(require_api_caller),
    quota: QuotaTracker = Depends(get_quota_tracker),
    store: QRCodeStore = Depends(get_qr_code_store)
):
    """Remove the webhook and its delivery log."""
    owned_qr_code(store, qr_id, caller)
    config = store.get_webhook(qr_id)
    if not config:
        raise NotFound("No webhook configured for this QR code")

    store.delete_webhook(config)
    logger.info(f"Webhook removed from QR code {qr_id}")

    quota.record_usage(caller.key_hash)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{qr_id}/webhook/deliveries", response_model=WebhookDeliveryListResponse)
async def list_deliveries(
    qr_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[str] = Query(None, alias="status"),
    caller: CallerIdentity = Depends(require_api_caller),
    quota: QuotaTracker = Depends(get_quota_tracker),
    store: QRCodeStore = Depends(get_qr_code_store)
):
    """Delivery log of the webhook, newest first."""
    owned_qr_code(store, qr_id, caller)
    if status_filter is not None and status_filter not in DELIVERY_STATUSES:
        raise ValidationFailed(f"status must be one of: {', '.join(DELIVERY_STATUSES)}")

    config = store.get_webhook(qr_id)
    if config:
        total, deliveries = store.list_deliveries(config.id, status_filter, limit, (page - 1) * limit)
    else:
        total, deliveries = 0, []

    response = WebhookDeliveryListResponse(
        deliveries=[WebhookDeliveryResponse.model_validate(d, from_attributes=True) for d in deliveries],
        total=total,
        page=page,
        limit=limit,
    )
    quota.record_usage(caller.key_hash)
    return response


@router.post("/{qr_id}/webhook/test", response_model=WebhookTestResponse)
async def send_test_delivery(
    qr_id: int,
    caller: CallerIdentity = Depends(require_api_caller),
    quota: QuotaTracker = Depends(get_quota_tracker),
    store: QRCodeStore = Depends(get_qr_code_store),
    deliverer: WebhookDeliverer = Depends(get_webhook_deliverer)
):
    """Send a sample scan event to the active webhook and report the outcome."""
    qr = owned_qr_code(store, qr_id, caller)
    config = store.get_webhook(qr_id, active_only=True)
    if not config:
        raise NotFound("No active webhook configured for this QR code")

    scan_id = f"test-{uuid.uuid4()}"
    delivery = store.save(WebhookDelivery(webhook_config_id=config.id, scan_id=scan_id))
    now = utcnow()
    delivery.payload = build_payload(
        delivery.id, scan_id, {**TEST_SCAN, "scanned_at": now.isoformat()}, qr, now=now
    )

    success = await deliverer.deliver(delivery, config)
    delivery = store.save(delivery)

    response = WebhookTestResponse(
        success=success,
        delivery_id=delivery.id,
        status=delivery.status,
        http_status=delivery.http_status,
        error_message=delivery.error_message,
    )
    quota.record_usage(caller.key_hash)
    return response
