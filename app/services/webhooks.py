"""Signed webhook delivery for QR scan events.

Each attempt POSTs the JSON payload with an HMAC-SHA256 signature over
``<timestamp>.<body>``. 2xx marks the delivery successful. Other 4xx
responses (except 429) are final. 5xx, 429 and network errors schedule a
retry until ``max_attempts`` is reached.
"""
import hashlib
import hmac
import json
import secrets
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import httpx

from app.core.clock import utcnow
from app.core.logging import get_logger
from app.core.url_guard import is_safe_url
from app.models.qr_code import QRCode
from app.models.webhook import WebhookConfig, WebhookDelivery

logger = get_logger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 5.0
MAX_RESPONSE_BODY_LENGTH = 1024
RETRY_DELAYS_SECONDS = (30, 120, 900, 3600, 14400)
USER_AGENT = "QRWolf-Webhooks/1.0"


def generate_webhook_secret() -> str:
    return secrets.token_hex(32)


def sign_payload(body: str, secret: str, timestamp: int) -> str:
    return hmac.new(secret.encode(), f"{timestamp}.{body}".encode(), hashlib.sha256).hexdigest()


def is_valid_webhook_url(url: str) -> bool:
    """Webhooks must be HTTPS and pass the SSRF guard."""
    return isinstance(url, str) and url.strip().lower().startswith("https://") and is_safe_url(url)


def next_retry_at(attempt: int, now: Optional[datetime] = None) -> datetime:
    delay = RETRY_DELAYS_SECONDS[min(max(attempt, 1), len(RETRY_DELAYS_SECONDS)) - 1]
    return (now or utcnow()) + timedelta(seconds=delay)


def build_payload(
    delivery_id: int, scan_id: str, scan: Dict[str, Any], qr: QRCode, now: Optional[datetime] = None
) -> Dict[str, Any]:
    return {
        "event": "scan",
        "timestamp": (now or utcnow()).isoformat(),
        "delivery_id": delivery_id,
        "qr_code": {
            "id": qr.id,
            "name": qr.name,
            "short_code": qr.short_code,
            "content_type": qr.content_type,
        },
        "scan": {"id": scan_id, **scan},
    }


class WebhookDeliverer:
    """Sends one delivery attempt and records the outcome on the delivery row."""

    def __init__(self, client: Optional[httpx.AsyncClient] = None, clock=utcnow):
        self.client = client or httpx.AsyncClient(timeout=WEBHOOK_TIMEOUT_SECONDS, follow_redirects=False)
        self.clock = clock

    async def deliver(self, delivery: WebhookDelivery, config: WebhookConfig) -> bool:
        """Attempt ``delivery``. The caller persists the updated row."""
        now = self.clock()
        attempt = (delivery.attempt_number or 0) + 1
        delivery.attempt_number = attempt

        if not is_valid_webhook_url(config.url):
            logger.warning(f"Webhook {config.id} has an unsafe URL; delivery {delivery.id} abandoned")
            self._finish(delivery, "exhausted", None, None, "Webhook URL is not allowed")
            return False

        body = json.dumps(delivery.payload or {}, separators=(",", ":"))
        timestamp = int(now.timestamp())
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-QRWolf-Signature": f"sha256={sign_payload(body, config.secret, timestamp)}",
            "X-QRWolf-Delivery-Id": str(delivery.id),
            "X-QRWolf-Event": delivery.event_type or "scan",
            "X-QRWolf-Timestamp": str(timestamp),
        }

        try:
            response = await self.client.post(config.url, content=body, headers=headers)
        except httpx.HTTPError as e:
            logger.info(f"Webhook delivery {delivery.id} attempt {attempt} failed: {e!r}")
            return self._retry_or_exhaust(delivery, None, None, str(e) or type(e).__name__, now)

        response_body = response.text[:MAX_RESPONSE_BODY_LENGTH]
        if response.is_success:
            self._finish(delivery, "success", response.status_code, response_body, None)
            delivery.delivered_at = now
            return True

        message = f"{response.status_code} {response.reason_phrase}".strip()
        if 400 <= response.status_code < 500 and response.status_code != 429:
            self._finish(delivery, "exhausted", response.status_code, response_body, f"Client error: {message}")
            return False

        return self._retry_or_exhaust(
            delivery, response.status_code, response_body, f"Server error: {message}", now
        )

    def _retry_or_exhaust(
        self,
        delivery: WebhookDelivery,
        http_status: Optional[int],
        response_body: Optional[str],
        error: str,
        now: datetime,
    ) -> bool:
        if delivery.attempt_number >= delivery.max_attempts:
            self._finish(delivery, "exhausted", http_status, response_body, error)
        else:
            self._finish(delivery, "failed", http_status, response_body, error)
            delivery.next_retry_at = next_retry_at(delivery.attempt_number, now)
        return False

    @staticmethod
    def _finish(
        delivery: WebhookDelivery,
        status: str,
        http_status: Optional[int],
        response_body: Optional[str],
        error: Optional[str],
    ) -> None:
        delivery.status = status
        delivery.http_status = http_status
        delivery.response_body = response_body
        delivery.error_message = error[:500] if error else None
        delivery.next_retry_at = None

    async def close(self) -> None:
        await self.client.aclose()
