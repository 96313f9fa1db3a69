import secrets
import string
from typing import Optional

from fastapi import APIRouter, Depends, Query, Response, status

from app.api.deps import get_qr_code_store, get_quota_tracker, require_api_caller
from app.core.config import get_settings
from app.core.errors import NotFound, ValidationFailed
from app.core.logging import get_logger
from app.core.url_guard import is_safe_url
from app.models.qr_code import QRCode
from app.schemas.qr_code import (
    QRCodeCreate,
    QRCodeListResponse,
    QRCodeResponse,
    QRCodeUpdate,
    resolve_style,
)
from app.services.authenticator import CallerIdentity
from app.services.content_validation import validate_content
from app.services.qr_code_store import QRCodeStore
from app.services.quota import QuotaTracker

router = APIRouter()
logger = get_logger(__name__)

SHORT_CODE_ALPHABET = string.ascii_letters + string.digits
SHORT_CODE_LENGTH = 7
MAX_PAGE_SIZE = 100
# Columns that exist on every QR code; an explicit null is a client error
NON_NULLABLE_FIELDS = ("name", "content")


def generate_short_code() -> str:
    return "".join(secrets.choice(SHORT_CODE_ALPHABET) for _ in range(SHORT_CODE_LENGTH))


def to_response(qr: QRCode) -> QRCodeResponse:
    # Short links are resolved by the public web app at APP_URL
    base_url = get_settings().APP_URL.rstrip("/")
    return QRCodeResponse(
        id=qr.id,
        name=qr.name,
        type=qr.type,
        content_type=qr.content_type,
        content=qr.content or {},
        style=qr.style or {},
        short_code=qr.short_code,
        destination_url=qr.destination_url,
        scan_count=qr.scan_count,
        expires_at=qr.expires_at,
        active_from=qr.active_from,
        active_until=qr.active_until,
        created_at=qr.created_at,
        redirect_url=f"{base_url}/r/{qr.short_code}" if qr.short_code else None,
    )


def get_owned_qr_code(store: QRCodeStore, qr_id: int, caller: CallerIdentity) -> QRCode:
    qr = store.get_owned(qr_id, caller.account_id)
    if not qr:
        raise NotFound("QR code not found")
    return qr


def check_content(content: dict, content_type: str) -> None:
    result = validate_content(content, content_type)
    if not result.valid:
        raise ValidationFailed(result.error)


@router.get("", response_model=QRCodeListResponse)
async def list_qr_codes(
    limit: int = Query(50, ge=1),
    offset: int = Query(0, ge=0),
    type: Optional[str] = Query(None, pattern="^(static|dynamic)$"),
    caller: CallerIdentity = Depends(require_api_caller),
    quota: QuotaTracker = Depends(get_quota_tracker),
    store: QRCodeStore = Depends(get_qr_code_store)
):
    """List QR codes owned by the calling account, newest first."""
    limit = min(limit, MAX_PAGE_SIZE)
    total, qr_codes = store.list_for_user(caller.account_id, type, limit, offset)

    response = QRCodeListResponse(
        qr_codes=[to_response(qr) for qr in qr_codes],
        total=total,
        limit=limit,
        offset=offset,
    )
    quota.record_usage(caller.key_hash)
    return response


@router.post("", response_model=QRCodeResponse, status_code=status.HTTP_201_CREATED)
async def create_qr_code(
    qr_data: QRCodeCreate,
    caller: CallerIdentity = Depends(require_api_caller),
    quota: QuotaTracker = Depends(get_quota_tracker),
    store: QRCodeStore = Depends(get_qr_code_store)
):
    """Create a QR code. Dynamic codes get a short code that redirects to the content URL."""
    check_content(qr_data.content, qr_data.content_type)

    short_code = None
    destination_url = None
    if qr_data.type == "dynamic":
        short_code = generate_short_code()
        destination_url = qr_data.content.get("url") if qr_data.content_type == "url" else None

    qr = store.save(QRCode(
        user_id=caller.account_id,
        name=qr_data.name,
        type=qr_data.type,
        content_type=qr_data.content_type,
        content=qr_data.content,
        style=resolve_style(qr_data.style),
        short_code=short_code,
        destination_url=destination_url,
        expires_at=qr_data.expires_at,
        active_from=qr_data.active_from,
        active_until=qr_data.active_until,
    ))

    logger.info(f"QR code {qr.id} created via API for account {caller.account_id}")

    response = to_response(qr)
    quota.record_usage(caller.key_hash)
    return response


@router.get("/{qr_id}", response_model=QRCodeResponse)
async def get_qr_code(
    qr_id: int,
    caller: CallerIdentity = Depends(require_api_caller),
    quota: QuotaTracker = Depends(get_quota_tracker),
    store: QRCodeStore = Depends(get_qr_code_store)
):
    """Get a single QR code."""
    response = to_response(get_owned_qr_code(store, qr_id, caller))
    quota.record_usage(caller.key_hash)
    return response


@router.patch("/{qr_id}", response_model=QRCodeResponse)
async def update_qr_code(
    qr_id: int,
    qr_data: QRCodeUpdate,
    caller: CallerIdentity = Depends(require_api_caller),
    quota: QuotaTracker = Depends(get_quota_tracker),
    store: QRCodeStore = Depends(get_qr_code_store)
):
    """Update a QR code. Content is re-validated against the code's content type."""
    qr = get_owned_qr_code(store, qr_id, caller)
    updates = qr_data.model_dump(exclude_unset=True)
    style = updates.pop("style", None)

    if not updates and style is None:
        raise ValidationFailed("No valid fields to update")

    for field in NON_NULLABLE_FIELDS:
        if field in updates and updates[field] is None:
            raise ValidationFailed(f"{field} cannot be null")
    if "content" in updates:
        check_content(updates["content"], qr.content_type)
    if updates.get("destination_url") and not is_safe_url(updates["destination_url"]):
        raise ValidationFailed("destination_url must be a public http:// or https:// URL")

    for field, value in updates.items():
        setattr(qr, field, value)
    if style is not None:
        qr.style = resolve_style(style, base=qr.style)

    response = to_response(store.save(qr))
    quota.record_usage(caller.key_hash)
    return response


@router.delete("/{qr_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_qr_code(
    qr_id: int,
    caller: CallerIdentity = Depends(require_api_caller),
    quota: QuotaTracker = Depends(get_quota_tracker),
    store: QRCodeStore = Depends(get_qr_code_store)
):
    """Delete a QR code and its webhook."""
    store.delete(get_owned_qr_code(store, qr_id, caller))

    quota.record_usage(caller.key_hash)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
