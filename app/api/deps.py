import math
from typing import Optional

from fastapi import Depends, HTTPException, Request, Response, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlmodel import Session

from app.core.config import get_settings
from app.core.errors import (
    MalformedCredential,
    QuotaExceeded,
    RateLimited,
    Unauthorized,
)
from app.core.rate_limit import RateLimiter
from app.core.security import verify_token
from app.db.session import get_session
from app.models.user import User
from app.services.authenticator import AuthDenial, CallerIdentity, KeyAuthenticator
from app.services.key_store import APIKeyStore
from app.services.qr_code_store import QRCodeStore
from app.services.quota import QuotaTracker
from app.services.webhooks import WebhookDeliverer

security = HTTPBearer(auto_error=False)


def get_client_ip(request: Request) -> Optional[str]:
    """Resolve the caller's address, honouring proxy headers only when configured."""
    if get_settings().TRUST_PROXY_HEADERS:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            return forwarded_for.split(",")[0].strip() or None
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return real_ip.strip() or None
    return request.client.host if request.client else None


def get_rate_limiter(request: Request) -> RateLimiter:
    """Process-wide limiter built in the app lifespan."""
    return request.app.state.rate_limiter


def get_key_store(session: Session = Depends(get_session)) -> APIKeyStore:
    return APIKeyStore(session)


def get_qr_code_store(session: Session = Depends(get_session)) -> QRCodeStore:
    return QRCodeStore(session)


def get_webhook_deliverer(request: Request) -> WebhookDeliverer:
    """Process-wide deliverer (one HTTP connection pool) built in the app lifespan."""
    return request.app.state.webhook_deliverer


def get_quota_tracker(store: APIKeyStore = Depends(get_key_store)) -> QuotaTracker:
    return QuotaTracker(store, limit=get_settings().MONTHLY_REQUEST_LIMIT)


def get_key_authenticator(
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    store: APIKeyStore = Depends(get_key_store),
    quota: QuotaTracker = Depends(get_quota_tracker),
) -> KeyAuthenticator:
    return KeyAuthenticator(rate_limiter, store, quota, api_tier=get_settings().API_ACCESS_TIER)


async def require_api_caller(
    request: Request,
    response: Response,
    authenticator: KeyAuthenticator = Depends(get_key_authenticator),
) -> CallerIdentity:
    """Authenticate an API key request or raise the matching gateway error."""
    result = await authenticator.authenticate(
        request.headers.get("authorization"), get_client_ip(request)
    )

    if result.denial is AuthDenial.MALFORMED:
        raise MalformedCredential()
    if result.rate_limit and not result.rate_limit.allowed:
        raise RateLimited(result.rate_limit.limit, result.rate_limit.reset_at)
    if result.monthly_limit_exceeded:
        raise QuotaExceeded(result.quota.limit if result.quota else get_settings().MONTHLY_REQUEST_LIMIT)
    if result.identity is None:
        raise Unauthorized()

    if result.rate_limit:
        response.headers["X-RateLimit-Limit"] = str(result.rate_limit.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.rate_limit.remaining)
        response.headers["X-RateLimit-Reset"] = str(math.ceil(result.rate_limit.reset_at))
    if result.quota:
        response.headers["X-RateLimit-Monthly-Limit"] = str(result.quota.limit)
        response.headers["X-RateLimit-Monthly-Remaining"] = str(result.quota.remaining)

    return result.identity


async def get_current_account(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    session: Session = Depends(get_session)
) -> User:
    """Resolve the account behind an identity-provider JWT (key management only)."""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    payload = verify_token(credentials.credentials)
    try:
        account_id = int(payload.get("sub"))
    except (TypeError, ValueError):
        account_id = None

    user = session.get(User, account_id) if account_id is not None else None
    if not user or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return user
