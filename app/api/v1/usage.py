from fastapi import APIRouter, Depends

from app.api.deps import get_key_store, get_quota_tracker, get_rate_limiter, require_api_caller
from app.core.errors import Unauthorized
from app.core.rate_limit import RateLimiter
from app.schemas.qr_code import UsageResponse
from app.services.authenticator import CallerIdentity
from app.services.key_store import APIKeyStore
from app.services.quota import QuotaTracker

router = APIRouter()


@router.get("", response_model=UsageResponse)
async def get_usage(
    caller: CallerIdentity = Depends(require_api_caller),
    quota: QuotaTracker = Depends(get_quota_tracker),
    rate_limiter: RateLimiter = Depends(get_rate_limiter),
    store: APIKeyStore = Depends(get_key_store)
):
    """Monthly and per-minute usage for the calling key. The current request is included."""
    api_key = store.get_by_hash(caller.key_hash)
    if not api_key:
        raise Unauthorized()

    window = await rate_limiter.status(caller.key_hash)
    monthly_count = (api_key.monthly_request_count or 0) + 1

    response = UsageResponse(
        monthly_request_count=monthly_count,
        monthly_limit=quota.limit,
        monthly_remaining=max(0, quota.limit - monthly_count),
        monthly_reset_at=api_key.monthly_reset_at,
        rate_limit=window.limit,
        rate_limit_remaining=window.remaining,
        rate_limit_reset_at=window.reset_at,
    )
    quota.record_usage(caller.key_hash)
    return response
