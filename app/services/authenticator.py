"""API key authentication pipeline.

``KeyAuthenticator.authenticate`` runs a fixed sequence of checks and stops at
the first failure:

    parse header -> rate limit -> record lookup -> revocation/expiry
    -> IP allow-list -> monthly quota -> subscription tier

Every denial is logged with its precise reason. Callers only see the coarse
outcome (``identity`` is None, optionally with rate-limit or quota detail).
The monthly quota step may roll the cycle over in the store even when the tier
check then denies the request; nothing else here writes.
"""
import ipaddress
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel

from app.core.clock import ensure_utc, utcnow
from app.core.logging import get_logger
from app.core.rate_limit import RateLimiter, RateLimitResult
from app.core.security import KEY_PREFIX_LENGTH, hash_api_key
from app.services.key_store import APIKeyStore
from app.services.quota import QuotaStatus, QuotaTracker

logger = get_logger(__name__)

BEARER_PREFIX = "Bearer "
WILDCARD_IP = "*"


class CallerIdentity(BaseModel):
    account_id: int
    tier: str
    key_hash: str


class AuthDenial(str, Enum):
    MALFORMED = "malformed_header"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "key_not_found"
    REVOKED = "key_revoked"
    EXPIRED = "key_expired"
    IP_BLOCKED = "ip_not_allowed"
    BAD_WHITELIST = "ip_whitelist_corrupt"
    QUOTA_EXCEEDED = "monthly_limit_exceeded"
    TIER = "tier_not_allowed"


class AuthResult(BaseModel):
    identity: Optional[CallerIdentity] = None
    rate_limit: Optional[RateLimitResult] = None
    monthly_limit_exceeded: bool = False
    quota: Optional[QuotaStatus] = None
    denial: Optional[AuthDenial] = None

    @property
    def authenticated(self) -> bool:
        return self.identity is not None


def parse_bearer(authorization: Optional[str]) -> Optional[str]:
    """Extract the secret from ``Bearer <secret>``; None when missing or malformed."""
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    secret = authorization[len(BEARER_PREFIX):].strip()
    if not secret or " " in secret:
        return None
    return secret


def _normalize_ip(value: str) -> str:
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return value.strip()


def ip_allowed(whitelist: List[str], client_ip: Optional[str]) -> bool:
    """An empty list allows everyone; otherwise the IP or ``*`` must be listed.

    An unknown client IP is not checked against the list.
    """
    if not whitelist or client_ip is None:
        return True
    client = _normalize_ip(client_ip)
    return any(entry == WILDCARD_IP or _normalize_ip(entry) == client for entry in whitelist)


class KeyAuthenticator:
    def __init__(
        self,
        rate_limiter: RateLimiter,
        store: APIKeyStore,
        quota: QuotaTracker,
        api_tier: str = "business",
        clock: Callable[[], datetime] = utcnow,
    ):
        self.rate_limiter = rate_limiter
        self.store = store
        self.quota = quota
        self.api_tier = api_tier
        self.clock = clock

    async def authenticate(
        self, authorization: Optional[str], client_ip: Optional[str] = None
    ) -> AuthResult:
        secret = parse_bearer(authorization)
        if secret is None:
            return self._deny(AuthDenial.MALFORMED, None, client_ip)

        key_hash = hash_api_key(secret)
        display = secret[:KEY_PREFIX_LENGTH]

        # Runs before lookup so unknown keys are throttled too
        rate_limit = await self.rate_limiter.check(key_hash)
        if not rate_limit.allowed:
            return self._deny(AuthDenial.RATE_LIMITED, display, client_ip, rate_limit=rate_limit)

        record = self.store.get_by_hash(key_hash)
        if record is None:
            return self._deny(AuthDenial.NOT_FOUND, display, client_ip, rate_limit=rate_limit)

        if record.is_revoked:
            return self._deny(AuthDenial.REVOKED, display, client_ip, rate_limit=rate_limit)

        if record.expires_at is not None and ensure_utc(record.expires_at) < self.clock():
            return self._deny(AuthDenial.EXPIRED, display, client_ip, rate_limit=rate_limit)

        try:
            whitelist = record.allowed_ips()
        except ValueError as e:
            logger.error(f"Key {display}... has an unreadable ip_whitelist: {e}")
            return self._deny(AuthDenial.BAD_WHITELIST, display, client_ip, rate_limit=rate_limit)
        if not ip_allowed(whitelist, client_ip):
            return self._deny(AuthDenial.IP_BLOCKED, display, client_ip, rate_limit=rate_limit)

        owner_id = record.user_id
        quota = self.quota.check_and_maybe_reset(record)
        if quota.exceeded:
            return self._deny(
                AuthDenial.QUOTA_EXCEEDED, display, client_ip,
                rate_limit=rate_limit, quota=quota, monthly_limit_exceeded=True,
            )

        tier = self.store.get_subscription_tier(owner_id)
        if tier != self.api_tier:
            return self._deny(AuthDenial.TIER, display, client_ip, rate_limit=rate_limit, quota=quota)

        return AuthResult(
            identity=CallerIdentity(account_id=owner_id, tier=tier, key_hash=key_hash),
            rate_limit=rate_limit,
            quota=quota,
        )

    def _deny(
        self,
        reason: AuthDenial,
        display: Optional[str],
        client_ip: Optional[str],
        **fields,
    ) -> AuthResult:
        key = f"{display}..." if display else "<none>"
        if reason is AuthDenial.TIER:
            # Product policy, not a credential problem
            logger.info(f"API access refused by tier policy: key={key} ip={client_ip}")
        else:
            logger.warning(f"API key authentication failed ({reason.value}): key={key} ip={client_ip}")
        return AuthResult(denial=reason, **fields)
