from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel

from app.core.clock import ensure_utc, start_of_next_month, utcnow
from app.core.logging import get_logger
from app.models.api_key import APIKey
from app.services.key_store import APIKeyStore

logger = get_logger(__name__)

DEFAULT_MONTHLY_LIMIT = 10000


class QuotaStatus(BaseModel):
    count: int
    limit: int
    exceeded: bool
    reset_at: Optional[datetime] = None

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.count)


class QuotaTracker:
    """Monthly request quota per API key, independent of the per-minute limiter."""

    def __init__(
        self,
        store: APIKeyStore,
        limit: int = DEFAULT_MONTHLY_LIMIT,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.limit = limit
        self.clock = clock

    def check_and_maybe_reset(self, record: APIKey) -> QuotaStatus:
        """Return the key's monthly usage, rolling the cycle over when it has ended.

        A cycle that has ended counts as zero for this check even when another
        request wins the reset race.
        """
        now = self.clock()
        reset_at = ensure_utc(record.monthly_reset_at)
        count = record.monthly_request_count or 0

        if reset_at is None or reset_at < now:
            next_reset = start_of_next_month(now)
            performed = self.store.reset_monthly_counter(
                record.key_hash, record.user_id, reset_at, next_reset
            )
            if performed:
                logger.info(
                    f"Monthly quota reset for key {record.key_prefix}... "
                    f"(next reset {next_reset.isoformat()})"
                )
            count = 0
            reset_at = next_reset

        return QuotaStatus(
            count=count,
            limit=self.limit,
            exceeded=count >= self.limit,
            reset_at=reset_at,
        )

    def record_usage(self, key_hash: str) -> None:
        """Count one completed operation. Call once per success, never for denials."""
        self.store.increment_usage(key_hash)
