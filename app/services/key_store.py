"""Record store operations consumed by the API gatekeeper.

Counter updates are single SQL statements (``SET n = n + 1``) so concurrent
requests on one key never lose increments. Database failures surface through
``store_call`` as ``StoreUnavailable``; there is no fallback for the system of record.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, update
from sqlmodel import Session, select

from app.core.clock import utcnow
from app.models.api_key import APIKey
from app.models.user import User
from app.services.store import store_call


class APIKeyStore:
    def __init__(self, session: Session, clock=utcnow):
        self.session = session
        self.clock = clock

    @store_call
    def get_by_hash(self, key_hash: str) -> Optional[APIKey]:
        return self.session.exec(select(APIKey).where(APIKey.key_hash == key_hash)).first()

    @store_call
    def get_subscription_tier(self, user_id: int) -> str:
        user = self.session.get(User, user_id)
        if not user or not user.is_active:
            return "free"
        return user.subscription_tier or "free"

    @store_call
    def reset_monthly_counter(
        self,
        key_hash: str,
        user_id: int,
        expected_reset_at: Optional[datetime],
        next_reset_at: datetime,
    ) -> bool:
        """Zero the monthly counter if nobody else has rolled this cycle over yet.

        The update only applies while ``monthly_reset_at`` still holds the value
        this request observed, so concurrent requests crossing the same boundary
        reset at most once. Returns True when this call performed the reset.
        """
        if expected_reset_at is None:
            cycle_matches = APIKey.monthly_reset_at.is_(None)
        else:
            cycle_matches = APIKey.monthly_reset_at == expected_reset_at

        result = self.session.exec(
            update(APIKey)
            .where(APIKey.key_hash == key_hash, APIKey.user_id == user_id, cycle_matches)
            .values(
                monthly_request_count=0,
                monthly_reset_at=next_reset_at,
                updated_at=self.clock(),
            )
        )
        self.session.commit()
        return result.rowcount == 1

    @store_call
    def increment_usage(self, key_hash: str) -> None:
        now = self.clock()
        self.session.exec(
            update(APIKey)
            .where(APIKey.key_hash == key_hash)
            .values(
                request_count=APIKey.request_count + 1,
                monthly_request_count=APIKey.monthly_request_count + 1,
                last_used_at=now,
                updated_at=now,
            )
        )
        self.session.commit()

    @store_call
    def count_active_keys(self, user_id: int) -> int:
        return self.session.exec(
            select(func.count()).select_from(APIKey).where(
                APIKey.user_id == user_id,
                APIKey.revoked_at.is_(None),
            )
        ).one()

    @store_call
    def list_for_user(self, user_id: int) -> List[APIKey]:
        return list(self.session.exec(
            select(APIKey)
            .where(APIKey.user_id == user_id)
            .order_by(APIKey.created_at.desc())
        ).all())

    @store_call
    def add(self, api_key: APIKey) -> APIKey:
        self.session.add(api_key)
        self.session.commit()
        self.session.refresh(api_key)
        return api_key

    @store_call
    def revoke(self, key_id: int, user_id: int) -> bool:
        """Soft-delete a key owned by ``user_id``. Returns False when no such key exists."""
        api_key = self.session.exec(
            select(APIKey).where(APIKey.id == key_id, APIKey.user_id == user_id)
        ).first()
        if not api_key:
            return False
        if api_key.revoked_at is None:
            now = self.clock()
            api_key.revoked_at = now
            api_key.updated_at = now
            self.session.add(api_key)
            self.session.commit()
        return True
