import json
from datetime import datetime
from typing import List, Optional, TYPE_CHECKING

from sqlmodel import Field, Relationship

from app.models.base import BaseModel

if TYPE_CHECKING:
    from app.models.user import User

API_KEY_ENVIRONMENTS = ("production", "development", "testing")


class APIKey(BaseModel, table=True):
    """API key record for machine authentication. Only the hash of the secret is kept."""
    name: str = Field(max_length=255)
    user_id: int = Field(foreign_key="user.id", index=True)
    key_hash: str = Field(unique=True, index=True, max_length=64)
    key_prefix: str = Field(max_length=8)  # display only
    environment: str = Field(default="production", max_length=20)
    expires_at: Optional[datetime] = Field(default=None)
    revoked_at: Optional[datetime] = Field(default=None)
    ip_whitelist: Optional[str] = Field(default=None, max_length=2000)  # JSON list of addresses
    permissions: str = Field(default="[]", max_length=500)  # JSON list of capabilities
    request_count: int = Field(default=0)
    monthly_request_count: int = Field(default=0)
    monthly_reset_at: Optional[datetime] = Field(default=None)
    last_used_at: Optional[datetime] = Field(default=None)

    # Relationships
    user: Optional["User"] = Relationship(back_populates="api_keys")

    @property
    def is_revoked(self) -> bool:
        return self.revoked_at is not None

    def allowed_ips(self) -> List[str]:
        """Decode ``ip_whitelist``. Raises ValueError when the stored value is corrupt."""
        if not self.ip_whitelist:
            return []
        try:
            entries = json.loads(self.ip_whitelist)
        except json.JSONDecodeError as e:
            raise ValueError(f"ip_whitelist is not valid JSON: {e}") from e
        if not isinstance(entries, list) or not all(isinstance(ip, str) for ip in entries):
            raise ValueError("ip_whitelist must be a JSON list of strings")
        return entries

    def scope_list(self) -> List[str]:
        try:
            scopes = json.loads(self.permissions) if self.permissions else []
        except json.JSONDecodeError:
            return []
        return scopes if isinstance(scopes, list) else []
