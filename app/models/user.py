from typing import List, TYPE_CHECKING

from sqlmodel import Field, Relationship

from app.models.base import BaseModel

if TYPE_CHECKING:
    from app.models.api_key import APIKey


class User(BaseModel, table=True):
    """Account that owns API keys and QR codes."""
    email: str = Field(unique=True, index=True, max_length=255)
    subscription_tier: str = Field(default="free", max_length=20)  # free, pro, business
    is_active: bool = Field(default=True)

    # Relationships
    api_keys: List["APIKey"] = Relationship(back_populates="user")
