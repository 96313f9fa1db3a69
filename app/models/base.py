from datetime import datetime
from typing import Optional

from sqlmodel import SQLModel, Field

from app.core.clock import utcnow


class BaseModel(SQLModel):
    """Common columns for every table."""
    id: Optional[int] = Field(default=None, primary_key=True)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
