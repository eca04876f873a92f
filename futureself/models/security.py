"""
Replay-protection tables: single-use CSRF tokens and rate-limit hits.

Both are short-lived rows keyed by user id (CSRF) or by
``(bucket, identifier)`` (rate limiting).
"""

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from futureself.models.billing import utcnow


class CsrfToken(SQLModel, table=True):
    """Hash of an issued CSRF token. The raw token is never stored."""

    __tablename__ = "csrf_tokens"

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: str = Field(index=True, max_length=128)
    token_hash: str = Field(index=True, max_length=64)
    expires_at: datetime
    used: bool = Field(default=False)
    used_at: Optional[datetime] = Field(default=None, nullable=True)
    ip_address: Optional[str] = Field(default=None, max_length=64)
    created_at: datetime = Field(default_factory=utcnow)


class RateLimitHit(SQLModel, table=True):
    """One accepted request inside a rate-limit bucket."""

    __tablename__ = "rate_limit_hits"

    id: Optional[int] = Field(default=None, primary_key=True)
    bucket: str = Field(index=True, max_length=64)
    identifier: str = Field(index=True, max_length=128)
    hit_at: float = Field(index=True)
