"""
CSRF tokens for state-changing requests.

Tokens are per-user, single-use and expire after ``csrf_token_ttl_s``
(24 h by default). Only the SHA-256 hex digest is stored; the raw token is
returned to the client once. Issuing a new token invalidates the user's
earlier unused ones.

Rejections are distinct:
    FS-CSRF-001  token missing                 (400)
    FS-CSRF-002  no token with that hash       (403)
    FS-CSRF-003  token expired                 (403)
    FS-CSRF-004  token already used            (403)
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

import sqlalchemy as sa
from sqlmodel import Session, select

from futureself.core.errors import FutureSelfError
from futureself.models.billing import utcnow
from futureself.models.security import CsrfToken
from futureself.services.entitlement_store import as_utc

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class CsrfService:
    def __init__(self, session: Session, ttl_s: int = 24 * 60 * 60):
        self.session = session
        self.ttl_s = ttl_s

    def issue(self, user_id: str, ip_address: Optional[str] = None) -> tuple[str, datetime]:
        """Create a fresh token for *user_id*. Returns ``(token, expires_at)``."""
        now = utcnow()
        token = secrets.token_hex(TOKEN_BYTES)
        expires_at = now + timedelta(seconds=self.ttl_s)

        table = CsrfToken.__table__
        conn = self.session.connection()
        conn.execute(sa.delete(table).where(table.c.user_id == user_id).where(table.c.expires_at < now))
        conn.execute(
            sa.update(table)
            .where(table.c.user_id == user_id)
            .where(table.c.used.is_(False))
            .values(used=True, used_at=now)
        )
        self.session.add(CsrfToken(
            user_id=user_id,
            token_hash=hash_token(token),
            expires_at=expires_at,
            ip_address=ip_address,
        ))
        self.session.commit()
        logger.info("CSRF token issued for user %s", user_id)
        return token, expires_at

    def consume(self, user_id: str, token: Optional[str]) -> None:
        """Validate *token* for *user_id* and mark it used, or raise."""
        if not token:
            raise FutureSelfError("FS-CSRF-001")

        row = self.session.exec(
            select(CsrfToken).where(
                CsrfToken.user_id == user_id,
                CsrfToken.token_hash == hash_token(token),
            )
        ).first()
        if row is None:
            logger.warning("CSRF token mismatch for user %s", user_id)
            raise FutureSelfError("FS-CSRF-002")
        if row.used:
            logger.warning("CSRF token replay for user %s", user_id)
            raise FutureSelfError("FS-CSRF-004")
        now = utcnow()
        if as_utc(row.expires_at) <= now:
            raise FutureSelfError("FS-CSRF-003")

        # Conditional update: of two concurrent consumers only one sees rowcount 1.
        result = self.session.connection().execute(
            sa.update(CsrfToken.__table__)
            .where(CsrfToken.__table__.c.id == row.id)
            .where(CsrfToken.__table__.c.used.is_(False))
            .values(used=True, used_at=now)
        )
        self.session.commit()
        if result.rowcount != 1:
            logger.warning("CSRF token for user %s consumed concurrently", user_id)
            raise FutureSelfError("FS-CSRF-004")
