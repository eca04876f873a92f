"""
Tests for single-use CSRF tokens.
"""

from datetime import timedelta

import pytest
from sqlmodel import select

from futureself.core.errors import FutureSelfError
from futureself.models.billing import utcnow
from futureself.models.security import CsrfToken
from futureself.services.csrf_service import CsrfService, hash_token


@pytest.fixture
def csrf(db_session):
    return CsrfService(db_session, ttl_s=3600)


def _code(exc_info) -> str:
    return exc_info.value.code


class TestCsrfService:
    def test_only_hash_is_stored(self, csrf, db_session):
        token, expires_at = csrf.issue("user-1", "203.0.113.7")

        row = db_session.exec(select(CsrfToken)).one()
        assert row.token_hash == hash_token(token)
        assert token not in row.token_hash
        assert row.ip_address == "203.0.113.7"
        assert expires_at > utcnow()

    def test_token_is_single_use(self, csrf):
        token, _ = csrf.issue("user-1")
        csrf.consume("user-1", token)

        with pytest.raises(FutureSelfError) as exc_info:
            csrf.consume("user-1", token)
        assert _code(exc_info) == "FS-CSRF-004"

    def test_missing_token(self, csrf):
        with pytest.raises(FutureSelfError) as exc_info:
            csrf.consume("user-1", None)
        assert _code(exc_info) == "FS-CSRF-001"

    def test_unknown_token(self, csrf):
        csrf.issue("user-1")
        with pytest.raises(FutureSelfError) as exc_info:
            csrf.consume("user-1", "f" * 64)
        assert _code(exc_info) == "FS-CSRF-002"

    def test_token_bound_to_user(self, csrf):
        token, _ = csrf.issue("user-1")
        with pytest.raises(FutureSelfError) as exc_info:
            csrf.consume("user-2", token)
        assert _code(exc_info) == "FS-CSRF-002"

    def test_expired_token(self, csrf, db_session):
        token, _ = csrf.issue("user-1")
        row = db_session.exec(select(CsrfToken)).one()
        row.expires_at = utcnow() - timedelta(seconds=1)
        db_session.add(row)
        db_session.commit()

        with pytest.raises(FutureSelfError) as exc_info:
            csrf.consume("user-1", token)
        assert _code(exc_info) == "FS-CSRF-003"

    def test_new_token_invalidates_previous(self, csrf):
        old, _ = csrf.issue("user-1")
        new, _ = csrf.issue("user-1")

        with pytest.raises(FutureSelfError) as exc_info:
            csrf.consume("user-1", old)
        assert _code(exc_info) == "FS-CSRF-004"
        csrf.consume("user-1", new)

    def test_issue_purges_expired_rows(self, csrf, db_session):
        csrf.issue("user-1")
        row = db_session.exec(select(CsrfToken)).one()
        row.expires_at = utcnow() - timedelta(hours=1)
        db_session.add(row)
        db_session.commit()

        csrf.issue("user-1")
        db_session.expire_all()
        assert len(db_session.exec(select(CsrfToken)).all()) == 1


class TestCsrfApi:
    def test_issue_and_validate(self, client, as_user):
        as_user("user-1")
        response = client.get("/api/csrf-token")
        assert response.status_code == 200
        token = response.json()["csrfToken"]
        assert len(token) == 64
        assert "expiresAt" in response.json()

        first = client.post("/api/csrf-token/validate", headers={"X-CSRF-Token": token})
        second = client.post("/api/csrf-token/validate", headers={"X-CSRF-Token": token})

        assert first.status_code == 200
        assert first.json() == {"valid": True}
        assert second.status_code == 403
        assert second.json()["error"]["code"] == "FS-CSRF-004"

    def test_validate_accepts_body_token(self, client, as_user):
        as_user("user-1")
        token = client.get("/api/csrf-token").json()["csrfToken"]
        response = client.post("/api/csrf-token/validate", json={"csrf_token": token})
        assert response.status_code == 200

    def test_validate_without_token(self, client, as_user):
        as_user("user-1")
        response = client.post("/api/csrf-token/validate")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "FS-CSRF-001"

    def test_issue_requires_authentication(self, client):
        assert client.get("/api/csrf-token").status_code == 401
