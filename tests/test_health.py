"""
Tests for the root/health endpoints, error shapes, sessions and the tour sweep task.
"""
import logging

import pytest
from sqlalchemy import func, select

from app.db import connection
from app.db.models import User
from app.main import SensitiveDataFilter
from app.services.tour_scheduler import run_tour_check
from tests.conftest import make_user


class TestHealth:
    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["app"] == "Sol Numérique"
        assert response.json()["status"] == "running"

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_database_health(self, client):
        response = client.get("/health/db")

        assert response.status_code == 200

    def test_unknown_route(self, client):
        response = client.get("/api/does-not-exist")

        assert response.status_code == 404
        assert response.json() == {"error": "Route not found"}


class TestSensitiveDataFilter:
    def _filtered(self, msg: str) -> str:
        record = logging.LogRecord("test", logging.INFO, __file__, 1, msg, None, None)
        SensitiveDataFilter().filter(record)
        return record.msg

    def test_redacts_jwt(self):
        msg = self._filtered("token eyJhbGciOiJIUzI1NiJ9.eyJzdWIiOiIxIn0.abc123 issued")

        assert "[JWT_REDACTED]" in msg
        assert "eyJ" not in msg

    def test_redacts_stripe_keys(self):
        msg = self._filtered("using sk_test_abcdefgh12345678")

        assert msg == "using [STRIPE_KEY_REDACTED]"

    def test_masks_account_numbers(self):
        msg = self._filtered("payout to HT7600012345678901234")

        assert "****1234" in msg
        assert "HT76000" not in msg


class TestTourScheduler:
    @pytest.mark.asyncio
    async def test_sweep_requires_database(self, monkeypatch):
        monkeypatch.setattr(connection, "async_session_maker", None)

        with pytest.raises(RuntimeError):
            await run_tour_check()

    @pytest.mark.asyncio
    async def test_sweep_on_empty_database(self, test_db, monkeypatch):
        monkeypatch.setattr(connection, "async_session_maker", test_db)

        summary = await run_tour_check()

        assert summary["checked"] == 0
        assert summary["advanced"] == 0


class TestSessionScope:
    @pytest.mark.asyncio
    async def test_commits_on_success(self, test_db, monkeypatch):
        monkeypatch.setattr(connection, "async_session_maker", test_db)

        async with connection.session_scope() as db:
            await make_user(db, "kept@example.com")

        async with test_db() as db:
            assert await db.scalar(select(func.count(User.id))) == 1

    @pytest.mark.asyncio
    async def test_rolls_back_when_block_raises(self, test_db, monkeypatch):
        monkeypatch.setattr(connection, "async_session_maker", test_db)

        with pytest.raises(ValueError):
            async with connection.session_scope() as db:
                await make_user(db, "dropped@example.com")
                raise ValueError("payout failed")

        async with test_db() as db:
            assert await db.scalar(select(func.count(User.id))) == 0
