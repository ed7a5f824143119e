"""
tests/test_rate_limit.py — Sliding-Window Rate Limiting Tests
==============================================================
Admin mutations are limited per admin; referral applications per client
IP.  Both return 429 with a consistent error payload.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from conftest import auth, make_admin_token
from fastapi import Request
from sqlalchemy.orm import Session

from lumina.api.deps import client_ip
from lumina.api.rate_limit import (
    ADMIN_SCOPE,
    APPLY_SCOPE,
    SlidingWindowLimiter,
    get_rate_limiter,
    set_rate_limiter,
)
from lumina.database.models import RateLimitEvent


# ---------------------------------------------------------------------------
# Unit tests for the limiter core (DB-backed)
# ---------------------------------------------------------------------------
class TestSlidingWindowLimiter:
    @pytest.fixture(autouse=True)
    def _limiter(self, db_engine):
        self.engine = db_engine
        self.limiter = SlidingWindowLimiter("test", max_requests=5, engine=db_engine)

    def test_allows_requests_within_limit(self):
        for _ in range(5):
            allowed, _ = self.limiter.check("user1")
            assert allowed
            self.limiter.record("user1")

    def test_blocks_after_limit_exceeded(self):
        limiter = SlidingWindowLimiter("test", max_requests=3, engine=self.engine)
        for _ in range(3):
            limiter.record("user1")

        allowed, info = limiter.check("user1")
        assert not allowed
        assert info["remaining"] == 0
        assert 0 < info["reset"] <= 61

    def test_separate_keys_have_separate_limits(self):
        limiter = SlidingWindowLimiter("test", max_requests=2, engine=self.engine)
        limiter.record("user1")
        limiter.record("user1")
        assert not limiter.check("user1")[0]
        assert limiter.check("user2")[0]

    def test_scopes_are_independent(self):
        admin = SlidingWindowLimiter("admin", max_requests=1, engine=self.engine)
        apply = SlidingWindowLimiter("apply", max_requests=1, engine=self.engine)
        admin.record("shared-key")
        assert not admin.check("shared-key")[0]
        assert apply.check("shared-key")[0]

    def test_remaining_count_decreases(self):
        assert self.limiter.check("user1")[1]["remaining"] == 5
        assert self.limiter.record("user1")["remaining"] == 4
        self.limiter.record("user1")
        assert self.limiter.check("user1")[1]["remaining"] == 3

    def test_old_events_fall_out_of_window(self):
        limiter = SlidingWindowLimiter("test", max_requests=2, engine=self.engine)
        stale = datetime.now(UTC) - timedelta(seconds=120)
        with Session(self.engine) as session:
            session.add_all([
                RateLimitEvent(scope="test", key="user1", timestamp=stale),
                RateLimitEvent(scope="test", key="user1", timestamp=stale),
            ])
            session.commit()

        allowed, info = limiter.check("user1")
        assert allowed
        assert info["remaining"] == 2
        with Session(self.engine) as session:
            assert session.query(RateLimitEvent).count() == 0

    def test_reset_clears_specific_key(self):
        limiter = SlidingWindowLimiter("test", max_requests=2, engine=self.engine)
        limiter.record("user1")
        limiter.record("user1")
        limiter.record("user2")

        limiter.reset("user1")

        assert limiter.check("user1")[0]
        assert limiter.check("user2")[1]["remaining"] == 1

    def test_reset_all(self):
        limiter = SlidingWindowLimiter("test", max_requests=1, engine=self.engine)
        limiter.record("user1")
        limiter.record("user2")
        limiter.reset()
        assert limiter.check("user1")[0]
        assert limiter.check("user2")[0]


def test_unconfigured_scope_raises():
    with pytest.raises(RuntimeError, match="not configured"):
        get_rate_limiter("nonexistent")


# ---------------------------------------------------------------------------
# Integration tests with FastAPI TestClient
# ---------------------------------------------------------------------------
class TestAdminRateLimit:
    @pytest.fixture
    def limited(self, api, db_engine):
        limiter = SlidingWindowLimiter(ADMIN_SCOPE, max_requests=3, engine=db_engine)
        set_rate_limiter(limiter)
        return api, limiter

    def _put(self, client, token):
        return client.put(
            "/api/admin/referrals/settings",
            json={"base_reward": 12},
            headers=auth(token),
        )

    def test_get_requests_not_rate_limited(self, limited):
        client, _ = limited
        headers = auth(make_admin_token(sub="admin-123"))
        for _ in range(10):
            assert client.get("/api/admin/referrals/settings", headers=headers).status_code == 200

    def test_returns_429_after_limit(self, limited):
        client, limiter = limited
        token = make_admin_token(sub="admin-123")
        for _ in range(3):
            assert self._put(client, token).status_code == 200

        resp = self._put(client, token)
        assert resp.status_code == 429
        body = resp.json()
        assert body["detail"]["error"] == "rate_limit_exceeded"
        assert "retry_after" in body["detail"]
        assert "Retry-After" in resp.headers

    def test_different_admins_have_separate_limits(self, limited):
        client, limiter = limited
        for _ in range(3):
            limiter.record("admin-123")

        assert self._put(client, make_admin_token(sub="admin-123")).status_code == 429
        assert self._put(client, make_admin_token(sub="admin-456")).status_code == 200


class TestApplyRateLimit:
    @pytest.fixture
    def limiter(self, api):
        return get_rate_limiter(APPLY_SCOPE)

    def _apply(self, client, ip):
        return client.post(
            "/api/referrals/apply",
            json={"referral_code": "NOSUCH00", "user_id": "someone"},
            headers={"X-Forwarded-For": ip},
        )

    def test_ten_per_minute_per_ip(self, api, limiter):
        assert limiter.max_requests == 10
        for _ in range(10):
            assert self._apply(api, "198.51.100.1").status_code == 400

        blocked = self._apply(api, "198.51.100.1")
        assert blocked.status_code == 429
        assert blocked.json()["detail"]["error"] == "rate_limit_exceeded"

        assert self._apply(api, "198.51.100.2").status_code == 400

    def test_public_reads_not_limited(self, api, limiter):
        for _ in range(15):
            assert api.get("/api/referrals/tiers").status_code != 429

    def test_forwarded_for_ignored_from_untrusted_peer(self, api, limiter, monkeypatch):
        monkeypatch.delenv("TRUSTED_PROXIES")
        for i in range(10):
            assert self._apply(api, f"203.0.113.{i}").status_code == 400

        blocked = self._apply(api, "203.0.113.99")
        assert blocked.status_code == 429
        assert not limiter.check("testclient")[0]


# ---------------------------------------------------------------------------
# Client address resolution
# ---------------------------------------------------------------------------
def _request(peer: str, forwarded: str | None = None) -> Request:
    headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded else []
    return Request({"type": "http", "headers": headers, "client": (peer, 4321)})


class TestClientIp:
    def test_untrusted_peer_uses_socket_address(self, monkeypatch):
        monkeypatch.delenv("TRUSTED_PROXIES", raising=False)
        assert client_ip(_request("198.51.100.4", "203.0.113.1")) == "198.51.100.4"

    def test_trusted_proxy_forwards_client(self, monkeypatch):
        monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.2")
        assert client_ip(_request("10.0.0.2", "203.0.113.1")) == "203.0.113.1"

    def test_spoofed_hops_left_of_proxy_are_skipped(self, monkeypatch):
        monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.2, 10.0.0.3")
        forwarded = "1.2.3.4, 203.0.113.1, 10.0.0.3"
        assert client_ip(_request("10.0.0.2", forwarded)) == "203.0.113.1"

    def test_trusted_proxy_without_header(self, monkeypatch):
        monkeypatch.setenv("TRUSTED_PROXIES", "10.0.0.2")
        assert client_ip(_request("10.0.0.2")) == "10.0.0.2"
