"""Tests for the rate limiting guard (tracker strategy + limiter composition)."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import MagicMock

import httpx
import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from app.adapters.rate_limit.in_memory import InMemoryFixedWindowRateLimiter
from app.adapters.rate_limit.redis_backend import RedisFixedWindowRateLimiter
from app.core import rate_limit as rate_limit_module
from app.core.exception_handlers import setup_exception_handlers
from app.core.identity import user_identity_middleware
from app.core.rate_limit import RateLimitGuard, build_rate_limit_headers, hash_tracker_key
from app.core.tracker import RequestIdentity


@pytest.fixture
def limiter() -> InMemoryFixedWindowRateLimiter:
    return InMemoryFixedWindowRateLimiter(limit=2, window_seconds=60, clock=lambda: 1000.0)


@pytest.fixture
def rate_limit_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(rate_limit_module.settings.app, "rate_limit_enabled", True)
    monkeypatch.setattr(rate_limit_module.settings.app, "rate_limit_include_headers", True)
    monkeypatch.setattr(rate_limit_module.settings.app, "trust_proxy_headers", False)
    monkeypatch.setattr(rate_limit_module.settings.app, "rate_limit_anonymous_requests", None)


def _remaining(limiter: InMemoryFixedWindowRateLimiter, key: str) -> int:
    return asyncio.run(limiter.peek(key)).remaining


def _build_app(guard: RateLimitGuard) -> FastAPI:
    app = FastAPI()
    app.middleware("http")(user_identity_middleware)
    setup_exception_handlers(app)

    @app.get("/limited", dependencies=[Depends(guard)])
    async def limited(request: Request) -> dict:
        return {"ok": True, "tracker_key": getattr(request.state, "tracker_key", None)}

    return app


class TestRateLimitGuard:
    def test_allows_and_sets_headers(self, limiter, rate_limit_settings) -> None:
        client = TestClient(_build_app(RateLimitGuard(limiter_provider=lambda: limiter)))

        response = client.get("/limited")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "1"
        assert response.headers["X-RateLimit-Reset"] == "1020"
        assert "Retry-After" not in response.headers

    def test_blocks_with_429_after_limit(self, limiter, rate_limit_settings) -> None:
        client = TestClient(_build_app(RateLimitGuard(limiter_provider=lambda: limiter)))

        client.get("/limited")
        client.get("/limited")
        blocked = client.get("/limited")

        assert blocked.status_code == 429
        body = blocked.json()
        assert body["error"]["code"] == "rate_limit_exceeded"
        assert body["error"]["details"]["retry_after"] == 20
        assert blocked.headers["Retry-After"] == "20"
        assert blocked.headers["X-RateLimit-Remaining"] == "0"

    def test_headers_can_be_disabled(self, limiter, rate_limit_settings, monkeypatch) -> None:
        monkeypatch.setattr(rate_limit_module.settings.app, "rate_limit_include_headers", False)
        client = TestClient(_build_app(RateLimitGuard(limiter_provider=lambda: limiter)))

        client.get("/limited")
        client.get("/limited")
        blocked = client.get("/limited")

        assert blocked.status_code == 429
        assert "Retry-After" not in blocked.headers
        assert "X-RateLimit-Limit" not in blocked.headers

    def test_disabled_guard_never_consumes(self, limiter, monkeypatch) -> None:
        monkeypatch.setattr(rate_limit_module.settings.app, "rate_limit_enabled", False)
        client = TestClient(_build_app(RateLimitGuard(limiter_provider=lambda: limiter)))

        for _ in range(5):
            assert client.get("/limited").status_code == 200
        assert len(limiter) == 0

    def test_injected_strategy_decides_the_bucket(self, limiter, rate_limit_settings) -> None:
        seen: list[RequestIdentity] = []

        def per_route_tracker(identity: RequestIdentity) -> str:
            seen.append(identity)
            return "tenant:acme"

        client = TestClient(
            _build_app(RateLimitGuard(tracker=per_route_tracker, limiter_provider=lambda: limiter))
        )
        client.get("/limited")

        assert _remaining(limiter, "tenant:acme") == 1
        assert seen[0].remote_address == "testclient"

    def test_failing_strategy_degrades_to_unknown_bucket(self, limiter, rate_limit_settings) -> None:
        def broken_tracker(identity: RequestIdentity) -> str:
            raise RuntimeError("tracker backend offline")

        client = TestClient(
            _build_app(RateLimitGuard(tracker=broken_tracker, limiter_provider=lambda: limiter))
        )

        assert client.get("/limited").status_code == 200
        assert _remaining(limiter, "unknown") == 1

    @pytest.mark.parametrize("bad_key", ["", None, 42])
    def test_invalid_strategy_result_degrades_to_unknown_bucket(
        self, limiter, rate_limit_settings, bad_key
    ) -> None:
        guard = RateLimitGuard(tracker=lambda identity: bad_key, limiter_provider=lambda: limiter)
        client = TestClient(_build_app(guard))

        assert client.get("/limited").status_code == 200
        assert _remaining(limiter, "unknown") == 1

    def test_default_guard_uses_module_limiter(self, limiter, rate_limit_settings, monkeypatch) -> None:
        monkeypatch.setattr(rate_limit_module, "get_rate_limiter", lambda: limiter)
        client = TestClient(_build_app(RateLimitGuard()))

        client.get("/limited")

        assert _remaining(limiter, "testclient") == 1


class TestTrackerSelectionEndToEnd:
    def test_authenticated_users_have_independent_quotas(
        self, limiter, rate_limit_settings, monkeypatch
    ) -> None:
        monkeypatch.setattr(rate_limit_module.settings.app, "trust_user_id_header", True)
        client = TestClient(_build_app(RateLimitGuard(limiter_provider=lambda: limiter)))

        alice = {"X-User-Id": "alice"}
        bob = {"X-User-Id": "bob"}

        assert client.get("/limited", headers=alice).status_code == 200
        assert client.get("/limited", headers=alice).status_code == 200
        assert client.get("/limited", headers=alice).status_code == 429

        # Same address, different user -> separate bucket
        assert client.get("/limited", headers=bob).status_code == 200
        # Anonymous traffic from the same address is tracked separately too
        assert client.get("/limited").status_code == 200
        assert _remaining(limiter, "user:alice") == 0
        assert _remaining(limiter, "testclient") == 1

    def test_untrusted_user_header_is_ignored(self, limiter, rate_limit_settings, monkeypatch) -> None:
        monkeypatch.setattr(rate_limit_module.settings.app, "trust_user_id_header", False)
        client = TestClient(_build_app(RateLimitGuard(limiter_provider=lambda: limiter)))

        client.get("/limited", headers={"X-User-Id": "alice"})

        assert _remaining(limiter, "user:alice") == 2
        assert _remaining(limiter, "testclient") == 1

    def test_forwarded_address_used_when_proxy_trusted(
        self, limiter, rate_limit_settings, monkeypatch
    ) -> None:
        monkeypatch.setattr(rate_limit_module.settings.app, "trust_proxy_headers", True)
        client = TestClient(_build_app(RateLimitGuard(limiter_provider=lambda: limiter)))

        client.get("/limited", headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})
        client.get("/limited", headers={"X-Forwarded-For": "198.51.100.2"})

        assert _remaining(limiter, "203.0.113.7") == 1
        assert _remaining(limiter, "198.51.100.2") == 1
        assert _remaining(limiter, "testclient") == 2

    def test_forwarded_address_ignored_by_default(self, limiter, rate_limit_settings) -> None:
        client = TestClient(_build_app(RateLimitGuard(limiter_provider=lambda: limiter)))

        client.get("/limited", headers={"X-Forwarded-For": "203.0.113.7"})
        client.get("/limited", headers={"X-Forwarded-For": "198.51.100.2"})

        # Rotating a client-controlled header does not buy a fresh bucket
        assert client.get("/limited", headers={"X-Forwarded-For": "192.0.2.1"}).status_code == 429


def test_hash_tracker_key_is_stable_and_opaque() -> None:
    hashed = hash_tracker_key("user:42")

    assert hashed == hash_tracker_key("user:42")
    assert hashed != hash_tracker_key("user:43")
    assert "user" not in hashed
    assert len(hashed) == 16


@pytest.mark.asyncio
async def test_build_rate_limit_headers_adds_retry_after_only_when_blocked(limiter) -> None:
    allowed = await limiter.consume("k")
    await limiter.consume("k")
    blocked = await limiter.consume("k")

    assert "Retry-After" not in build_rate_limit_headers(allowed)
    assert build_rate_limit_headers(blocked)["Retry-After"] == "20"


@pytest.mark.asyncio
async def test_guard_call_raises_rate_limit_error(limiter, rate_limit_settings) -> None:
    from fastapi import Response
    from starlette.requests import Request

    from app.core.errors import RateLimitAppError

    guard = RateLimitGuard(limiter_provider=lambda: limiter)
    request = Request(
        {
            "type": "http",
            "method": "GET",
            "path": "/limited",
            "query_string": b"",
            "headers": [],
            "client": ("192.0.2.10", 40000),
        }
    )

    await guard(request, Response())
    await guard(request, Response())
    with pytest.raises(RateLimitAppError) as exc_info:
        await guard(request, Response())

    assert exc_info.value.headers["Retry-After"] == "20"
    assert (await limiter.peek("192.0.2.10")).remaining == 0


class TestAnonymousBudget:
    def test_anonymous_keys_get_their_own_limit(self, rate_limit_settings, monkeypatch) -> None:
        limiter = InMemoryFixedWindowRateLimiter(limit=3, window_seconds=60, clock=lambda: 1000.0)
        monkeypatch.setattr(rate_limit_module.settings.app, "trust_user_id_header", True)
        monkeypatch.setattr(rate_limit_module.settings.app, "rate_limit_anonymous_requests", 1)
        client = TestClient(_build_app(RateLimitGuard(limiter_provider=lambda: limiter)))

        anonymous = client.get("/limited")
        assert anonymous.status_code == 200
        assert anonymous.headers["X-RateLimit-Limit"] == "1"
        assert client.get("/limited").status_code == 429

        alice = {"X-User-Id": "alice"}
        for _ in range(3):
            response = client.get("/limited", headers=alice)
            assert response.status_code == 200
            assert response.headers["X-RateLimit-Limit"] == "3"
        assert client.get("/limited", headers=alice).status_code == 429

    def test_unknown_bucket_uses_anonymous_limit(self, limiter, rate_limit_settings, monkeypatch) -> None:
        monkeypatch.setattr(rate_limit_module.settings.app, "rate_limit_anonymous_requests", 1)
        guard = RateLimitGuard(
            tracker=lambda identity: "unknown",
            limiter_provider=lambda: limiter,
        )
        client = TestClient(_build_app(guard))

        assert client.get("/limited").status_code == 200
        assert client.get("/limited").status_code == 429

    def test_unset_anonymous_limit_keeps_limiter_default(self, limiter, rate_limit_settings) -> None:
        client = TestClient(_build_app(RateLimitGuard(limiter_provider=lambda: limiter)))

        assert client.get("/limited").headers["X-RateLimit-Limit"] == "2"

    @pytest.mark.parametrize(
        ("key", "expected"),
        [("user:42", None), ("203.0.113.7", 7), ("unknown", 7)],
    )
    def test_limit_for_key(self, monkeypatch, key, expected) -> None:
        monkeypatch.setattr(rate_limit_module.settings.app, "rate_limit_anonymous_requests", 7)

        assert RateLimitGuard.limit_for_key(key) == expected


class TestResolvedKeyReuse:
    def test_charged_key_is_stored_on_request_state(self, limiter, rate_limit_settings) -> None:
        client = TestClient(_build_app(RateLimitGuard(limiter_provider=lambda: limiter)))

        assert client.get("/limited").json()["tracker_key"] == "testclient"

    def test_disabled_guard_leaves_state_untouched(self, limiter, monkeypatch) -> None:
        monkeypatch.setattr(rate_limit_module.settings.app, "rate_limit_enabled", False)
        client = TestClient(_build_app(RateLimitGuard(limiter_provider=lambda: limiter)))

        assert client.get("/limited").json()["tracker_key"] is None

    def test_key_for_runs_strategy_once(self, limiter, rate_limit_settings) -> None:
        calls: list[RequestIdentity] = []

        def counting_tracker(identity: RequestIdentity) -> str:
            calls.append(identity)
            return "tenant:acme"

        guard = RateLimitGuard(tracker=counting_tracker, limiter_provider=lambda: limiter)
        app = _build_app(guard)

        @app.get("/key", dependencies=[Depends(guard)])
        async def key(request: Request) -> dict:
            return {"key": guard.key_for(request)}

        assert TestClient(app).get("/key").json() == {"key": "tenant:acme"}
        assert len(calls) == 1


class _SlowPipeline:
    """asyncio Redis pipeline stand-in whose round trip takes ``delay`` seconds."""

    def __init__(self, delay: float) -> None:
        self.delay = delay

    async def __aenter__(self) -> "_SlowPipeline":
        return self

    async def __aexit__(self, *exc_info) -> bool:
        return False

    def incrby(self, key: str, amount: int) -> "_SlowPipeline":
        return self

    def expire(self, key: str, seconds: int) -> "_SlowPipeline":
        return self

    async def execute(self) -> list:
        await asyncio.sleep(self.delay)
        return [1, True]


@pytest.mark.asyncio
async def test_slow_redis_does_not_serialize_requests(rate_limit_settings) -> None:
    client = MagicMock()
    client.pipeline.side_effect = lambda transaction=True: _SlowPipeline(0.5)
    limiter = RedisFixedWindowRateLimiter(client, limit=10, window_seconds=60, operation_timeout=2.0)
    app = _build_app(RateLimitGuard(limiter_provider=lambda: limiter))

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway") as http:
        start = time.perf_counter()
        responses = await asyncio.gather(http.get("/limited"), http.get("/limited"))
        total = time.perf_counter() - start

    assert [r.status_code for r in responses] == [200, 200]
    # Two blocking round trips would take at least 1s
    assert total < 0.8


@pytest.mark.asyncio
async def test_hung_redis_fails_open_through_the_guard(rate_limit_settings) -> None:
    client = MagicMock()
    client.pipeline.side_effect = lambda transaction=True: _SlowPipeline(30.0)
    limiter = RedisFixedWindowRateLimiter(client, limit=1, window_seconds=60, operation_timeout=0.05)
    app = _build_app(RateLimitGuard(limiter_provider=lambda: limiter))

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://gateway") as http:
        response = await http.get("/limited")

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Remaining"] == "1"
