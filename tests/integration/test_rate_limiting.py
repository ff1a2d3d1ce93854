from fastapi import Depends, FastAPI, Request
from fastapi.testclient import TestClient

from bouncer.middleware.rate_limit_dependencies import rate_limit_client
from bouncer.middleware.rate_limit_headers import RateLimitHeadersMiddleware
from bouncer.middleware.rate_limiter import rate_limiter


def test_rate_limit_headers_middleware():
    app = FastAPI()
    app.add_middleware(RateLimitHeadersMiddleware)

    @app.get("/limited")
    async def limited(request: Request):
        request.state.rate_limit_info = {
            "allowed": True,
            "limit": 10,
            "remaining": 9,
            "reset_time": "2030-01-01T00:00:00+00:00",
            "retry_after": 0,
        }
        return {"ok": True}

    client = TestClient(app)
    response = client.get("/limited")

    assert response.status_code == 200
    assert response.headers["X-RateLimit-Limit"] == "10"
    assert response.headers["X-RateLimit-Remaining"] == "9"
    assert response.headers["X-RateLimit-Reset"] == "1893456000"
    assert "Retry-After" not in response.headers


def test_responses_without_rate_limit_info_are_untouched():
    app = FastAPI()
    app.add_middleware(RateLimitHeadersMiddleware)

    @app.get("/open")
    async def open_route():
        return {"ok": True}

    response = TestClient(app).get("/open")

    assert "X-RateLimit-Limit" not in response.headers


def _limited_app():
    app = FastAPI()
    app.add_middleware(RateLimitHeadersMiddleware)

    @app.get("/limited")
    async def limited(_rate: None = Depends(rate_limit_client)):
        return {"ok": True}

    return app


def test_rate_limit_dependency_blocks_after_limit(monkeypatch, fake_redis):
    monkeypatch.setattr(rate_limiter, "store", fake_redis)
    monkeypatch.setattr("bouncer.middleware.rate_limit_dependencies.settings.RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr("bouncer.middleware.rate_limit_dependencies.settings.RATE_LIMIT_API_MAX", 2)

    client = TestClient(_limited_app())
    headers = {"User-Agent": "pytest"}

    first = client.get("/limited", headers=headers)
    second = client.get("/limited", headers=headers)
    third = client.get("/limited", headers=headers)

    assert [r.status_code for r in (first, second, third)] == [200, 200, 429]
    assert first.headers["X-RateLimit-Remaining"] == "1"
    assert second.headers["X-RateLimit-Remaining"] == "0"
    assert int(third.headers["Retry-After"]) >= 1
    assert third.headers["X-RateLimit-Remaining"] == "0"
    assert third.json()["detail"]["error"] == "rate_limit_exceeded"


def test_rate_limit_is_per_forwarded_client(monkeypatch, fake_redis):
    monkeypatch.setattr(rate_limiter, "store", fake_redis)
    monkeypatch.setattr("bouncer.middleware.rate_limit_dependencies.settings.RATE_LIMIT_ENABLED", True)
    monkeypatch.setattr("bouncer.middleware.rate_limit_dependencies.settings.RATE_LIMIT_API_MAX", 1)

    client = TestClient(_limited_app())

    assert client.get("/limited", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 200
    assert client.get("/limited", headers={"X-Forwarded-For": "10.0.0.1"}).status_code == 429
    assert client.get("/limited", headers={"X-Forwarded-For": "10.0.0.2, 10.0.0.9"}).status_code == 200


def test_limiter_outage_fails_open(monkeypatch, fake_redis):
    fake_redis.available = False
    monkeypatch.setattr(rate_limiter, "store", fake_redis)
    monkeypatch.setattr(rate_limiter, "fail_open", True)
    monkeypatch.setattr("bouncer.middleware.rate_limit_dependencies.settings.RATE_LIMIT_ENABLED", True)

    response = TestClient(_limited_app()).get("/limited")

    assert response.status_code == 200


def test_disabled_rate_limiting_skips_the_check(monkeypatch, fake_redis):
    monkeypatch.setattr(rate_limiter, "store", fake_redis)
    monkeypatch.setattr("bouncer.middleware.rate_limit_dependencies.settings.RATE_LIMIT_ENABLED", False)

    response = TestClient(_limited_app()).get("/limited")

    assert response.status_code == 200
    assert fake_redis.store == {}
    assert "X-RateLimit-Limit" not in response.headers
