from fastapi.testclient import TestClient

from core.db import Database
from core.rate_limit import RateLimiter
from main import create_app


def test_limiter_window():
    limiter = RateLimiter(max_requests=2, window_seconds=60)
    assert limiter.is_allowed("k", now=0) == (True, None)
    assert limiter.is_allowed("k", now=1) == (True, None)
    allowed, reset_in = limiter.is_allowed("k", now=2)
    assert allowed is False
    assert reset_in == 58
    # old hits fall out of the window
    assert limiter.is_allowed("k", now=61)[0] is True
    assert limiter.is_allowed("other", now=2)[0] is True


def test_middleware_returns_429(settings):
    settings.rate_limit_max_requests = 2
    app = create_app(settings=settings, database=Database("sqlite://"))
    with TestClient(app) as client:
        assert client.get("/api/programs").status_code == 200
        assert client.get("/api/programs").status_code == 200
        limited = client.get("/api/programs")
        assert limited.status_code == 429
        assert limited.headers["X-RateLimit-Remaining"] == "0"
        # health checks are never limited
        assert client.get("/api/health").status_code == 200
