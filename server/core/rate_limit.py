"""
Rate Limiting 미들웨어
- IP 및 사용자별 제한 (메모리 기반, 참고용 카운터)
"""
import time
from collections import defaultdict
from typing import Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from core.auth import decode_access_token

# 헬스체크/문서/웹훅은 제외
EXCLUDED_PATHS = ("/", "/api/health", "/docs", "/openapi.json", "/redoc")
EXCLUDED_PREFIXES = ("/api/webhooks/",)


class RateLimiter:
    """간단한 메모리 기반 Rate Limiter (프로세스 단위)"""

    def __init__(self, max_requests: int = 1000, window_seconds: int = 3600):
        self.requests: dict[str, list[float]] = defaultdict(list)
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    def is_allowed(self, key: str, now: Optional[float] = None) -> tuple[bool, Optional[int]]:
        """요청이 허용되는지 확인. Returns (allowed, seconds_until_reset)"""
        now = time.time() if now is None else now
        window_start = now - self.window_seconds

        # 오래된 요청 제거
        self.requests[key] = [t for t in self.requests[key] if t > window_start]

        if len(self.requests[key]) >= self.max_requests:
            oldest = min(self.requests[key])
            return False, max(1, int(oldest + self.window_seconds - now))

        self.requests[key].append(now)
        return True, None

    def remaining(self, key: str) -> int:
        return max(0, self.max_requests - len(self.requests[key]))


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Rate Limiting 미들웨어"""

    def __init__(self, app, max_requests: int = 1000, window_seconds: int = 3600):
        super().__init__(app)
        self.rate_limiter = RateLimiter(max_requests, window_seconds)

    def _key_for(self, request: Request) -> str:
        client_ip = request.client.host if request.client else "unknown"
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            payload = decode_access_token(auth_header.split(" ", 1)[1], request.app.state.settings)
            if payload and payload.get("sub"):
                return f"{payload['sub']}:{client_ip}"
        return f"anon:{client_ip}"

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in EXCLUDED_PATHS or path.startswith(EXCLUDED_PREFIXES):
            return await call_next(request)

        key = self._key_for(request)
        allowed, reset_in = self.rate_limiter.is_allowed(key)
        limit = str(self.rate_limiter.max_requests)

        if not allowed:
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"error": "rate_limited", "detail": f"Rate limit exceeded. Try again in {reset_in} seconds."},
                headers={
                    "X-RateLimit-Limit": limit,
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": str(int(time.time()) + reset_in),
                    "Retry-After": str(reset_in),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = limit
        response.headers["X-RateLimit-Remaining"] = str(self.rate_limiter.remaining(key))
        response.headers["X-RateLimit-Reset"] = str(int(time.time()) + self.rate_limiter.window_seconds)
        return response
