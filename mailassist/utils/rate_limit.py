"""
内存限流中间件（固定窗口）
进程重启即清零，多实例之间不共享，只做尽力而为的保护
"""
import os
import random
import time
from math import ceil
from threading import Lock

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from mailassist.utils.helpers import client_ip
from mailassist.utils.logger import get_logger

logger = get_logger("rate_limit")

WINDOW_MS = int(os.getenv("RATE_LIMIT_WINDOW_MS", "900000"))  # 15分钟
MAX_REQUESTS = int(os.getenv("RATE_LIMIT_MAX_REQUESTS", "100"))


class RateLimiter:

    def __init__(self, max_requests: int = MAX_REQUESTS, window_ms: int = WINDOW_MS):
        self.max_requests = max_requests
        self.window_ms = window_ms
        self._records = {}
        self._lock = Lock()

    def check(self, identifier: str, now_ms: int = None) -> dict:
        now_ms = now_ms if now_ms is not None else int(time.time() * 1000)
        with self._lock:
            record = self._records.get(identifier)
            if record is None or now_ms > record["reset_time"]:
                record = {"count": 0, "reset_time": now_ms + self.window_ms}
                self._records[identifier] = record

            record["count"] += 1
            allowed = record["count"] <= self.max_requests

            # 约10%的请求顺带清理过期窗口
            if random.random() < 0.1:
                self._cleanup(now_ms)

        return {
            "allowed": allowed,
            "remaining": max(0, self.max_requests - record["count"]),
            "reset_time": record["reset_time"],
            "retry_after": 0 if allowed else ceil((record["reset_time"] - now_ms) / 1000),
        }

    def _cleanup(self, now_ms: int):
        expired = [key for key, record in self._records.items() if now_ms > record["reset_time"]]
        for key in expired:
            del self._records[key]

    def reset(self):
        with self._lock:
            self._records.clear()


class RateLimitMiddleware(BaseHTTPMiddleware):

    def __init__(self, app, limiter: RateLimiter = None, path_prefix: str = "/api"):
        super().__init__(app)
        self.limiter = limiter or RateLimiter()
        self.path_prefix = path_prefix

    async def dispatch(self, request: Request, call_next):
        if request.method == "OPTIONS" or not request.url.path.startswith(self.path_prefix):
            return await call_next(request)

        identifier = client_ip(request)
        result = self.limiter.check(identifier)
        headers = {
            "X-RateLimit-Limit": str(self.limiter.max_requests),
            "X-RateLimit-Remaining": str(result["remaining"]),
            "X-RateLimit-Reset": str(result["reset_time"]),
        }

        if not result["allowed"]:
            logger.info(f"请求过于频繁: {identifier} {request.method} {request.url.path}")
            headers["Retry-After"] = str(result["retry_after"])
            return JSONResponse(
                status_code=429,
                headers=headers,
                content={
                    "success": False,
                    "message": "请求过于频繁，请稍后再试",
                    "retryAfter": result["retry_after"],
                },
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response
