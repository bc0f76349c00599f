import os
import math
import time
import logging
import functools
import threading
from collections import deque
from typing import Callable, Optional

from flask import request

from shared.errors import APIError

logger = logging.getLogger(__name__)


class _RateLimiter:
    """In-memory sliding-window rate limiter.

    Counters live in process memory, so limits apply per worker.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._hits = {}  # key -> deque[timestamps]

    def hit(self, key: str, max_calls: int, period_sec: int) -> float:
        """Record a call. Returns 0 when allowed, else seconds until a slot frees."""
        now = time.monotonic()
        with self._lock:
            dq = self._hits.setdefault(key, deque())
            while dq and dq[0] <= now - period_sec:
                dq.popleft()
            if len(dq) >= max_calls:
                return dq[0] + period_sec - now
            dq.append(now)
            return 0.0

    def clear(self):
        with self._lock:
            self._hits.clear()


_limiter = _RateLimiter()


def _client_ip() -> str:
    # Prefer X-Forwarded-For when present (use first hop)
    fwd = request.headers.get('X-Forwarded-For')
    if fwd:
        return fwd.split(',')[0].strip()
    return request.remote_addr or 'unknown'


def rate_limit(max_calls: int, period_sec: int, key: Optional[str | Callable[[], str]] = 'ip'):
    """Decorator to rate-limit a route.

    - key='ip': limits per client IP
    - key='user': limits per authenticated subject (falls back to IP when the
      route is not wrapped by an auth decorator)
    - key=callable: custom function returning a string key

    Active only when ``RATE_LIMIT_ENABLED=1``.
    """
    def deco(fn):
        def _compute_key():
            ep = (getattr(request, 'endpoint', None) or request.path or 'unknown')
            if callable(key):
                return f"{ep}:{key()}"
            if key == 'user':
                info = getattr(request, '_auth', None) or {}
                uid = info.get('sub')
                if uid is not None:
                    return f"{ep}:user:{info.get('role')}:{uid}"
            return f"{ep}:ip:{_client_ip()}"

        @functools.wraps(fn)
        def wrapper(*a, **kw):
            if os.getenv('RATE_LIMIT_ENABLED', '0') != '1':
                return fn(*a, **kw)
            k = _compute_key()
            wait = _limiter.hit(k, max_calls, period_sec)
            if wait:
                logger.warning("rate limit exceeded for %s", k)
                raise APIError('too many requests', status=429, code='rate_limited',
                               extra={'retry_after': max(1, math.ceil(wait))})
            return fn(*a, **kw)
        return wrapper

    return deco


def reset_rate_limiter():
    """Testing helper: clear in-memory counters."""
    _limiter.clear()
