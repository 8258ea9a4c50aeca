"""
Request Rate Limiter
Owner: CC1
Domain: Abuse protection for billing and auth endpoints

Fixed-window-by-reset counter keyed by route class + caller identity.
The window restarts hard once it elapses instead of decaying, which
under-blocks slightly at window edges in exchange for O(1) memory and
O(1) work per request.

Counter stores:
- MemoryCounterStore: per-process, per-key locks, opportunistic sweep
- RedisCounterStore: shared across processes/workers
"""

import math
import os
import sys
import threading
import time
from functools import wraps
from typing import Optional, Tuple, Dict, NamedTuple

from flask import request, jsonify, g

RATE_LIMIT_ENABLED = os.environ.get('RATE_LIMIT_ENABLED', 'true').lower() == 'true'
RATE_LIMIT_REDIS_URL = os.environ.get('RATE_LIMIT_REDIS_URL')
RATE_LIMIT_SWEEP_INTERVAL_MS = 60000
# Proxies in front of the app that append to X-Forwarded-For. 0 trusts the first hop.
RATE_LIMIT_TRUSTED_PROXY_HOPS = int(os.environ.get('RATE_LIMIT_TRUSTED_PROXY_HOPS', 0))

# Presets per route sensitivity class: (window_ms, max_requests, message)
RATE_LIMITS: Dict[str, Dict] = {
    # Unauthenticated endpoints (signup, public forms)
    'public': {
        'window_ms': int(os.environ.get('RATE_LIMIT_PUBLIC_WINDOW_MS', 60000)),
        'max': int(os.environ.get('RATE_LIMIT_PUBLIC_MAX', 10)),
        'message': 'Too many requests. Please wait a moment before trying again.',
    },
    'authenticated': {
        'window_ms': int(os.environ.get('RATE_LIMIT_AUTH_WINDOW_MS', 60000)),
        'max': int(os.environ.get('RATE_LIMIT_AUTH_MAX', 60)),
        'message': 'Request limit exceeded. Please slow down.',
    },
    # Money-moving endpoints (checkout, plan change, portal)
    'strict': {
        'window_ms': int(os.environ.get('RATE_LIMIT_STRICT_WINDOW_MS', 300000)),
        'max': int(os.environ.get('RATE_LIMIT_STRICT_MAX', 5)),
        'message': 'Too many attempts. Please wait before trying again.',
    },
}


class RateLimitDecision(NamedTuple):
    allowed: bool
    retry_after_seconds: int
    limit: int
    remaining: int
    reset_at_ms: int


def _now_ms() -> int:
    return int(time.time() * 1000)


class _Entry:
    __slots__ = ('count', 'reset_at', 'lock', 'dead')

    def __init__(self):
        self.count = 0
        self.reset_at = 0
        self.lock = threading.Lock()
        self.dead = False


class MemoryCounterStore:
    """
    Process-local counter store.

    Each key has its own lock, so requests for different callers never
    contend. Limits are per process, which is fine for abuse deterrence
    but not for hard quotas.
    """

    def __init__(self, sweep_interval_ms: int = RATE_LIMIT_SWEEP_INTERVAL_MS):
        self._entries: Dict[str, _Entry] = {}
        self._sweep_interval_ms = sweep_interval_ms
        self._sweep_lock = threading.Lock()
        self._last_sweep = _now_ms()

    def hit(self, key: str, window_ms: int, now_ms: int) -> Tuple[int, int]:
        """
        Count one request against a key.

        Args:
            key: Namespaced rate limit key
            window_ms: Window length in milliseconds
            now_ms: Current time in epoch milliseconds

        Returns:
            Tuple of (count in current window, reset_at in epoch ms)
        """
        self._maybe_sweep(now_ms)

        while True:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries.setdefault(key, _Entry())
            with entry.lock:
                if entry.dead:
                    # Swept between lookup and lock; pick up the replacement
                    continue
                if entry.count == 0 or now_ms > entry.reset_at:
                    entry.count = 1
                    entry.reset_at = now_ms + window_ms
                else:
                    entry.count += 1
                return entry.count, entry.reset_at

    def _maybe_sweep(self, now_ms: int) -> None:
        if now_ms - self._last_sweep < self._sweep_interval_ms:
            return
        # Another request is already sweeping
        if not self._sweep_lock.acquire(blocking=False):
            return
        try:
            self._last_sweep = now_ms
            self.sweep(now_ms)
        finally:
            self._sweep_lock.release()

    def sweep(self, now_ms: int) -> int:
        """Drop entries whose window has elapsed. Returns how many were removed."""
        removed = 0
        for key, entry in list(self._entries.items()):
            # Skip keys a request is currently updating
            if not entry.lock.acquire(blocking=False):
                continue
            try:
                if entry.reset_at < now_ms and self._entries.get(key) is entry:
                    entry.dead = True
                    del self._entries[key]
                    removed += 1
            finally:
                entry.lock.release()
        return removed

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            self._entries.clear()
        else:
            self._entries.pop(key, None)

    def __len__(self) -> int:
        return len(self._entries)


class RedisCounterStore:
    """
    Shared counter store for multi-process deployments.

    SET NX PX starts a window only when none is live, INCR keeps the TTL,
    and the MULTI/EXEC pipeline makes the three steps one critical section.
    Redis expiry does the garbage collection.
    """

    def __init__(self, client, prefix: str = 'ratelimit:'):
        self._client = client
        self._prefix = prefix

    def hit(self, key: str, window_ms: int, now_ms: int) -> Tuple[int, int]:
        redis_key = self._prefix + key
        pipe = self._client.pipeline(transaction=True)
        pipe.set(redis_key, 0, px=window_ms, nx=True)
        pipe.incr(redis_key)
        pipe.pttl(redis_key)
        _, count, ttl_ms = pipe.execute()
        if ttl_ms is None or ttl_ms < 0:
            ttl_ms = window_ms
        return int(count), now_ms + int(ttl_ms)

    def reset(self, key: Optional[str] = None) -> None:
        if key is None:
            for redis_key in self._client.scan_iter(match=self._prefix + '*'):
                self._client.delete(redis_key)
        else:
            self._client.delete(self._prefix + key)


class RateLimiter:
    """Window check on top of any counter store."""

    def __init__(self, store=None):
        self.store = store if store is not None else MemoryCounterStore()

    def check(
        self,
        identity: str,
        route_class: str,
        window_ms: int,
        max_requests: int,
        now_ms: Optional[int] = None
    ) -> RateLimitDecision:
        """
        Count a request and decide whether it may proceed.

        Args:
            identity: Caller identity (client IP)
            route_class: Namespace so one endpoint's budget never consumes another's
            window_ms: Window length in milliseconds
            max_requests: Requests allowed per window
            now_ms: Current time in epoch ms, defaults to wall clock

        Returns:
            RateLimitDecision
        """
        if now_ms is None:
            now_ms = _now_ms()
        key = f'{route_class}:{identity}'
        count, reset_at = self.store.hit(key, window_ms, now_ms)

        if count > max_requests:
            retry_after = max(0, math.ceil((reset_at - now_ms) / 1000))
            return RateLimitDecision(False, retry_after, max_requests, 0, reset_at)

        return RateLimitDecision(True, 0, max_requests, max_requests - count, reset_at)


def get_client_identifier(req=None, trusted_hops: Optional[int] = None) -> str:
    """
    Caller identity for rate limiting.

    X-Forwarded-For, then X-Real-IP, then the socket address. Never taken
    from the request body.

    Args:
        req: Flask request (defaults to the current one)
        trusted_hops: Number of proxies that append to X-Forwarded-For. When
            set, the address those proxies saw is used instead of the
            client-controlled first hop. Defaults to RATE_LIMIT_TRUSTED_PROXY_HOPS.
    """
    req = req or request
    if trusted_hops is None:
        trusted_hops = RATE_LIMIT_TRUSTED_PROXY_HOPS
    hops = [h.strip() for h in req.headers.get('X-Forwarded-For', '').split(',') if h.strip()]
    if hops:
        if trusted_hops > 0:
            return hops[max(0, len(hops) - trusted_hops)]
        return hops[0]
    real_ip = req.headers.get('X-Real-IP', '').strip()
    if real_ip:
        return real_ip
    return req.remote_addr or 'unknown'


def _build_default_limiter() -> RateLimiter:
    if RATE_LIMIT_REDIS_URL:
        import redis
        client = redis.Redis.from_url(RATE_LIMIT_REDIS_URL)
        print("[RATE-LIMIT] Using Redis counter store", file=sys.stderr)
        return RateLimiter(RedisCounterStore(client))
    return RateLimiter(MemoryCounterStore())


limiter = _build_default_limiter()


def rate_limit_exceeded_response(decision: RateLimitDecision, message: str):
    """429 response with Retry-After and X-RateLimit-* headers."""
    response = jsonify({
        'error': message,
        'retry_after': decision.retry_after_seconds,
    })
    response.status_code = 429
    response.headers['Retry-After'] = str(decision.retry_after_seconds)
    response.headers['X-RateLimit-Limit'] = str(decision.limit)
    response.headers['X-RateLimit-Remaining'] = '0'
    response.headers['X-RateLimit-Reset'] = str(math.ceil(decision.reset_at_ms / 1000))
    return response


def rate_limit(preset: str, route_class: str, limiter_instance: Optional[RateLimiter] = None):
    """
    Decorator factory applying a rate limit preset to a Flask view.

    Args:
        preset: Key into RATE_LIMITS ('public', 'authenticated', 'strict')
        route_class: Key namespace for this endpoint
        limiter_instance: Limiter to use, defaults to the module limiter

    Returns:
        Decorator function
    """
    config = RATE_LIMITS[preset]

    def decorator(f):
        @wraps(f)
        def decorated(*args, **kwargs):
            if not RATE_LIMIT_ENABLED:
                return f(*args, **kwargs)

            active = limiter_instance or limiter
            identity = get_client_identifier()
            decision = active.check(identity, route_class, config['window_ms'], config['max'])
            if not decision.allowed:
                print(
                    f"[RATE-LIMIT] Exceeded for {route_class}:{identity} "
                    f"(max {config['max']}, retry in {decision.retry_after_seconds}s)",
                    file=sys.stderr
                )
                from audit_service import audit_logger, get_client_info
                audit_logger.rate_limit_exceeded(
                    route_class,
                    identity,
                    actor=g.get('current_user'),
                    client=get_client_info(request.headers, request.remote_addr),
                )
                return rate_limit_exceeded_response(decision, config['message'])

            return f(*args, **kwargs)

        return decorated
    return decorator
