# flashgen/auth.py
"""
API key auth and pluggable rate-limiter.

Env vars:
- MOCK_AUTH (default: true) — bypass auth in dev; every caller acts as DEFAULT_USER_ID
- API_KEYS — comma-separated entries, either "key" or "key:user_id"
- API_KEYS_FILE — optional path to file with one entry per line (same format)
- DEFAULT_USER_ID — owner for keys without an explicit user id
- RATE_LIMIT_PER_MINUTE (default: 60)
- REDIS_URL — optional, enables Redis-based distributed limiter
"""

import os
import time
import threading
from typing import Optional, Tuple, Dict

import redis

# Configuration
MOCK_AUTH = os.getenv("MOCK_AUTH", "true").lower() in ("1", "true", "yes")
RATE_LIMIT_PER_MINUTE = int(os.getenv("RATE_LIMIT_PER_MINUTE", "60"))
API_KEYS_ENV = os.getenv("API_KEYS", "")
API_KEYS_FILE = os.getenv("API_KEYS_FILE", "")
REDIS_URL = os.getenv("REDIS_URL", "")
DEFAULT_USER_ID = os.getenv("DEFAULT_USER_ID", "33b6810e-21bf-4d0f-ab89-fc0f4d234983")


def _parse_key_entry(entry: str) -> Optional[Tuple[str, str]]:
    entry = entry.strip()
    if not entry:
        return None
    key, _, user_id = entry.partition(":")
    return key.strip(), (user_id.strip() or DEFAULT_USER_ID)


def _load_api_keys() -> Dict[str, str]:
    """Map of API key -> owning user id."""
    keys: Dict[str, str] = {}
    if API_KEYS_ENV:
        for entry in API_KEYS_ENV.split(","):
            parsed = _parse_key_entry(entry)
            if parsed:
                keys[parsed[0]] = parsed[1]
    if API_KEYS_FILE and os.path.exists(API_KEYS_FILE):
        with open(API_KEYS_FILE, "r", encoding="utf-8") as f:
            for line in f:
                parsed = _parse_key_entry(line)
                if parsed:
                    keys[parsed[0]] = parsed[1]
    return keys


API_KEYS = _load_api_keys()


class InMemoryFixedWindowLimiter:
    """Thread-safe in-memory fixed-window rate limiter (per-process)."""

    def __init__(self, limit_per_minute: int = 60):
        self.limit = limit_per_minute
        self._store: Dict[str, Tuple[int, int]] = {}  # key -> (window_minute, count)
        self._lock = threading.Lock()

    def allow_request(self, api_key: str) -> Tuple[bool, Optional[int]]:
        window = int(time.time()) // 60
        with self._lock:
            wstart, count = self._store.get(api_key, (window, 0))
            if wstart != window:
                count = 0
            if count >= self.limit:
                return False, 0
            self._store[api_key] = (window, count + 1)
            return True, self.limit - (count + 1)

    def reset(self):
        """Reset all state (useful for tests)."""
        with self._lock:
            self._store.clear()


class RedisFixedWindowLimiter:
    """Redis fixed-window counter using INCR + EXPIRE."""

    def __init__(self, redis_url: str, limit_per_minute: int = 60):
        self.limit = limit_per_minute
        self._client = redis.Redis.from_url(redis_url, decode_responses=True)

    def allow_request(self, api_key: str) -> Tuple[bool, Optional[int]]:
        window = int(time.time()) // 60
        key = f"rate:{api_key}:{window}"
        try:
            count = int(self._client.incr(key))
            if count == 1:
                self._client.expire(key, 120)
        except redis.RedisError:
            # Fail open on Redis errors
            return True, None
        if count > self.limit:
            return False, 0
        return True, self.limit - count


# Choose limiter instance
_rate_limiter = (
    RedisFixedWindowLimiter(REDIS_URL, RATE_LIMIT_PER_MINUTE)
    if REDIS_URL
    else InMemoryFixedWindowLimiter(RATE_LIMIT_PER_MINUTE)
)


def is_key_allowed(api_key: Optional[str]) -> bool:
    """Check if API key is valid. If MOCK_AUTH=true, always returns True."""
    if MOCK_AUTH:
        return True
    if not api_key:
        return False
    return api_key in API_KEYS


def resolve_user_id(api_key: Optional[str]) -> Optional[str]:
    """User id owning the key, DEFAULT_USER_ID under MOCK_AUTH, None if unknown."""
    if MOCK_AUTH:
        return DEFAULT_USER_ID
    if not api_key:
        return None
    return API_KEYS.get(api_key)


def check_rate_limit(api_key: str) -> Tuple[bool, Optional[int]]:
    """Check and consume quota. Returns (allowed, remaining)."""
    if MOCK_AUTH:
        return True, None
    if not api_key:
        return False, 0
    return _rate_limiter.allow_request(api_key)


def get_limiter():
    """Return the current limiter instance (for testing)."""
    return _rate_limiter
