"""
GRC Core Platform
Read-model cache for approval dashboards, metrics and plan listings.

Keys live under two prefixes:
  approval:         dashboard / metrics, dropped on every approval transition
  prioritization:   one entry per plan listing, dropped when the plan is re-scored

Values are stored as JSON. Redis is used when REDIS_URL is a redis:// or
rediss:// URL; otherwise (and when Redis cannot be reached at startup) an
in-process store is used. A ttl of 0 turns the cache off for that call.
"""

import json
import logging
import os
import threading
import time

import redis
from flask import current_app, has_app_context

logger = logging.getLogger(__name__)

DEFAULT_TTL = 60

APPROVAL_PREFIX = "approval:"
PRIORITIZATION_PREFIX = "prioritization:"


def dashboard_key(days):
    return f"{APPROVAL_PREFIX}dashboard:{days}"


def metrics_key():
    return f"{APPROVAL_PREFIX}metrics"


def plan_key(plan_id):
    return f"{PRIORITIZATION_PREFIX}plan:{plan_id}"


class _MemoryBackend:
    """Per-process store with the subset of the redis client API used here."""

    def __init__(self):
        self._data = {}  # key -> (json, expires_at)
        self._lock = threading.Lock()

    def get(self, key):
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            raw, expires_at = entry
            if time.time() >= expires_at:
                del self._data[key]
                return None
            return raw

    def setex(self, key, ttl_seconds, value):
        with self._lock:
            self._data[key] = (value, time.time() + ttl_seconds)

    def delete(self, *keys):
        with self._lock:
            return sum(1 for k in keys if self._data.pop(k, None) is not None)

    def scan_iter(self, match):
        prefix = match.rstrip("*")
        with self._lock:
            return [k for k in self._data if k.startswith(prefix)]

    def flushdb(self):
        with self._lock:
            self._data.clear()

    def ping(self):
        return True


_backend = None


def _configured_url():
    if has_app_context():
        return current_app.config.get("REDIS_URL")
    return os.getenv("REDIS_URL")


def _get_backend():
    global _backend
    if _backend is None:
        _backend = _connect(_configured_url())
    return _backend


def _connect(url):
    if not url or not url.startswith(("redis://", "rediss://")):
        return _MemoryBackend()
    client = redis.from_url(url, decode_responses=True)
    try:
        client.ping()
    except redis.exceptions.RedisError as exc:
        logger.warning("Redis unreachable at %s (%s); using in-process cache",
                       url.split("@")[-1], exc)
        return _MemoryBackend()
    logger.info("Read-model cache on Redis at %s", url.split("@")[-1])
    return client


# ── Cache-aside ──────────────────────────────────────────────────────────
#
# A cache outage never fails the caller: reads fall through to the loader,
# writes and invalidations are logged and dropped. Entries that could not
# be invalidated age out with their ttl.

# socket errors are not always wrapped by redis-py
_BACKEND_ERRORS = (redis.exceptions.RedisError, OSError)


def get_cached(key, ttl=DEFAULT_TTL, loader=None):
    """Return the cached value for ``key``.

    On a miss ``loader()`` (if given) is called and its result stored for
    ``ttl`` seconds. With ``ttl <= 0`` the cache is neither read nor written.
    """
    if ttl <= 0:
        return loader() if loader is not None else None

    try:
        raw = _get_backend().get(key)
    except _BACKEND_ERRORS as exc:
        logger.warning("Cache read failed for %s: %s", key, exc)
        raw = None
    if raw is not None:
        return json.loads(raw)
    if loader is None:
        return None
    value = loader()
    if value is not None:
        set_cached(key, value, ttl)
    return value


def set_cached(key, value, ttl=DEFAULT_TTL):
    try:
        _get_backend().setex(key, ttl, json.dumps(value))
    except _BACKEND_ERRORS as exc:
        logger.warning("Cache write failed for %s: %s", key, exc)


def invalidate_prefix(prefix):
    """Delete every key under ``prefix``; returns how many were removed."""
    backend = _get_backend()
    try:
        keys = list(backend.scan_iter(match=f"{prefix}*"))
        return backend.delete(*keys) if keys else 0
    except _BACKEND_ERRORS as exc:
        logger.warning("Cache invalidation failed for %s*: %s", prefix, exc)
        return 0


def invalidate_approval_cache():
    removed = invalidate_prefix(APPROVAL_PREFIX)
    logger.debug("Approval read models invalidated (%d keys)", removed)


def invalidate_plan_cache(plan_id):
    try:
        _get_backend().delete(plan_key(plan_id))
    except _BACKEND_ERRORS as exc:
        logger.warning("Cache invalidation failed for plan %s: %s", plan_id, exc,
                       extra={"plan_id": plan_id})


def clear_all():
    """Flush the whole cache database. Tests call this between cases."""
    _get_backend().flushdb()


def health_check():
    backend = _get_backend()
    kind = "memory" if isinstance(backend, _MemoryBackend) else "redis"
    try:
        backend.ping()
    except _BACKEND_ERRORS as exc:
        return {"status": "error", "backend": kind, "detail": str(exc)}
    return {"status": "ok", "backend": kind}
