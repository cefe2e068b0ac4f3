"""
User generation limits.

Tier defaults live here; operators can override them (and switch generation
off entirely) through a JSON blob in Redis:

    HGET system:features generation:status
    -> {"available": true, "message": null,
        "limits": {"free": {"quantity": 4, "queue": 4, "resources": 9}, ...}}

A user's tier is read from `generation:tier:{user_id}`. Without Redis the
static provider serves the tier defaults.
"""

import asyncio
import json
import logging
import os
from typing import Optional

from .models import UserGenerationLimits

logger = logging.getLogger(__name__)

FEATURES_KEY = "system:features"
GENERATION_STATUS_FIELD = "generation:status"
USER_TIER_KEY = "generation:tier:{user_id}"
DEFAULT_TIER = "free"
DISABLED_MESSAGE = "Generation is currently disabled"

# quantity / queue / resources
DEFAULTS_BY_TIER: dict[str, dict[str, int]] = {
    "free": {"quantity": 4, "queue": 4, "resources": 9},
    "founder": {"quantity": 8, "queue": 8, "resources": 9},
    "bronze": {"quantity": 8, "queue": 8, "resources": 12},
    "silver": {"quantity": 10, "queue": 10, "resources": 12},
    "gold": {"quantity": 12, "queue": 10, "resources": 12},
}


def build_limits(
    tier: str,
    overrides: Optional[dict] = None,
    available: bool = True,
    message: Optional[str] = None,
) -> UserGenerationLimits:
    if tier not in DEFAULTS_BY_TIER:
        logger.warning(f"Unknown tier '{tier}', using {DEFAULT_TIER} limits")
        tier = DEFAULT_TIER
    values = dict(DEFAULTS_BY_TIER[tier])
    if isinstance(overrides, dict):
        for key, value in overrides.items():
            if key not in values or value is None:
                continue
            try:
                values[key] = int(value)
            except (TypeError, ValueError):
                logger.warning(f"Ignoring non-integer {tier} limit override {key}={value!r}")
    elif overrides is not None:
        logger.warning(f"Ignoring malformed {tier} limit overrides: {overrides!r}")
    return UserGenerationLimits(
        tier=tier,
        per_request_quantity_cap=values["quantity"],
        queue_capacity=values["queue"],
        per_request_resource_cap=values["resources"],
        available=available,
        message=message if not available else None,
    )


class StaticLimitsProvider:
    """In-memory provider: per-user tier map over the tier defaults."""

    def __init__(self, tiers: Optional[dict[str, str]] = None, available: bool = True, message: Optional[str] = None):
        self.tiers = dict(tiers or {})
        self.available = available
        self.message = message

    async def get_limits(self, user_id: str) -> UserGenerationLimits:
        tier = self.tiers.get(user_id, DEFAULT_TIER)
        return build_limits(
            tier,
            available=self.available,
            message=self.message or (DISABLED_MESSAGE if not self.available else None),
        )


class RedisLimitsProvider:
    """Reads the generation status blob and the user's tier from Redis (sync client)."""

    def __init__(self, redis_client):
        self.redis = redis_client

    def _read(self, user_id: str) -> tuple[Optional[bytes], Optional[bytes]]:
        pipe = self.redis.pipeline(transaction=False)
        pipe.hget(FEATURES_KEY, GENERATION_STATUS_FIELD)
        pipe.get(USER_TIER_KEY.format(user_id=user_id))
        status_raw, tier_raw = pipe.execute()
        return status_raw, tier_raw

    async def get_limits(self, user_id: str) -> UserGenerationLimits:
        try:
            status_raw, tier_raw = await asyncio.to_thread(self._read, user_id)
        except Exception as e:
            logger.warning(f"Limits lookup failed for user {user_id}: {e}. Using {DEFAULT_TIER} defaults")
            return build_limits(DEFAULT_TIER)

        tier = _decode(tier_raw) or DEFAULT_TIER
        status: dict = {}
        if status_raw:
            try:
                status = json.loads(_decode(status_raw))
            except ValueError:
                logger.warning(f"Malformed {FEATURES_KEY}/{GENERATION_STATUS_FIELD}, ignoring")
                status = {}
            if not isinstance(status, dict):
                logger.warning(f"{FEATURES_KEY}/{GENERATION_STATUS_FIELD} is not an object, ignoring")
                status = {}

        available = bool(status.get("available", True))
        message = status.get("message") or (DISABLED_MESSAGE if not available else None)
        tier_limits = status.get("limits")
        overrides = tier_limits.get(tier) if isinstance(tier_limits, dict) else None
        return build_limits(tier, overrides=overrides, available=available, message=message)


def _decode(value) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


# ── Lazy Redis client ─────────────────────────────────────────────────────────
_redis_client = None


def get_redis():
    """Get or create a Redis client. Returns None if Redis is not configured."""
    global _redis_client
    if _redis_client is None:
        redis_url = os.environ.get("REDIS_URL")
        if redis_url:
            import redis
            _redis_client = redis.from_url(redis_url, decode_responses=False)
            try:
                _redis_client.ping()
                logger.info(f"Redis connected: {redis_url[:30]}...")
            except Exception as e:
                logger.warning(f"Redis connection failed: {e}. Falling back to static limits")
                _redis_client = None
    return _redis_client


def get_limits_provider():
    r = get_redis()
    if r is None:
        return StaticLimitsProvider()
    return RedisLimitsProvider(r)
