"""Tests for tier limits and the Redis-backed limits provider."""

from __future__ import annotations

import json

import pytest

from genflow.limits import (
    DEFAULTS_BY_TIER,
    FEATURES_KEY,
    GENERATION_STATUS_FIELD,
    RedisLimitsProvider,
    StaticLimitsProvider,
    build_limits,
)


class FakePipeline:
    def __init__(self, redis: "FakeRedis") -> None:
        self.redis = redis
        self.ops = []

    def hget(self, key, field):
        self.ops.append(lambda: self.redis.hashes.get(key, {}).get(field))

    def get(self, key):
        self.ops.append(lambda: self.redis.values.get(key))

    def execute(self):
        if self.redis.broken:
            raise ConnectionError("redis down")
        return [op() for op in self.ops]


class FakeRedis:
    def __init__(self) -> None:
        self.hashes: dict = {}
        self.values: dict = {}
        self.broken = False

    def pipeline(self, transaction=True):
        return FakePipeline(self)


@pytest.mark.parametrize(
    "tier,expected",
    [
        ("free", (4, 4, 9)),
        ("founder", (8, 8, 9)),
        ("bronze", (8, 8, 12)),
        ("silver", (10, 10, 12)),
        ("gold", (12, 10, 12)),
    ],
)
def test_tier_defaults(tier: str, expected: tuple) -> None:
    limits = build_limits(tier)
    assert (limits.per_request_quantity_cap, limits.queue_capacity, limits.per_request_resource_cap) == expected
    assert limits.tier == tier


def test_unknown_tier_falls_back_to_free() -> None:
    limits = build_limits("platinum")
    assert limits.tier == "free"
    assert limits.queue_capacity == DEFAULTS_BY_TIER["free"]["queue"]


@pytest.mark.anyio
async def test_static_provider_per_user_tier() -> None:
    provider = StaticLimitsProvider({"vip": "gold"})
    assert (await provider.get_limits("vip")).tier == "gold"
    assert (await provider.get_limits("anyone")).tier == "free"


@pytest.mark.anyio
async def test_redis_provider_reads_tier_and_overrides() -> None:
    redis = FakeRedis()
    redis.values["generation:tier:u1"] = b"silver"
    redis.hashes[FEATURES_KEY] = {
        GENERATION_STATUS_FIELD: json.dumps({"available": True, "limits": {"silver": {"queue": 3}}}).encode()
    }
    limits = await RedisLimitsProvider(redis).get_limits("u1")
    assert limits.tier == "silver"
    assert limits.queue_capacity == 3
    assert limits.per_request_quantity_cap == 10
    assert limits.available


@pytest.mark.anyio
async def test_redis_provider_generation_disabled() -> None:
    redis = FakeRedis()
    redis.hashes[FEATURES_KEY] = {GENERATION_STATUS_FIELD: json.dumps({"available": False})}
    limits = await RedisLimitsProvider(redis).get_limits("u1")
    assert not limits.available
    assert limits.message == "Generation is currently disabled"


@pytest.mark.anyio
async def test_redis_provider_defaults_when_empty() -> None:
    limits = await RedisLimitsProvider(FakeRedis()).get_limits("u1")
    assert limits.tier == "free"
    assert limits.available


@pytest.mark.anyio
async def test_redis_provider_survives_outage() -> None:
    redis = FakeRedis()
    redis.broken = True
    limits = await RedisLimitsProvider(redis).get_limits("u1")
    assert limits.tier == "free"


@pytest.mark.anyio
async def test_redis_provider_ignores_malformed_status() -> None:
    redis = FakeRedis()
    redis.hashes[FEATURES_KEY] = {GENERATION_STATUS_FIELD: b"{not json"}
    limits = await RedisLimitsProvider(redis).get_limits("u1")
    assert limits.available
    assert limits.queue_capacity == DEFAULTS_BY_TIER["free"]["queue"]


@pytest.mark.anyio
@pytest.mark.parametrize(
    "blob",
    [
        b"null",
        b"[]",
        b"42",
        json.dumps({"limits": {"free": 5}}).encode(),
        json.dumps({"limits": ["free"]}).encode(),
        json.dumps({"limits": {"free": {"queue": "lots", "quantity": [1]}}}).encode(),
    ],
)
async def test_redis_provider_falls_back_on_wrong_shapes(blob: bytes) -> None:
    redis = FakeRedis()
    redis.hashes[FEATURES_KEY] = {GENERATION_STATUS_FIELD: blob}
    limits = await RedisLimitsProvider(redis).get_limits("u1")
    assert limits.available
    assert limits.tier == "free"
    assert limits.queue_capacity == DEFAULTS_BY_TIER["free"]["queue"]
    assert limits.per_request_quantity_cap == DEFAULTS_BY_TIER["free"]["quantity"]


def test_partial_override_keeps_valid_keys() -> None:
    limits = build_limits("free", overrides={"queue": "7", "quantity": "many"})
    assert limits.queue_capacity == 7
    assert limits.per_request_quantity_cap == DEFAULTS_BY_TIER["free"]["quantity"]
