"""Tests for the billing collaborators."""

from __future__ import annotations

import pytest

from genflow.billing import InMemoryBilling, SupabaseBilling, estimate_cost


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str) -> None:
        self.db = db
        self.table = table
        self.action = None
        self.payload = None
        self.filters = {}

    def select(self, columns):
        self.action = "select"
        return self

    def update(self, payload):
        self.action, self.payload = "update", payload
        return self

    def insert(self, payload):
        self.action, self.payload = "insert", payload
        return self

    def eq(self, column, value):
        self.filters[column] = value
        return self

    def single(self):
        return self

    def execute(self):
        rows = self.db.tables.setdefault(self.table, [])
        if self.action == "insert":
            rows.append(self.payload)
            return type("Result", (), {"data": [self.payload]})()
        matching = [r for r in rows if all(r.get(k) == v for k, v in self.filters.items())]
        if self.action == "update":
            for row in matching:
                row.update(self.payload)
            return type("Result", (), {"data": matching})()
        return type("Result", (), {"data": matching[0] if matching else None})()


class FakeSupabase:
    def __init__(self) -> None:
        self.tables: dict = {"profiles": [{"id": "u1", "credit_balance": 10}]}

    def table(self, name):
        return FakeQuery(self, name)


def test_estimate_cost_uses_registry_base_cost() -> None:
    assert estimate_cost({}, 3, engine_id="zimage-turbo") == 3.0
    assert estimate_cost({"engine": "veo3", "duration": 8}) == 64.0
    assert estimate_cost({"engine": "unknown"}, 2) == 2.0


@pytest.mark.anyio
async def test_in_memory_reserve_and_release() -> None:
    billing = InMemoryBilling({"u": 10.0})
    assert await billing.reserve_funds("u", 4.0) is True
    assert await billing.get_balance("u") == 6.0
    assert await billing.reserve_funds("u", 7.0) is False
    await billing.release_funds("u", 4.0)
    assert await billing.get_balance("u") == 10.0
    assert [t["amount"] for t in billing.transactions] == [-4.0, 4.0]


@pytest.mark.anyio
async def test_supabase_reserve_writes_ledger() -> None:
    db = FakeSupabase()
    billing = SupabaseBilling(db)
    assert await billing.get_balance("u1") == 10.0
    assert await billing.reserve_funds("u1", 4.0) is True
    assert db.tables["profiles"][0]["credit_balance"] == 6.0
    transaction = db.tables["credit_transactions"][0]
    assert transaction["amount"] == -4.0
    assert transaction["balance_after"] == 6.0
    assert transaction["reason"] == "generation"


@pytest.mark.anyio
async def test_supabase_reserve_insufficient() -> None:
    db = FakeSupabase()
    billing = SupabaseBilling(db)
    assert await billing.reserve_funds("u1", 40.0) is False
    assert db.tables["profiles"][0]["credit_balance"] == 10
    assert "credit_transactions" not in db.tables


@pytest.mark.anyio
async def test_supabase_release() -> None:
    db = FakeSupabase()
    billing = SupabaseBilling(db)
    await billing.release_funds("u1", 5.0)
    assert await billing.get_balance("u1") == 15.0
    assert db.tables["credit_transactions"][0]["reason"] == "generation_refund"
