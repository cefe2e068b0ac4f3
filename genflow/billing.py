"""
Billing collaborator.

The core only needs four calls:

    estimate_cost(engine_input, quantity) -> amount     (local price, no I/O)
    get_balance(user_id)                  -> amount
    reserve_funds(user_id, amount)        -> bool       (False = insufficient)
    release_funds(user_id, amount)                      (undo a reservation)

SupabaseBilling keeps the balance in `profiles.credit_balance` and writes a
`credit_transactions` row for every movement. InMemoryBilling is used when
Supabase is not configured, and in tests.
"""

import asyncio
import json
import logging
import os
import threading
from typing import Any, Optional

from supabase import Client, create_client

from .engines import ENGINES

logger = logging.getLogger(__name__)

DEFAULT_BASE_COST = 1.0
# Video prices are quoted for a 5 second clip
VIDEO_REFERENCE_SECONDS = 5
# Starting balance for the in-memory ledger (local development)
DEV_BALANCE = float(os.environ.get("GENFLOW_DEV_BALANCE", "1000"))


def estimate_cost(engine_input: dict[str, Any], quantity: int = 1, engine_id: Optional[str] = None) -> float:
    """Local price estimate from the registry's base costs."""
    engine_id = engine_id or engine_input.get("engine")
    engine = ENGINES.get(engine_id) if engine_id else None
    base = engine.base_cost if engine is not None else DEFAULT_BASE_COST
    duration = engine_input.get("duration")
    if isinstance(duration, (int, float)) and duration > 0:
        base = base * max(1.0, duration / VIDEO_REFERENCE_SECONDS)
    return round(base * max(1, quantity), 2)


class InMemoryBilling:
    """Thread-safe in-process ledger."""

    def __init__(self, balances: Optional[dict[str, float]] = None, default_balance: float = 0.0):
        self._lock = threading.Lock()
        self._balances = dict(balances or {})
        self.default_balance = default_balance
        self.transactions: list[dict] = []

    def estimate_cost(self, engine_input: dict[str, Any], quantity: int = 1, engine_id: Optional[str] = None) -> float:
        return estimate_cost(engine_input, quantity, engine_id)

    async def get_balance(self, user_id: str) -> float:
        with self._lock:
            return self._balances.get(user_id, self.default_balance)

    async def reserve_funds(self, user_id: str, amount: float) -> bool:
        with self._lock:
            balance = self._balances.get(user_id, self.default_balance)
            if balance < amount:
                return False
            self._balances[user_id] = balance - amount
            self.transactions.append({"user_id": user_id, "amount": -amount, "reason": "generation"})
            return True

    async def release_funds(self, user_id: str, amount: float) -> None:
        with self._lock:
            self._balances[user_id] = self._balances.get(user_id, self.default_balance) + amount
            self.transactions.append({"user_id": user_id, "amount": amount, "reason": "generation_refund"})


class SupabaseBilling:
    """Credit ledger on Supabase (service role, bypasses RLS)."""

    def __init__(self, client: Client):
        self.client = client

    def estimate_cost(self, engine_input: dict[str, Any], quantity: int = 1, engine_id: Optional[str] = None) -> float:
        return estimate_cost(engine_input, quantity, engine_id)

    def _balance(self, user_id: str) -> float:
        profile = self.client.table("profiles").select("credit_balance").eq("id", user_id).single().execute()
        return float((profile.data or {}).get("credit_balance", 0) or 0)

    def _move(self, user_id: str, amount: float, reason: str) -> Optional[float]:
        balance = self._balance(user_id)
        new_balance = balance + amount
        if new_balance < 0:
            return None
        self.client.table("profiles").update({
            "credit_balance": new_balance,
        }).eq("id", user_id).execute()
        self.client.table("credit_transactions").insert({
            "user_id": user_id,
            "amount": amount,
            "balance_after": new_balance,
            "reason": reason,
            "metadata": json.dumps({"source": "genflow"}),
        }).execute()
        return new_balance

    async def get_balance(self, user_id: str) -> float:
        return await asyncio.to_thread(self._balance, user_id)

    async def reserve_funds(self, user_id: str, amount: float) -> bool:
        new_balance = await asyncio.to_thread(self._move, user_id, -amount, "generation")
        if new_balance is None:
            logger.info(f"Insufficient credits for user {user_id}: need {amount}")
            return False
        logger.info(f"Reserved {amount} credits for user {user_id}, balance now {new_balance}")
        return True

    async def release_funds(self, user_id: str, amount: float) -> None:
        await asyncio.to_thread(self._move, user_id, amount, "generation_refund")
        logger.info(f"Released {amount} credits back to user {user_id}")


# ── Lazy Supabase client ──────────────────────────────────────────────────────
_supabase_client: Optional[Client] = None


def get_supabase() -> Optional[Client]:
    """Service-role client, or None when Supabase is not configured."""
    global _supabase_client
    if _supabase_client is None:
        url = os.environ.get("SUPABASE_URL")
        key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
        if not url or not key:
            return None
        _supabase_client = create_client(url, key)
    return _supabase_client


def get_billing():
    client = get_supabase()
    if client is None:
        logger.warning("SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY not set, using in-memory billing")
        return InMemoryBilling(default_balance=DEV_BALANCE)
    return SupabaseBilling(client)
