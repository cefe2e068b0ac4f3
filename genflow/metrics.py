"""
Thread-safe in-memory metrics for the generation service.

  - counters:  submissions by engine/outcome, poll ticks, HTTP requests per route, evicted sessions
  - latency:   submit round-trips (last 100 samples per key)
  - gauges:    active sessions, tracked workflows
  - errors:    ring buffer of the last 50 failures

Ephemeral; resets on restart.
"""

import threading
import time
from collections import defaultdict
from typing import Dict, List

_lock = threading.Lock()

_counters: Dict[str, int] = defaultdict(int)

# ── Latency samples (last 100 per key) ───────────────────────────────────────
_latency_samples: Dict[str, List[float]] = defaultdict(list)
MAX_SAMPLES = 100

_gauges: Dict[str, float] = defaultdict(float)

# ── Error log (last 50) ──────────────────────────────────────────────────────
_recent_errors: List[dict] = []
MAX_ERRORS = 50

_started_at = time.time()


def inc_counter(name: str, amount: int = 1):
    with _lock:
        _counters[name] += amount


def record_latency(key: str, duration_ms: float):
    with _lock:
        samples = _latency_samples[key]
        samples.append(duration_ms)
        if len(samples) > MAX_SAMPLES:
            _latency_samples[key] = samples[-MAX_SAMPLES:]


def set_gauge(name: str, value: float):
    with _lock:
        _gauges[name] = value


def record_error(source: str, message: str, error_type: str = "error", user_id: str = ""):
    with _lock:
        _recent_errors.append({
            "timestamp": time.time(),
            "source": source,
            "error_type": error_type,
            "message": message[:300],
            "user_id": user_id,
        })
        if len(_recent_errors) > MAX_ERRORS:
            _recent_errors.pop(0)


# ── Domain helpers ───────────────────────────────────────────────────────────

def record_submission(engine_id: str, outcome: str, duration_ms: float = None):
    """outcome: submitted | validation_failed | quota_exceeded | insufficient_funds | submission_failed"""
    inc_counter(f"submissions.{outcome}")
    inc_counter(f"engines.{engine_id}.{outcome}")
    if duration_ms is not None:
        record_latency(f"submit.{engine_id}", duration_ms)


def record_poll(success: bool):
    inc_counter("polls.ok" if success else "polls.failed")


def get_snapshot() -> dict:
    now = time.time()
    with _lock:
        latency_stats = {}
        for key, samples in _latency_samples.items():
            if not samples:
                continue
            sorted_s = sorted(samples)
            n = len(sorted_s)
            latency_stats[key] = {
                "p50": sorted_s[n // 2],
                "p95": sorted_s[int(n * 0.95)] if n >= 20 else sorted_s[-1],
                "avg": sum(sorted_s) / n,
                "count": n,
            }

        error_patterns: Dict[str, int] = defaultdict(int)
        for err in _recent_errors:
            error_patterns[f"{err['source']}:{err['error_type']}"] += 1

        return {
            "timestamp": now,
            "counters": dict(_counters),
            "gauges": dict(_gauges),
            "latency": latency_stats,
            "recent_errors": list(_recent_errors[-10:]),
            "error_patterns": dict(error_patterns),
            "uptime_seconds": now - _started_at,
        }


def reset():
    """Clear everything (tests)."""
    with _lock:
        _counters.clear()
        _latency_samples.clear()
        _gauges.clear()
        _recent_errors.clear()
