from __future__ import annotations

import json
import logging
import threading
import time
from collections import defaultdict
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

logger = logging.getLogger("projectclad")

if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(handler)
logger.setLevel(logging.INFO)

_lock = threading.Lock()
_counters: dict[str, int] = defaultdict(int)
_timings_ms: dict[str, list[float]] = defaultdict(list)
_MAX_SAMPLES = 2000


def _encode(event: str, fields: dict[str, Any]) -> str:
    return json.dumps({"event": event, **fields}, separators=(",", ":"), sort_keys=True, default=str)


def log_event(event: str, **fields: Any) -> None:
    logger.info(_encode(event, fields))


def log_warning(event: str, **fields: Any) -> None:
    logger.warning(_encode(event, fields))


def increment(name: str, value: int = 1) -> None:
    with _lock:
        _counters[name] += value


def observe_ms(name: str, value: float) -> None:
    with _lock:
        samples = _timings_ms[name]
        samples.append(float(value))
        if len(samples) > _MAX_SAMPLES:
            del samples[: len(samples) - _MAX_SAMPLES]


@contextmanager
def timed(name: str) -> Iterator[None]:
    t0 = time.perf_counter()
    try:
        yield
    finally:
        increment(f"{name}.calls")
        observe_ms(f"{name}.latency_ms", (time.perf_counter() - t0) * 1000.0)


def snapshot() -> dict[str, Any]:
    with _lock:
        out: dict[str, Any] = {"counters": dict(_counters), "timings_ms": {}}
        for name, values in _timings_ms.items():
            if not values:
                out["timings_ms"][name] = {"count": 0, "p95": 0.0}
                continue
            ordered = sorted(values)
            idx = max(0, int(0.95 * len(ordered)) - 1)
            out["timings_ms"][name] = {"count": len(values), "p95": ordered[idx]}
        return out
