# boxoffice/infra/timings.py
from __future__ import annotations
import time
from typing import Dict, List
import statistics

import structlog

from ..config import SLOW_OP_SECONDS

logger = structlog.get_logger(__name__)

# ------------ hot path: append only ------------
# one list per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, List[float]] = {}

# keep memory bounded on long-running workers
_MAX_SAMPLES = 10_000


def now_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = []
        _TIMINGS[kind] = lst
    if len(lst) >= _MAX_SAMPLES:
        del lst[: _MAX_SAMPLES // 2]
    lst.append(float(value))


class timeit:
    """async usage:
        async with timeit("provider.create_payment"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        elapsed = now_ts() - self._t0
        record_timing(self._kind, elapsed)
        if elapsed >= SLOW_OP_SECONDS:
            logger.warning(
                "slow_operation", kind=self._kind, seconds=round(elapsed, 3),
                failed=exc_type is not None,
            )


# ------------ stats only on demand ------------

def _mean_std(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def _percentile(values: list[float], p: float) -> float:
    if not values:
        return 0.0
    x = sorted(values)
    k = int(max(0, min(len(x) - 1, round(p / 100 * (len(x) - 1)))))
    return x[k]


def snapshot() -> Dict[str, Dict[str, float]]:
    out = {}
    for kind, vals in _TIMINGS.items():
        mean, std = _mean_std(vals)
        out[kind] = {
            "n": len(vals),
            "mean": mean,
            "std": std,
            "p50": _percentile(vals, 50),
            "p99": _percentile(vals, 99),
        }
    return out


def reset() -> None:
    _TIMINGS.clear()
