from __future__ import annotations

import math
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Deque


@dataclass(frozen=True)
class ExternalCallSample:
    ts: float
    integration: str
    operation: str
    latency_ms: float
    success: bool


_external_samples: Deque[ExternalCallSample] = deque(maxlen=10000)
_counters: dict[str, int] = defaultdict(int)


def record_external_call(*, integration: str, operation: str, latency_ms: float, success: bool) -> None:
    # Capture identity provider latency and outcomes.
    _external_samples.append(
        ExternalCallSample(
            ts=time.time(),
            integration=integration,
            operation=operation,
            latency_ms=latency_ms,
            success=success,
        )
    )


def increment_counter(name: str, value: int = 1) -> None:
    # Store counters for ops dashboards and alerting.
    _counters[name] += value


def counters_snapshot() -> dict[str, int]:
    return dict(_counters)


def external_call_summary(window_s: int) -> dict[str, dict[str, float | int | None]]:
    # Aggregate external call latency and error counts per integration operation.
    cutoff = time.time() - window_s
    grouped: dict[str, list[ExternalCallSample]] = defaultdict(list)
    for sample in _external_samples:
        if sample.ts < cutoff:
            continue
        grouped[f"{sample.integration}.{sample.operation}"].append(sample)
    result: dict[str, dict[str, float | int | None]] = {}
    for key, samples in grouped.items():
        latencies = sorted(sample.latency_ms for sample in samples)
        p95_idx = max(0, math.ceil(0.95 * len(latencies)) - 1)
        result[key] = {
            "count": len(samples),
            "errors": sum(1 for sample in samples if not sample.success),
            "p95_ms": latencies[p95_idx] if latencies else None,
        }
    return result


def reset_telemetry() -> None:
    # Allow tests to start from a clean slate.
    _external_samples.clear()
    _counters.clear()
