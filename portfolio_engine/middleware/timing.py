"""
Evaluation timing.

Measures how long each governance evaluation takes, logs slow ones and keeps
a small in-memory ring buffer of recent timings.
"""

import logging
import time
from contextlib import contextmanager
from threading import Lock

logger = logging.getLogger(__name__)

# Slow evaluation threshold (ms) when the caller does not pass one
SLOW_THRESHOLD_MS = 250.0


class EvaluationTimer:
    """Mutable holder the ``timed_evaluation`` block can read mid-flight."""

    __slots__ = ("action", "scenario_id", "started", "duration_ms")

    def __init__(self, action: str, scenario_id: str | None):
        self.action = action
        self.scenario_id = scenario_id
        self.started = time.perf_counter()
        self.duration_ms: float | None = None

    def elapsed_ms(self) -> float:
        """Milliseconds since the timer started (final value once stopped)."""
        if self.duration_ms is not None:
            return self.duration_ms
        return (time.perf_counter() - self.started) * 1000


@contextmanager
def timed_evaluation(action: str, scenario_id: str | None = None, *,
                     slow_threshold_ms: float | None = None):
    """Time the enclosed block and feed the metrics buffer.

    Usage:
        with timed_evaluation("REQUEST_CHANGE", scenario.id) as timer:
            ...
            duration = timer.elapsed_ms()
    """
    timer = EvaluationTimer(action, scenario_id)
    threshold = SLOW_THRESHOLD_MS if slow_threshold_ms is None else slow_threshold_ms
    try:
        yield timer
    finally:
        timer.duration_ms = (time.perf_counter() - timer.started) * 1000
        _record_metric(action, scenario_id, timer.duration_ms)

        extra = {
            "action": action,
            "scenario_id": scenario_id,
            "duration_ms": timer.duration_ms,
        }
        if timer.duration_ms > threshold:
            logger.warning("Slow evaluation: %s scenario=%s (%.0fms)",
                           action, scenario_id, timer.duration_ms, extra=extra)
        else:
            logger.debug("Evaluation: %s scenario=%s (%.1fms)",
                         action, scenario_id, timer.duration_ms, extra=extra)


# ── In-memory metrics ring buffer ──────────────────────────────────────────
_metrics_buffer: list[dict] = []
_metrics_lock = Lock()
_MAX_BUFFER = 10_000


def _record_metric(action: str, scenario_id: str | None, duration_ms: float):
    """Append to the in-memory ring buffer."""
    entry = {
        "ts": time.time(),
        "action": action,
        "scenario_id": scenario_id,
        "ms": round(duration_ms, 3),
    }
    with _metrics_lock:
        _metrics_buffer.append(entry)
        if len(_metrics_buffer) > _MAX_BUFFER:
            del _metrics_buffer[:_MAX_BUFFER // 2]  # trim oldest half


def get_recent_metrics(seconds: int = 3600) -> list[dict]:
    """Return metrics from the last N seconds."""
    cutoff = time.time() - seconds
    with _metrics_lock:
        return [m for m in _metrics_buffer if m["ts"] >= cutoff]


def reset_metrics():
    """Clear metrics buffer (for testing)."""
    with _metrics_lock:
        _metrics_buffer.clear()
