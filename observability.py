"""Structured events and latency metrics for the prediction service.

``log_event`` writes one JSON object per lifecycle event (cycle start and
completion, credit decrements, model fallbacks, synthetic back-fill) through
the caller's logger.  ``record_metric`` appends numeric samples such as
``analysis_latency_seconds`` to a CSV file so they can be charted without a
metrics server.  Ledger calls run in worker threads, so both are threadsafe.
"""
from __future__ import annotations

import csv
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

_EVENTS_LOGGER = logging.getLogger("observability")

METRIC_FIELDS = ("ts", "metric", "value", "labels")


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    return repr(value)


def log_event(logger: Optional[logging.Logger], event: str, **fields: Any) -> None:
    """Log ``event`` and ``fields`` as a single sorted JSON line at INFO."""

    payload: Dict[str, Any] = {k: _jsonable(v) for k, v in fields.items()}
    payload["event"] = event
    payload["ts"] = round(time.time(), 3)
    (logger or _EVENTS_LOGGER).info(json.dumps(payload, sort_keys=True))


class CsvMetricsSink:
    """Append-only CSV file of ``ts, metric, value, labels`` rows."""

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = Path(path or os.getenv("METRICS_PATH", os.path.join("logs", "metrics.csv")))
        self._lock = threading.Lock()

    def record(self, metric: str, value: float, labels: Optional[Mapping[str, Any]] = None) -> None:
        row = (
            f"{time.time():.3f}",
            metric,
            f"{float(value):.6f}",
            json.dumps(_jsonable(dict(labels or {})), sort_keys=True),
        )
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            new_file = not self.path.exists() or self.path.stat().st_size == 0
            with self.path.open("a", newline="") as handle:
                writer = csv.writer(handle)
                if new_file:
                    writer.writerow(METRIC_FIELDS)
                writer.writerow(row)


_sink = CsvMetricsSink()


def set_metrics_path(path: str) -> None:
    """Send subsequent metrics to ``path``."""

    global _sink
    _sink = CsvMetricsSink(path)


def record_metric(metric: str, value: float, *, labels: Optional[Mapping[str, Any]] = None) -> None:
    """Record one metric sample; write failures are logged and ignored."""

    try:
        _sink.record(metric, value, labels)
    except OSError:
        _EVENTS_LOGGER.warning("Could not record metric %s to %s", metric, _sink.path, exc_info=True)


__all__ = ["CsvMetricsSink", "log_event", "record_metric", "set_metrics_path"]
