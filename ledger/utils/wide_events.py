"""
Canonical log lines for ledger operations.

A cascade preview, a cascade apply, a trip insert or an anomaly evaluation
each produce a single JSON line through structlog. The line gathers the
vehicle and trip ids, business metrics such as the delta and rows written,
and per-step timings. Lines for failures, slow operations and writes are
always kept; routine successes are sampled at LOGGING_SAMPLE_RATE.
"""

import random
import time
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Optional

import structlog
from config import Config

from .timezone import utc_now

# Business metrics that force emission regardless of sampling
CRITICAL_EVENTS = (
    "cascade_applied",
    "anomalies_flagged",
    "trip_recorded",
    "stale_sequence",
)


def configure_logging() -> None:
    """Route structlog through stdlib logging and render each event as JSON."""
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class WideEvent:
    """
    One operation's worth of log context, emitted once at the end.

        event = WideEvent("cascade_apply", trace_id="vehicle-7")
        event.add_context(vehicle_id=7, trip_id=42)
        with event.timer("commit"):
            store.commit_trip_updates(rows, reason)
        event.add_business_metric("rows_written", len(rows))
        event.emit()
    """

    def __init__(self, operation: str, request_id: Optional[str] = None, trace_id: Optional[str] = None):
        self.operation = operation
        self.context: Dict[str, Any] = {
            "operation": operation,
            "timestamp": utc_now().isoformat(),
            "start_time": time.time(),
            "request_id": request_id or str(uuid.uuid4()),
        }
        if trace_id:
            self.context["trace_id"] = trace_id

        self.logger = structlog.get_logger()

    def add_context(self, **kwargs) -> "WideEvent":
        self.context.update(kwargs)
        return self

    def _add_metric(self, group: str, key: str, value: Any) -> "WideEvent":
        self.context.setdefault(group, {})[key] = value
        return self

    def add_business_metric(self, key: str, value: Any) -> "WideEvent":
        """Delta, rows shifted, anomalies flagged and similar outcomes."""
        return self._add_metric("business_metrics", key, value)

    def add_technical_metric(self, key: str, value: Any) -> "WideEvent":
        """Rows loaded and similar cost figures."""
        return self._add_metric("technical_metrics", key, value)

    def add_error(self, error: Exception, **kwargs) -> "WideEvent":
        """Record the exception; LedgerError subclasses contribute their details dict."""
        self.context["error"] = {
            "type": type(error).__name__,
            "message": str(error),
            "details": {**getattr(error, "details", {}), **kwargs},
        }
        self.context["success"] = False
        return self

    def mark_success(self) -> "WideEvent":
        self.context["success"] = True
        return self

    def mark_failure(self, reason: str) -> "WideEvent":
        self.context.update(success=False, failure_reason=reason)
        return self

    @property
    def failed(self) -> bool:
        return not self.context.get("success", True)

    @contextmanager
    def timer(self, step: str):
        """Record the step's wall time under performance_breakdown as ``<step>_ms``."""
        start = time.time()
        try:
            yield
        finally:
            elapsed_ms = round((time.time() - start) * 1000, 2)
            self._add_metric("performance_breakdown", f"{step}_ms", elapsed_ms)

    def set_duration(self) -> "WideEvent":
        start = self.context.pop("start_time", None)
        if start is not None:
            self.context["duration_ms"] = round((time.time() - start) * 1000, 2)
        return self

    def _is_critical(self) -> bool:
        metrics = self.context.get("business_metrics", {})
        return any(metrics.get(name) for name in CRITICAL_EVENTS)

    def should_emit(
        self,
        sample_rate: Optional[float] = None,
        slow_threshold_ms: Optional[float] = None,
    ) -> bool:
        """
        Tail sampling decision.

        Failures, operations slower than ``slow_threshold_ms`` and events
        carrying a truthy critical business metric are always kept. Anything
        else survives with probability ``sample_rate``.
        """
        if sample_rate is None:
            sample_rate = Config.LOGGING_SAMPLE_RATE
        if slow_threshold_ms is None:
            slow_threshold_ms = Config.LOGGING_SLOW_THRESHOLD_MS

        if self.failed or self._is_critical():
            return True
        if self.context.get("duration_ms", 0) > slow_threshold_ms:
            return True
        return random.random() < sample_rate

    def emit(self, level: str = "info", force: bool = False) -> None:
        self.set_duration()
        if force or self.should_emit():
            log = getattr(self.logger, level, self.logger.info)
            log(f"{self.operation}_complete", **self.context)


@contextmanager
def track_operation(operation: str, **initial_context):
    """
    Wrap an operation in a WideEvent that emits when the block exits.

    A ``vehicle_id`` in the initial context becomes the trace id so every
    line for one vehicle can be pulled together. Exceptions are recorded,
    logged at error level without sampling and re-raised.
    """
    vehicle_id = initial_context.get("vehicle_id")
    trace_id = f"vehicle-{vehicle_id}" if vehicle_id is not None else None
    event = WideEvent(operation, trace_id=trace_id).add_context(**initial_context)

    try:
        yield event
        event.mark_success()
    except Exception as e:
        event.add_error(e).mark_failure(str(e))
        raise
    finally:
        event.emit(level="error" if event.failed else "info", force=event.failed)


def log_cascade_event(vehicle_id: int, trip_id: int, operation: str, success: bool, **kwargs) -> None:
    """One-off cascade lifecycle line (declined, rejected); never sampled."""
    event = WideEvent(f"cascade_{operation}", trace_id=f"vehicle-{vehicle_id}")
    event.add_context(vehicle_id=vehicle_id, trip_id=trip_id, **kwargs)
    if success:
        event.mark_success()
    else:
        event.mark_failure(kwargs.get("error", "Unknown error"))
    event.emit(force=True)


def log_anomaly_event(vehicle_id: int, trip_id: int, flags, **kwargs) -> None:
    """Anomaly evaluation outcome; ``flags`` are in to_dict form. Flagged trips log at warning."""
    event = WideEvent("anomaly_evaluation", trace_id=f"vehicle-{vehicle_id}")
    event.add_context(
        vehicle_id=vehicle_id,
        trip_id=trip_id,
        anomaly_kinds=[flag["kind"] for flag in flags],
        **kwargs,
    )
    event.add_business_metric("anomalies_flagged", len(flags))
    event.mark_success()
    event.emit(level="warning" if flags else "info")
