"""
Metrics collection for chat transport health.

Tracks persistent connect attempts, polls, sends, mode transitions and
retry exhaustion using OpenTelemetry metrics.
"""

import time
from typing import Optional
from contextlib import contextmanager
from dataclasses import dataclass

from opentelemetry import metrics


@dataclass
class PollSample:
    """Outcome of a single poll."""
    session_id: str
    duration_ms: int
    message_count: int
    success: bool
    error_type: Optional[str] = None


class TransportMetrics:
    """Collects chat transport metrics."""

    def __init__(self, meter: metrics.Meter):
        self.meter = meter
        self._setup_instruments()

    def _setup_instruments(self) -> None:
        """Setup OpenTelemetry metric instruments."""
        # Persistent channel
        self.connect_attempts = self.meter.create_counter(
            name="parley_connect_attempts_total",
            description="Persistent connect attempts by result",
            unit="1"
        )

        self.connect_latency = self.meter.create_histogram(
            name="parley_connect_latency_ms",
            description="Latency of successful persistent connects",
            unit="ms"
        )

        # Polling
        self.polls = self.meter.create_counter(
            name="parley_polls_total",
            description="Polls by result",
            unit="1"
        )

        self.poll_duration = self.meter.create_histogram(
            name="parley_poll_duration_ms",
            description="Poll round trip duration",
            unit="ms"
        )

        self.polled_messages = self.meter.create_counter(
            name="parley_polled_messages_total",
            description="Messages received through polling",
            unit="1"
        )

        # Sends
        self.send_attempts = self.meter.create_counter(
            name="parley_send_attempts_total",
            description="Message send attempts by transport and result",
            unit="1"
        )

        self.retry_exhausted = self.meter.create_counter(
            name="parley_send_retry_exhausted_total",
            description="Messages that exhausted all send attempts",
            unit="1"
        )

        # Mode changes
        self.mode_transitions = self.meter.create_counter(
            name="parley_mode_transitions_total",
            description="Transport mode transitions by kind",
            unit="1"
        )

        self.active_sessions = self.meter.create_up_down_counter(
            name="parley_active_sessions",
            description="Open chat sessions",
            unit="1"
        )

    def record_connect(self, success: bool, latency_ms: Optional[int] = None, reason: Optional[str] = None) -> None:
        """Record a persistent connect attempt."""
        attributes = {"success": str(success).lower()}
        if reason:
            attributes["reason"] = reason
        self.connect_attempts.add(1, attributes)
        if success and latency_ms is not None:
            self.connect_latency.record(latency_ms)

    def record_poll(self, sample: PollSample) -> None:
        """Record poll outcome metrics."""
        attributes = {"success": str(sample.success).lower()}
        if sample.error_type:
            attributes["error_type"] = sample.error_type

        self.polls.add(1, attributes)
        self.poll_duration.record(sample.duration_ms, attributes)
        if sample.message_count:
            self.polled_messages.add(sample.message_count)

    def record_send_attempt(self, transport: str, success: bool, attempt: int) -> None:
        """Record one send attempt."""
        self.send_attempts.add(1, {
            "transport": transport,
            "success": str(success).lower(),
            "attempt": str(attempt)
        })

    def record_retry_exhausted(self, transport: str) -> None:
        """Record a message that reached failed status."""
        self.retry_exhausted.add(1, {"transport": transport})

    def record_mode_transition(self, from_mode: str, to_mode: str, kind: str) -> None:
        """Record a transport mode change."""
        self.mode_transitions.add(1, {
            "from_mode": from_mode,
            "to_mode": to_mode,
            "kind": kind
        })

    def record_session_opened(self) -> None:
        self.active_sessions.add(1)

    def record_session_closed(self) -> None:
        self.active_sessions.add(-1)


class PollTimer:
    """Context manager for timing a poll and recording its outcome."""

    def __init__(self, collector: TransportMetrics, session_id: str):
        self.collector = collector
        self.session_id = session_id
        self.start_time: Optional[float] = None
        self.message_count = 0

    def __enter__(self) -> "PollTimer":
        self.start_time = time.monotonic()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.start_time is None:
            return
        duration_ms = int((time.monotonic() - self.start_time) * 1000)
        self.collector.record_poll(PollSample(
            session_id=self.session_id,
            duration_ms=duration_ms,
            message_count=self.message_count,
            success=exc_type is None,
            error_type=exc_type.__name__ if exc_type else None
        ))


# Global metrics collector instance
_metrics_collector: Optional[TransportMetrics] = None


def initialize_metrics(meter: metrics.Meter) -> TransportMetrics:
    """Initialize global metrics collector."""
    global _metrics_collector
    _metrics_collector = TransportMetrics(meter)
    return _metrics_collector


def get_metrics_collector() -> TransportMetrics:
    """Get the global collector, backed by the no-op meter when not initialized."""
    global _metrics_collector
    if _metrics_collector is None:
        _metrics_collector = TransportMetrics(metrics.get_meter("parley"))
    return _metrics_collector


@contextmanager
def time_poll(session_id: str):
    """Context manager for timing poll operations."""
    collector = get_metrics_collector()
    with PollTimer(collector, session_id) as timer:
        yield timer
