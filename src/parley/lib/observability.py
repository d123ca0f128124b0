"""
OpenTelemetry configuration with OTLP exporters for Parley.

Provides traces and metrics for persistent connects, polls and sends. When
telemetry is disabled or has not been initialized, the tracer and meter fall
back to the OpenTelemetry API defaults, which are no-ops.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Any, Iterator, Optional

from opentelemetry import trace, metrics
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor, SpanExporter
from opentelemetry.sdk.trace.sampling import ParentBased, TraceIdRatioBased
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import MetricReader, PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from opentelemetry.instrumentation.asyncio import AsyncioInstrumentor
from opentelemetry.instrumentation.logging import LoggingInstrumentor
from opentelemetry.trace import Status, StatusCode

from parley.lib.config import ObservabilityConfig


logger = logging.getLogger(__name__)

INSTRUMENTATION_NAME = "parley"
METRIC_EXPORT_INTERVAL_MS = 10000


class TelemetryManager:
    """Owns the tracer and meter providers of one Parley process.

    The OTLP exporters are built from ``ObservabilityConfig`` unless a span
    exporter or metric reader is passed in.
    """

    def __init__(
        self,
        config: ObservabilityConfig,
        span_exporter: Optional[SpanExporter] = None,
        metric_reader: Optional[MetricReader] = None,
        instrument: bool = True,
    ):
        self.config = config
        self._span_exporter = span_exporter
        self._metric_reader = metric_reader
        self._instrument = instrument
        self._initialized = False
        self._tracer_provider: Optional[TracerProvider] = None
        self._meter_provider: Optional[MeterProvider] = None

    @property
    def initialized(self) -> bool:
        return self._initialized

    def initialize(self) -> None:
        """Build the providers and register them globally.

        Does nothing when telemetry is disabled in the configuration.
        """
        if self._initialized:
            logger.warning("Telemetry already initialized")
            return
        if not self.config.enabled:
            logger.debug("Telemetry disabled; using no-op tracer and meter")
            return

        resource = Resource.create({
            "service.name": self.config.service_name,
            "service.version": self.config.service_version,
            "deployment.environment": self.config.environment,
            **self.config.resource_attributes,
        })

        try:
            self._tracer_provider = self._build_tracer_provider(resource)
            self._meter_provider = self._build_meter_provider(resource)
            trace.set_tracer_provider(self._tracer_provider)
            metrics.set_meter_provider(self._meter_provider)
            if self._instrument:
                AsyncioInstrumentor().instrument()
                LoggingInstrumentor().instrument(set_logging_format=False)
        except Exception as e:
            logger.error(f"Failed to initialize OpenTelemetry: {e}")
            raise

        self._initialized = True
        logger.info(f"OpenTelemetry initialized for service: {self.config.service_name}")

    def _build_tracer_provider(self, resource: Resource) -> TracerProvider:
        exporter = self._span_exporter or OTLPSpanExporter(
            endpoint=self.config.otlp_endpoint,
            timeout=self.config.export_timeout,
        )
        provider = TracerProvider(
            resource=resource,
            sampler=ParentBased(TraceIdRatioBased(self.config.trace_sampling_ratio)),
        )
        provider.add_span_processor(BatchSpanProcessor(
            exporter,
            export_timeout_millis=self.config.export_timeout * 1000,
        ))
        return provider

    def _build_meter_provider(self, resource: Resource) -> MeterProvider:
        reader = self._metric_reader or PeriodicExportingMetricReader(
            exporter=OTLPMetricExporter(
                endpoint=self.config.otlp_endpoint,
                timeout=self.config.export_timeout,
            ),
            export_interval_millis=METRIC_EXPORT_INTERVAL_MS,
        )
        return MeterProvider(resource=resource, metric_readers=[reader])

    def get_tracer(self) -> trace.Tracer:
        if not self._initialized:
            raise RuntimeError("Telemetry not initialized")
        return self._tracer_provider.get_tracer(INSTRUMENTATION_NAME)

    def get_meter(self) -> metrics.Meter:
        if not self._initialized:
            raise RuntimeError("Telemetry not initialized")
        return self._meter_provider.get_meter(INSTRUMENTATION_NAME)

    def force_flush(self) -> None:
        """Export buffered spans and metrics now."""
        if not self._initialized:
            return
        self._tracer_provider.force_flush()
        self._meter_provider.force_flush()

    def shutdown(self) -> None:
        """Flush pending data and shut the providers down."""
        if not self._initialized:
            return

        try:
            self._tracer_provider.shutdown()
            self._meter_provider.shutdown()
            if self._instrument:
                AsyncioInstrumentor().uninstrument()
                LoggingInstrumentor().uninstrument()
            logger.info("OpenTelemetry shutdown completed")
        except Exception as e:
            logger.error(f"Error during telemetry shutdown: {e}")
        finally:
            self._initialized = False


# Global telemetry manager instance
_telemetry_manager: Optional[TelemetryManager] = None


def initialize_telemetry(config: ObservabilityConfig, **kwargs) -> TelemetryManager:
    """Create and initialize the global telemetry manager."""
    global _telemetry_manager

    _telemetry_manager = TelemetryManager(config, **kwargs)
    _telemetry_manager.initialize()

    return _telemetry_manager


def get_tracer() -> trace.Tracer:
    """Get the global tracer, or the no-op API tracer when not initialized."""
    if _telemetry_manager is None or not _telemetry_manager.initialized:
        return trace.get_tracer(INSTRUMENTATION_NAME)
    return _telemetry_manager.get_tracer()


def get_meter() -> metrics.Meter:
    """Get the global meter, or the no-op API meter when not initialized."""
    if _telemetry_manager is None or not _telemetry_manager.initialized:
        return metrics.get_meter(INSTRUMENTATION_NAME)
    return _telemetry_manager.get_meter()


def shutdown_telemetry() -> None:
    """Shutdown global telemetry manager."""
    global _telemetry_manager
    if _telemetry_manager:
        _telemetry_manager.shutdown()
        _telemetry_manager = None


@contextmanager
def transport_span(
    operation: str,
    session_id: str,
    transport: str,
    attributes: Optional[Dict[str, Any]] = None
) -> Iterator[trace.Span]:
    """Span around one transport operation (connect, poll, send).

    Exceptions are recorded on the span and re-raised.
    """
    span_attributes = {
        "chat.session_id": session_id,
        "chat.transport": transport,
        "chat.operation": operation,
    }
    if attributes:
        span_attributes.update(attributes)

    tracer = get_tracer()
    with tracer.start_as_current_span(
        f"chat.{operation}",
        attributes=span_attributes,
        record_exception=False,
        set_status_on_exception=False,
    ) as span:
        try:
            yield span
        except Exception as e:
            span.record_exception(e)
            span.set_status(Status(StatusCode.ERROR, str(e)))
            raise
