"""Prometheus-backed metrics hooks for betting passes."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


@dataclass
class PassStats:
    name: str
    status: str  # "ok" | "partial" | "aborted"
    duration_seconds: float
    counts: Dict[str, int] = field(default_factory=dict)


class MetricsRecorder:
    """
    Expose pass stats via Prometheus.

    Singleton pattern to prevent duplicate metric registration errors.
    Collectors live on a private registry so tests can rebuild them freely.
    """
    _instance: Optional['MetricsRecorder'] = None
    _initialized: bool = False

    def __new__(cls, enabled: bool = True, port: int = 9100):
        """Ensure only one MetricsRecorder instance exists."""
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self, enabled: bool = True, port: int = 9100) -> None:
        # Skip re-initialization if already initialized
        if self.__class__._initialized:
            return

        self._enabled = bool(enabled)
        self._port = port
        self._started = False
        self.__class__._initialized = True

        self._last_pass: Dict[str, PassStats] = {}
        self.registry = CollectorRegistry()

        self._pass_summary = Summary(
            "favfund_pass_duration_seconds",
            "Duration of one pass",
            labelnames=("pass_name",),
            registry=self.registry,
        )
        self._pass_counter = Counter(
            "favfund_pass_total",
            "Passes run by outcome",
            labelnames=("pass_name", "status"),
            registry=self.registry,
        )
        self._pass_gauge = Gauge(
            "favfund_pass_count",
            "Per-pass counts from the last run",
            labelnames=("pass_name", "count"),
            registry=self.registry,
        )
        self._guard_counter = Counter(
            "favfund_guard_rejections_total",
            "Orders held back by a submission guard",
            labelnames=("guard",),
            registry=self.registry,
        )
        self._exit_counter = Counter(
            "favfund_stop_loss_exits_total",
            "Protective sells submitted",
            registry=self.registry,
        )
        self._data_quality_counter = Counter(
            "favfund_data_quality_holds_total",
            "Stop-loss exits blocked by untrusted data",
            registry=self.registry,
        )

    @classmethod
    def _reset_for_testing(cls) -> None:
        """
        Reset singleton state for testing.
        WARNING: Only call from test fixtures/teardown.
        """
        cls._instance = None
        cls._initialized = False

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
        except OSError as exc:
            self._enabled = False
            logger.error("Failed to start metrics exporter on port %s: %s", self._port, exc)
            return
        self._started = True
        logger.info("Prometheus metrics exporter listening on 0.0.0.0:%s", self._port)

    def is_enabled(self) -> bool:
        return self._enabled

    def observe_pass(self, stats: PassStats) -> None:
        self._pass_summary.labels(pass_name=stats.name).observe(stats.duration_seconds)
        self._pass_counter.labels(pass_name=stats.name, status=stats.status).inc()
        for key, value in stats.counts.items():
            self._pass_gauge.labels(pass_name=stats.name, count=key).set(value)
        self._last_pass[stats.name] = stats

    def record_guard_rejection(self, guard: str) -> None:
        """guard: "min_price" | "hard_cap" """
        self._guard_counter.labels(guard=guard).inc()

    def record_stop_loss(self, sold: int, data_errors: int) -> None:
        if sold:
            self._exit_counter.inc(sold)
        if data_errors:
            self._data_quality_counter.inc(data_errors)

    def last_pass(self, name: str) -> Optional[PassStats]:
        return self._last_pass.get(name)

    def sample(self, metric: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        return self.registry.get_sample_value(metric, labels or {})


__all__ = ["MetricsRecorder", "PassStats"]
