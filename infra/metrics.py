"""Prometheus-backed metrics hooks for the lifecycle engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Summary, start_http_server

logger = logging.getLogger(__name__)


@dataclass
class TickStats:
    status: str
    settled: int
    opened: int
    rejected: int
    duration_seconds: float


class MetricsRecorder:
    """
    Expose engine stats via Prometheus.

    Each recorder owns its own CollectorRegistry, so several engines (e.g. in
    tests) never collide on metric registration. `enabled` only controls the
    HTTP exporter; counters are always maintained.
    """

    def __init__(self, enabled: bool = True, port: int = 9100, registry: Optional[CollectorRegistry] = None) -> None:
        self._enabled = bool(enabled)
        self._port = int(port)
        self._started = False
        self.registry = registry or CollectorRegistry()

        self._last_tick_stats: Optional[TickStats] = None

        self._tick_summary = Summary(
            "yield_engine_tick_duration_seconds",
            "Duration of a full settle-then-enter tick",
            registry=self.registry,
        )
        self._tick_counter = Counter(
            "yield_engine_ticks_total",
            "Total ticks by status",
            labelnames=("status",),
            registry=self.registry,
        )
        self._entries_counter = Counter(
            "yield_engine_positions_opened_total",
            "Positions opened, by origin (auto/manual)",
            labelnames=("origin",),
            registry=self.registry,
        )
        self._settlements_counter = Counter(
            "yield_engine_positions_settled_total",
            "Positions settled, by outcome (profit/loss)",
            labelnames=("outcome",),
            registry=self.registry,
        )
        self._rejections_counter = Counter(
            "yield_engine_entry_rejections_total",
            "Opportunities rejected by the entry policy",
            labelnames=("reason",),
            registry=self.registry,
        )
        self._source_errors_counter = Counter(
            "yield_engine_source_errors_total",
            "Ticks where the opportunity source was unavailable",
            registry=self.registry,
        )
        self._persistence_errors_counter = Counter(
            "yield_engine_persistence_errors_total",
            "Failed state store writes",
            registry=self.registry,
        )
        self._open_positions_gauge = Gauge(
            "yield_engine_open_positions",
            "Number of currently OPEN positions",
            registry=self.registry,
        )
        self._realized_pnl_gauge = Gauge(
            "yield_engine_realized_pnl_usd",
            "Cumulative realized P&L (profit minus loss) in USD",
            registry=self.registry,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def last_tick_stats(self) -> Optional[TickStats]:
        return self._last_tick_stats

    def start(self) -> None:
        if not self._enabled or self._started:
            return
        start_http_server(self._port, registry=self.registry)
        self._started = True
        logger.info("Prometheus metrics exporter listening on port %s", self._port)

    def record_tick(self, stats: TickStats) -> None:
        self._last_tick_stats = stats
        self._tick_counter.labels(status=stats.status).inc()
        self._tick_summary.observe(max(stats.duration_seconds, 0.0))

    def record_entry(self, origin: str) -> None:
        self._entries_counter.labels(origin=origin).inc()

    def record_settlement(self, realized_pnl: float) -> None:
        outcome = "profit" if realized_pnl > 0 else "loss"
        self._settlements_counter.labels(outcome=outcome).inc()

    def record_rejection(self, reason: str) -> None:
        self._rejections_counter.labels(reason=reason or "unknown").inc()

    def record_source_error(self) -> None:
        self._source_errors_counter.inc()

    def record_persistence_error(self) -> None:
        self._persistence_errors_counter.inc()

    def update_book(self, open_positions: int, net_pnl: float) -> None:
        self._open_positions_gauge.set(open_positions)
        self._realized_pnl_gauge.set(net_pnl)

    def sample(self, name: str, labels: Optional[dict] = None) -> Optional[float]:
        """Read one sample back from this recorder's registry."""
        return self.registry.get_sample_value(name, labels or {})


__all__ = ["MetricsRecorder", "TickStats"]
