"""
Lifecycle Engine

Runs the recurring settle-then-enter cycle over a bounded set of positions:

1. Settle exits: every OPEN position held for >= hold_duration_hours is
   priced against the current listing (entry snapshot as fallback), closed,
   archived, folded into the stats and persisted.
2. Evaluate entries: while below max_open_positions, walk the listing in
   order and admit opportunities that pass the entry policy, persisting each.

Exits run first so capacity freed this tick is available to new entries and
a position opened this tick is never settled in the same tick.

All mutations (scheduled tick, manual tick, manual entry) serialize through
one lock. A background daemon thread drives the schedule; stop() lets an
in-flight tick finish before returning.
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from core.audit_log import AuditLogger
from core.config import EngineConfig
from core.entry_policy import REASON_CAPACITY, EntryPolicy
from core.exceptions import PersistenceError, PolicyViolation, SourceUnavailable
from core.models import EngineState, Opportunity, Position
from core.opportunity_source import OpportunitySource, find_opportunity
from core.position_manager import PositionManager
from infra.clock import Clock, SystemClock
from infra.metrics import MetricsRecorder, TickStats
from infra.state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class TickResult:
    """Outcome of one tick"""
    started_at: datetime
    status: str = "ok"  # ok | degraded
    settled: List[Position] = field(default_factory=list)
    opened: List[Position] = field(default_factory=list)
    rejected: int = 0
    entries_skipped: Optional[str] = None  # at_capacity | source_unavailable
    source_error: Optional[str] = None
    persistence_error: Optional[str] = None
    settlement_errors: Dict[str, str] = field(default_factory=dict)
    open_after: int = 0
    duration_seconds: float = 0.0


class _TickListing:
    """Fetches the opportunity listing at most once per tick."""

    def __init__(self, fetch: Callable[[], List[Opportunity]], on_error: Callable[[SourceUnavailable], None]):
        self._fetch = fetch
        self._on_error = on_error
        self._loaded = False
        self.opportunities: Optional[List[Opportunity]] = None
        self.error: Optional[SourceUnavailable] = None

    def get(self) -> Optional[List[Opportunity]]:
        if not self._loaded:
            self._loaded = True
            try:
                self.opportunities = self._fetch()
            except SourceUnavailable as e:
                self.error = e
                self._on_error(e)
        return self.opportunities


class LifecycleEngine:
    """
    Stateful owner of all positions.

    Outward surface: start(), stop(), status(), open_positions(), history(),
    manual_entry(). initialize() and run_tick() are used by the process
    entry point and tests.
    """

    def __init__(
        self,
        config: EngineConfig,
        source: OpportunitySource,
        store: StateStore,
        clock: Optional[Clock] = None,
        *,
        metrics: Optional[MetricsRecorder] = None,
        audit_logger: Optional[AuditLogger] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.config = config
        self.source = source
        self.store = store
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self.audit_logger = audit_logger
        self._id_factory = id_factory or (lambda: f"pos_{uuid.uuid4().hex[:16]}")

        self.entry_policy = EntryPolicy(config)
        self.position_manager = PositionManager(config)

        self._state = EngineState()
        self._initialized = False

        # Mutation lock: held for the whole of a tick or a manual entry
        self._lock = threading.RLock()
        # Control lock: start/stop bookkeeping only, never held across a tick
        self._control_lock = threading.Lock()
        self._running = False
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._source_worker: Optional[threading.Thread] = None

        self._last_tick: Optional[TickResult] = None
        self._last_persistence_error: Optional[PersistenceError] = None

    # ----------------------------------------------------------------- lifecycle

    def initialize(self) -> None:
        """
        Load persisted state, or start empty when nothing was persisted.

        Raises:
            PersistenceError: if the store holds undecodable content
        """
        with self._lock:
            if self._initialized:
                return
            loaded = self.store.load()
            self._state = loaded if loaded is not None else EngineState()
            self._initialized = True

        logger.info(f"Lifecycle engine initialized: {self.config.describe()}")
        logger.info(
            f"Loaded {self._state.open_count} open and {len(self._state.history)} settled positions"
        )
        self._update_book()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Enter running mode and begin the periodic tick (first tick runs immediately)."""
        self.initialize()
        with self._control_lock:
            if self._running:
                logger.warning("Lifecycle engine is already running")
                return
            self._running = True
            self._stop_event = threading.Event()
            self._thread = threading.Thread(
                target=self._run_loop,
                args=(self._stop_event,),
                name="LifecycleEngine",
                daemon=True,
            )
            self._thread.start()
        logger.info(f"Lifecycle engine started (interval={self.config.tick_interval_minutes:g}m)")

    def stop(self) -> None:
        """Halt future ticks; waits for an in-flight tick to complete."""
        with self._control_lock:
            if not self._running:
                return
            self._running = False
            self._stop_event.set()
            thread, self._thread = self._thread, None

        if thread is not None and thread is not threading.current_thread():
            thread.join()
        logger.info("Lifecycle engine stopped")

    def _run_loop(self, stop_event: threading.Event) -> None:
        interval = self.config.tick_interval_seconds
        while not stop_event.is_set():
            try:
                self._tick()
            except Exception as e:
                # The schedule survives any single-tick failure; stop() is the only exit
                logger.error(f"Tick failed: {e}", exc_info=True)
            if stop_event.wait(interval):
                break
        logger.info("Tick loop exited cleanly.")

    # ---------------------------------------------------------------------- tick

    def run_tick(self) -> TickResult:
        """
        Run one settle-then-enter cycle synchronously.

        Raises:
            PersistenceError: if any state write during the tick failed
                (the in-memory changes are kept)
        """
        result = self._tick()
        # A later successful full-state write in the same tick supersedes an earlier failure
        if result.persistence_error and self._last_persistence_error is not None:
            raise PersistenceError("tick state write failed", self._last_persistence_error)
        return result

    def _tick(self) -> TickResult:
        self.initialize()
        started = time.monotonic()
        with self._lock:
            now = self.clock.now()
            result = TickResult(started_at=now)
            listing = _TickListing(self._fetch_listing, lambda e: self._on_source_error(e, result))

            self._settle_exits(now, listing, result)
            self._evaluate_entries(now, listing, result)

            result.open_after = self._state.open_count
            result.duration_seconds = time.monotonic() - started
            if result.source_error or result.persistence_error or result.settlement_errors:
                result.status = "degraded"
            self._last_tick = result

        logger.info(
            f"Tick complete: settled={len(result.settled)} opened={len(result.opened)} "
            f"rejected={result.rejected} open={result.open_after}/{self.config.max_open_positions} "
            f"status={result.status} ({result.duration_seconds:.2f}s)"
        )
        self._update_book()
        if self.metrics:
            self.metrics.record_tick(
                TickStats(
                    status=result.status,
                    settled=len(result.settled),
                    opened=len(result.opened),
                    rejected=result.rejected,
                    duration_seconds=result.duration_seconds,
                )
            )
        if self.audit_logger:
            self.audit_logger.log_tick(result, ts=now)
        return result

    def _settle_exits(self, now: datetime, listing: _TickListing, result: TickResult) -> None:
        eligible = self.position_manager.find_eligible(list(self._state.open_positions.values()), now)
        if not eligible:
            return

        opportunities = listing.get()
        if opportunities is None:
            logger.warning(f"Settling {len(eligible)} position(s) from entry snapshots (listing unavailable)")

        for position in eligible:
            current = find_opportunity(opportunities, position.opportunity_id) if opportunities else None
            try:
                quote = self.position_manager.quote(position, current, now)
            except ValueError as e:
                logger.error(f"Cannot settle {position.id} ({position.opportunity_id}): {e}")
                result.settlement_errors[position.id] = str(e)
                continue

            self.position_manager.settle(position, quote, now)
            self._state.archive(position)
            self._state.stats.record_settlement(position, self._state.history)
            result.settled.append(position)

            if self.metrics:
                self.metrics.record_settlement(quote.realized_pnl)
            if self.audit_logger:
                self.audit_logger.log_exit(position, degraded=quote.degraded, ts=now)

            error = self._persist()
            if error is not None:
                result.persistence_error = str(error)

    def _evaluate_entries(self, now: datetime, listing: _TickListing, result: TickResult) -> None:
        if self._state.open_count >= self.config.max_open_positions:
            result.entries_skipped = "at_capacity"
            logger.debug(f"At capacity ({self._state.open_count}), skipping entry evaluation")
            return

        opportunities = listing.get()
        if opportunities is None:
            result.entries_skipped = "source_unavailable"
            return

        for opportunity in opportunities:
            decision = self.entry_policy.evaluate(
                opportunity,
                open_ids=self._state.open_positions,
                open_count=self._state.open_count,
                now=now,
            )
            if not decision.approved:
                result.rejected += 1
                if self.metrics:
                    self.metrics.record_rejection(decision.reason)
                if decision.reason == REASON_CAPACITY:
                    logger.info(f"Reached {self.config.max_open_positions} open positions, ending entry pass")
                    break
                continue

            position = self._open_position(opportunity, now, origin="auto")
            result.opened.append(position)
            error = self._persist()
            if error is not None:
                result.persistence_error = str(error)

    # -------------------------------------------------------------- manual entry

    def manual_entry(self, opportunity: Opportunity) -> Position:
        """
        Open a position outside the schedule.

        Only the yield threshold and minimum liquidity are enforced (plus
        uniqueness and capacity); volume and age filters are bypassed.

        Raises:
            PolicyViolation: if a mandatory check fails (state unchanged)
            PersistenceError: if the position was opened but could not be persisted
        """
        self.initialize()
        with self._lock:
            decision = self.entry_policy.evaluate_manual(
                opportunity,
                open_ids=self._state.open_positions,
                open_count=self._state.open_count,
            )
            if not decision.approved:
                logger.warning(f"Manual entry rejected for {opportunity.id}: {decision.detail}")
                if self.metrics:
                    self.metrics.record_rejection(decision.reason)
                raise PolicyViolation(decision.reason, decision.detail)

            position = self._open_position(opportunity, self.clock.now(), origin="manual")
            error = self._persist()
            snapshot = replace(position)

        self._update_book()
        if error is not None:
            raise error
        return snapshot

    # ------------------------------------------------------------------- queries

    def status(self) -> Dict[str, Any]:
        with self._lock:
            last = self._last_tick
            return {
                "running": self._running,
                "initialized": self._initialized,
                "open_positions": self._state.open_count,
                "max_open_positions": self.config.max_open_positions,
                "stats": self._state.stats.to_dict(),
                "config": self.config.model_dump(),
                "last_tick_at": last.started_at.isoformat() if last else None,
                "last_tick_status": last.status if last else None,
                "last_persistence_error": str(self._last_persistence_error) if self._last_persistence_error else None,
            }

    def open_positions(self) -> List[Position]:
        with self._lock:
            positions = sorted(self._state.open_positions.values(), key=lambda p: p.opened_at)
            return [replace(p) for p in positions]

    def history(self) -> List[Position]:
        with self._lock:
            return [replace(p) for p in self._state.history]

    # ------------------------------------------------------------------ internals

    def _open_position(self, opportunity: Opportunity, now: datetime, *, origin: str) -> Position:
        position = Position.open_from(
            opportunity,
            position_id=self._id_factory(),
            committed_amount=self.config.committed_amount,
            opened_at=now,
            origin=origin,
        )
        self._state.add_open(position)
        self._state.stats.record_entry()

        logger.info(
            f"ENTRY ({origin}): {opportunity.name} [{opportunity.id}] "
            f"APY {opportunity.yield_rate * 100:.2f}%, ${position.committed_amount:,.0f} committed"
        )
        if self.metrics:
            self.metrics.record_entry(origin)
        if self.audit_logger:
            self.audit_logger.log_entry(position, ts=now)
        return position

    def _fetch_listing(self) -> List[Opportunity]:
        """
        Call the source on a worker thread, bounded by source_timeout_seconds.

        A timed-out call keeps its worker; until that worker returns, later
        ticks report the source as unavailable instead of starting another.
        """
        timeout = self.config.source_timeout_seconds
        pending = self._source_worker
        if pending is not None and pending.is_alive():
            raise SourceUnavailable(f"{self.source.name} previous listing call still pending")

        box: Dict[str, Any] = {}

        def _call():
            try:
                box["listing"] = self.source.list()
            except Exception as e:
                box["error"] = e

        worker = threading.Thread(target=_call, name="OpportunitySource", daemon=True)
        self._source_worker = worker
        worker.start()
        worker.join(timeout)

        if worker.is_alive():
            raise SourceUnavailable(f"{self.source.name} timed out after {timeout:g}s")
        self._source_worker = None
        error = box.get("error")
        if isinstance(error, SourceUnavailable):
            raise error
        if error is not None:
            raise SourceUnavailable(self.source.name, error) from error
        return list(box.get("listing") or [])

    def _on_source_error(self, error: SourceUnavailable, result: TickResult) -> None:
        logger.warning(f"Opportunity source unavailable, skipping entries this tick: {error}")
        result.source_error = str(error)
        if self.metrics:
            self.metrics.record_source_error()

    def _persist(self) -> Optional[PersistenceError]:
        """Write the full state. Failures are returned, never rolled back."""
        try:
            self.store.save(self._state)
        except PersistenceError as e:
            logger.error(f"State persistence failed, keeping in-memory state (retry on next mutation): {e}")
            self._last_persistence_error = e
            if self.metrics:
                self.metrics.record_persistence_error()
            return e
        self._last_persistence_error = None
        return None

    def _update_book(self) -> None:
        if self.metrics:
            with self._lock:
                open_count = self._state.open_count
                net_pnl = self._state.stats.net_pnl
            self.metrics.update_book(open_count, net_pnl)
