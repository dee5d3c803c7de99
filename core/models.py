"""
Lifecycle Engine: Data Model

Opportunity snapshots (read-only input), positions with a two-state
lifecycle, aggregate outcome statistics, and the persisted engine state root.
"""

import math
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional
import logging

from core.exceptions import PersistenceError

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp (or datetime) into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        text = str(value)
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _first_present(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


class PositionState(str, Enum):
    """Position lifecycle: OPEN -> CLOSED, exactly once."""
    OPEN = "open"
    CLOSED = "closed"


@dataclass(frozen=True)
class Opportunity:
    """Point-in-time snapshot of a yield-bearing pool."""
    id: str
    name: str
    provenance: str  # protocol tag, e.g. "Orca"
    yield_rate: float  # fraction: 0.45 == 45% APY
    price: float
    liquidity: float
    volume: float  # trailing 24h volume
    created_at: Optional[datetime] = None
    fetched_at: Optional[datetime] = None

    def age_days(self, now: datetime) -> Optional[float]:
        """Days since pool creation, or None when the source did not report it."""
        if self.created_at is None:
            return None
        return (now - self.created_at).total_seconds() / 86400

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "Opportunity":
        """
        Build an Opportunity from a normalized pool record.

        Accepts the pool cache keys (apy, volume_24h, protocol) as well as the
        engine's own field names.

        Raises:
            ValueError: if the record has no id or non-numeric metrics
        """
        opportunity_id = _first_present(raw, "id", "opportunity_id", "poolId")
        if not opportunity_id:
            raise ValueError("opportunity record has no id")

        yield_rate = _first_present(raw, "yield_rate", "apy")
        if yield_rate is None:
            raise ValueError(f"opportunity {opportunity_id} has no yield rate")

        price = float(_first_present(raw, "price") or 0.0)
        if not math.isfinite(price):
            raise ValueError(f"opportunity {opportunity_id} has non-finite price {price!r}")

        return cls(
            id=str(opportunity_id),
            name=str(_first_present(raw, "name", "poolName") or "Unknown Pool"),
            provenance=str(_first_present(raw, "provenance", "protocol") or "unknown"),
            yield_rate=float(yield_rate),
            price=price,
            liquidity=float(_first_present(raw, "liquidity") or 0.0),
            volume=float(_first_present(raw, "volume", "volume_24h") or 0.0),
            created_at=parse_timestamp(_first_present(raw, "created_at", "createdAt")),
            fetched_at=parse_timestamp(_first_present(raw, "fetched_at", "lastFetched")),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["created_at"] = _iso(self.created_at)
        data["fetched_at"] = _iso(self.fetched_at)
        return data


_EXIT_FIELDS = (
    "closed_at",
    "exit_yield_rate",
    "exit_price",
    "realized_pnl",
    "realized_pnl_percent",
    "held_duration_hours",
)


@dataclass
class Position:
    """
    Simulated stake in one opportunity.

    Entry fields are a snapshot taken at admission and never change.
    Exit fields stay None while OPEN and are all set by close().
    """
    id: str
    opportunity_id: str
    name: str
    provenance: str
    entry_yield_rate: float
    entry_price: float
    entry_liquidity: float
    entry_volume: float
    committed_amount: float
    opened_at: datetime
    state: PositionState = PositionState.OPEN
    origin: str = "auto"  # "auto" (tick) or "manual" (operator)

    closed_at: Optional[datetime] = None
    exit_yield_rate: Optional[float] = None
    exit_price: Optional[float] = None
    realized_pnl: Optional[float] = None
    realized_pnl_percent: Optional[float] = None
    held_duration_hours: Optional[float] = None

    @classmethod
    def open_from(
        cls,
        opportunity: Opportunity,
        *,
        position_id: str,
        committed_amount: float,
        opened_at: datetime,
        origin: str = "auto",
    ) -> "Position":
        return cls(
            id=position_id,
            opportunity_id=opportunity.id,
            name=opportunity.name,
            provenance=opportunity.provenance,
            entry_yield_rate=opportunity.yield_rate,
            entry_price=opportunity.price,
            entry_liquidity=opportunity.liquidity,
            entry_volume=opportunity.volume,
            committed_amount=committed_amount,
            opened_at=opened_at,
            origin=origin,
        )

    @property
    def is_open(self) -> bool:
        return self.state is PositionState.OPEN

    def hours_held(self, now: datetime) -> float:
        return (now - self.opened_at).total_seconds() / 3600

    def close(
        self,
        *,
        closed_at: datetime,
        exit_yield_rate: float,
        exit_price: float,
        realized_pnl: float,
        realized_pnl_percent: float,
        held_duration_hours: float,
    ) -> None:
        if not self.is_open:
            raise ValueError(f"position {self.id} is already closed")
        self.closed_at = closed_at
        self.exit_yield_rate = exit_yield_rate
        self.exit_price = exit_price
        self.realized_pnl = realized_pnl
        self.realized_pnl_percent = realized_pnl_percent
        self.held_duration_hours = held_duration_hours
        self.state = PositionState.CLOSED

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["opened_at"] = _iso(self.opened_at)
        data["closed_at"] = _iso(self.closed_at)
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Position":
        """
        Rebuild a position from its persisted form.

        Raises:
            ValueError, KeyError, TypeError: on missing or inconsistent fields
        """
        if not isinstance(data, Mapping):
            raise TypeError(f"position must be an object, got {type(data).__name__}")
        state = PositionState(data["state"])
        position = cls(
            id=str(data["id"]),
            opportunity_id=str(data["opportunity_id"]),
            name=str(data.get("name") or ""),
            provenance=str(data.get("provenance") or ""),
            entry_yield_rate=float(data["entry_yield_rate"]),
            entry_price=float(data["entry_price"]),
            entry_liquidity=float(data["entry_liquidity"]),
            entry_volume=float(data["entry_volume"]),
            committed_amount=float(data["committed_amount"]),
            opened_at=parse_timestamp(data["opened_at"]),
            state=state,
            origin=str(data.get("origin") or "auto"),
        )
        if position.opened_at is None:
            raise ValueError(f"position {position.id} has no opened_at")

        exit_values = {name: data.get(name) for name in _EXIT_FIELDS}
        present = [name for name, value in exit_values.items() if value is not None]
        if state is PositionState.OPEN:
            if present:
                raise ValueError(f"open position {position.id} carries exit fields {present}")
            return position

        if len(present) != len(_EXIT_FIELDS):
            missing = sorted(set(_EXIT_FIELDS) - set(present))
            raise ValueError(f"closed position {position.id} is missing {missing}")
        position.closed_at = parse_timestamp(exit_values["closed_at"])
        position.exit_yield_rate = float(exit_values["exit_yield_rate"])
        position.exit_price = float(exit_values["exit_price"])
        position.realized_pnl = float(exit_values["realized_pnl"])
        position.realized_pnl_percent = float(exit_values["realized_pnl_percent"])
        position.held_duration_hours = float(exit_values["held_duration_hours"])
        return position


@dataclass
class AggregateStats:
    """Outcome statistics, updated on every entry and settlement."""
    total_opened: int = 0
    total_settled: int = 0
    profitable_count: int = 0
    loss_count: int = 0
    cumulative_profit: float = 0.0
    cumulative_loss: float = 0.0  # magnitude
    avg_hold_hours: float = 0.0

    @property
    def net_pnl(self) -> float:
        return self.cumulative_profit - self.cumulative_loss

    @property
    def win_rate(self) -> float:
        if self.total_settled == 0:
            return 0.0
        return self.profitable_count / self.total_settled

    def record_entry(self) -> None:
        self.total_opened += 1

    def record_settlement(self, position: Position, history: List[Position]) -> None:
        """
        Fold one settled position into the totals.

        `history` must already include `position`; the mean hold time is
        recomputed over the whole settled history.
        """
        pnl = position.realized_pnl or 0.0
        self.total_settled += 1
        if pnl > 0:
            self.profitable_count += 1
            self.cumulative_profit += pnl
        else:
            self.loss_count += 1
            self.cumulative_loss += abs(pnl)

        if history:
            total_hours = sum(p.held_duration_hours or 0.0 for p in history)
            self.avg_hold_hours = total_hours / len(history)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["net_pnl"] = self.net_pnl
        data["win_rate"] = self.win_rate
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "AggregateStats":
        if not isinstance(data, Mapping):
            raise TypeError(f"stats must be an object, got {type(data).__name__}")
        known = {f.name for f in fields(cls)}
        kwargs = {key: value for key, value in data.items() if key in known}
        stats = cls(**kwargs)
        for name in ("total_opened", "total_settled", "profitable_count", "loss_count"):
            setattr(stats, name, int(getattr(stats, name)))
        for name in ("cumulative_profit", "cumulative_loss", "avg_hold_hours"):
            setattr(stats, name, float(getattr(stats, name)))
        return stats


@dataclass
class EngineState:
    """
    Persisted root owned by the engine.

    OPEN positions are indexed by opportunity_id (uniqueness) and by id
    (lookup). History is append-only, in settlement order.
    """
    open_positions: Dict[str, Position] = field(default_factory=dict)
    history: List[Position] = field(default_factory=list)
    stats: AggregateStats = field(default_factory=AggregateStats)
    _by_id: Dict[str, Position] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self):
        self._by_id = {p.id: p for p in self.open_positions.values()}

    @property
    def open_count(self) -> int:
        return len(self.open_positions)

    def has_open(self, opportunity_id: str) -> bool:
        return opportunity_id in self.open_positions

    def get_open(self, position_id: str) -> Optional[Position]:
        return self._by_id.get(position_id)

    def add_open(self, position: Position) -> None:
        if not position.is_open:
            raise ValueError(f"position {position.id} is not open")
        if position.opportunity_id in self.open_positions:
            raise ValueError(f"opportunity {position.opportunity_id} already has an open position")
        self.open_positions[position.opportunity_id] = position
        self._by_id[position.id] = position

    def archive(self, position: Position) -> None:
        """Move a just-closed position from the open set to history."""
        if position.is_open:
            raise ValueError(f"position {position.id} is still open")
        self.open_positions.pop(position.opportunity_id, None)
        self._by_id.pop(position.id, None)
        self.history.append(position)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": STATE_VERSION,
            "open_positions": {key: p.to_dict() for key, p in self.open_positions.items()},
            "history": [p.to_dict() for p in self.history],
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "EngineState":
        """
        Rebuild engine state from its persisted form.

        Raises:
            PersistenceError: if the content is structurally invalid
        """
        if not isinstance(data, dict):
            raise PersistenceError("state root is not an object")
        try:
            raw_open = data.get("open_positions") or {}
            raw_history = data.get("history") or []
            if not isinstance(raw_open, dict) or not isinstance(raw_history, list):
                raise TypeError("open_positions must be an object and history a list")

            state = cls()
            for key, raw in raw_open.items():
                position = Position.from_dict(raw)
                if not position.is_open:
                    raise ValueError(f"closed position {position.id} found in open set")
                if position.opportunity_id != key:
                    raise ValueError(f"open position {position.id} filed under {key}")
                state.add_open(position)

            for raw in raw_history:
                position = Position.from_dict(raw)
                if position.is_open:
                    raise ValueError(f"open position {position.id} found in history")
                state.history.append(position)

            state.stats = AggregateStats.from_dict(data.get("stats") or {})
        except (KeyError, TypeError, ValueError) as exc:
            raise PersistenceError("state content is invalid", exc) from exc

        return state
