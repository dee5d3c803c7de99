"""
Position Management: Exit Logic for Fixed-Hold Settlement

Finds OPEN positions whose hold time has elapsed and prices their settlement.

P&L model: profitability tracks relative yield-rate drift between entry and
exit. Impermanent loss, fees and slippage are not modeled.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from core.config import EngineConfig
from core.models import Opportunity, Position

logger = logging.getLogger(__name__)


@dataclass
class SettlementQuote:
    """Exit values and realized outcome for one position"""
    position_id: str
    opportunity_id: str
    exit_yield_rate: float
    exit_price: float
    yield_delta: float
    pnl_percent: float
    realized_pnl: float
    held_hours: float
    degraded: bool = False  # exit values fell back to the entry snapshot


def compute_pnl(entry_yield_rate: float, exit_yield_rate: float, committed_amount: float) -> Tuple[float, float]:
    """
    Return (pnl_percent, realized_pnl) for a yield move.

    pnl_percent = (exit - entry) / entry * 100
    realized_pnl = pnl_percent / 100 * committed_amount

    An entry yield of exactly zero has no relative move and settles at 0%.
    """
    if entry_yield_rate == 0:
        return 0.0, 0.0
    pnl_percent = ((exit_yield_rate - entry_yield_rate) / entry_yield_rate) * 100
    realized_pnl = (pnl_percent / 100) * committed_amount
    return pnl_percent, realized_pnl


def _require_finite(position: Position, name: str) -> float:
    value = getattr(position, name)
    if not isinstance(value, (int, float)) or isinstance(value, bool) or not math.isfinite(value):
        raise ValueError(f"position {position.id} has malformed {name}={value!r}")
    return float(value)


class PositionManager:
    """
    Decides when OPEN positions exit and what they settle at.

    Responsibilities:
    - Hold-time eligibility (held >= hold_duration_hours, never earlier)
    - Exit pricing from the current listing, with entry-snapshot fallback
    - Closing the position with every exit field set
    """

    def __init__(self, config: EngineConfig):
        self.config = config
        self.hold_duration_hours = config.hold_duration_hours

    def is_eligible(self, position: Position, now: datetime) -> bool:
        return position.is_open and position.hours_held(now) >= self.hold_duration_hours

    def find_eligible(self, positions: Iterable[Position], now: datetime) -> List[Position]:
        eligible = [p for p in positions if self.is_eligible(p, now)]
        if eligible:
            logger.debug(f"{len(eligible)} position(s) reached the {self.hold_duration_hours:g}h hold")
        return eligible

    def quote(self, position: Position, current: Optional[Opportunity], now: datetime) -> SettlementQuote:
        """
        Price the exit of `position`.

        Args:
            position: OPEN position to settle
            current: Current listing record for the position's opportunity,
                or None when the pool is no longer listed / the listing failed
            now: Settlement time

        Raises:
            ValueError: if the entry snapshot is malformed
        """
        entry_yield = _require_finite(position, "entry_yield_rate")
        entry_price = _require_finite(position, "entry_price")
        committed = _require_finite(position, "committed_amount")

        degraded = current is None or not (
            math.isfinite(current.yield_rate) and math.isfinite(current.price)
        )
        if degraded and current is not None:
            logger.warning(f"Non-finite listing values for {position.opportunity_id}; settling from entry snapshot")
        exit_yield = entry_yield if degraded else float(current.yield_rate)
        exit_price = entry_price if degraded else float(current.price)

        pnl_percent, realized_pnl = compute_pnl(entry_yield, exit_yield, committed)
        return SettlementQuote(
            position_id=position.id,
            opportunity_id=position.opportunity_id,
            exit_yield_rate=exit_yield,
            exit_price=exit_price,
            yield_delta=exit_yield - entry_yield,
            pnl_percent=pnl_percent,
            realized_pnl=realized_pnl,
            held_hours=position.hours_held(now),
            degraded=degraded,
        )

    def settle(self, position: Position, quote: SettlementQuote, now: datetime) -> Position:
        """Close `position` with the quoted exit values."""
        position.close(
            closed_at=now,
            exit_yield_rate=quote.exit_yield_rate,
            exit_price=quote.exit_price,
            realized_pnl=quote.realized_pnl,
            realized_pnl_percent=quote.pnl_percent,
            held_duration_hours=quote.held_hours,
        )

        source_note = " (entry snapshot fallback)" if quote.degraded else ""
        logger.info(
            f"EXIT: {position.name} [{position.opportunity_id}] - "
            f"P&L: ${quote.realized_pnl:+.2f} ({quote.pnl_percent:+.2f}%), "
            f"Hold: {quote.held_hours:.1f}h, "
            f"APY: {position.entry_yield_rate * 100:.2f}% → {quote.exit_yield_rate * 100:.2f}%{source_note}"
        )
        return position
