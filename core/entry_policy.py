"""
Entry Policy: admission checks for new positions.

Automatic entries (from the tick) run the full gate:
capacity -> uniqueness -> yield threshold -> liquidity -> volume -> age.

Manual entries (operator-triggered) keep only the mandatory checks:
yield threshold and minimum liquidity, plus uniqueness and capacity.
"""
import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Container, List, Optional

from core.config import EngineConfig
from core.models import Opportunity

logger = logging.getLogger(__name__)


REASON_CAPACITY = "capacity"
REASON_ALREADY_OPEN = "already_open"
REASON_YIELD = "yield_below_threshold"
REASON_LIQUIDITY = "liquidity_below_minimum"
REASON_VOLUME = "volume_below_minimum"
REASON_AGE = "opportunity_too_old"
REASON_AGE_UNKNOWN = "opportunity_age_unknown"


@dataclass
class EntryDecision:
    """Result of an entry check"""
    approved: bool
    opportunity_id: str
    reason: Optional[str] = None  # one of the REASON_* codes
    detail: Optional[str] = None

    @classmethod
    def approve(cls, opportunity: Opportunity) -> "EntryDecision":
        return cls(approved=True, opportunity_id=opportunity.id)

    @classmethod
    def reject(cls, opportunity: Opportunity, reason: str, detail: str) -> "EntryDecision":
        return cls(approved=False, opportunity_id=opportunity.id, reason=reason, detail=detail)


class EntryPolicy:
    """Evaluates opportunities against the configured entry thresholds."""

    def __init__(self, config: EngineConfig):
        self.config = config

    def evaluate(
        self,
        opportunity: Opportunity,
        *,
        open_ids: Container[str],
        open_count: int,
        now: datetime,
    ) -> EntryDecision:
        """
        Full gate for automatic entries.

        Args:
            opportunity: Candidate snapshot
            open_ids: opportunity ids that already hold an OPEN position
            open_count: number of OPEN positions right now
            now: Current time (for the age filter)
        """
        checks: List[Callable[[], Optional[EntryDecision]]] = [
            lambda: self._check_capacity(opportunity, open_count),
            lambda: self._check_unique(opportunity, open_ids),
            lambda: self._check_yield(opportunity),
            lambda: self._check_liquidity(opportunity),
            lambda: self._check_volume(opportunity),
            lambda: self._check_age(opportunity, now),
        ]
        return self._run(opportunity, checks)

    def evaluate_manual(
        self,
        opportunity: Opportunity,
        *,
        open_ids: Container[str],
        open_count: int,
    ) -> EntryDecision:
        """Mandatory checks only; volume and age are bypassed for operator entries."""
        checks: List[Callable[[], Optional[EntryDecision]]] = [
            lambda: self._check_yield(opportunity),
            lambda: self._check_liquidity(opportunity),
            lambda: self._check_unique(opportunity, open_ids),
            lambda: self._check_capacity(opportunity, open_count),
        ]
        return self._run(opportunity, checks)

    @staticmethod
    def _run(opportunity: Opportunity, checks) -> EntryDecision:
        for check in checks:
            rejection = check()
            if rejection is not None:
                logger.debug(f"Entry rejected for {opportunity.id}: {rejection.reason} ({rejection.detail})")
                return rejection
        return EntryDecision.approve(opportunity)

    def _check_capacity(self, opportunity: Opportunity, open_count: int) -> Optional[EntryDecision]:
        limit = self.config.max_open_positions
        if open_count >= limit:
            return EntryDecision.reject(
                opportunity, REASON_CAPACITY, f"{open_count} open positions (max {limit})"
            )
        return None

    @staticmethod
    def _check_unique(opportunity: Opportunity, open_ids: Container[str]) -> Optional[EntryDecision]:
        if opportunity.id in open_ids:
            return EntryDecision.reject(
                opportunity, REASON_ALREADY_OPEN, f"{opportunity.id} already has an open position"
            )
        return None

    def _check_yield(self, opportunity: Opportunity) -> Optional[EntryDecision]:
        threshold = self.config.entry_yield_threshold
        if not math.isfinite(opportunity.yield_rate):
            return EntryDecision.reject(
                opportunity, REASON_YIELD, f"APY {opportunity.yield_rate!r} is not a finite number"
            )
        if opportunity.yield_rate < threshold:
            return EntryDecision.reject(
                opportunity,
                REASON_YIELD,
                f"APY {opportunity.yield_rate * 100:.2f}% below {threshold * 100:.1f}%",
            )
        return None

    def _check_liquidity(self, opportunity: Opportunity) -> Optional[EntryDecision]:
        minimum = self.config.min_liquidity
        if not math.isfinite(opportunity.liquidity):
            return EntryDecision.reject(
                opportunity, REASON_LIQUIDITY, f"liquidity {opportunity.liquidity!r} is not a finite number"
            )
        if opportunity.liquidity < minimum:
            return EntryDecision.reject(
                opportunity,
                REASON_LIQUIDITY,
                f"liquidity ${opportunity.liquidity:,.2f} below ${minimum:,.2f}",
            )
        return None

    def _check_volume(self, opportunity: Opportunity) -> Optional[EntryDecision]:
        minimum = self.config.min_volume
        if not math.isfinite(opportunity.volume):
            return EntryDecision.reject(
                opportunity, REASON_VOLUME, f"24h volume {opportunity.volume!r} is not a finite number"
            )
        if opportunity.volume < minimum:
            return EntryDecision.reject(
                opportunity,
                REASON_VOLUME,
                f"24h volume ${opportunity.volume:,.2f} below ${minimum:,.2f}",
            )
        return None

    def _check_age(self, opportunity: Opportunity, now: datetime) -> Optional[EntryDecision]:
        age_days = opportunity.age_days(now)
        if age_days is None:
            if self.config.require_opportunity_age:
                return EntryDecision.reject(
                    opportunity, REASON_AGE_UNKNOWN, "source did not report a creation time"
                )
            return None
        limit = self.config.max_opportunity_age_days
        if age_days > limit:
            return EntryDecision.reject(
                opportunity, REASON_AGE, f"age {age_days:.1f}d exceeds {limit:g}d"
            )
        return None
