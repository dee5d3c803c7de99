"""Engine configuration: fixed at construction, immutable thereafter."""

from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


class EngineConfig(BaseModel):
    """Entry/exit policy and scheduling parameters for the lifecycle engine"""
    model_config = ConfigDict(frozen=True, extra="forbid")

    entry_yield_threshold: float = Field(default=0.30, ge=0, description="Minimum APY (fraction) to enter")
    committed_amount: float = Field(default=1000.0, gt=0, description="Notional committed per position (USD)")
    hold_duration_hours: float = Field(default=48.0, gt=0, description="Fixed hold length before settlement")
    max_open_positions: int = Field(default=10, gt=0, description="Cap on simultaneous OPEN positions")
    min_liquidity: float = Field(default=100.0, ge=0, description="Minimum pool liquidity (USD)")
    min_volume: float = Field(default=50.0, ge=0, description="Minimum trailing 24h volume (USD)")
    tick_interval_minutes: float = Field(default=15.0, gt=0, description="Minutes between scheduled ticks")
    max_opportunity_age_days: float = Field(default=7.0, ge=0, description="Reject pools older than this")
    require_opportunity_age: bool = Field(default=False, description="Reject pools whose age is unknown")
    source_timeout_seconds: float = Field(default=30.0, gt=0, description="Time limit for one listing call")

    @property
    def tick_interval_seconds(self) -> float:
        return self.tick_interval_minutes * 60.0

    def describe(self) -> str:
        return (
            f"APY >= {self.entry_yield_threshold * 100:.1f}%, "
            f"commit ${self.committed_amount:,.0f}, hold {self.hold_duration_hours:g}h, "
            f"max open {self.max_open_positions}, tick {self.tick_interval_minutes:g}m"
        )


def engine_config_from_policy(policy: Optional[Mapping[str, Any]]) -> EngineConfig:
    """Build EngineConfig from the `engine:` block of policy.yaml."""
    engine_cfg: Dict[str, Any] = dict((policy or {}).get("engine") or {})
    return EngineConfig(**engine_cfg)
