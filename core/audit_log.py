"""
Lifecycle Engine: Audit Logger

Structured activity trail of every entry, exit and tick.
"""

import json
import logging
from pathlib import Path
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from core.models import Position

logger = logging.getLogger(__name__)


class AuditLogger:
    """
    Structured audit trail logger.

    Records:
    - ENTRY: a position was opened (automatic or manual)
    - EXIT: a position was settled, with realized P&L
    - TICK: one settle-then-enter cycle summary

    Output format: JSONL (one JSON object per line). Write failures are
    logged and never interrupt the engine.
    """

    def __init__(self, audit_file: Optional[str] = None):
        """
        Initialize audit logger.

        Args:
            audit_file: Path to audit log file (default: logs/engine_audit.jsonl)
        """
        if audit_file:
            self.audit_file = Path(audit_file)
        else:
            self.audit_file = Path("logs/engine_audit.jsonl")

        # Ensure directory exists
        self.audit_file.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Initialized AuditLogger at {self.audit_file}")

    def log_entry(self, position: Position, ts: Optional[datetime] = None) -> None:
        self._write("ENTRY", self._position_summary(position), ts)

    def log_exit(self, position: Position, *, degraded: bool = False, ts: Optional[datetime] = None) -> None:
        summary = self._position_summary(position)
        summary["exit_yield_rate"] = position.exit_yield_rate
        summary["held_duration_hours"] = position.held_duration_hours
        summary["degraded_exit"] = degraded
        self._write("EXIT", summary, ts)

    def log_tick(self, result: Any, ts: Optional[datetime] = None) -> None:
        """Log one tick summary (TickResult or anything with the same attributes)."""
        payload = {
            "status": getattr(result, "status", None),
            "settled": len(getattr(result, "settled", []) or []),
            "opened": len(getattr(result, "opened", []) or []),
            "rejected": getattr(result, "rejected", 0),
            "open_after": getattr(result, "open_after", None),
            "source_error": getattr(result, "source_error", None),
            "persistence_error": getattr(result, "persistence_error", None),
        }
        self._write("TICK", payload, ts)

    @staticmethod
    def _position_summary(position: Position) -> Dict[str, Any]:
        return {
            "id": position.id,
            "opportunity_id": position.opportunity_id,
            "name": position.name,
            "origin": position.origin,
            "entry_yield_rate": position.entry_yield_rate,
            "committed_amount": position.committed_amount,
            "realized_pnl": position.realized_pnl,
            "realized_pnl_percent": position.realized_pnl_percent,
        }

    def _write(self, action: str, payload: Dict[str, Any], ts: Optional[datetime]) -> None:
        entry = {
            "timestamp": (ts or datetime.now(timezone.utc)).isoformat(),
            "action": action,
            **payload,
        }
        try:
            # Write JSONL (one JSON per line)
            with open(self.audit_file, "a", encoding="utf-8") as f:
                f.write(json.dumps(entry) + "\n")
            logger.debug(f"Audited {action}")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to write audit log: {e}")
