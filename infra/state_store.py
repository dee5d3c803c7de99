"""
Lifecycle Engine Infrastructure: State Store

Durable persistence of engine state with atomic writes.
The engine owns the state; the store only serializes it.
"""

import json
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from pathlib import Path
import logging

from core.exceptions import PersistenceError
from core.models import EngineState

logger = logging.getLogger(__name__)


DEFAULT_STATE_FILE = "data/engine_state.json"


class StateStore:
    """
    Persistent engine state storage using a JSON file.

    Features:
    - Atomic writes (temp file + rename)
    - Absent or empty file loads as None (fresh start)
    - Undecodable content raises PersistenceError instead of silently resetting
    """

    def __init__(self, state_file: Optional[str] = None):
        """
        Initialize state store.

        Args:
            state_file: Path to state JSON file (default: $ENGINE_STATE_FILE or data/engine_state.json)
        """
        if state_file:
            self.state_file = Path(state_file)
        else:
            self.state_file = Path(os.getenv("ENGINE_STATE_FILE", DEFAULT_STATE_FILE))

        self.last_saved_at: Optional[datetime] = None
        logger.info(f"Initialized StateStore at {self.state_file}")

    def describe(self) -> str:
        return f"json:{self.state_file}"

    def load(self) -> Optional[EngineState]:
        """
        Load engine state from file.

        Returns:
            EngineState, or None when nothing has been persisted yet

        Raises:
            PersistenceError: if the file exists but cannot be read or decoded
        """
        if not self.state_file.exists():
            logger.debug("No state file found, starting empty")
            return None

        try:
            raw = self.state_file.read_text(encoding="utf-8")
        except OSError as exc:
            raise PersistenceError(str(self.state_file), exc) from exc

        if not raw.strip():
            logger.debug("State file is empty, starting empty")
            return None

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise PersistenceError(f"{self.state_file} is not valid JSON", exc) from exc

        state = EngineState.from_dict(data)
        logger.debug(
            f"Loaded state from file: {state.open_count} open, {len(state.history)} settled"
        )
        return state

    def save(self, state: EngineState) -> None:
        """
        Save engine state to file atomically.

        Raises:
            PersistenceError: if the file cannot be written
        """
        payload: Dict[str, Any] = state.to_dict()
        now = datetime.now(timezone.utc)
        payload["last_updated"] = now.isoformat()

        temp_path = None
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            # Write to temp file first
            temp_fd, temp_path = tempfile.mkstemp(
                dir=self.state_file.parent,
                prefix=".engine_state_",
                suffix=".json.tmp",
            )
            with os.fdopen(temp_fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)

            # Atomic rename
            os.replace(temp_path, self.state_file)
            temp_path = None
        except (OSError, TypeError, ValueError) as exc:
            logger.error(f"Failed to save state: {exc}")
            raise PersistenceError(str(self.state_file), exc) from exc
        finally:
            if temp_path and os.path.exists(temp_path):
                os.unlink(temp_path)

        self.last_saved_at = now
        logger.debug("Saved state to file")


def create_state_store_from_config(state_cfg: Optional[Dict[str, Any]]) -> StateStore:
    """Build the state store from the `state:` block of app.yaml."""
    cfg = state_cfg or {}
    store_kind = str(cfg.get("store", "json")).lower()
    if store_kind != "json":
        raise ValueError(f"Unsupported state store: {store_kind}")
    return StateStore(state_file=cfg.get("path"))


__all__ = ["StateStore", "create_state_store_from_config", "DEFAULT_STATE_FILE"]
