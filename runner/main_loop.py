"""
Lifecycle Engine Runner: Main Loop

Process entry point. Builds exactly one LifecycleEngine and hands it to the
operator API.

Flow:
1. Validate and load config (app.yaml, policy.yaml)
2. Configure logging
3. Build store, opportunity source, clock, metrics, audit trail
4. Initialize engine state from the store
5. Start the tick schedule and the operator API
6. Run until SIGINT/SIGTERM, then stop after the in-flight tick
"""

import json
import signal
import threading
import yaml
from pathlib import Path
from typing import Optional
import logging

from core.audit_log import AuditLogger
from core.config import engine_config_from_policy
from core.lifecycle_engine import LifecycleEngine
from core.opportunity_source import create_source_from_config
from infra.clock import SystemClock
from infra.metrics import MetricsRecorder
from infra.operator_api import OperatorServer
from infra.state_store import create_state_store_from_config

logger = logging.getLogger(__name__)


class EngineRunner:
    """
    Process-level orchestrator.

    Responsibilities:
    - Load and validate config
    - Wire the engine to its collaborators
    - Run the schedule and the operator API
    - Handle shutdown signals
    """

    def __init__(self, config_dir: str = "config"):
        self.config_dir = Path(config_dir)
        from tools.config_validator import validate_all_configs
        validation_errors = validate_all_configs(config_dir)
        if validation_errors:
            logger.error("=" * 80)
            logger.error("CONFIGURATION VALIDATION FAILED")
            logger.error("=" * 80)
            for idx, error in enumerate(validation_errors, start=1):
                logger.error(f"{idx:>2}. {error}")
            logger.error("=" * 80)
            raise ValueError(f"Invalid configuration: {len(validation_errors)} error(s) found")

        self.app_config = self._load_yaml("app.yaml")
        self.policy_config = self._load_yaml("policy.yaml")

        # Logging setup
        log_cfg = self.app_config.get("logging", {}) or {}
        log_file = log_cfg.get("file", "logs/engine.log")
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(
            level=getattr(logging, str(log_cfg.get("level", "INFO")).upper()),
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
            handlers=[logging.FileHandler(log_file), logging.StreamHandler()],
        )

        app_name = (self.app_config.get("app") or {}).get("name", "yield-lifecycle-engine")
        logger.info(f"Starting {app_name}")

        self.engine_config = engine_config_from_policy(self.policy_config)
        self.state_store = create_state_store_from_config(self.app_config.get("state"))
        self.source = create_source_from_config(self.app_config.get("source"))

        metrics_cfg = self.app_config.get("metrics", {}) or {}
        self.metrics = MetricsRecorder(
            enabled=bool(metrics_cfg.get("enabled", False)),
            port=int(metrics_cfg.get("port", 9100)),
        )

        audit_cfg = self.app_config.get("audit", {}) or {}
        self.audit_logger = AuditLogger(audit_cfg.get("file")) if audit_cfg.get("enabled", True) else None

        self.engine = LifecycleEngine(
            self.engine_config,
            self.source,
            self.state_store,
            SystemClock(),
            metrics=self.metrics,
            audit_logger=self.audit_logger,
        )

        api_cfg = self.app_config.get("api", {}) or {}
        self.api_server: Optional[OperatorServer] = None
        if api_cfg.get("enabled", True):
            self.api_server = OperatorServer(
                self.engine,
                port=int(api_cfg.get("port", 3001)),
                host=api_cfg.get("host", "127.0.0.1"),
            )

        self._shutdown = threading.Event()

    def _load_yaml(self, filename: str) -> dict:
        """Load YAML config file"""
        path = self.config_dir / filename
        with open(path) as f:
            return yaml.safe_load(f) or {}

    def _handle_stop(self, *_):
        logger.warning("Shutdown signal received, stopping after the in-flight tick")
        self._shutdown.set()

    def run_once(self) -> dict:
        """Initialize, run a single tick and return the engine status."""
        self.engine.initialize()
        self.engine.run_tick()
        return self.engine.status()

    def run_forever(self) -> None:
        signal.signal(signal.SIGINT, self._handle_stop)
        signal.signal(signal.SIGTERM, self._handle_stop)

        self.engine.initialize()
        self.metrics.start()
        if self.api_server:
            self.api_server.start()
        self.engine.start()

        try:
            self._shutdown.wait()
        finally:
            self.engine.stop()
            if self.api_server:
                self.api_server.stop()
            logger.info("Runner stopped cleanly.")


def main():
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Yield-farming lifecycle engine")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--status", action="store_true", help="Print engine status and exit")
    parser.add_argument("--config-dir", default="config", help="Config directory")

    args = parser.parse_args()

    runner = EngineRunner(config_dir=args.config_dir)

    if args.status:
        runner.engine.initialize()
        print(json.dumps(runner.engine.status(), indent=2, default=str))
    elif args.once:
        print(json.dumps(runner.run_once(), indent=2, default=str))
    else:
        runner.run_forever()


if __name__ == "__main__":
    main()
