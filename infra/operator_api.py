"""JSON HTTP surface for operators: engine control, queries and manual entries."""

from __future__ import annotations

import json
import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Dict, Mapping, Optional, Tuple

from core.exceptions import PersistenceError, PolicyViolation
from core.models import Opportunity

logger = logging.getLogger(__name__)

MANUAL_ENTRY_REQUIRED = ("poolId", "poolName", "protocol", "apy")
MANUAL_ENTRY_DEFAULTS = {"price": 1.0, "liquidity": 1000.0, "volume_24h": 100.0}


def opportunity_from_request(body: Mapping[str, Any]) -> Opportunity:
    """
    Build an Opportunity from a manual-entry request body.

    Raises:
        ValueError: if a required field is missing or a metric is not numeric
    """
    missing = [name for name in MANUAL_ENTRY_REQUIRED if body.get(name) in (None, "")]
    if missing:
        raise ValueError(f"Missing required fields: {', '.join(missing)}")
    record = {**MANUAL_ENTRY_DEFAULTS, **{k: v for k, v in body.items() if v is not None}}
    return Opportunity.from_mapping(record)


class OperatorServer:
    """
    Threaded JSON server over a LifecycleEngine.

    Routes:
        GET  /health               liveness probe
        GET  /status               engine status and stats
        GET  /positions/open       OPEN positions
        GET  /positions/history    CLOSED positions, settlement order
        POST /start                start the tick schedule
        POST /stop                 stop the tick schedule
        POST /entries              manual entry
    """

    def __init__(self, engine, port: int, host: str = "127.0.0.1"):
        self._engine = engine
        self._host = host
        self._port = int(port)
        self._server: Optional[ThreadingHTTPServer] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def port(self) -> Optional[int]:
        if self._server is None:
            return None
        return self._server.server_port

    def start(self) -> None:
        if self._thread:
            return

        handler_cls = self._build_handler(self._engine)
        self._server = ThreadingHTTPServer((self._host, self._port), handler_cls)
        self._thread = threading.Thread(target=self._server.serve_forever, name="OperatorServer", daemon=True)
        self._thread.start()
        logger.info("Operator API listening on %s:%s", self._host, self._server.server_port)

    def stop(self) -> None:
        if not self._server:
            return
        try:
            self._server.shutdown()
            self._server.server_close()
        except OSError as exc:
            logger.warning("Failed shutting down operator API: %s", exc)
        if self._thread:
            self._thread.join(timeout=3)
        self._thread = None
        self._server = None

    @staticmethod
    def _build_handler(engine):

        def _positions(items) -> Dict[str, Any]:
            data = [p.to_dict() for p in items]
            return {"success": True, "data": data, "count": len(data)}

        def handle_get(path: str) -> Tuple[int, Dict[str, Any]]:
            if path in ("/", "/health", "/healthz"):
                return 200, {"success": True, "ok": True, "running": engine.is_running}
            if path == "/status":
                return 200, {"success": True, "status": engine.status()}
            if path == "/positions/open":
                return 200, _positions(engine.open_positions())
            if path == "/positions/history":
                return 200, _positions(engine.history())
            return 404, {"success": False, "error": "Endpoint not found"}

        def handle_post(path: str, body: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
            if path == "/start":
                engine.start()
                return 200, {"success": True, "status": engine.status()}
            if path == "/stop":
                engine.stop()
                return 200, {"success": True, "status": engine.status()}
            if path == "/entries":
                try:
                    opportunity = opportunity_from_request(body)
                except ValueError as exc:
                    return 400, {"success": False, "error": str(exc)}
                try:
                    position = engine.manual_entry(opportunity)
                except PolicyViolation as exc:
                    return 400, {"success": False, "error": exc.detail, "reason": exc.reason}
                except PersistenceError as exc:
                    opened = next(
                        (p for p in engine.open_positions() if p.opportunity_id == opportunity.id), None
                    )
                    return 500, {
                        "success": False,
                        "error": f"Entry opened but not persisted: {exc}",
                        "position": opened.to_dict() if opened else None,
                    }
                return 200, {"success": True, "position": position.to_dict()}
            return 404, {"success": False, "error": "Endpoint not found"}

        class OperatorHandler(BaseHTTPRequestHandler):
            def do_GET(self):  # type: ignore[override]
                status, payload = handle_get(self.path.split("?", 1)[0])
                self._reply(status, payload)

            def do_POST(self):  # type: ignore[override]
                length = int(self.headers.get("Content-Length") or 0)
                raw = self.rfile.read(length) if length else b""
                try:
                    body = json.loads(raw.decode("utf-8")) if raw else {}
                except (UnicodeDecodeError, json.JSONDecodeError):
                    self._reply(400, {"success": False, "error": "Request body must be JSON"})
                    return
                if not isinstance(body, dict):
                    self._reply(400, {"success": False, "error": "Request body must be a JSON object"})
                    return
                status, payload = handle_post(self.path.split("?", 1)[0], body)
                self._reply(status, payload)

            def _reply(self, status: int, payload: Dict[str, Any]) -> None:
                body = json.dumps(payload, default=str).encode("utf-8")
                self.send_response(status)
                self.send_header("Content-Type", "application/json")
                self.send_header("Content-Length", str(len(body)))
                self.end_headers()
                self.wfile.write(body)

            def log_message(self, format: str, *args: Any) -> None:  # pragma: no cover - suppress noisy logs
                return

        return OperatorHandler


__all__ = ["OperatorServer", "opportunity_from_request"]
