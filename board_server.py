#!/usr/bin/env python3
"""
Beadboard Server
----------------
Hosts board panels over HTTP. Each panel is a MessageBridge whose outbound
envelopes are queued until the UI drains them; inbound envelopes are posted
as JSON. All board work runs on one asyncio loop in a background thread.

Usage:
    python board_server.py --workspace ~/myproject
    python board_server.py --adapter daemon --port 5151
    python board_server.py --config board.yaml --read-only

API:
    POST   /api/panels                  → { panelId, requestTimeout }
    POST   /api/panels/<id>/messages    → submit one envelope
    GET    /api/panels/<id>/messages    → { messages: [envelope, ...] } (drains)
    DELETE /api/panels/<id>             → dispose the panel
    GET    /api/health                  → { status, adapter, panels, readOnly }
    GET    /api/daemon                  → { status, health }
    GET    /api/daemons                 → { daemons: [...] }
    POST   /api/daemon/<action>         → start | stop | restart
    GET    /api/daemon/logs?lines=N     → { logs }

Mutating routes require an X-API-Key header when an API key is configured.
"""

import argparse
import asyncio
import concurrent.futures
import hmac
import logging
import sys
import threading
import uuid
from collections import deque
from functools import wraps
from typing import Any, Callable, Dict, List, Optional

from flask import Flask, jsonify, request

from beadboard.adapter import BoardAdapter
from beadboard.bridge import MessageBridge
from beadboard.config import BoardConfig
from beadboard.daemon import DaemonManager
from beadboard.errors import BoardError, ConfigError, sanitize_error_with_context
from beadboard.process import BdRunner, ProcessBoardAdapter
from beadboard.store import SQLiteBoardAdapter
from beadboard.watcher import FileWatcher

logger = logging.getLogger("beadboard.server")

SUBMIT_TIMEOUT = 60.0


# ── Event loop thread ────────────────────────────────────────────────────────

class LoopThread:
    """An asyncio loop running forever on a daemon thread."""

    def __init__(self):
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run, name="beadboard-loop", daemon=True)

    def _run(self):
        asyncio.set_event_loop(self.loop)
        self.loop.run_forever()

    def start(self) -> "LoopThread":
        self._thread.start()
        return self

    def submit(self, coro, timeout: float = SUBMIT_TIMEOUT) -> Any:
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def call(self, fn: Callable, *args) -> Any:
        async def _invoke():
            return fn(*args)
        return self.submit(_invoke())

    def stop(self) -> None:
        self.loop.call_soon_threadsafe(self.loop.stop)
        self._thread.join(timeout=5)
        self.loop.close()


# ── Host channel for one panel ───────────────────────────────────────────────

class PanelHost:
    """HostChannel backed by an outbox the HTTP client polls."""

    def __init__(self, watcher: FileWatcher):
        self.watcher = watcher
        self.handler: Optional[Callable] = None
        self._outbox: deque = deque()
        self._lock = threading.Lock()

    def post_message(self, envelope: Dict[str, Any]) -> None:
        with self._lock:
            self._outbox.append(envelope)

    def on_message(self, handler: Callable) -> None:
        self.handler = handler

    def watch_file(self, pattern: str, on_change: Callable[[str], None]):
        return self.watcher.watch_file(pattern, on_change)

    def drain(self) -> List[Dict[str, Any]]:
        with self._lock:
            messages = list(self._outbox)
            self._outbox.clear()
        return messages


# ── Runtime ──────────────────────────────────────────────────────────────────

def build_adapter(cfg: BoardConfig) -> BoardAdapter:
    if cfg.adapter == "daemon":
        runner = BdRunner(cfg.workspace_root, cfg.bd_executable, cfg.bd_timeout)
        return ProcessBoardAdapter(cfg.workspace_root, runner=runner, max_issues=cfg.max_issues)
    if cfg.adapter == "sqlite":
        return SQLiteBoardAdapter(cfg.workspace_root, max_issues=cfg.max_issues)
    raise ConfigError(f"Unknown adapter: {cfg.adapter}")


class BoardRuntime:
    """Owns the loop thread, the adapter, the file watcher and every open panel."""

    def __init__(self, cfg: BoardConfig, adapter: Optional[BoardAdapter] = None):
        self.cfg = cfg
        self.loop_thread = LoopThread()
        self.adapter = adapter or build_adapter(cfg)
        self.watcher = FileWatcher(cfg.workspace_root, loop=self.loop_thread.loop)
        self.daemon = DaemonManager(BdRunner(cfg.workspace_root, cfg.bd_executable, cfg.bd_timeout))
        self.panels: Dict[str, MessageBridge] = {}
        self._lock = threading.Lock()

    def start(self) -> "BoardRuntime":
        self.loop_thread.start()
        self.loop_thread.submit(self.adapter.connect())
        logger.info(f"Connected {self.adapter.name} adapter for {self.cfg.workspace_root}")
        return self

    def open_panel(self) -> str:
        host = PanelHost(self.watcher)
        bridge = MessageBridge(self.adapter, host, self.cfg)
        self.loop_thread.call(bridge.start)
        panel_id = uuid.uuid4().hex
        with self._lock:
            self.panels[panel_id] = bridge
        logger.info(f"Opened panel {panel_id}")
        return panel_id

    def get_panel(self, panel_id: str) -> Optional[MessageBridge]:
        with self._lock:
            return self.panels.get(panel_id)

    def submit(self, panel_id: str, envelope: Any) -> None:
        """Hand one envelope to the panel's bridge; wait at most request_timeout."""
        bridge = self.get_panel(panel_id)
        self.loop_thread.submit(bridge.host.handler(envelope), timeout=self.cfg.request_timeout)

    def close_panel(self, panel_id: str) -> List[Dict[str, Any]]:
        """Dispose a panel and return what it posted last (including webview.cleanup)."""
        with self._lock:
            bridge = self.panels.pop(panel_id, None)
        if bridge is None:
            return []
        self.loop_thread.call(bridge.dispose)
        logger.info(f"Closed panel {panel_id}")
        return bridge.host.drain()

    def shutdown(self) -> None:
        for panel_id in list(self.panels):
            self.close_panel(panel_id)
        try:
            self.loop_thread.submit(self.adapter.dispose())
        except BoardError as e:
            logger.error(f"Failed to flush board on shutdown: {e}")
        self.watcher.stop()
        self.loop_thread.stop()


# ── App ──────────────────────────────────────────────────────────────────────

def create_app(runtime: BoardRuntime) -> Flask:
    app = Flask(__name__)
    api_key = runtime.cfg.api_key

    def require_api_key(f):
        """Decorator: reject requests without a valid X-API-Key header (when one is configured)."""
        @wraps(f)
        def decorated(*args, **kwargs):
            if not api_key:
                return f(*args, **kwargs)
            provided = request.headers.get("X-API-Key", "").strip()
            if not hmac.compare_digest(provided, api_key):
                code = 401 if not provided else 403
                return jsonify({"error": "Unauthorized"}), code
            return f(*args, **kwargs)
        return decorated

    def panel_or_404(panel_id):
        bridge = runtime.get_panel(panel_id)
        if bridge is None:
            return None, (jsonify({"error": "Panel not found"}), 404)
        return bridge, None

    @app.route("/api/panels", methods=["POST"])
    @require_api_key
    def api_open_panel():
        return jsonify({
            "panelId": runtime.open_panel(),
            "requestTimeout": runtime.cfg.request_timeout,
        }), 201

    @app.route("/api/panels/<panel_id>/messages", methods=["POST"])
    @require_api_key
    def api_submit(panel_id):
        _, missing = panel_or_404(panel_id)
        if missing:
            return missing
        envelope = request.get_json(force=True, silent=True)
        if envelope is None:
            return jsonify({"error": "Request body must be JSON"}), 400
        try:
            runtime.submit(panel_id, envelope)
        except concurrent.futures.TimeoutError:
            logger.warning(f"Panel {panel_id}: envelope not handled within {runtime.cfg.request_timeout}s")
            return jsonify({"error": "Request timed out"}), 504
        return jsonify({"accepted": True}), 202

    @app.route("/api/panels/<panel_id>/messages", methods=["GET"])
    def api_drain(panel_id):
        bridge, missing = panel_or_404(panel_id)
        if missing:
            return missing
        return jsonify({"messages": bridge.host.drain()})

    @app.route("/api/panels/<panel_id>", methods=["DELETE"])
    @require_api_key
    def api_close_panel(panel_id):
        _, missing = panel_or_404(panel_id)
        if missing:
            return missing
        return jsonify({"messages": runtime.close_panel(panel_id)})

    @app.route("/api/health")
    def api_health():
        return jsonify({
            "status": "ok",
            "adapter": runtime.adapter.name,
            "panels": len(runtime.panels),
            "readOnly": runtime.cfg.read_only,
        })

    @app.route("/api/daemon")
    def api_daemon():
        status = runtime.loop_thread.submit(runtime.daemon.status())
        health = runtime.loop_thread.submit(runtime.daemon.check_health())
        return jsonify({"status": status.to_dict(), "health": health.to_dict()})

    @app.route("/api/daemons")
    def api_daemons():
        try:
            daemons = runtime.loop_thread.submit(runtime.daemon.list_all())
        except BoardError as e:
            return jsonify({"error": sanitize_error_with_context(e, "list daemons")}), 502
        return jsonify({"daemons": daemons})

    @app.route("/api/daemon/<action>", methods=["POST"])
    @require_api_key
    def api_daemon_action(action):
        actions = {
            "start": runtime.daemon.start,
            "stop": runtime.daemon.stop,
            "restart": runtime.daemon.restart,
        }
        if action not in actions:
            return jsonify({"error": f"Unknown action: {action}"}), 400
        try:
            runtime.loop_thread.submit(actions[action]())
        except BoardError as e:
            return jsonify({"error": sanitize_error_with_context(e, f"{action} daemon")}), 502
        return jsonify({"action": action, "ok": True})

    @app.route("/api/daemon/logs")
    def api_daemon_logs():
        lines = request.args.get("lines", 50, type=int)
        try:
            logs = runtime.loop_thread.submit(runtime.daemon.logs(lines))
        except BoardError as e:
            return jsonify({"error": sanitize_error_with_context(e, "read daemon logs")}), 502
        return jsonify({"logs": logs})

    return app


# ── Main ─────────────────────────────────────────────────────────────────────

def main(argv=None):
    parser = argparse.ArgumentParser(description="Beadboard Server")
    parser.add_argument("--config", default=None, help="Path to board.yaml")
    parser.add_argument("--workspace", default=None, help="Workspace root containing .beads/")
    parser.add_argument("--adapter", choices=["sqlite", "daemon"], default=None)
    parser.add_argument("--host", default=None,
                        help="Bind address (use 0.0.0.0 to expose on network)")
    parser.add_argument("--port", type=int, default=None)
    parser.add_argument("--read-only", action="store_true", default=None)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [beadboard] %(levelname)s: %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    try:
        cfg = BoardConfig.load(args.config)
        # CLI overrides
        if args.workspace:
            cfg.workspace_root = args.workspace
        if args.adapter:
            cfg.adapter = args.adapter
        if args.host:
            cfg.host = args.host
        if args.port:
            cfg.port = args.port
        if args.read_only:
            cfg.read_only = True
        cfg.validate()
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(2)

    runtime = BoardRuntime(cfg)
    try:
        runtime.start()
    except BoardError as e:
        logger.error(sanitize_error_with_context(e, "connect"))
        runtime.loop_thread.stop()
        sys.exit(1)

    logger.info(f"Serving board on http://{cfg.host}:{cfg.port} ({cfg.adapter}, read_only={cfg.read_only})")
    try:
        create_app(runtime).run(host=cfg.host, port=cfg.port, debug=False, threaded=True)
    finally:
        runtime.shutdown()


if __name__ == "__main__":
    main()
