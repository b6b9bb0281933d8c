import concurrent.futures
import logging
from functools import wraps
from pathlib import Path
from typing import Optional

from flask import Flask, Response, jsonify, request
from werkzeug.security import check_password_hash, generate_password_hash

import config
from control_plane import ControlPlane, ControlPlaneNotRunning
from errors import (
    BridgeCommandError,
    BridgeError,
    BridgeNotConfigured,
    BridgeNotRunning,
    BridgeStaleError,
    BridgeTimeoutError,
    ControlPlaneError,
    RestartInProgress,
    friendly_error,
)
from settings_store import SettingsStore

# --- Path roots (stable regardless of current working directory) ---
BASE_DIR = Path(__file__).resolve().parent

log = logging.getLogger("server_panel.app")


def setup_logging() -> None:
    logging.basicConfig(level=getattr(logging, config.LOG_LEVEL, logging.INFO), format=config.LOG_FORMAT)
    if not config.LOG_FILE:
        return
    log_path = BASE_DIR / config.LOG_FILE
    root = logging.getLogger("server_panel")
    # Avoid duplicating handlers if module reloads.
    if not any(getattr(h, "baseFilename", "") == str(log_path) for h in root.handlers):
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(config.LOG_FORMAT))
        root.addHandler(fh)


app = Flask(__name__)
app.config["CONTROL_PLANE"] = None

_PASSWORD_HASH = generate_password_hash(config.PASSWORD)


# =============================
# Auth
# =============================
def requires_login(fn):
    @wraps(fn)
    def wrapped(*args, **kwargs):
        auth = request.authorization
        ok = (
            auth is not None
            and auth.username == config.USERNAME
            and check_password_hash(_PASSWORD_HASH, auth.password or "")
        )
        if not ok:
            return Response(
                '{"success": false, "error": "Authentication required"}',
                401,
                {"WWW-Authenticate": 'Basic realm="server-panel"', "Content-Type": "application/json"},
            )
        return fn(*args, **kwargs)
    return wrapped


def _plane() -> ControlPlane:
    plane = app.config.get("CONTROL_PLANE")
    if plane is None:
        raise ControlPlaneNotRunning("Control plane is not running")
    return plane


def _json_body() -> dict:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


@app.errorhandler(ControlPlaneNotRunning)
def _not_running(e):
    return jsonify({"success": False, "error": str(e)}), 503


@app.errorhandler(concurrent.futures.TimeoutError)
def _call_timeout(e):
    return jsonify({"success": False, "error": "Timed out waiting for the game server."}), 504


# =============================
# Health
# =============================
@app.get("/api/health")
def api_health():
    plane = app.config.get("CONTROL_PLANE")
    status = plane.status() if plane is not None else {"running": False, "status": "stopped", "last_error": ""}
    return jsonify({"success": True, "control_plane": status})


# =============================
# RCON
# =============================
async def _rcon_status(plane: ControlPlane) -> dict:
    return plane.rcon.get_config()


async def _rcon_reconnect_now(plane: ControlPlane) -> dict:
    plane.rcon.force_reset_connection_state()
    try:
        connected = await plane.rcon.connect()
    except ControlPlaneError as e:
        return {"success": False, "error": friendly_error(e)}
    if not connected:
        return {"success": False, "error": "Game server is not running."}
    return {"success": True, "message": "RCON connected"}


@app.get("/api/rcon/status")
@requires_login
def api_rcon_status():
    plane = _plane()
    return jsonify({"success": True, "rcon": plane.call(_rcon_status, plane, timeout=config.API_CALL_TIMEOUT_SEC)})


@app.post("/api/rcon/execute")
@requires_login
def api_rcon_execute():
    command = str(_json_body().get("command") or "").strip()
    if not command:
        return jsonify({"success": False, "error": "Missing command"}), 400
    plane = _plane()
    outcome = plane.call(plane.rcon.execute, command, timeout=config.API_CALL_TIMEOUT_SEC)
    return jsonify(outcome.to_dict()), (200 if outcome.success else 502)


@app.post("/api/rcon/reconnect")
@requires_login
def api_rcon_reconnect():
    plane = _plane()
    result = plane.call(_rcon_reconnect_now, plane, timeout=config.API_CALL_TIMEOUT_SEC)
    return jsonify(result), (200 if result["success"] else 502)


# =============================
# Panel bridge
# =============================
async def _bridge_status(plane: ControlPlane) -> dict:
    return plane.bridge.get_status()


def _bridge_error_status(e: BridgeError) -> int:
    if isinstance(e, (BridgeNotConfigured, BridgeNotRunning, BridgeStaleError)):
        return 503
    if isinstance(e, BridgeTimeoutError):
        return 504
    if isinstance(e, BridgeCommandError):
        return 502
    return 500


@app.get("/api/bridge/status")
@requires_login
def api_bridge_status():
    plane = _plane()
    return jsonify({"success": True, "bridge": plane.call(_bridge_status, plane, timeout=config.API_CALL_TIMEOUT_SEC)})


@app.post("/api/bridge/command")
@requires_login
def api_bridge_command():
    body = _json_body()
    action = str(body.get("action") or "").strip()
    args = body.get("args") or {}
    if not action:
        return jsonify({"success": False, "error": "Missing action"}), 400
    if not isinstance(args, dict):
        return jsonify({"success": False, "error": "args must be an object"}), 400
    plane = _plane()
    try:
        result = plane.call(plane.bridge.send_command, action, args, require_alive=True,
                            timeout=config.API_CALL_TIMEOUT_SEC)
    except BridgeError as e:
        return jsonify({"success": False, "error": str(e)}), _bridge_error_status(e)
    return jsonify(result)


@app.post("/api/bridge/ping")
@requires_login
def api_bridge_ping():
    plane = _plane()
    result = plane.call(plane.bridge.ping, timeout=config.API_CALL_TIMEOUT_SEC)
    return jsonify(result), (200 if result.get("success") else 503)


# =============================
# Restart
# =============================
async def _cancel_restart(plane: ControlPlane) -> bool:
    return plane.orchestrator.cancel_restart()


async def _restart_status(plane: ControlPlane) -> dict:
    return plane.orchestrator.get_status()


def _parse_minutes(raw) -> Optional[int]:
    if raw is None or raw == "":
        return None
    minutes = int(raw)
    if minutes < 0 or minutes > 60:
        raise ValueError("warning_minutes must be between 0 and 60")
    return minutes


@app.post("/api/server/restart")
@requires_login
def api_server_restart():
    try:
        minutes = _parse_minutes(_json_body().get("warning_minutes"))
    except (TypeError, ValueError) as e:
        return jsonify({"success": False, "error": f"Invalid warning_minutes: {e}"}), 400
    plane = _plane()
    try:
        plane.call(plane.start_restart, minutes, timeout=config.API_CALL_TIMEOUT_SEC)
    except RestartInProgress as e:
        return jsonify({"success": False, "error": str(e)}), 409
    log.info("Restart requested by %s (warning_minutes=%s)", request.authorization.username, minutes)
    return jsonify({"success": True, "message": "Restart started"}), 202


@app.post("/api/server/restart/cancel")
@requires_login
def api_server_restart_cancel():
    plane = _plane()
    if plane.call(_cancel_restart, plane, timeout=config.API_CALL_TIMEOUT_SEC):
        return jsonify({"success": True, "message": "Restart cancellation requested"})
    return jsonify({"success": False, "error": "No restart in progress"}), 409


@app.get("/api/server/restart/status")
@requires_login
def api_server_restart_status():
    plane = _plane()
    return jsonify({"success": True, "restart": plane.call(_restart_status, plane, timeout=config.API_CALL_TIMEOUT_SEC)})


# =============================
# Events
# =============================
@app.get("/api/events")
@requires_login
def api_events():
    try:
        limit = int(request.args.get("limit") or 0) or None
    except ValueError:
        return jsonify({"success": False, "error": "Invalid limit"}), 400
    plane = _plane()
    return jsonify({"success": True, "events": plane.recent_events.snapshot(limit)})


if __name__ == "__main__":
    setup_logging()
    plane = ControlPlane(SettingsStore())
    plane.start()
    app.config["CONTROL_PLANE"] = plane
    try:
        app.run(host=config.FLASK_HOST, port=int(config.FLASK_PORT))
    finally:
        plane.stop()
