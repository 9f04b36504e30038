# file: roastmon/app.py
"""
Main application entry point for the roast monitor backend.

This module loads and validates the configuration, owns the serial link to
the temperature probe and the live telemetry hub, relays status and readings
to viewers over Socket.IO, and exposes the REST API for stored roast
sessions.
"""

import os
import sys
import json
import math
import logging
import atexit
import shutil
import threading
from datetime import datetime

# Ensure the repository root is on the import path when the file is executed
# directly (e.g., `python app.py` from the roastmon directory).
CURRENT_DIR = os.path.dirname(__file__)
REPO_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, os.pardir))
if REPO_ROOT not in sys.path:
    sys.path.insert(0, REPO_ROOT)

from flask import Flask, Response, request, jsonify
from flask_cors import CORS
from flask_socketio import SocketIO, emit

from roastmon.errors import PersistenceIOError, ValidationError
from roastmon.export import csv_filename, samples_to_csv
from roastmon.metrics import API_VALIDATION_ERRORS_TOTAL
from roastmon.serial_link import (
    DEFAULT_BAUD_RATE,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_READ_TIMEOUT,
    DEFAULT_SIGNATURES,
    SerialLinkManager,
)
from roastmon.protocol import DEFAULT_POLL_COMMAND
from roastmon.sessions import parse_sessions_payload, sessions_to_payload
from roastmon.store import DEFAULT_SESSION_FILE, FileSessionStore
from roastmon.telemetry import PORTS_EVENT, TelemetryHub
from prometheus_client import make_wsgi_app
from werkzeug.middleware.dispatcher import DispatcherMiddleware

from json import JSONDecodeError

CONFIG_FILE = os.path.join(CURRENT_DIR, "config.json")

STANDARD_BAUD_RATES = (1200, 2400, 4800, 9600, 19200, 38400, 57600, 115200, 230400)

DEFAULT_CONFIG = {
    "serial": {
        "baud_rate": DEFAULT_BAUD_RATE,
        "poll_interval": DEFAULT_POLL_INTERVAL,
        "poll_command": DEFAULT_POLL_COMMAND,
        "read_timeout": DEFAULT_READ_TIMEOUT,
        "signatures": list(DEFAULT_SIGNATURES),
    },
    "sessions": {
        "file": str(DEFAULT_SESSION_FILE),
    },
    "server": {
        "cors_origins": ["http://localhost:5173"],
    },
}

logging.basicConfig(level=logging.INFO)
app_logger = logging.getLogger("roastmon.app")


def _coerce_finite(value: object) -> float | None:
    """
    Safely convert object to finite float or None.
    """
    try:
        num = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(num):
        return None
    return num


def _validate_serial(section: dict, errors: list[str]):
    """
    Validate the serial link section.
    """
    result = json.loads(json.dumps(DEFAULT_CONFIG["serial"]))

    if "baud_rate" in section:
        try:
            baud = int(section["baud_rate"])
            if baud in STANDARD_BAUD_RATES:
                result["baud_rate"] = baud
            else:
                raise ValueError
        except (TypeError, ValueError):
            errors.append("Invalid serial.baud_rate, using default")

    for key, low, high in (("poll_interval", 0.1, 60.0), ("read_timeout", 0.01, 5.0)):
        if key not in section:
            continue
        value = _coerce_finite(section[key])
        if value is None or not low <= value <= high:
            errors.append(f"Invalid serial.{key} (must be {low}-{high}), using default")
            continue
        result[key] = value

    if "poll_command" in section:
        cmd = section["poll_command"]
        if isinstance(cmd, str) and len(cmd) == 1 and cmd.isprintable() and cmd.isascii():
            result["poll_command"] = cmd
        else:
            errors.append("Invalid serial.poll_command (single printable character), using default")

    if "signatures" in section:
        sigs = section["signatures"]
        if isinstance(sigs, list) and sigs and all(isinstance(s, str) and s.strip() for s in sigs):
            result["signatures"] = [s.strip().lower() for s in sigs]
        else:
            errors.append("Invalid serial.signatures (non-empty list of strings), using default")

    return result


def _validate_sessions(section: dict, errors: list[str]):
    """
    Validate session storage settings.
    """
    result = dict(DEFAULT_CONFIG["sessions"])
    if "file" in section:
        path = section["file"]
        if isinstance(path, str) and path.strip():
            path = path.strip()
            if not os.path.isabs(path):
                path = os.path.join(CURRENT_DIR, path)
            result["file"] = path
        else:
            errors.append("Invalid sessions.file, using default")
    return result


def _validate_server(section: dict, errors: list[str]):
    """
    Validate HTTP server settings.
    """
    result = {"cors_origins": list(DEFAULT_CONFIG["server"]["cors_origins"])}
    if "cors_origins" in section:
        origins = section["cors_origins"]
        if isinstance(origins, str):
            origins = [origins]
        if isinstance(origins, list) and all(isinstance(o, str) for o in origins):
            result["cors_origins"] = origins
        else:
            errors.append("Invalid server.cors_origins, using default")
    return result


def validate_config(raw_cfg: dict):
    """
    Validate a raw configuration dictionary, section by section.
    Invalid values are replaced by defaults and reported as warnings.
    """
    errors: list[str] = []
    if not isinstance(raw_cfg, dict):
        errors.append("Configuration root must be an object, using defaults")
        raw_cfg = {}

    cfg = {}
    for name, validator in (
        ("serial", _validate_serial),
        ("sessions", _validate_sessions),
        ("server", _validate_server),
    ):
        section = raw_cfg.get(name, {})
        if not isinstance(section, dict):
            errors.append(f"Invalid {name} configuration, using defaults")
            section = {}
        cfg[name] = validator(section, errors)

    for err in errors:
        app_logger.warning(f"CONFIG_WARNING: {err}")

    return cfg


def load_config():
    """
    Load and validate configuration from config.json.
    Falls back to defaults if the file is missing or corrupt.
    Backs up corrupt files.
    """
    if not os.path.exists(CONFIG_FILE):
        app_logger.info(f"Configuration file {CONFIG_FILE} not found, using defaults")
        return validate_config({})

    try:
        with open(CONFIG_FILE, "r") as f:
            raw_cfg = json.load(f)
        return validate_config(raw_cfg)

    except (JSONDecodeError, OSError) as e:
        ts = datetime.now().strftime("%Y%m%d%H%M%S")
        backup_path = f"{CONFIG_FILE}.bak.{ts}"
        app_logger.error(f"Failed to load {CONFIG_FILE}: {e}")
        app_logger.warning(f"Backing up corrupt config to {backup_path} and loading defaults.")
        try:
            shutil.copy(CONFIG_FILE, backup_path)
        except OSError as copy_err:
            app_logger.error(f"Failed to backup corrupt config: {copy_err}")
        return validate_config({})


sys_config = load_config()

app = Flask(__name__)
CORS(app, origins=sys_config["server"]["cors_origins"])

# 'threading' mode: serial reader and poll timer run as background tasks.
socketio = SocketIO(
    app,
    cors_allowed_origins=sys_config["server"]["cors_origins"],
    async_mode="threading",
)

# Add prometheus wsgi middleware to export metrics at /metrics
app.wsgi_app = DispatcherMiddleware(app.wsgi_app, {
    '/metrics': make_wsgi_app()
})

telemetry_hub = TelemetryHub()

serial_cfg = sys_config["serial"]
link_manager = SerialLinkManager(
    telemetry_hub,
    baud_rate=serial_cfg["baud_rate"],
    poll_interval=serial_cfg["poll_interval"],
    poll_command=serial_cfg["poll_command"],
    read_timeout=serial_cfg["read_timeout"],
    signatures=serial_cfg["signatures"],
    spawn=socketio.start_background_task,
)

session_store = FileSessionStore(sys_config["sessions"]["file"])
sessions_lock = threading.Lock()

# Socket.IO sid -> TelemetryHub subscription
viewer_subscriptions = {}


def _reply_to(sid):
    """Build an (event, payload) sink that emits to a single viewer."""
    def _send(event, payload):
        socketio.emit(event, payload, to=sid)
    return _send


# --- Live-update channel ------------------------------------------------------

@socketio.on("connect")
def handle_viewer_connect():
    sid = request.sid
    app_logger.info(f"Client connected: {sid}")
    viewer_subscriptions[sid] = telemetry_hub.subscribe(_reply_to(sid))


@socketio.on("disconnect")
def handle_viewer_disconnect(reason=None):
    sid = request.sid
    subscription = viewer_subscriptions.pop(sid, None)
    if subscription is not None:
        subscription.cancel()
    app_logger.info(f"Client disconnected: {sid}")


@socketio.on("getPorts")
def handle_get_ports():
    ports = link_manager.list_ports()
    emit(PORTS_EVENT, [p.to_dict() for p in ports])


@socketio.on("connectPort")
def handle_connect_port(path=None):
    if isinstance(path, dict):
        path = path.get("path")
    if not isinstance(path, str) or not path.strip():
        path = None
    link_manager.connect(path.strip() if path else None, reply=_reply_to(request.sid))


@socketio.on("disconnectPort")
def handle_disconnect_port():
    link_manager.disconnect()


# --- REST API -----------------------------------------------------------------

@app.route("/api/status", methods=["GET"])
def api_status():
    """Return the serial link state and the latest cached telemetry."""
    return jsonify({
        "link": link_manager.status_payload(),
        "latest_status": telemetry_hub.latest_status,
        "latest_reading": telemetry_hub.latest_reading,
        "viewers": telemetry_hub.subscriber_count,
    })


@app.route("/api/sessions", methods=["GET"])
def get_sessions():
    """Return the whole stored session collection."""
    with sessions_lock:
        sessions = session_store.load()
    return jsonify(sessions_to_payload(sessions))


@app.route("/api/sessions", methods=["PUT", "POST"])
def replace_sessions():
    """
    Replace the stored session collection.

    Accepts only {"sessions": [...]}; the stored collection is untouched when
    validation fails.
    """
    payload = request.get_json(silent=True)
    try:
        sessions = parse_sessions_payload(payload)
    except ValidationError as exc:
        API_VALIDATION_ERRORS_TOTAL.inc()
        app_logger.warning(f"api_validation_failed: INVALID_SESSIONS_PAYLOAD ({exc})")
        return jsonify({"success": False, "msg": "INVALID_SESSIONS_PAYLOAD", "errors": exc.errors}), 400

    with sessions_lock:
        try:
            session_store.save(sessions)
        except PersistenceIOError:
            app_logger.exception("Failed to persist sessions")
            return jsonify({"success": False, "msg": "SAVE_ERROR"}), 500

    return jsonify({"success": True, "count": len(sessions)})


@app.route("/api/sessions/<session_id>/csv", methods=["GET"])
def export_session_csv(session_id):
    """Download one session's samples as CSV."""
    with sessions_lock:
        sessions = session_store.load()
    session = next((s for s in sessions if s.id == session_id), None)
    if session is None:
        return jsonify({"success": False, "msg": "SESSION_NOT_FOUND"}), 404

    return Response(
        samples_to_csv(session.samples),
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={csv_filename()}"},
    )


def shutdown():
    """Close the serial link and drop viewer subscriptions."""
    try:
        link_manager.disconnect()
    except Exception:
        app_logger.exception("Failed to close serial link during shutdown")
    for subscription in list(viewer_subscriptions.values()):
        subscription.cancel()
    viewer_subscriptions.clear()

atexit.register(shutdown)


def main():
    debug = os.getenv("FLASK_DEBUG", "false").lower() == "true"
    host = os.getenv("FLASK_RUN_HOST", "127.0.0.1")
    port = int(os.getenv("FLASK_RUN_PORT", "3001"))

    app_logger.info(f"Roasting server listening on {host}:{port}")
    # USE socketio.run INSTEAD OF app.run
    socketio.run(app, host=host, port=port, debug=debug, allow_unsafe_werkzeug=True)


if __name__ == "__main__":
    main()
