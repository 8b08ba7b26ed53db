# ui_web/app.py
import os
import sys
import json
from typing import Any, Dict

import click
from flask import Flask, request, jsonify, Response
from werkzeug.exceptions import HTTPException

# ---------- ensure project root is importable ----------
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)
# -------------------------------------------------------

from lab_core.errors import InvalidArgumentError, StorageUnavailableError
from storage.store import DEFAULT_LOCK_TIMEOUT, DEFAULT_ROOMS_DIR, RoomStore

app = Flask(__name__)
app.json.ensure_ascii = False
app.config.update(
    ROOMS_DIR=str(DEFAULT_ROOMS_DIR),
    LOCK_TIMEOUT=DEFAULT_LOCK_TIMEOUT,
    MAX_TOTAL=1000,
)
# LAB_ROOMS_DIR, LAB_LOCK_TIMEOUT, LAB_MAX_TOTAL
app.config.from_prefixed_env("LAB")

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}


class ApiError(Exception):
    def __init__(self, message: str, code: int = 400):
        super().__init__(message)
        self.message = message
        self.code = code


# ----------------- Helpers -----------------
def get_store() -> RoomStore:
    """A fresh store per call; room state always comes from disk."""
    return RoomStore(
        app.config["ROOMS_DIR"], lock_timeout=float(app.config["LOCK_TIMEOUT"])
    )


def is_safe_room(room: str) -> bool:
    """Room names become file names, so keep them inside the rooms directory."""
    if not room or room.startswith("."):
        return False
    return not any(sep in room for sep in ("/", "\\", "\0"))


def require_room(room: Any) -> str:
    if room is None or room == "":
        raise ApiError("room is required")
    room = str(room)
    if not is_safe_room(room):
        raise ApiError("room name is not allowed")
    return room


def optional_text(value: Any) -> str:
    """Body values may be numbers; only a missing value counts as empty."""
    return "" if value is None else str(value)


def parse_total(value: Any) -> int:
    max_total = int(app.config["MAX_TOTAL"])
    try:
        total = int(value)
    except (TypeError, ValueError, OverflowError):
        raise ApiError("total must be an integer")
    if total < 0 or total > max_total:
        raise ApiError(f"total must be 0..{max_total}")
    return total


def request_params() -> Dict[str, Any]:
    """JSON body merged over the query string; `action` and `room` prefer the query string."""
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        body = {}
    params: Dict[str, Any] = dict(request.args.items())
    params.update(body)
    for key in ("action", "room"):
        if key in request.args:
            params[key] = request.args[key]
    return params


# ----------------- Actions -----------------
def action_read(params):
    return get_store().read(require_room(params.get("room"))).to_dict()


def action_init(params):
    room = require_room(params.get("room"))
    total = parse_total(params.get("total", 0))
    return get_store().init_room(room, total).to_dict()


def action_update(params):
    room = require_room(params.get("room"))
    cid = optional_text(params.get("id"))
    status = optional_text(params.get("status"))
    if cid == "" or status == "":
        raise ApiError("id and status are required")
    note = params.get("note")
    return get_store().update_computer(room, cid, status, note).to_dict()


def action_set_note(params):
    room = require_room(params.get("room"))
    cid = optional_text(params.get("id"))
    if cid == "":
        raise ApiError("id is required")
    return get_store().set_note(room, cid, params.get("note")).to_dict()


def action_reset(params):
    return get_store().reset_room(require_room(params.get("room"))).to_dict()


def action_list(params):
    return {"rooms": get_store().list_rooms()}


ACTIONS = {
    "read": action_read,
    "init": action_init,
    "update": action_update,
    "setNote": action_set_note,
    "resetRoom": action_reset,
    "listRooms": action_list,
}


# ----------------- Routes -----------------
@app.after_request
def add_cors_headers(response: Response):
    for name, value in CORS_HEADERS.items():
        response.headers[name] = value
    return response


@app.route("/api", methods=["GET", "POST", "OPTIONS"])
def api():
    if request.method == "OPTIONS":
        return Response(status=204)
    params = request_params()
    action = params.get("action")
    handler = ACTIONS.get(action) if isinstance(action, str) else None
    if handler is None:
        raise ApiError("unknown action", 404)
    return jsonify(handler(params))


@app.route("/health")
def health():
    return jsonify({"ok": True})


# ----------------- Error translation -----------------
@app.errorhandler(ApiError)
def handle_api_error(err: ApiError):
    return jsonify({"error": err.message}), err.code


@app.errorhandler(InvalidArgumentError)
def handle_invalid_argument(err: InvalidArgumentError):
    return jsonify({"error": str(err)}), 400


@app.errorhandler(StorageUnavailableError)
def handle_storage_error(err: StorageUnavailableError):
    app.logger.error("Storage unavailable: %s", err)
    return jsonify({"error": str(err)}), 503


@app.errorhandler(Exception)
def handle_unexpected(err: Exception):
    if isinstance(err, HTTPException):
        return err
    app.logger.exception("Unhandled error in %s", request.path)
    return jsonify({"error": f"server error: {err}"}), 500


# ----------------- CLI (flask --app ui_web.app rooms ...) -----------------
@app.cli.group("rooms")
def rooms_cli():
    """Inspect and maintain room documents."""


@rooms_cli.command("list")
def rooms_list():
    for name in get_store().list_rooms():
        click.echo(name)


@rooms_cli.command("show")
@click.argument("room")
def rooms_show(room):
    room = _cli_room(room)
    click.echo(json.dumps(get_store().read(room).to_dict(), indent=2, ensure_ascii=False))


@rooms_cli.command("init")
@click.argument("room")
@click.argument("total", type=int)
def rooms_init(room, total):
    room = _cli_room(room)
    max_total = int(app.config["MAX_TOTAL"])
    if total < 0 or total > max_total:
        raise click.BadParameter(f"must be 0..{max_total}", param_hint="TOTAL")
    data = get_store().init_room(room, total)
    click.echo(f"{data.room}: {data.total} computers")


@rooms_cli.command("reset")
@click.argument("room")
def rooms_reset(room):
    data = get_store().reset_room(_cli_room(room))
    click.echo(f"{data.room}: {len(data.computers)} computers reset to free")


def _cli_room(room: str) -> str:
    if not is_safe_room(room):
        raise click.BadParameter("room name is not allowed", param_hint="ROOM")
    return room


# --------------- Dev entrypoint ---------------
if __name__ == "__main__":
    app.run(debug=True, host="127.0.0.1", port=5000)
