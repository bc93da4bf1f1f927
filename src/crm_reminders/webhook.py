"""HTTP surface: trigger a reminder pass and acknowledge shown popups."""

from __future__ import annotations

import asyncio
import hmac
import logging
import os
from typing import TYPE_CHECKING, Any

from aiohttp import web
from jsonschema import Draft7Validator

from crm_reminders.engine import EngineSettings, PopupAckError, acknowledge_popup, check_reminders
from crm_reminders.storage import EntityNotFound

if TYPE_CHECKING:
    from crm_reminders.engine.dispatch import Mailer
    from crm_reminders.storage import EntityStore

log = logging.getLogger(__name__)

POPUP_ACK_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "type": {"type": "string", "enum": ["reminder", "task", "meeting"]},
        "entityId": {"type": "string", "minLength": 1, "maxLength": 200},
        "reminderIndex": {"type": ["integer", "null"], "minimum": 0},
    },
    "required": ["type", "entityId"],
    "additionalProperties": False,
}


def validate_payload(schema: dict[str, Any], data: Any) -> list[str]:
    """Validate data against JSON Schema. Returns list of error messages."""
    validator = Draft7Validator(schema)
    return [err.message for err in validator.iter_errors(data)]


def verify_auth(auth_header: str, secret: str) -> bool:
    """Constant-time comparison of Bearer token."""
    expected = f"Bearer {secret}"
    return hmac.compare_digest(auth_header, expected)


# ---------------------------------------------------------------------------
# HTTP handlers
# ---------------------------------------------------------------------------

_MAX_PAYLOAD_SIZE = 10 * 1024  # 10KB

_KEY_SECRET = web.AppKey("secret", str)
_KEY_STORE = web.AppKey("store")
_KEY_MAILER = web.AppKey("mailer")
_KEY_LOCK = web.AppKey("lock", asyncio.Lock)
_KEY_SETTINGS = web.AppKey("settings")


def _authorized(request: web.Request) -> bool:
    return verify_auth(request.headers.get("Authorization", ""), request.app[_KEY_SECRET])


async def _handle_check(request: web.Request) -> web.Response:
    """Handle POST /reminders/check."""
    if not _authorized(request):
        return web.json_response({"error": "unauthorized"}, status=401)

    lock: asyncio.Lock = request.app[_KEY_LOCK]
    if lock.locked():
        return web.json_response(
            {"success": False, "error": "reminder pass already running"}, status=409
        )

    async with lock:
        try:
            report = await check_reminders(
                request.app[_KEY_STORE],
                request.app[_KEY_MAILER],
                settings=request.app[_KEY_SETTINGS],
            )
        except Exception as e:
            log.exception("Reminder pass failed")
            return web.json_response({"success": False, "error": str(e)}, status=500)
    return web.json_response(report.to_dict())


async def _handle_popup_ack(request: web.Request) -> web.Response:
    """Handle POST /reminders/popups/ack."""
    if not _authorized(request):
        return web.json_response({"error": "unauthorized"}, status=401)

    try:
        data = await request.json()
    except Exception:
        return web.json_response({"error": "invalid json"}, status=400)

    errors = validate_payload(POPUP_ACK_SCHEMA, data)
    if errors:
        return web.json_response(
            {"error": "validation failed", "details": errors}, status=400
        )

    try:
        await acknowledge_popup(
            request.app[_KEY_STORE],
            data["type"],
            data["entityId"],
            data.get("reminderIndex"),
            settings=request.app[_KEY_SETTINGS],
        )
    except EntityNotFound:
        return web.json_response(
            {"error": f"{data['type']} not found: {data['entityId']}"}, status=404
        )
    except PopupAckError as e:
        return web.json_response({"error": str(e)}, status=400)
    return web.json_response({"success": True})


def create_app(
    *,
    secret: str,
    store: EntityStore,
    mailer: Mailer,
    lock: asyncio.Lock | None = None,
    settings: EngineSettings | None = None,
) -> web.Application:
    """Create aiohttp application; lock is shared with the scheduler."""
    app = web.Application(client_max_size=_MAX_PAYLOAD_SIZE)
    app[_KEY_SECRET] = secret
    app[_KEY_STORE] = store
    app[_KEY_MAILER] = mailer
    app[_KEY_LOCK] = lock or asyncio.Lock()
    app[_KEY_SETTINGS] = settings or EngineSettings()
    app.router.add_post("/reminders/check", _handle_check)
    app.router.add_post("/reminders/popups/ack", _handle_popup_ack)
    return app


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------

_runner: web.AppRunner | None = None


async def start(store: EntityStore, mailer: Mailer, lock: asyncio.Lock) -> None:
    """Start the HTTP server if CRM_WEBHOOK_PORT and CRM_WEBHOOK_SECRET are set."""
    global _runner  # noqa: PLW0603
    port_str = os.environ.get("CRM_WEBHOOK_PORT")
    secret = os.environ.get("CRM_WEBHOOK_SECRET")

    if not port_str:
        return
    if not secret:
        log.error("CRM_WEBHOOK_PORT set but CRM_WEBHOOK_SECRET missing -- webhook disabled")
        return

    port = int(port_str)
    app = create_app(secret=secret, store=store, mailer=mailer, lock=lock)
    _runner = web.AppRunner(app)
    await _runner.setup()
    site = web.TCPSite(_runner, "127.0.0.1", port)
    await site.start()
    log.info("Webhook server started on 127.0.0.1:%d", port)


async def stop() -> None:
    """Graceful shutdown of webhook server."""
    global _runner  # noqa: PLW0603
    if _runner:
        await _runner.cleanup()
        _runner = None
        log.info("Webhook server stopped")
