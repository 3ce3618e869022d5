"""HTTP harness around a GameSession, in the spirit of the settlement dummy panel.

Lets a tester push settlement messages, flip demo mode, fire UI events and
move the virtual clock while watching the relay log and round state.
"""

from __future__ import annotations

import logging
import os
import time
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .events import INBOUND_TYPES
from .session import GameSession
from .surfaces import UI_EVENTS
from .timers import ManualClock

logger = logging.getLogger("MC.http_api")


# ---------------------------------------------------------------------------
# Response helpers
# ---------------------------------------------------------------------------


def error_response(
    code: str,
    message: str,
    *,
    status: int = 400,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    payload: Dict[str, Any] = {
        "ok": False,
        "error": {
            "code": code,
            "message": message,
            "details": details or {},
        },
    }
    return JSONResponse(status_code=status, content=payload)


def ok_response(payload: Dict[str, Any], *, status: int = 200) -> JSONResponse:
    data = {"ok": True}
    data.update(payload)
    return JSONResponse(status_code=status, content=data)


def require_bearer(request: Request) -> Optional[JSONResponse]:
    """Optional bearer token guard using ``MINES_CTL_API_TOKEN``."""
    token = os.getenv("MINES_CTL_API_TOKEN", "").strip() or None
    if token is None:
        return None
    header_value = request.headers.get("Authorization")
    if not header_value or not header_value.lower().startswith("bearer "):
        return error_response("AUTH_REQUIRED", "Missing bearer token", status=401)
    if header_value.split(" ", 1)[1].strip() != token:
        return error_response("AUTH_INVALID", "Invalid bearer token", status=401)
    return None


async def _json_body(request: Request) -> Optional[Dict[str, Any]]:
    raw = await request.body()
    if not raw:
        return {}
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(session: GameSession) -> FastAPI:
    """FastAPI app bound to one initialized session."""
    session.init()
    app = FastAPI(title="mines-ctl harness", version="1.0.0")
    app.state.session = session

    @app.get("/health")
    async def health():
        return ok_response({"status": "ok", "time": time.time()})

    @app.get("/status")
    async def status(request: Request):
        auth_error = require_bearer(request)
        if auth_error:
            return auth_error
        return ok_response({"session": session.snapshot()})

    @app.get("/relay/log")
    async def relay_log(request: Request):
        auth_error = require_bearer(request)
        if auth_error:
            return auth_error
        params = request.query_params
        try:
            limit = max(1, min(int(params.get("limit", "100")), 10_000))
        except (TypeError, ValueError):
            limit = 100
        direction = params.get("direction")
        entries = [e.to_dict() for e in session.relay.log if direction in (None, e.direction)]
        return ok_response({"entries": entries[-limit:], "stats": dict(session.relay.stats)})

    @app.get("/events")
    async def events(request: Request):
        auth_error = require_bearer(request)
        if auth_error:
            return auth_error
        try:
            since = int(request.query_params.get("since", "0"))
        except (TypeError, ValueError):
            since = 0
        return ok_response({"events": session.bus.history(since, request.query_params.get("type"))})

    @app.post("/relay/deliver")
    async def relay_deliver(request: Request):
        auth_error = require_bearer(request)
        if auth_error:
            return auth_error
        body = await _json_body(request)
        if body is None:
            return error_response("INVALID_BODY", "Body must be a JSON object", status=422)
        msg_type = body.get("type")
        if msg_type not in INBOUND_TYPES:
            return error_response(
                "UNKNOWN_TYPE",
                f"Unknown inbound type {msg_type!r}",
                status=422,
                details={"allowed": sorted(INBOUND_TYPES)},
            )
        payload = body.get("payload") or {}
        if not isinstance(payload, dict):
            return error_response("INVALID_PAYLOAD", "payload must be an object", status=422)
        session.relay.deliver(msg_type, payload)
        return ok_response({"state": session.controller.state.value})

    @app.post("/demo-mode")
    async def demo_mode(request: Request):
        auth_error = require_bearer(request)
        if auth_error:
            return auth_error
        body = await _json_body(request)
        if body is None or "enabled" not in body:
            return error_response("INVALID_BODY", "Expected {\"enabled\": bool}", status=422)
        session.ui("demomodechange", enabled=body["enabled"])
        return ok_response({"demo": session.relay.demo, "mode": session.relay.mode})

    @app.post("/ui/{event}")
    async def ui_event(event: str, request: Request):
        auth_error = require_bearer(request)
        if auth_error:
            return auth_error
        if event not in UI_EVENTS:
            return error_response("UNKNOWN_EVENT", f"Unknown UI event {event!r}", status=404)
        body = await _json_body(request)
        if body is None:
            return error_response("INVALID_BODY", "Body must be a JSON object", status=422)
        session.ui(event, **body)
        return ok_response({"state": session.controller.state.value, "controls": session.snapshot()["controls"]})

    @app.post("/clock/advance")
    async def clock_advance(request: Request):
        auth_error = require_bearer(request)
        if auth_error:
            return auth_error
        clock = session.scheduler
        if not isinstance(clock, ManualClock):
            return error_response("REAL_CLOCK", "Session runs on a real-time scheduler", status=409)
        body = await _json_body(request)
        if body is None:
            return error_response("INVALID_BODY", "Body must be a JSON object", status=422)
        if body.get("until_idle"):
            fired = clock.run_until_idle()
        else:
            try:
                seconds = float(body.get("seconds", 0))
            except (TypeError, ValueError):
                return error_response("INVALID_SECONDS", "seconds must be a number", status=422)
            if seconds < 0:
                return error_response("INVALID_SECONDS", "seconds must be >= 0", status=422)
            fired = clock.advance(seconds)
        return ok_response({"fired": fired, "now": clock.now(), "state": session.controller.state.value})

    return app


__all__ = ["create_app", "error_response", "ok_response", "require_bearer"]
