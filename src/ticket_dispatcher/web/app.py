"""Control and status API: the agent side channel plus pause and run inspection."""

import json
import logging

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from ticket_dispatcher.config import SERVE_HOST, SERVE_PORT, get_config
from ticket_dispatcher.core import pause as pause_mod
from ticket_dispatcher.core import runs as runs_mod
from ticket_dispatcher.core import tickets as tickets_mod
from ticket_dispatcher.core.classifier import compute_pause_until
from ticket_dispatcher.db.engine import init_db
from ticket_dispatcher.db.models import to_iso, utcnow

logger = logging.getLogger(__name__)


def _get_db():
    config = get_config()
    return init_db(config.db_path)


async def _json_body(request: Request) -> dict | None:
    try:
        body = await request.json()
    except json.JSONDecodeError:
        return None
    return body if isinstance(body, dict) else None


def _ticket_id(request: Request) -> int | None:
    try:
        return int(request.path_params["ticket_id"])
    except ValueError:
        return None


# ── Side channel ──────────────────────────────────────────────────────────────


async def api_report(request: Request):
    ticket_id = _ticket_id(request)
    body = await _json_body(request)
    if ticket_id is None or body is None:
        return JSONResponse({"error": "bad request"}, status_code=400)
    content = (body.get("content") or "").strip()
    if not content:
        return JSONResponse({"error": "empty"}, status_code=400)
    persona_id = body.get("personaId")
    db = _get_db()
    try:
        if not tickets_mod.get_ticket(db, ticket_id):
            return JSONResponse({"error": "ticket not found"}, status_code=404)
        now = utcnow()
        tickets_mod.post_comment(db, ticket_id, content, "agent", persona_id, now=now)
        tickets_mod.refresh_activity(db, ticket_id, now)
        runs_mod.touch_run_report(db, ticket_id, persona_id, now)
        return JSONResponse({"ok": True})
    finally:
        db.close()


async def api_list_documents(request: Request):
    ticket_id = _ticket_id(request)
    if ticket_id is None:
        return JSONResponse({"error": "bad request"}, status_code=400)
    db = _get_db()
    try:
        docs = tickets_mod.list_documents(db, ticket_id)
        return JSONResponse({"documents": [_document_dict(d) for d in docs]})
    finally:
        db.close()


async def api_save_document(request: Request):
    ticket_id = _ticket_id(request)
    body = await _json_body(request)
    if ticket_id is None or body is None:
        return JSONResponse({"error": "bad request"}, status_code=400)
    db = _get_db()
    try:
        if not tickets_mod.get_ticket(db, ticket_id):
            return JSONResponse({"error": "ticket not found"}, status_code=404)
        try:
            doc = tickets_mod.save_document(
                db, ticket_id, body.get("type", ""), body.get("content") or "", body.get("personaId")
            )
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        logger.info("Ticket %s: %s v%d saved", ticket_id, doc.type, doc.version)
        return JSONResponse({"document": _document_dict(doc), "created": True, "version": doc.version})
    finally:
        db.close()


async def api_check_criteria(request: Request):
    ticket_id = _ticket_id(request)
    body = await _json_body(request)
    if ticket_id is None or body is None:
        return JSONResponse({"error": "bad request"}, status_code=400)
    index = body.get("index")
    if not isinstance(index, int) or isinstance(index, bool):
        return JSONResponse({"error": "index must be a non-negative number"}, status_code=400)
    db = _get_db()
    try:
        try:
            result = tickets_mod.check_criterion(db, ticket_id, index)
        except LookupError as e:
            return JSONResponse({"error": str(e)}, status_code=404)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse(result)
    finally:
        db.close()


# ── Status and pause control ──────────────────────────────────────────────────


async def api_heartbeat_status(request: Request):
    db = _get_db()
    try:
        return JSONResponse(pause_mod.get_heartbeat_status(db))
    finally:
        db.close()


def _pause_dict(state: pause_mod.PauseState, now) -> dict:
    return {
        "paused": state.quota_active(now),
        "resumesAt": to_iso(state.quota_paused_until) if state.quota_paused_until else None,
        "remainingMs": int(state.remaining(now).total_seconds() * 1000),
        "reason": state.quota_reason,
    }


async def api_get_credit_pause(request: Request):
    db = _get_db()
    try:
        now = utcnow()
        state = pause_mod.load_pause_state(db)
        if state.quota_expired(now):
            pause_mod.clear_quota_pause(db)
            state = pause_mod.load_pause_state(db)
        return JSONResponse(_pause_dict(state, now))
    finally:
        db.close()


async def api_set_credit_pause(request: Request):
    body = await _json_body(request)
    reason = body.get("reason") if body else None
    if not reason or not isinstance(reason, str):
        return JSONResponse({"error": "reason (stderr content) required"}, status_code=400)
    db = _get_db()
    try:
        now = utcnow()
        pause_mod.set_quota_pause(db, compute_pause_until(reason, now), reason)
        return JSONResponse(_pause_dict(pause_mod.load_pause_state(db), now))
    finally:
        db.close()


async def api_manual_pause(request: Request):
    db = _get_db()
    try:
        now = utcnow()
        pause_mod.set_manual_pause(db, now)
        return JSONResponse(_pause_dict(pause_mod.load_pause_state(db), now))
    finally:
        db.close()


async def api_clear_credit_pause(request: Request):
    db = _get_db()
    try:
        pause_mod.clear_quota_pause(db)
        return JSONResponse({"paused": False})
    finally:
        db.close()


async def api_auth_status(request: Request):
    db = _get_db()
    try:
        return JSONResponse({"authExpired": pause_mod.load_pause_state(db).auth_expired})
    finally:
        db.close()


async def api_clear_auth(request: Request):
    db = _get_db()
    try:
        pause_mod.clear_auth_expired(db)
        return JSONResponse({"ok": True, "authExpired": False})
    finally:
        db.close()


async def api_agent_runs(request: Request):
    status = request.query_params.get("status")
    try:
        limit = int(request.query_params.get("limit", "50"))
    except ValueError:
        return JSONResponse({"error": "limit must be an integer"}, status_code=400)
    db = _get_db()
    try:
        runs = runs_mod.list_runs(db, status=status, limit=limit)
        return JSONResponse({"runs": [_run_dict(r) for r in runs]})
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(dt) -> str | None:
    return to_iso(dt) if dt else None


def _document_dict(d) -> dict:
    return {
        "id": d.id,
        "ticketId": d.ticket_id,
        "type": d.type,
        "content": d.content,
        "version": d.version,
        "authorPersonaId": d.author_persona_id,
        "createdAt": _iso(d.created_at),
    }


def _run_dict(r) -> dict:
    return {
        "id": r.id,
        "ticketId": r.ticket_id,
        "personaId": r.persona_id,
        "phase": r.phase,
        "status": r.status,
        "tools": r.tools,
        "sessionDir": r.session_dir,
        "dispatchSource": r.dispatch_source,
        "startedAt": _iso(r.started_at),
        "lastReportAt": _iso(r.last_report_at),
        "completedAt": _iso(r.completed_at),
        "durationMs": r.duration_ms,
        "errorMessage": r.error_message,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/tickets/{ticket_id}/report", api_report, methods=["POST"]),
        Route("/api/tickets/{ticket_id}/documents", api_list_documents, methods=["GET"]),
        Route("/api/tickets/{ticket_id}/documents", api_save_document, methods=["POST"]),
        Route("/api/tickets/{ticket_id}/check-criteria", api_check_criteria, methods=["POST"]),
        Route("/api/heartbeat-status", api_heartbeat_status, methods=["GET"]),
        Route("/api/credit-pause", api_get_credit_pause, methods=["GET"]),
        Route("/api/credit-pause", api_set_credit_pause, methods=["POST"]),
        Route("/api/credit-pause", api_manual_pause, methods=["PUT"]),
        Route("/api/credit-pause", api_clear_credit_pause, methods=["DELETE"]),
        Route("/api/auth/reauth", api_auth_status, methods=["GET"]),
        Route("/api/auth/reauth", api_clear_auth, methods=["DELETE"]),
        Route("/api/agent-runs", api_agent_runs, methods=["GET"]),
    ]
    return Starlette(routes=routes)


def run_server(host: str = SERVE_HOST, port: int = SERVE_PORT):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
