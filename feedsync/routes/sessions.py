# feedsync/routes/sessions.py
from datetime import datetime

from flask import Blueprint, current_app, request

from ..errors import NotFoundError
from ..models import STAGES
from ..services.sync_session import stage_stats

bp = Blueprint("sessions", __name__)


def _c():
    return current_app.extensions["feedsync"]


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


def session_json(s, detail: bool = False) -> dict:
    out = {
        "sessionId": s.session_id,
        "supplierCode": s.supplier_code,
        "supplierName": s.supplier_name,
        "trigger": s.trigger,
        "status": s.status,
        "startedAt": _iso(s.started_at),
        "completedAt": _iso(s.completed_at),
        "durationMs": s.duration_ms,
        "errorCount": s.error_count or 0,
        "lastError": s.last_error,
        "stages": {stage: getattr(s, f"{stage}_status") for stage in STAGES},
    }
    if detail:
        out["stats"] = {stage: stage_stats(s, stage) for stage in STAGES}
        out["errors"] = s.errors or []
        out["verification"] = {
            "status": s.verification_status,
            "details": s.verification_details,
            "verifiedAt": _iso(s.verified_at),
        }
    return out


def _require(session_id: str):
    session = _c().sessions.get_session(session_id)
    if session is None:
        raise NotFoundError(f"session {session_id} not found")
    return session


@bp.get("/active")
def active():
    return {"sessions": [session_json(s) for s in _c().sessions.get_active_sessions()]}, 200


@bp.get("/summary")
def summary():
    days = request.args.get("days", default=7, type=int)
    out = _c().sessions.get_summary(days)
    out["recent_failures"] = [{k: _iso(v) for k, v in f.items()} for f in out["recent_failures"]]
    return out, 200


@bp.get("/health")
def pipeline_health():
    c = _c()
    return {
        "activeSyncs": c.locks.get_all_active_syncs(),
        "queues": c.queue_manager.stats(),
        "runningSessions": [session_json(s) for s in c.sessions.get_active_sessions()],
        "services": {"search": c.search.healthy(), "semantic": c.semantic.healthy()},
    }, 200


@bp.get("/supplier/<code>")
def history(code: str):
    limit = request.args.get("limit", default=10, type=int)
    return {"sessions": [session_json(s) for s in _c().sessions.get_supplier_history(code, limit)]}, 200


@bp.get("/<session_id>")
def details(session_id: str):
    session = _require(session_id)
    progress = _c().sessions.stage_progress(session)
    for stage in progress["stages"]:
        stage["started_at"] = _iso(stage["started_at"])
        stage["completed_at"] = _iso(stage["completed_at"])
    return {**session_json(session, detail=True), **progress}, 200


@bp.post("/<session_id>/verify")
def verify(session_id: str):
    report = _c().sessions.verify_session(session_id)
    if report is None:
        raise NotFoundError(f"session {session_id} not found")
    return report, 200


@bp.post("/<session_id>/reset")
def reset(session_id: str):
    body = request.get_json(silent=True) or {}
    session = _c().sessions.reset_status(session_id, body.get("status", "failed"), body.get("stage"))
    if session is None:
        raise NotFoundError(f"session {session_id} not found")
    return session_json(session), 200
