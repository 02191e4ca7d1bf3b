# feedsync/routes/queues.py
from flask import Blueprint, current_app, request

bp = Blueprint("queues", __name__)


def _qm():
    return current_app.extensions["feedsync"].queue_manager


@bp.get("/")
def all_stats():
    return {"queues": _qm().stats()}, 200


@bp.get("/workers")
def workers():
    return {"workers": _qm().worker_status()}, 200


@bp.get("/<queue>/stats")
def stats(queue: str):
    return _qm().stats(queue), 200


@bp.get("/<queue>/jobs")
def jobs(queue: str):
    args = request.args
    return _qm().list_jobs(
        queue,
        state=args.get("state", "waiting"),
        page=args.get("page", default=1, type=int),
        page_size=args.get("pageSize", default=25, type=int),
        search=args.get("search") or None,
    ), 200


@bp.get("/<queue>/jobs/<jid>")
def job(queue: str, jid: str):
    return _qm().get_job(queue, jid), 200


@bp.post("/<queue>/jobs/<jid>/retry")
def retry(queue: str, jid: str):
    return _qm().retry_job(queue, jid), 200


@bp.delete("/<queue>/jobs/<jid>")
def delete(queue: str, jid: str):
    return _qm().delete_job(queue, jid), 200


@bp.post("/<queue>/retry-failed")
def retry_failed(queue: str):
    return _qm().retry_failed_jobs(queue, limit=request.args.get("limit", default=100, type=int)), 200


@bp.post("/<queue>/pause")
def pause(queue: str):
    return _qm().pause_queue(queue), 200


@bp.post("/<queue>/resume")
def resume(queue: str):
    return _qm().resume_queue(queue), 200


@bp.post("/<queue>/clean")
def clean(queue: str):
    body = request.get_json(silent=True) or {}
    return _qm().clean_queue(
        queue,
        grace_ms=int(body.get("graceMs", 3600000)),
        status=body.get("status", "completed"),
        limit=int(body.get("limit", 1000)),
    ), 200


@bp.post("/<queue>/drain")
def drain(queue: str):
    return _qm().drain_queue(queue), 200
