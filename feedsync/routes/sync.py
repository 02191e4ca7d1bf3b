# feedsync/routes/sync.py
from flask import Blueprint, current_app, request

from ..utils.logger import info

bp = Blueprint("sync", __name__)


def _c():
    return current_app.extensions["feedsync"]


def _supplier_json(s) -> dict:
    return {
        "id": s.id,
        "code": s.code,
        "name": s.name,
        "isActive": s.is_active,
        "productsCount": s.products_count,
        "lastSyncDate": s.last_sync_date.isoformat() if s.last_sync_date else None,
        "lastSyncStatus": s.last_sync_status,
        "lastSyncMessage": s.last_sync_message,
    }


# =========================================================
# Supplier runs
# =========================================================

@bp.post("/<code>/start")
def start(code: str):
    body = request.get_json(silent=True) or {}
    result = _c().trigger.start(code, trigger="manual", force=bool(body.get("force")))
    return result, 202 if result["started"] else 409


@bp.post("/start-all")
def start_all():
    results = _c().trigger.start_all(trigger="manual")
    return {"results": results, "started": sum(1 for r in results if r["started"])}, 202


@bp.post("/<code>/stop")
def stop(code: str):
    return _c().trigger.stop(code), 200


@bp.get("/<code>/status")
def status(code: str):
    return _c().trigger.status(code), 200


@bp.get("/active")
def active():
    return _c().locks.get_all_active_syncs(), 200


@bp.post("/locks/release-all")
def release_all():
    removed = _c().locks.force_release_all_locks()
    return {"released": removed}, 200


# =========================================================
# Suppliers
# =========================================================

@bp.get("/suppliers")
def suppliers():
    active_only = request.args.get("active")
    active = None if active_only is None else active_only.lower() in ("1", "true", "yes")
    return {"suppliers": [_supplier_json(s) for s in _c().suppliers.list(active=active)]}, 200


@bp.post("/suppliers/discover")
def discover():
    body = request.get_json(silent=True) or {}
    result = _c().suppliers.discover(body.get("names"))
    info(f"[sync] discovery: {len(result['created'])} new suppliers")
    return result, 200


@bp.post("/suppliers/<code>/activate")
def activate(code: str):
    body = request.get_json(silent=True) or {}
    supplier = _c().suppliers.activate(code, bool(body.get("active", True)))
    return _supplier_json(supplier), 200


# =========================================================
# Semantic index runs
# =========================================================

@bp.post("/semantic/<scope>/start")
def semantic_start(scope: str):
    result = _c().trigger.start_semantic(scope)
    return result, 202 if result["started"] else 409


@bp.post("/semantic/<scope>/stop")
def semantic_stop(scope: str):
    return _c().trigger.stop_semantic(scope), 200
