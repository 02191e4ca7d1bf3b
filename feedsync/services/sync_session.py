# feedsync/services/sync_session.py
import uuid
import time
from datetime import datetime, timedelta, timezone
from typing import Optional

from ..config import GEMINI, GEMINI_SYNC_QUEUE
from ..errors import StageTransitionError
from ..jobs.queue import job_id
from ..models import STAGES, Product, ProductVariant, Supplier, SyncSession, utcnow
from ..utils.logger import error, info, warn

MAX_ERRORS = 100
ACTIVE = ("pending", "running")
DONE = ("completed", "skipped")

PREREQUISITE = {"images": "promidata", "meilisearch": "images", "gemini": "meilisearch"}

COUNTER_FIELDS = {
    "promidata_products_found", "promidata_families_total", "promidata_families_created",
    "promidata_families_updated", "promidata_families_unchanged", "promidata_families_failed",
    "promidata_skipped_unchanged", "promidata_hash_efficiency",
    "images_total", "images_uploaded", "images_deduplicated", "images_failed",
    "meilisearch_total", "meilisearch_indexed", "meilisearch_failed",
    "gemini_total", "gemini_synced", "gemini_skipped", "gemini_failed",
}


def new_session_id(supplier_code: str) -> str:
    return f"{supplier_code}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


def _aware(dt: Optional[datetime]) -> Optional[datetime]:
    # sqlite hands back naive datetimes
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def stage_counts(session: SyncSession, stage: str) -> dict:
    """``{total, processed, failed}`` for one stage as tracked on the session."""
    def g(field):
        return getattr(session, field) or 0

    if stage == "promidata":
        processed = (g("promidata_families_created") + g("promidata_families_updated")
                     + g("promidata_families_unchanged"))
        return {"total": g("promidata_families_total"), "processed": processed,
                "failed": g("promidata_families_failed")}
    if stage == "images":
        return {"total": g("images_total"), "processed": g("images_uploaded") + g("images_deduplicated"),
                "failed": g("images_failed")}
    if stage == "meilisearch":
        return {"total": g("meilisearch_total"), "processed": g("meilisearch_indexed"),
                "failed": g("meilisearch_failed")}
    if stage == "gemini":
        return {"total": g("gemini_total"), "processed": g("gemini_synced") + g("gemini_skipped"),
                "failed": g("gemini_failed")}
    raise ValueError(f"unknown stage {stage!r}")


def is_stage_complete(session: SyncSession, stage: str) -> bool:
    c = stage_counts(session, stage)
    return c["total"] > 0 and c["processed"] + c["failed"] >= c["total"]


def stage_stats(session: SyncSession, stage: str) -> dict:
    if stage == "promidata":
        return {
            "products_found": session.promidata_products_found or 0,
            "families_total": session.promidata_families_total or 0,
            "families_created": session.promidata_families_created or 0,
            "families_updated": session.promidata_families_updated or 0,
            "families_unchanged": session.promidata_families_unchanged or 0,
            "families_failed": session.promidata_families_failed or 0,
            "skipped_unchanged": session.promidata_skipped_unchanged or 0,
            "hash_efficiency": session.promidata_hash_efficiency or 0,
        }
    stats = {f[len(stage) + 1:]: getattr(session, f) or 0
             for f in sorted(COUNTER_FIELDS) if f.startswith(f"{stage}_")}
    return stats


class SyncSessionService:
    """One row per supplier run, tracking four pipeline stages.

    Stage transitions are conditional updates (``WHERE <stage>_status = ...``)
    so concurrent workers calling :meth:`advance` agree on a single winner for
    each transition.
    """

    def __init__(self, store, queue=None, search=None, semantic=None, gemini_auto_sync: bool | None = None):
        self.store = store
        self.queue = queue
        self.search = search
        self.semantic = semantic
        self.gemini_auto_sync = GEMINI["auto_sync"] if gemini_auto_sync is None else gemini_auto_sync

    # ===== lifecycle =====

    def create_session(self, supplier_code: str, supplier_id: int | None = None,
                       supplier_name: str | None = None, trigger: str = "manual") -> SyncSession:
        session = self.store.create(SyncSession, {
            "session_id": new_session_id(supplier_code),
            "supplier_code": supplier_code,
            "supplier_id": supplier_id,
            "supplier_name": supplier_name,
            "trigger": trigger,
            "status": "pending",
            "errors": [],
        })
        info(f"[session] created {session.session_id} for {supplier_code} ({trigger})")
        return session

    def start_session(self, session_id: str) -> bool:
        won = self.store.update_where(SyncSession, {"status": "running", "started_at": utcnow()},
                                      session_id=session_id, status="pending") > 0
        if won:
            info(f"[session] {session_id} running")
        return won

    def _finish(self, session_id: str, status: str, last_error: str | None = None) -> Optional[SyncSession]:
        session = self.get_session(session_id)
        if session is None:
            warn(f"[session] {session_id} not found")
            return None
        now = utcnow()
        started = _aware(session.started_at) or _aware(session.created_at) or now
        data = {"status": status, "completed_at": now,
                "duration_ms": int((now - started).total_seconds() * 1000)}
        if last_error is not None:
            data["last_error"] = last_error
        if not self.store.update_where(SyncSession, data, session_id=session_id, status=list(ACTIVE)):
            return session
        return self.get_session(session_id)

    def complete_session(self, session_id: str) -> Optional[SyncSession]:
        session = self._finish(session_id, "completed")
        if session is not None and session.status == "completed":
            info(f"[session] {session_id} completed in {(session.duration_ms or 0) / 1000:.1f}s")
        return session

    def fail_session(self, session_id: str, message: str) -> Optional[SyncSession]:
        session = self._finish(session_id, "failed", last_error=message)
        if session is not None:
            error(f"[session] {session_id} failed: {message}")
        return session

    # ===== stages =====

    def can_proceed_to_stage(self, stage: str, session: SyncSession | str) -> bool:
        if isinstance(session, str):
            session = self.get_session(session)
        if session is None:
            return False
        prerequisite = PREREQUISITE.get(stage)
        if prerequisite is None:
            return True
        return getattr(session, f"{prerequisite}_status") in DONE

    def _check_stage(self, stage: str):
        if stage not in STAGES:
            raise ValueError(f"unknown stage {stage!r}")

    def start_stage(self, session_id: str, stage: str) -> bool:
        self._check_stage(stage)
        if not self.can_proceed_to_stage(stage, session_id):
            raise StageTransitionError(f"{session_id}: {PREREQUISITE[stage]} must finish before {stage}")
        won = self.store.update_where(
            SyncSession, {f"{stage}_status": "running", f"{stage}_started_at": utcnow()},
            session_id=session_id, **{f"{stage}_status": "pending"}) > 0
        if won:
            info(f"[session] {session_id} stage {stage} running")
        return won

    def complete_stage(self, session_id: str, stage: str) -> bool:
        self._check_stage(stage)
        won = self.store.update_where(
            SyncSession, {f"{stage}_status": "completed", f"{stage}_completed_at": utcnow()},
            session_id=session_id, **{f"{stage}_status": "running"}) > 0
        if won:
            info(f"[session] {session_id} stage {stage} completed")
        return won

    def skip_stage(self, session_id: str, stage: str, reason: str = "") -> bool:
        self._check_stage(stage)
        won = self.store.update_where(
            SyncSession, {f"{stage}_status": "skipped", f"{stage}_completed_at": utcnow()},
            session_id=session_id, **{f"{stage}_status": list(ACTIVE)}) > 0
        if won:
            info(f"[session] {session_id} stage {stage} skipped{f' ({reason})' if reason else ''}")
        return won

    def fail_stage(self, session_id: str, stage: str, message: str) -> bool:
        self._check_stage(stage)
        won = self.store.update_where(
            SyncSession, {f"{stage}_status": "failed", f"{stage}_completed_at": utcnow()},
            session_id=session_id, **{f"{stage}_status": list(ACTIVE)}) > 0
        self.add_error(session_id, stage, message)
        return won

    # ===== counters & errors =====

    def increment_counter(self, session_id: str, field: str, by: int = 1) -> bool:
        if field not in COUNTER_FIELDS:
            raise ValueError(f"unknown session counter {field!r}")
        return self.store.increment(SyncSession, "session_id", session_id, field, by) > 0

    def update_counters(self, session_id: str, counters: dict) -> bool:
        unknown = set(counters) - COUNTER_FIELDS
        if unknown:
            raise ValueError(f"unknown session counters {sorted(unknown)}")
        return self.store.update_where(SyncSession, counters, session_id=session_id) > 0

    def add_error(self, session_id: str, stage: str, message: str, details: dict | None = None):
        entry = {"timestamp": utcnow().isoformat(), "stage": stage, "error": message}
        if details:
            entry["details"] = details

        def append(row: SyncSession):
            row.errors = (list(row.errors or []) + [entry])[-MAX_ERRORS:]
            row.last_error = message
            row.error_count = (row.error_count or 0) + 1

        try:
            if self.store.locked_update(SyncSession, "session_id", session_id, append) is None:
                warn(f"[session] add_error: {session_id} not found ({stage}: {message})")
        except Exception as e:
            warn(f"[session] could not record error on {session_id}: {e}")

    # ===== queries =====

    def get_session(self, session_id: str) -> Optional[SyncSession]:
        return self.store.find(SyncSession, session_id=session_id)

    def get_active_sessions(self) -> list[SyncSession]:
        return self.store.find_many(SyncSession, order_by=SyncSession.created_at.desc(), status=list(ACTIVE))

    def get_active_session_for_supplier(self, supplier_code: str) -> Optional[SyncSession]:
        rows = self.store.find_many(SyncSession, order_by=SyncSession.created_at.desc(), limit=1,
                                    supplier_code=supplier_code, status=list(ACTIVE))
        return rows[0] if rows else None

    def get_supplier_history(self, supplier_code: str, limit: int = 10) -> list[SyncSession]:
        return self.store.find_many(SyncSession, order_by=SyncSession.created_at.desc(), limit=limit,
                                    supplier_code=supplier_code)

    def get_summary(self, days: int = 7) -> dict:
        since = (SyncSession.created_at >= utcnow() - timedelta(days=days),)
        total = self.store.count(SyncSession, where=since)
        completed = self.store.count(SyncSession, where=since, status="completed")
        failed = self.store.count(SyncSession, where=since, status="failed")
        active = self.store.count(SyncSession, status=list(ACTIVE))
        recent_failures = self.store.find_many(SyncSession, order_by=SyncSession.created_at.desc(), limit=5,
                                               where=since, status="failed")
        return {
            "period_days": days,
            "total_sessions": total,
            "completed": completed,
            "failed": failed,
            "active": active,
            "success_rate": round(completed / total * 100) if total else 100,
            "recent_failures": [
                {"session_id": s.session_id, "supplier_code": s.supplier_code,
                 "last_error": s.last_error, "started_at": s.started_at}
                for s in recent_failures
            ],
        }

    def stage_progress(self, session: SyncSession) -> dict:
        done = sum(1 for stage in STAGES if getattr(session, f"{stage}_status") in DONE)
        return {
            "progress": round(done / len(STAGES) * 100),
            "stages": [
                {
                    "name": stage,
                    "status": getattr(session, f"{stage}_status"),
                    "started_at": getattr(session, f"{stage}_started_at"),
                    "completed_at": getattr(session, f"{stage}_completed_at"),
                    "stats": stage_stats(session, stage),
                }
                for stage in STAGES
            ],
        }

    # ===== operator actions =====

    def reset_status(self, session_id: str, status: str = "failed", stage: str | None = None) -> Optional[SyncSession]:
        """Override a stuck status. Only an operator calls this."""
        if status not in ("pending", "running", "completed", "failed", "skipped"):
            raise ValueError(f"invalid status {status!r}")
        if stage is None:
            if status == "skipped":
                raise ValueError("a session cannot be skipped")
            data = {"status": status}
            if status in ("completed", "failed"):
                data["completed_at"] = utcnow()
        else:
            self._check_stage(stage)
            data = {f"{stage}_status": status}
        if not self.store.update_where(SyncSession, data, session_id=session_id):
            return None
        warn(f"[session] {session_id} {stage or 'session'} status reset to {status}")
        return self.get_session(session_id)

    def verify_session(self, session_id: str) -> Optional[dict]:
        """Diff the session's tracked counters against live counts.

        Re-runnable: the result overwrites the previous verification.
        """
        session = self.get_session(session_id)
        if session is None:
            return None
        supplier = (self.store.get(Supplier, session.supplier_id) if session.supplier_id
                    else self.store.find(Supplier, code=session.supplier_code))
        products = variants = 0
        if supplier is not None:
            products = self.store.count(Product, supplier_id=supplier.id)
            product_ids = [p for (_, p) in self.store.find_many_by_keys(
                Product, "supplier_id", [supplier.id], columns=("id",))]
            variants = self.store.count(ProductVariant, product_id=product_ids) if product_ids else 0

        tracked_families = (
            (session.promidata_families_created or 0) + (session.promidata_families_updated or 0)
            + (session.promidata_families_unchanged or 0) + (session.promidata_skipped_unchanged or 0)
        )
        mismatches = []
        report = {
            "session_id": session_id,
            "supplier_code": session.supplier_code,
            "store": {"products": products, "variants": variants, "session_tracked": tracked_families},
            "meilisearch": {"documents": None, "session_tracked": session.meilisearch_indexed or 0},
            "gemini": {"files": None, "session_tracked": session.gemini_synced or 0},
            "mismatches": mismatches,
        }
        if products != tracked_families:
            mismatches.append(f"store products ({products}) != session tracked ({tracked_families})")

        if self.search is not None:
            try:
                docs = self.search.get_stats().get("documentCount", 0)
                report["meilisearch"]["documents"] = docs
                indexed = self.store.count(Product)
                if docs != indexed:
                    mismatches.append(f"meilisearch documents ({docs}) != store products, all suppliers ({indexed})")
            except Exception as e:
                warn(f"[session] verify {session_id}: meilisearch stats unavailable: {e}")
                mismatches.append(f"meilisearch stats unavailable: {e}")
        if (session.meilisearch_indexed or 0) + (session.meilisearch_failed or 0) < (session.meilisearch_total or 0):
            mismatches.append(f"meilisearch indexed ({session.meilisearch_indexed or 0}) "
                              f"< session total ({session.meilisearch_total or 0})")

        if self.semantic is not None and session.gemini_status != "skipped":
            try:
                files = self.semantic.get_stats().get("syncedCount", 0)
                report["gemini"]["files"] = files
                linked = self.store.count(Product, where=(Product.gemini_file_uri.isnot(None),))
                if files != linked:
                    mismatches.append(f"gemini files ({files}) != products with a file ({linked})")
            except Exception as e:
                warn(f"[session] verify {session_id}: gemini stats unavailable: {e}")
                mismatches.append(f"gemini stats unavailable: {e}")

        report["status"] = "mismatch" if mismatches else "verified"
        self.store.update_where(SyncSession, {"verification_status": report["status"],
                                              "verification_details": report,
                                              "verified_at": utcnow()}, session_id=session_id)
        info(f"[session] verify {session_id}: {report['status']} ({len(mismatches)} mismatches)")
        return report

    # ===== pipeline =====

    def advance(self, session_id: str) -> Optional[SyncSession]:
        """Move the pipeline forward as far as the counters allow.

        Safe to call after every unit of work from any worker: completed
        stages are closed, the next stage is started (or skipped when it has
        nothing to do), and the session is closed once every stage is done.
        """
        session = self.get_session(session_id)
        if session is None or session.status != "running":
            return session

        for stage in STAGES:
            status = getattr(session, f"{stage}_status")
            if status in DONE:
                continue
            if status == "failed":
                self.fail_session(session_id, f"stage {stage} failed")
                return self.get_session(session_id)
            if status == "pending":
                if not self.can_proceed_to_stage(stage, session):
                    return session
                if stage == "gemini" and not self.gemini_auto_sync:
                    self.skip_stage(session_id, stage, "auto sync disabled")
                    session = self.get_session(session_id)
                    continue
                if stage == "gemini":
                    if self.start_stage(session_id, stage):
                        self._start_semantic_run(session)
                    return self.get_session(session_id)
                if stage_counts(session, stage)["total"] == 0:
                    self.skip_stage(session_id, stage, "nothing to do")
                    session = self.get_session(session_id)
                    continue
                self.start_stage(session_id, stage)
                session = self.get_session(session_id)
            if not is_stage_complete(session, stage):
                return session
            self.complete_stage(session_id, stage)
            session = self.get_session(session_id)

        self.complete_session(session_id)
        return self.get_session(session_id)

    def _start_semantic_run(self, session: SyncSession):
        if self.queue is None:
            warn(f"[session] {session.session_id}: no queue for the semantic run")
            return
        self.queue.enqueue(GEMINI_SYNC_QUEUE, {
            "operation": "run",
            "scope": session.supplier_code,
            "sessionId": session.session_id,
        }, {"job_id": job_id("gemini-run", session.supplier_code)})
