# feedsync/services/sync.py
from ..config import GEMINI_SYNC_QUEUE, SUPPLIER_SYNC_QUEUE
from ..errors import ValidationError
from ..jobs.queue import job_id
from ..utils.logger import info, warn
from .sync_lock import GEMINI, PROMIDATA


class SyncTriggerService:
    """Starts and stops supplier runs. The run itself happens in the supplier worker."""

    def __init__(self, suppliers, sessions, locks, queue):
        self.suppliers = suppliers
        self.sessions = sessions
        self.locks = locks
        self.queue = queue

    def start(self, supplier_code: str, trigger: str = "manual", force: bool = False) -> dict:
        supplier = self.suppliers.require(supplier_code)
        if not supplier.is_active and not force:
            raise ValidationError(f"supplier {supplier_code} is not active")
        if self.locks.is_locked(PROMIDATA, supplier_code):
            warn(f"[sync] {supplier_code} already running, not starting another run")
            return {"started": False, "supplierCode": supplier_code, "reason": "already running",
                    "lockInfo": self.locks.get_lock_info(PROMIDATA, supplier_code)}

        session = self.sessions.create_session(supplier_code, supplier.id, supplier.name, trigger)
        jid = self.queue.enqueue(SUPPLIER_SYNC_QUEUE, {
            "supplierId": str(supplier.id),
            "supplierCode": supplier_code,
            "supplierNumericId": supplier.id,
            "manual": trigger == "manual",
            "sessionId": session.session_id,
        }, {"job_id": job_id("supplier-sync", supplier_code)})
        info(f"[sync] {supplier_code} started: session {session.session_id}, job {jid}")
        return {"started": True, "supplierCode": supplier_code, "sessionId": session.session_id, "jobId": jid}

    def start_all(self, trigger: str = "scheduled") -> list[dict]:
        results = []
        for supplier in self.suppliers.list(active=True):
            results.append(self.start(supplier.code, trigger))
        started = sum(1 for r in results if r["started"])
        info(f"[sync] start_all: {started}/{len(results)} suppliers started")
        return results

    def stop(self, supplier_code: str) -> dict:
        requested = self.locks.request_stop(PROMIDATA, supplier_code)
        return {"supplierCode": supplier_code, "stopRequested": requested}

    def status(self, supplier_code: str) -> dict:
        active = self.sessions.get_active_session_for_supplier(supplier_code)
        return {
            "supplierCode": supplier_code,
            **self.locks.status(PROMIDATA, supplier_code),
            "sessionId": active.session_id if active else None,
        }

    def start_semantic(self, scope: str) -> dict:
        if self.locks.is_locked(GEMINI, scope):
            return {"started": False, "scope": scope, "reason": "already running"}
        jid = self.queue.enqueue(GEMINI_SYNC_QUEUE, {"operation": "run", "scope": scope},
                                 {"job_id": job_id("gemini-run", scope)})
        return {"started": True, "scope": scope, "jobId": jid}

    def stop_semantic(self, scope: str) -> dict:
        return {"scope": scope, "stopRequested": self.locks.request_stop(GEMINI, scope)}
