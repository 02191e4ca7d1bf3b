# feedsync/workers/supplier_sync.py
import time

from ..config import PRODUCT_FAMILY_QUEUE, STOP_CHECK_INTERVAL
from ..errors import ValidationError
from ..jobs.queue import JobContext, job_id
from ..parsers.product import flatten_document
from ..services.product_sync import efficiency
from ..services.sync_lock import PROMIDATA
from ..transformers import grouping
from ..utils.hash import HashService
from ..utils.logger import exc, info, warn


def validate_payload(data) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("supplier sync payload must be an object")
    problems = []
    supplier_id = data.get("supplierId")
    if isinstance(supplier_id, bool) or not isinstance(supplier_id, (str, int)) or supplier_id in ("", 0):
        problems.append("supplierId is required")
    if not isinstance(data.get("supplierCode"), str) or not data["supplierCode"].strip():
        problems.append("supplierCode must be a non-empty string")
    numeric = data.get("supplierNumericId")
    if isinstance(numeric, bool) or not isinstance(numeric, int):
        problems.append("supplierNumericId must be an integer")
    if not isinstance(data.get("manual"), bool):
        problems.append("manual must be a boolean")
    session_id = data.get("sessionId")
    if session_id is not None and not isinstance(session_id, str):
        problems.append("sessionId must be a string")
    if problems:
        raise ValidationError(f"invalid supplier sync payload: {'; '.join(problems)}")
    return data


def _chunks(items: list, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


class SupplierSyncWorker:
    """One supplier run: manifest -> prefilter -> fetch -> group -> hash check -> enqueue families.

    Runs under the ``promidata`` lock for the supplier code. The stop flag
    is polled every ``stop_check_interval`` items while fetching and
    enqueueing.
    """

    def __init__(self, manifest, fetcher, products, suppliers, locks, queue, sessions=None,
                 hashes: HashService | None = None, stop_check_interval: int = STOP_CHECK_INTERVAL):
        self.manifest = manifest
        self.fetcher = fetcher
        self.products = products
        self.suppliers = suppliers
        self.locks = locks
        self.queue = queue
        self.sessions = sessions
        self.hashes = hashes or HashService()
        self.stop_check_interval = max(1, stop_check_interval)

    def process(self, data: dict, ctx: JobContext | None = None) -> dict:
        payload = validate_payload(data)
        ctx = ctx or JobContext()
        code = payload["supplierCode"]
        supplier_id = payload["supplierNumericId"]
        session_id = payload.get("sessionId")

        sync_id = self.locks.acquire(PROMIDATA, code)
        if not sync_id:
            return {"supplierCode": code, "skipped": True, "reason": "already running"}

        info(f"[supplier {code}] sync started ({'manual' if payload['manual'] else 'scheduled'})")
        started = time.time()
        try:
            if session_id and self.sessions is not None:
                self.sessions.start_session(session_id)
                self.sessions.start_stage(session_id, "promidata")
            result = self._run(code, supplier_id, session_id, ctx, started)
            status = "stopped" if result.get("stopped") else "completed"
            self.suppliers.record_sync(supplier_id, status, self._summary(result))
            return result
        except Exception as e:
            exc(f"[supplier {code}] sync failed", e)
            if isinstance(e, ValidationError) or ctx.final_attempt:
                self.suppliers.record_sync(supplier_id, "failed", str(e))
                if session_id and self.sessions is not None:
                    self.sessions.fail_stage(session_id, "promidata", str(e))
                    self.sessions.fail_session(session_id, str(e))
            raise
        finally:
            self.locks.release(PROMIDATA, code, sync_id)

    @staticmethod
    def _summary(result: dict) -> str:
        if result.get("stopped"):
            return f"stopped after {result.get('familiesEnqueued', 0)} families"
        if "familiesEnqueued" in result:
            return f"{result['familiesEnqueued']} families enqueued, {result['skipped']} unchanged"
        return f"nothing to sync, {result.get('skipped', 0)} unchanged"

    def _stop_requested(self, code: str) -> bool:
        if self.locks.is_stop_requested(PROMIDATA, code):
            warn(f"[supplier {code}] stop requested")
            return True
        return False

    # ===== steps =====

    def _run(self, code: str, supplier_id: int, session_id: str | None, ctx: JobContext, started: float) -> dict:
        ctx.progress("parsing_import", 10)
        entries = self.manifest.for_supplier(code)
        if not entries:
            info(f"[supplier {code}] no manifest entries")
            return self._nothing_to_sync(code, session_id, 0, 0, 0.0)

        ctx.progress("prefilter", 20)
        stored = self.products.stored_document_hashes(supplier_id, [e.sku for e in entries])
        unchanged_docs = [e for e in entries
                          if e.sku in stored and self.hashes.compare_hashes(stored[e.sku][0], e.hash)]
        unchanged_skus = {e.sku for e in unchanged_docs}
        changed = [e for e in entries if e.sku not in unchanged_skus]
        info(f"[supplier {code}] {len(entries)} entries, {len(changed)} changed since last run")

        ctx.progress("fetching", 30, total=len(changed))
        fetched, stopped = self._fetch(code, changed, session_id)
        if stopped:
            return self._stopped(code, session_id, 0, started)

        # unchanged documents of a touched family are needed to rebuild it whole
        touched = {grouping.family_id(r) or entry.sku for entry, records in fetched for r in records}
        siblings = [e for e in unchanged_docs if stored[e.sku][1] in touched]
        if siblings:
            more, stopped = self._fetch(code, siblings, session_id)
            if stopped:
                return self._stopped(code, session_id, 0, started)
            fetched += more
        sibling_skus = {e.sku for e in siblings}
        prefiltered = {stored[e.sku][1] or e.sku for e in unchanged_docs if e.sku not in sibling_skus}

        ctx.progress("grouping", 50)
        families = []
        for group in grouping.create_family_groups(fetched):
            problems = grouping.validate_family(group)
            if problems:
                warn(f"[supplier {code}] family {group.a_number} dropped: {', '.join(problems)}")
                if session_id and self.sessions is not None:
                    self.sessions.add_error(session_id, "promidata", f"invalid family {group.a_number}",
                                            {"problems": problems})
                continue
            families.append(group)
        info(f"[supplier {code}] {len(families)} families from {len(fetched)} documents")

        ctx.progress("hash_check", 60)
        by_a_number = {g.a_number: g for g in families}
        source_hashes = {g.a_number: self.hashes.combine([e.hash for e in g.entries]) for g in families}
        check = self.products.batch_hash_check(source_hashes, supplier_id)
        for a_number in check.unchanged:
            self.products.record_source_documents(supplier_id, a_number, self._documents(by_a_number[a_number]))

        skipped = len(prefiltered) + len(check.unchanged)
        eff = efficiency(skipped, len(prefiltered) + check.total)
        info(f"[supplier {code}] {len(check.needs_sync)} families need sync, {skipped} unchanged ({eff}%)")
        found = sum(len(g.variants) for g in families)
        if not check.needs_sync:
            return self._nothing_to_sync(code, session_id, found, skipped, eff)

        ctx.progress("enqueueing", 70, total=len(check.needs_sync))
        job_ids, stopped = [], False
        for i, a_number in enumerate(check.needs_sync):
            if i % self.stop_check_interval == 0 and self._stop_requested(code):
                stopped = True
                break
            group = by_a_number[a_number]
            job_ids.append(self.queue.enqueue(PRODUCT_FAMILY_QUEUE, {
                "aNumber": a_number,
                "variants": group.variants,
                "supplierId": supplier_id,
                "supplierCode": code,
                "productHash": source_hashes[a_number],
                "sessionId": session_id,
                "sourceDocuments": self._documents(group),
            }, {"job_id": job_id("family", code, a_number)}))

        if session_id and self.sessions is not None:
            self.sessions.update_counters(session_id, {
                "promidata_products_found": found,
                "promidata_families_total": len(job_ids),
                "promidata_skipped_unchanged": skipped,
                "promidata_hash_efficiency": eff,
            })
        if stopped:
            return self._stopped(code, session_id, len(job_ids), started, skipped=skipped, efficiency=eff,
                                 job_ids=job_ids)
        if session_id and self.sessions is not None:
            # family jobs may all have finished before the total was known
            self.sessions.advance(session_id)

        ctx.progress("complete", 100)
        duration = round(time.time() - started, 2)
        info(f"[supplier {code}] {len(job_ids)} families enqueued in {duration}s")
        return {
            "supplierCode": code,
            "familiesEnqueued": len(job_ids),
            "skipped": skipped,
            "efficiency": eff,
            "duration": f"{duration}s",
            "jobIds": job_ids,
        }

    def _fetch(self, code: str, entries: list, session_id: str | None) -> tuple[list, bool]:
        """``([(entry, records)], stopped)``. Failed documents are logged and left out."""
        out = []
        for chunk in _chunks(entries, self.stop_check_interval):
            if self._stop_requested(code):
                return out, True
            for item in self.fetcher.fetch_batch(chunk):
                entry = item["entry"]
                if item["error"] is not None or not isinstance(item["document"], dict):
                    message = item["error"] or "not a product document"
                    if session_id and self.sessions is not None:
                        self.sessions.add_error(session_id, "promidata", f"fetch {entry.sku}: {message}",
                                                {"url": entry.url})
                    continue
                out.append((entry, flatten_document(item["document"], entry.sku)))
        return out, False

    @staticmethod
    def _documents(group) -> list[dict]:
        return [{"sku": e.sku, "hash": e.hash, "url": e.url} for e in group.entries]

    def _nothing_to_sync(self, code: str, session_id: str | None, found: int, skipped: int, eff: float) -> dict:
        if session_id and self.sessions is not None:
            self.sessions.update_counters(session_id, {
                "promidata_products_found": found,
                "promidata_skipped_unchanged": skipped,
                "promidata_hash_efficiency": eff,
            })
            # a stage with nothing counted never completes on its own
            self.sessions.complete_stage(session_id, "promidata")
            self.sessions.advance(session_id)
        info(f"[supplier {code}] all products up to date")
        return {"supplierCode": code, "productsProcessed": 0, "skipped": skipped, "efficiency": eff}

    def _stopped(self, code: str, session_id: str | None, enqueued: int, started: float,
                 skipped: int = 0, efficiency: float = 0.0, job_ids: list | None = None) -> dict:
        if session_id and self.sessions is not None:
            self.sessions.add_error(session_id, "promidata", "stopped by operator")
            if enqueued == 0:
                self.sessions.fail_stage(session_id, "promidata", "stopped before any family was enqueued")
            self.sessions.advance(session_id)
        info(f"[supplier {code}] stopped, {enqueued} families enqueued")
        return {
            "supplierCode": code,
            "stopped": True,
            "familiesEnqueued": enqueued,
            "skipped": skipped,
            "efficiency": efficiency,
            "duration": f"{round(time.time() - started, 2)}s",
            "jobIds": job_ids or [],
        }
