# feedsync/services/semantic.py
from typing import Optional

from ..config import GEMINI_SYNC_QUEUE
from ..jobs.queue import job_id
from ..models import Product, Supplier
from ..utils.logger import info, warn
from .search_documents import SEARCH_LANGUAGES
from .sync_lock import GEMINI

PAGE_SIZE = 100
ALL_SUPPLIERS = "all"

SEMANTIC_FIELDS = (
    "id", "sku", "a_number", "brand", "supplier_name", "supplier_code", "colors", "sizes",
    "price_min", "price_max", "currency", "country_of_origin", "main_image_url",
)


def semantic_document(search_doc: dict) -> dict:
    """The JSON file uploaded to the semantic store, built from the indexed search document."""
    out = {k: search_doc.get(k) for k in SEMANTIC_FIELDS if search_doc.get(k) not in (None, "", [])}
    for field in ("name", "description", "material"):
        values = {lang: search_doc.get(f"{field}_{lang}") for lang in SEARCH_LANGUAGES
                  if search_doc.get(f"{field}_{lang}")}
        if values:
            out[field] = values
    return out


class SemanticIndexService:
    """Gemini File Search mirror of the search index.

    Documents are read from the search index, never from the catalog store,
    so the semantic store can only hold what search already serves.
    """

    def __init__(self, client, search, products):
        self.client = client
        self.search = search
        self.products = products

    def add_or_update_document(self, document_id: str) -> dict:
        if not self.client.configured:
            return {"success": False, "error": "semantic index is not configured"}
        try:
            doc = self.search.get_document(document_id)
            if doc is None:
                return {"success": False, "skipped": True, "error": f"{document_id} not in search index"}
            product = self.products.find_by_document_id(document_id)
            if product is not None and product.gemini_file_uri:
                self._delete_quietly(product.gemini_file_uri)
            name = self.client.upload_and_wait(f"{doc.get('sku') or document_id}.json", semantic_document(doc))
            if product is not None:
                self.products.set_gemini_file(product.id, name)
            return {"success": True, "documentName": name}
        except Exception as e:
            warn(f"[semantic] add/update {document_id} failed: {e}")
            return {"success": False, "error": str(e)}

    def _delete_quietly(self, document_name: str):
        try:
            self.client.delete_document(document_name)
        except Exception as e:
            warn(f"[semantic] could not remove previous {document_name}: {e}")

    def delete_document(self, document_id: str) -> dict:
        product = self.products.find_by_document_id(document_id)
        if product is None or not product.gemini_file_uri:
            return {"success": False, "error": f"no semantic document recorded for {document_id}"}
        try:
            self.client.delete_document(product.gemini_file_uri)
        except Exception as e:
            return {"success": False, "error": str(e)}
        self.products.set_gemini_file(product.id, None)
        return {"success": True}

    def get_stats(self) -> dict:
        store = self.client.get_store()
        return {
            "syncedCount": int(store.get("activeDocumentsCount") or 0),
            "pendingCount": int(store.get("pendingDocumentsCount") or 0),
            "failedCount": int(store.get("failedDocumentsCount") or 0),
            "sizeBytes": int(store.get("sizeBytes") or 0),
        }

    def healthy(self) -> bool:
        if not self.client.configured:
            return False
        try:
            self.client.get_store()
            return True
        except Exception as e:
            warn(f"[semantic] health check failed: {e}")
            return False


class SemanticSyncRunner:
    """Fans a semantic sync out over a supplier's products (or all of them).

    Runs under the ``gemini`` lock for its scope and checks the stop flag
    once per page.
    """

    def __init__(self, store, locks, queue, sessions=None, page_size: int = PAGE_SIZE):
        self.store = store
        self.locks = locks
        self.queue = queue
        self.sessions = sessions
        self.page_size = page_size

    def _supplier_id(self, scope: str) -> Optional[int]:
        supplier = self.store.find(Supplier, code=scope)
        return supplier.id if supplier else None

    def run(self, scope: str = ALL_SUPPLIERS, session_id: str | None = None) -> dict:
        sync_id = self.locks.acquire(GEMINI, scope)
        if not sync_id:
            return {"scope": scope, "skipped": True, "reason": "already running"}
        try:
            return self._run(scope, session_id)
        finally:
            self.locks.release(GEMINI, scope, sync_id)

    def _run(self, scope: str, session_id: str | None) -> dict:
        filters = {}
        if scope != ALL_SUPPLIERS:
            supplier_id = self._supplier_id(scope)
            if supplier_id is None:
                warn(f"[semantic] unknown supplier {scope}")
                self._nothing_to_do(session_id)
                return {"scope": scope, "enqueued": 0, "jobIds": [], "stopped": False}
            filters["supplier_id"] = supplier_id

        enqueued, job_ids, offset, stopped = 0, [], 0, False
        while True:
            if self.locks.is_stop_requested(GEMINI, scope):
                info(f"[semantic] stop requested for {scope} after {enqueued} products")
                stopped = True
                break
            page = self.store.find_many(Product, limit=self.page_size, offset=offset, is_active=True, **filters)
            if not page:
                break
            for product in page:
                job_ids.append(self.queue.enqueue(GEMINI_SYNC_QUEUE, {
                    "operation": "update",
                    "documentId": product.document_id,
                    "sessionId": session_id,
                }, {"job_id": job_id("gemini", product.a_number)}))
            enqueued += len(page)
            offset += len(page)
            if len(page) < self.page_size:
                break

        if enqueued == 0:
            self._nothing_to_do(session_id)
        elif session_id and self.sessions is not None:
            # the stage completes once processed reaches the total, so it is set after the last page
            self.sessions.update_counters(session_id, {"gemini_total": enqueued})
            self.sessions.advance(session_id)
        info(f"[semantic] {scope}: {enqueued} products enqueued{' (stopped)' if stopped else ''}")
        return {"scope": scope, "enqueued": enqueued, "jobIds": job_ids, "stopped": stopped}

    def _nothing_to_do(self, session_id: str | None):
        if session_id and self.sessions is not None:
            self.sessions.skip_stage(session_id, "gemini", "no products")
            self.sessions.advance(session_id)
