# feedsync/workers/search_sync.py
from ..errors import TransientError, ValidationError
from ..jobs.queue import JobContext
from ..utils.logger import exc, info, warn
from .product_family import PRODUCT, VARIANT

OPERATIONS = ("add", "update", "delete")


def validate_payload(data) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("search sync payload must be an object")
    problems = []
    if data.get("operation") not in OPERATIONS:
        problems.append(f"operation must be one of {', '.join(OPERATIONS)}")
    if data.get("entityType") not in (PRODUCT, VARIANT):
        problems.append(f"entityType must be {PRODUCT} or {VARIANT}")
    entity_id = data.get("entityId")
    if isinstance(entity_id, bool) or not isinstance(entity_id, int):
        problems.append("entityId must be an integer")
    if data.get("operation") == "delete" and data.get("entityType") == PRODUCT and not data.get("documentId"):
        problems.append("documentId is required to delete a product")
    if problems:
        raise ValidationError(f"invalid search sync payload: {'; '.join(problems)}")
    return data


class SearchSyncWorker:
    """Keeps the Meilisearch product index in step with the store.

    The index holds one document per product; a variant job re-indexes its
    parent product.
    """

    def __init__(self, search, builder, products, variants, sessions=None):
        self.search = search
        self.builder = builder
        self.products = products
        self.variants = variants
        self.sessions = sessions

    def process(self, data: dict, ctx: JobContext | None = None) -> dict:
        ctx = ctx or JobContext()
        session_id = data.get("sessionId") if isinstance(data, dict) else None
        try:
            payload = validate_payload(data)
            result = self._run(payload)
        except Exception as e:
            exc(f"[search] {data.get('entityType') if isinstance(data, dict) else ''} "
                f"{data.get('entityId') if isinstance(data, dict) else ''} failed", e)
            if session_id and self.sessions is not None and (isinstance(e, ValidationError) or ctx.final_attempt):
                self.sessions.increment_counter(session_id, "meilisearch_failed")
                self.sessions.add_error(session_id, "meilisearch", str(e),
                                        {"entityType": data.get("entityType"), "entityId": data.get("entityId")})
                self.sessions.advance(session_id)
            raise

        if session_id and self.sessions is not None:
            self.sessions.increment_counter(session_id, "meilisearch_indexed")
            self.sessions.advance(session_id)
        return {**result, "sessionId": session_id}

    def _settle(self, task: dict, doc_id: str):
        # upserts are asynchronous in meilisearch; a failed task is retried as a job
        uid = (task or {}).get("taskUid")
        if uid is None:
            return
        settled = self.search.wait_for_task(uid)
        if settled.get("status") != "succeeded":
            raise TransientError(f"index task {uid} for {doc_id} {settled.get('status')}: {settled.get('error')}")

    def _run(self, payload: dict) -> dict:
        operation, entity_type, entity_id = payload["operation"], payload["entityType"], payload["entityId"]

        if entity_type == VARIANT:
            variant = self.variants.get(entity_id)
            if variant is None:
                warn(f"[search] variant {entity_id} not found, nothing to index")
                return {"operation": operation, "entityType": entity_type, "entityId": entity_id, "skipped": True}
            product = self.products.get(variant.product_id)
        else:
            product = self.products.get(entity_id)

        if entity_type == PRODUCT and operation == "delete":
            self.search.delete_document(payload["documentId"])
            info(f"[search] deleted {payload['documentId']}")
            return {"operation": operation, "entityType": entity_type, "entityId": entity_id,
                    "documentId": payload["documentId"]}

        if product is None:
            warn(f"[search] product for {entity_type} {entity_id} not found")
            if payload.get("documentId") and entity_type == PRODUCT:
                self.search.delete_document(payload["documentId"])
            return {"operation": operation, "entityType": entity_type, "entityId": entity_id, "skipped": True}

        document = self.builder.for_product(product)
        self._settle(self.search.upsert_document(document["id"], document), document["id"])
        info(f"[search] indexed product {product.a_number} ({document['id']}) via {entity_type} {entity_id}")
        return {"operation": operation, "entityType": entity_type, "entityId": entity_id,
                "documentId": document["id"]}
