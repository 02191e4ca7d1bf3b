import pytest

from feedsync.errors import TransientError, ValidationError
from feedsync.jobs.queue import JobContext
from feedsync.models import Product
from feedsync.services.product_sync import ProductSyncService
from feedsync.services.search_documents import SearchDocumentBuilder
from feedsync.services.semantic import SemanticIndexService, SemanticSyncRunner, semantic_document
from feedsync.services.sync_lock import GEMINI, SyncLockService
from feedsync.services.sync_session import SyncSessionService
from feedsync.services.variant_sync import VariantSyncService
from feedsync.transformers.product import transform_product
from feedsync.transformers.variant import transform_variant
from feedsync.utils.hash import HashService
from feedsync.workers.search_sync import SearchSyncWorker
from feedsync.workers.semantic_sync import SemanticSyncWorker

from conftest import FakeFileSearchClient, FakeSearchIndex


@pytest.fixture()
def catalog(store, supplier):
    hashes = HashService()
    products, variants = ProductSyncService(store, hashes), VariantSyncService(store, hashes)
    record = {"SKU": "F1-R", "Name": {"en": "Mug", "de": "Becher"}, "color_name": "Red", "hex_color": "#f00",
              "size": "M", "price_1": 3.0, "price_2": 2.0, "min_qty_2": 100}
    product = products.create_or_update(transform_product("F1", [record], supplier.id, "A" * 40))["product"]
    variant = variants.create_or_update(transform_variant(record, product.id, product.name, True))["variant"]
    return products, variants, product, variant


@pytest.fixture()
def search():
    return FakeSearchIndex()


def test_product_document_folds_variants(store, catalog):
    _, _, product, _ = catalog
    doc = SearchDocumentBuilder(store).for_product(product)
    assert doc["id"] == product.document_id
    assert doc["name_en"] == "Mug"
    assert doc["name_de"] == "Becher"
    assert doc["name_fr"] is None
    assert doc["colors"] == ["Red"]
    assert doc["hex_colors"] == ["#f00"]
    assert doc["price_min"] == 2.0 and doc["price_max"] == 3.0
    assert doc["supplier_code"] == "A113"
    assert doc["promidata_hash"] == "A" * 40


def test_variant_job_reindexes_the_parent(store, catalog, search):
    products, variants, product, variant = catalog
    worker = SearchSyncWorker(search, SearchDocumentBuilder(store), products, variants)
    result = worker.process({"operation": "update", "entityType": "product-variant", "entityId": variant.id})
    assert result["documentId"] == product.document_id
    assert list(search.documents) == [product.document_id]


def test_product_delete_and_missing_entities(store, catalog, search):
    products, variants, product, _ = catalog
    worker = SearchSyncWorker(search, SearchDocumentBuilder(store), products, variants)
    worker.process({"operation": "add", "entityType": "product", "entityId": product.id})
    worker.process({"operation": "delete", "entityType": "product", "entityId": product.id,
                    "documentId": product.document_id})
    assert search.documents == {}
    assert worker.process({"operation": "update", "entityType": "product-variant", "entityId": 999})["skipped"]
    with pytest.raises(ValidationError):
        worker.process({"operation": "delete", "entityType": "product", "entityId": product.id})


def test_semantic_document_is_built_from_the_search_document():
    doc = semantic_document({"id": "d1", "sku": "F1", "name_en": "Mug", "name_de": "Becher", "colors": [],
                             "brand": None})
    assert doc == {"id": "d1", "sku": "F1", "name": {"en": "Mug", "de": "Becher"}}


def test_semantic_add_update_replaces_the_previous_file(store, catalog, search):
    products, _, product, _ = catalog
    search.upsert_document(product.document_id, {"sku": "F1", "name_en": "Mug"})
    client = FakeFileSearchClient()
    semantic = SemanticIndexService(client, search, products)

    first = semantic.add_or_update_document(product.document_id)
    second = semantic.add_or_update_document(product.document_id)
    assert first["success"] and second["success"]
    assert list(client.files) == [second["documentName"]]
    assert store.get(Product, product.id).gemini_file_uri == second["documentName"]
    assert semantic.get_stats()["syncedCount"] == 1

    assert semantic.delete_document(product.document_id) == {"success": True}
    assert store.get(Product, product.id).gemini_file_uri is None


def test_semantic_worker_retries_then_gives_up(store, catalog, search):
    products, _, product, _ = catalog
    client = FakeFileSearchClient()

    def broken(display_name, payload):
        raise RuntimeError("503 from file search")

    client.upload_and_wait = broken
    search.upsert_document(product.document_id, {"sku": "F1"})
    worker = SemanticSyncWorker(SemanticIndexService(client, search, products), runner=None)
    payload = {"operation": "update", "documentId": product.document_id}

    with pytest.raises(TransientError):
        worker.process(payload, JobContext(attempt=1, max_attempts=3))
    result = worker.process(payload, JobContext(attempt=3, max_attempts=3))
    assert result["success"] is False
    assert "503" in result["error"]


def test_semantic_worker_skips_documents_missing_from_search(store, catalog, search):
    products, _, product, _ = catalog
    worker = SemanticSyncWorker(SemanticIndexService(FakeFileSearchClient(), search, products), runner=None)
    assert worker.process({"operation": "update", "documentId": product.document_id})["skipped"]
    with pytest.raises(ValidationError):
        worker.process({"operation": "run"})


def test_runner_fans_out_under_the_lock(store, catalog, kv, queue):
    _, _, product, _ = catalog
    locks = SyncLockService(kv, cache_ttl=0)
    runner = SemanticSyncRunner(store, locks, queue, page_size=1)
    result = runner.run("A113")
    assert result["enqueued"] == 1
    assert queue.on("gemini-sync")[0]["data"] == {"operation": "update", "documentId": product.document_id,
                                                  "sessionId": None}
    assert not locks.is_locked(GEMINI, "A113")

    locks.acquire(GEMINI, "all")
    assert runner.run("all") == {"scope": "all", "skipped": True, "reason": "already running"}
    assert runner.run("Z999")["enqueued"] == 0


def test_semantic_stage_stays_open_until_the_last_page(store, catalog, kv, search):
    products, _, product, _ = catalog
    for n in (2, 3):
        products.create_or_update(transform_product(f"F{n}", [{"SKU": f"F{n}-R", "Name": {"en": "Cup"}}],
                                                    product.supplier_id, "B" * 40))
    sessions = SyncSessionService(store, gemini_auto_sync=True)
    sid = sessions.create_session("A113").session_id
    sessions.start_session(sid)
    for stage in ("promidata", "images", "meilisearch"):
        sessions.skip_stage(sid, stage)
    sessions.start_stage(sid, "gemini")

    worker = SemanticSyncWorker(SemanticIndexService(FakeFileSearchClient(), search, products), runner=None,
                                sessions=sessions)
    seen = []

    class InlineQueue:
        # runs each job as soon as it is enqueued
        def enqueue(self, queue, data, opts=None):
            worker.process(data)
            seen.append(sessions.get_session(sid).gemini_status)
            return opts["job_id"]

    runner = SemanticSyncRunner(store, SyncLockService(kv, cache_ttl=0), InlineQueue(), sessions, page_size=1)
    result = runner.run("A113", sid)

    assert result["enqueued"] == 3
    assert seen == ["running", "running", "running"]
    session = sessions.get_session(sid)
    assert session.gemini_total == 3
    assert session.gemini_skipped == 3
    assert session.gemini_status == "completed"
    assert session.status == "completed"


def test_index_task_is_awaited_and_failures_retry(store, catalog, search):
    products, variants, product, _ = catalog
    worker = SearchSyncWorker(search, SearchDocumentBuilder(store), products, variants)
    payload = {"operation": "update", "entityType": "product", "entityId": product.id}

    worker.process(payload)
    assert search.waited == [1]

    search.failed_tasks.add(1)
    with pytest.raises(TransientError):
        worker.process(payload)


def test_semantic_health(catalog, search):
    products = catalog[0]
    client = FakeFileSearchClient()
    semantic = SemanticIndexService(client, search, products)
    assert semantic.healthy()

    def down():
        raise RuntimeError("store unavailable")

    client.get_store = down
    assert not semantic.healthy()
    client.configured = False
    assert not semantic.healthy()
