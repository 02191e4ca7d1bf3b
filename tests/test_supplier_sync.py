import pytest

from feedsync.errors import ValidationError
from feedsync.models import Product, SourceDocument, Supplier
from feedsync.parsers.manifest import ManifestReader
from feedsync.parsers.product import DocumentFetcher
from feedsync.services.dedup import DeduplicationService
from feedsync.services.product_sync import ProductSyncService
from feedsync.services.suppliers import SupplierService
from feedsync.services.sync_lock import PROMIDATA, SyncLockService
from feedsync.services.sync_session import SyncSessionService
from feedsync.services.variant_sync import VariantSyncService
from feedsync.utils.hash import HashService
from feedsync.workers.product_family import ProductFamilyWorker
from feedsync.workers.supplier_sync import SupplierSyncWorker, validate_payload

from conftest import FakeFeed

H1, H2, H3 = "1" * 40, "2" * 40, "3" * 40
URL1 = "https://feed.test/A113/A113-100.json"
URL2 = "https://feed.test/A113/A113-200.json"


def _doc(sku, a_number, name="Mug", color="Red"):
    return {"SKU": sku, "a_number": a_number, "Name": name, "color_name": color, "size": "M"}


class Env:
    def __init__(self, store, kv, queue, feed):
        hashes = HashService()
        self.store, self.queue, self.feed = store, queue, feed
        self.manifest = ManifestReader(feed)
        self.products = ProductSyncService(store, hashes)
        self.variants = VariantSyncService(store, hashes)
        self.suppliers = SupplierService(store, self.manifest)
        self.locks = SyncLockService(kv, cache_ttl=0)
        self.sessions = SyncSessionService(store, queue, gemini_auto_sync=False)
        self.worker = SupplierSyncWorker(self.manifest, DocumentFetcher(feed, 2), self.products, self.suppliers,
                                         self.locks, queue, self.sessions, hashes)
        self.family_worker = ProductFamilyWorker(self.products, self.variants, DeduplicationService(store), queue,
                                                 self.sessions)

    def payload(self, supplier, session_id=None):
        return {"supplierId": str(supplier.id), "supplierCode": supplier.code, "supplierNumericId": supplier.id,
                "manual": True, "sessionId": session_id}

    def new_session(self, supplier):
        return self.sessions.create_session(supplier.code, supplier.id, supplier.name).session_id


@pytest.fixture()
def feed():
    return FakeFeed(
        manifest=f"{URL1}|{H1}\n{URL2}|{H2}\n",
        documents={URL1: _doc("A113-100", "F100"), URL2: _doc("A113-200", "F200", color="Blue")},
    )


@pytest.fixture()
def env(store, kv, queue, feed):
    return Env(store, kv, queue, feed)


def test_payload_validation():
    with pytest.raises(ValidationError):
        validate_payload({"supplierCode": ""})
    with pytest.raises(ValidationError):
        validate_payload({"supplierId": "1", "supplierCode": "A113", "supplierNumericId": "1", "manual": True})
    with pytest.raises(ValidationError):
        validate_payload(["not", "a", "dict"])
    ok = {"supplierId": 1, "supplierCode": "A113", "supplierNumericId": 1, "manual": False}
    assert validate_payload(ok) is ok


def test_invalid_payload_is_rejected_before_locking(env, supplier):
    with pytest.raises(ValidationError):
        env.worker.process({"supplierCode": "A113"})
    assert not env.locks.is_locked(PROMIDATA, "A113")


def test_new_products_are_enqueued_as_families(env, supplier):
    sid = env.new_session(supplier)
    result = env.worker.process(env.payload(supplier, sid))

    assert result["familiesEnqueued"] == 2
    assert result["skipped"] == 0
    assert result["efficiency"] == 0.0
    jobs = env.queue.on("product-family")
    assert [j["data"]["aNumber"] for j in jobs] == ["F100", "F200"]
    first = jobs[0]["data"]
    assert first["productHash"] == H1
    assert first["supplierId"] == supplier.id
    assert first["sourceDocuments"] == [{"sku": "A113-100", "hash": H1, "url": URL1}]
    assert jobs[0]["id"].startswith("family-") and jobs[0]["id"].endswith("-A113-F100")
    assert result["jobIds"] == [j["id"] for j in jobs]

    session = env.sessions.get_session(sid)
    assert session.status == "running"
    assert session.promidata_status == "running"
    assert session.promidata_families_total == 2
    assert session.promidata_products_found == 2
    assert env.store.get(Supplier, supplier.id).last_sync_status == "completed"
    assert not env.locks.is_locked(PROMIDATA, "A113")


def test_matching_hashes_skip_everything(env, supplier):
    env.store.create(Product, {"supplier_id": supplier.id, "a_number": "F100", "source_hash": H1})
    env.store.create(Product, {"supplier_id": supplier.id, "a_number": "F200", "source_hash": H2.lower()})
    sid = env.new_session(supplier)

    result = env.worker.process(env.payload(supplier, sid))

    assert result == {"supplierCode": "A113", "productsProcessed": 0, "skipped": 2, "efficiency": 100.0}
    assert env.queue.on("product-family") == []
    session = env.sessions.get_session(sid)
    assert session.promidata_status == "completed"
    assert session.promidata_skipped_unchanged == 2
    assert session.status == "completed"
    assert env.store.count(SourceDocument, supplier_id=supplier.id) == 2


def test_unchanged_documents_are_not_fetched_again(env, supplier, feed):
    env.store.create(Product, {"supplier_id": supplier.id, "a_number": "F100", "source_hash": H1})
    env.store.create(Product, {"supplier_id": supplier.id, "a_number": "F200", "source_hash": H2})
    env.worker.process(env.payload(supplier))
    feed.json_calls.clear()

    result = env.worker.process(env.payload(supplier))

    assert feed.json_calls == []
    assert result["productsProcessed"] == 0
    assert result["skipped"] == 2
    assert result["efficiency"] == 100.0


def test_changed_document_pulls_in_its_unchanged_siblings(env, supplier, feed):
    url3 = "https://feed.test/A113/A113-101.json"
    feed.manifest = f"{URL1}|{H1}\n{url3}|{H3}\n"
    feed.documents = {URL1: _doc("A113-100", "F1"), url3: _doc("A113-101", "F1", color="Blue")}
    env.worker.process(env.payload(supplier))
    [job] = env.queue.on("product-family")
    assert job["data"]["productHash"] == HashService.combine([H1, H3])
    env.family_worker.process(job["data"])

    feed.manifest = f"{URL1}|{H1}\n{url3}|{H2}\n"
    feed.documents[url3] = _doc("A113-101", "F1", color="Green")
    feed.json_calls.clear()
    result = env.worker.process(env.payload(supplier))

    assert sorted(feed.json_calls) == sorted([URL1, url3])
    assert result["familiesEnqueued"] == 1
    data = env.queue.on("product-family")[-1]["data"]
    assert [v["SKU"] for v in data["variants"]] == ["A113-101", "A113-100"]
    assert data["productHash"] == HashService.combine([H1, H2])


def test_failed_documents_are_recorded_and_skipped(env, supplier, feed):
    feed.manifest += "https://feed.test/A113/A113-999.json|" + H3
    sid = env.new_session(supplier)
    result = env.worker.process(env.payload(supplier, sid))
    assert result["familiesEnqueued"] == 2
    session = env.sessions.get_session(sid)
    assert session.error_count == 1
    assert "A113-999" in session.errors[0]["error"]


def test_running_sync_is_not_started_twice(env, supplier):
    env.locks.acquire(PROMIDATA, "A113")
    result = env.worker.process(env.payload(supplier))
    assert result == {"supplierCode": "A113", "skipped": True, "reason": "already running"}
    assert env.queue.jobs == []


def test_stop_request_ends_the_run(env, supplier, monkeypatch):
    monkeypatch.setattr(env.locks, "is_stop_requested", lambda target, scope: True)
    sid = env.new_session(supplier)
    result = env.worker.process(env.payload(supplier, sid))

    assert result["stopped"] is True
    assert result["familiesEnqueued"] == 0
    assert env.queue.jobs == []
    session = env.sessions.get_session(sid)
    assert session.promidata_status == "failed"
    assert session.status == "failed"
    assert env.store.get(Supplier, supplier.id).last_sync_status == "stopped"
    assert not env.locks.is_locked(PROMIDATA, "A113")


def test_supplier_without_entries(env, supplier, feed):
    feed.manifest = f"https://feed.test/B200/B200-1.json|{H1}\n"
    result = env.worker.process(env.payload(supplier))
    assert result["productsProcessed"] == 0
    assert result["skipped"] == 0
