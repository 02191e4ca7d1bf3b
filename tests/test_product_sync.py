import pytest

from feedsync.errors import ValidationError
from feedsync.models import Product, SourceDocument
from feedsync.services.product_sync import HashCheck, ProductSyncService, efficiency
from feedsync.services.variant_sync import VariantSyncService
from feedsync.transformers.product import transform_product
from feedsync.transformers.variant import transform_variant
from feedsync.utils.hash import HashService


@pytest.fixture()
def products(store):
    return ProductSyncService(store, HashService())


@pytest.fixture()
def variants(store):
    return VariantSyncService(store, HashService())


def _product(supplier_id, a_number="F1", name="Mug", source_hash="A" * 40):
    return transform_product(a_number, [{"SKU": f"{a_number}-1", "Name": name, "Brand": "Acme",
                                         "color_name": "Red", "size": "M", "price_1": "2,50"}],
                             supplier_id, source_hash)


def test_efficiency():
    assert efficiency(1, 4) == 25.0
    assert efficiency(0, 0) == 0.0


def test_create_then_unchanged_then_updated(products, supplier):
    first = products.create_or_update(_product(supplier.id))
    assert first["created"] and not first["updated"]
    assert first["product"].price_tiers == [{"tier": 1, "price": 2.5, "min_quantity": 1}]

    again = products.create_or_update(_product(supplier.id))
    assert not again["created"] and not again["updated"]
    assert again["product"].id == first["product"].id

    renamed = products.create_or_update(_product(supplier.id, name="Big Mug"))
    assert renamed["updated"]
    assert renamed["product"].name["en"] == "Big Mug"


def test_source_hash_refresh_is_not_a_content_update(products, supplier):
    products.create_or_update(_product(supplier.id))
    result = products.create_or_update(_product(supplier.id, source_hash="B" * 40))
    assert not result["updated"]
    assert result["product"].source_hash == "B" * 40


def test_update_keeps_image_fields(products, store, supplier):
    created = products.create_or_update(_product(supplier.id))["product"]
    store.update(Product, created.id, {"main_image_id": 7})
    data = dict(_product(supplier.id, name="Other"), main_image_id=None)
    updated = products.create_or_update(data)["product"]
    assert updated.main_image_id == 7


def test_invalid_product_raises(products):
    with pytest.raises(ValidationError):
        products.create_or_update({"a_number": "", "sku": "", "name": {}, "supplier_id": "x"})


def test_batch_hash_check_partitions_every_family(products, store, supplier):
    store.create(Product, {"supplier_id": supplier.id, "a_number": "SAME", "source_hash": "a" * 40})
    store.create(Product, {"supplier_id": supplier.id, "a_number": "DIFF", "source_hash": "b" * 40})
    check = products.batch_hash_check({"SAME": "A" * 40, "DIFF": "C" * 40, "NEW": "D" * 40}, supplier.id)
    assert isinstance(check, HashCheck)
    assert check.new == ["NEW"]
    assert check.needs_update == ["DIFF"]
    assert check.unchanged == ["SAME"]
    assert set(check.existing_ids) == {"SAME", "DIFF"}
    assert check.summary()["efficiency"] == pytest.approx(33.33)


def test_filter_needing_sync(products, store, supplier):
    store.create(Product, {"supplier_id": supplier.id, "a_number": "SAME", "source_hash": "a" * 40})
    out = products.filter_needing_sync([{"a_number": "SAME", "hash": "a" * 40},
                                        {"a_number": "NEW", "hash": "b" * 40}], supplier.id)
    assert [f["a_number"] for f in out["needs_sync"]] == ["NEW"]
    assert out["skipped"] == 1
    assert out["efficiency"] == 50.0
    assert products.filter_needing_sync([], supplier.id) == {"needs_sync": [], "skipped": 0, "efficiency": 0.0}


def test_set_main_image_only_if_missing(products, supplier):
    pid = products.create_or_update(_product(supplier.id))["product"].id
    assert products.set_main_image(pid, 1)
    assert not products.set_main_image(pid, 2)
    assert products.get(pid).main_image_id == 1
    assert products.set_main_image(pid, 3, only_if_missing=False)
    assert products.get(pid).main_image_id == 3


def test_source_documents_are_written_only_on_change(products, store, supplier):
    docs = [{"sku": "F1-1", "hash": "A" * 40, "url": "u1"}, {"sku": "F1-2", "hash": "B" * 40, "url": "u2"}]
    assert products.record_source_documents(supplier.id, "F1", docs) == 2
    assert products.record_source_documents(supplier.id, "F1", docs) == 0
    assert products.record_source_documents(supplier.id, "F1", [{"sku": "F1-2", "hash": "C" * 40}]) == 1
    assert store.count(SourceDocument, supplier_id=supplier.id) == 2
    assert products.stored_document_hashes(supplier.id, ["F1-1", "F1-2", "F1-3"]) == {
        "F1-1": ("A" * 40, "F1"), "F1-2": ("C" * 40, "F1")}


# ===== variants =====

def _variant(product_id, sku="F1-R-M", color="Red", size="M", primary=False):
    return transform_variant({"SKU": sku, "color_name": color, "size": size}, product_id, {"en": "Mug"}, primary)


def test_variant_create_update_and_idempotence(products, variants, supplier):
    pid = products.create_or_update(_product(supplier.id))["product"].id
    created = variants.create_or_update(_variant(pid))
    assert created["created"]
    assert created["variant"].name == "Mug - Red - M"

    same = variants.create_or_update(_variant(pid))
    assert not same["created"] and not same["updated"]

    resized = variants.create_or_update(_variant(pid, size="L"))
    assert resized["updated"]
    assert resized["variant"].size == "L"

    flagged = variants.create_or_update(_variant(pid, size="L", primary=True))
    assert flagged["updated"]


def test_variant_without_sku_is_rejected(variants):
    with pytest.raises(ValidationError):
        variants.create_or_update(_variant(1, sku=None))


def test_single_primary_per_color(products, variants, supplier):
    pid = products.create_or_update(_product(supplier.id))["product"].id
    variants.create_or_update(_variant(pid, "F1-R-M", primary=True))
    variants.create_or_update(_variant(pid, "F1-R-L", size="L"))
    variants.create_or_update(_variant(pid, "F1-B-M", color="Blue", primary=True))

    assert variants.set_primary_for_color(pid, "Red", "F1-R-L") == 2
    assert variants.set_primary_for_color(pid, "Red", "F1-R-L") == 0
    primaries = {v.color: v.sku for v in variants.find_primary_variants(pid)}
    assert primaries == {"Red": "F1-R-L", "Blue": "F1-B-M"}


def test_gallery_images_are_unique(products, variants, supplier):
    pid = products.create_or_update(_product(supplier.id))["product"].id
    vid = variants.create_or_update(_variant(pid))["variant"].id
    variants.add_gallery_image(vid, 5)
    variants.add_gallery_image(vid, 6)
    variants.add_gallery_image(vid, 5)
    variants.add_gallery_image(vid, 4, position=0)
    assert variants.get(vid).gallery == [4, 5, 6]


def test_primary_is_scoped_to_the_color_group(products, variants, supplier):
    pid = products.create_or_update(_product(supplier.id))["product"].id
    for sku, code in (("F1-B1", "B01"), ("F1-B2", "B02")):
        data = transform_variant({"SKU": sku, "color_name": "Blue", "color_code": code, "size": "M"},
                                 pid, {"en": "Mug"}, True)
        variants.create_or_update(data)

    assert variants.set_primary_for_color(pid, "B02", "F1-B2") == 0
    assert sorted(v.sku for v in variants.find_primary_variants(pid)) == ["F1-B1", "F1-B2"]
    assert [v.sku for v in variants.find_by_color_key(pid, "B01")] == ["F1-B1"]
    assert len(variants.find_by_color(pid, "Blue")) == 2


def test_variant_count_and_delete_by_product(products, variants, supplier):
    pid = products.create_or_update(_product(supplier.id))["product"].id
    variants.create_or_update(_variant(pid, "F1-R-M"))
    variants.create_or_update(_variant(pid, "F1-R-L", size="L"))

    assert variants.count_by_product(pid) == 2
    assert variants.delete_by_product(pid) == 2
    assert variants.count_by_product(pid) == 0
    assert variants.find_by_sku("F1-R-M") is None
    assert variants.delete_by_product(pid) == 0
