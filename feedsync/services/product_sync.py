# feedsync/services/product_sync.py
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from ..errors import ValidationError
from ..models import Product, SourceDocument
from ..transformers.product import validate_product
from ..utils.hash import HashService
from ..utils.logger import debug, info

IMAGE_FIELDS = ("main_image_id", "gallery", "gemini_file_uri", "document_id")


def efficiency(skipped: int, total: int) -> float:
    return round(skipped / total * 100, 2) if total else 0.0


@dataclass
class HashCheck:
    """Every candidate family id lands in exactly one of the three lists."""
    new: list[str] = field(default_factory=list)
    needs_update: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    existing_ids: dict[str, int] = field(default_factory=dict)

    @property
    def needs_sync(self) -> list[str]:
        return self.new + self.needs_update

    @property
    def total(self) -> int:
        return len(self.new) + len(self.needs_update) + len(self.unchanged)

    def summary(self) -> dict:
        return {
            "needs_sync": self.needs_sync,
            "skipped": len(self.unchanged),
            "efficiency": efficiency(len(self.unchanged), self.total),
        }


class ProductSyncService:
    """Create-or-update for product families, gated by content hash."""

    def __init__(self, store, hashes: HashService):
        self.store = store
        self.hashes = hashes

    def find_by_a_number(self, a_number: str, supplier_id: int) -> Optional[Product]:
        return self.store.find(Product, a_number=a_number, supplier_id=supplier_id)

    def find_by_supplier(self, supplier_id: int, limit: int | None = None, offset: int = 0) -> list[Product]:
        return self.store.find_many(Product, supplier_id=supplier_id, limit=limit, offset=offset)

    def count_by_supplier(self, supplier_id: int) -> int:
        return self.store.count(Product, supplier_id=supplier_id)

    def get(self, product_id: int) -> Optional[Product]:
        return self.store.get(Product, product_id)

    def find_by_document_id(self, document_id: str) -> Optional[Product]:
        return self.store.find(Product, document_id=document_id)

    def batch_hash_check(self, family_hashes: dict[str, str], supplier_id: int,
                         hash_field: str = "source_hash") -> HashCheck:
        """Classify families with a single ``a_number IN (...)`` query."""
        rows = self.store.find_many_by_keys(Product, "a_number", family_hashes.keys(),
                                            columns=("id", hash_field), supplier_id=supplier_id)
        stored = {a_number: (pid, h) for a_number, pid, h in rows}
        check = HashCheck()
        for a_number, new_hash in family_hashes.items():
            if a_number not in stored:
                check.new.append(a_number)
                continue
            pid, current = stored[a_number]
            check.existing_ids[a_number] = pid
            if self.hashes.compare_hashes(current, new_hash):
                check.unchanged.append(a_number)
            else:
                check.needs_update.append(a_number)
        debug(f"[products] hash check supplier={supplier_id}: new={len(check.new)} "
              f"update={len(check.needs_update)} unchanged={len(check.unchanged)}")
        return check

    def filter_needing_sync(self, families: list[dict], supplier_id: int) -> dict:
        """families: ``[{"a_number", "hash"}]`` -> ``{needs_sync, skipped, efficiency}``."""
        if not families:
            return {"needs_sync": [], "skipped": 0, "efficiency": 0.0}
        check = self.batch_hash_check({fam["a_number"]: fam["hash"] for fam in families}, supplier_id)
        wanted = set(check.needs_sync)
        return {
            "needs_sync": [fam for fam in families if fam["a_number"] in wanted],
            "skipped": len(check.unchanged),
            "efficiency": efficiency(len(check.unchanged), check.total),
        }

    def create_or_update(self, data: dict) -> dict:
        problems = validate_product(data)
        if problems:
            raise ValidationError(f"invalid product {data.get('a_number')!r}: {', '.join(problems)}")

        new_hash = self.hashes.family_hash(data)
        existing = self.find_by_a_number(data["a_number"], data["supplier_id"])
        if existing is None:
            product = self.store.create(Product, {**data, "family_hash": new_hash})
            info(f"[products] created {data['a_number']} (id {product.id})")
            return {"product": product, "created": True, "updated": False}

        if self.hashes.compare_hashes(existing.family_hash, new_hash):
            source_hash = data.get("source_hash")
            if source_hash and not self.hashes.compare_hashes(existing.source_hash, source_hash):
                existing = self.store.update(Product, existing.id, {"source_hash": source_hash})
            debug(f"[products] {data['a_number']} unchanged (hash match)")
            return {"product": existing, "created": False, "updated": False}

        fields = {k: v for k, v in data.items() if k not in IMAGE_FIELDS}
        product = self.store.update(Product, existing.id, {**fields, "family_hash": new_hash})
        info(f"[products] updated {data['a_number']} (id {existing.id})")
        return {"product": product, "created": False, "updated": True}

    def set_main_image(self, product_id: int, asset_id: int, only_if_missing: bool = True) -> bool:
        if only_if_missing:
            return self.store.update_where(Product, {"main_image_id": asset_id},
                                           id=product_id, main_image_id=None) > 0
        return self.store.update(Product, product_id, {"main_image_id": asset_id}) is not None

    def set_gemini_file(self, product_id: int, file_uri: Optional[str]):
        self.store.update(Product, product_id, {"gemini_file_uri": file_uri})

    def touch(self, product_id: int):
        self.store.update(Product, product_id, {"last_synced": datetime.now(timezone.utc)})

    def delete(self, product_id: int) -> bool:
        return self.store.delete(Product, product_id)

    # ===== upstream document hashes =====

    def stored_document_hashes(self, supplier_id: int, skus: list[str]) -> dict[str, tuple[str, str | None]]:
        """``{sku: (hash, a_number)}`` for the feed documents seen on earlier runs."""
        rows = self.store.find_many_by_keys(SourceDocument, "sku", skus, columns=("hash", "a_number"),
                                            supplier_id=supplier_id)
        return {sku: (h, a_number) for sku, h, a_number in rows}

    def record_source_documents(self, supplier_id: int, a_number: str, documents: list[dict]) -> int:
        """Remember the manifest hash of each document of a synced family. Returns rows written."""
        if not documents:
            return 0
        stored = {d.sku: d for d in self.store.find_many_by_keys(
            SourceDocument, "sku", [doc["sku"] for doc in documents], supplier_id=supplier_id)}
        writes = 0
        for doc in documents:
            row = stored.get(doc["sku"])
            if row is None:
                self.store.create(SourceDocument, {"supplier_id": supplier_id, "sku": doc["sku"],
                                                   "hash": doc["hash"], "a_number": a_number,
                                                   "url": doc.get("url")})
                writes += 1
            elif not self.hashes.compare_hashes(row.hash, doc["hash"]) or row.a_number != a_number:
                self.store.update(SourceDocument, row.id, {"hash": doc["hash"], "a_number": a_number,
                                                           "url": doc.get("url") or row.url})
                writes += 1
        return writes
