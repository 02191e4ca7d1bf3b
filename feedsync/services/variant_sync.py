# feedsync/services/variant_sync.py
from typing import Optional

from ..errors import ValidationError
from ..models import ProductVariant
from ..transformers.variant import validate_variant
from ..utils.hash import HashService
from ..utils.logger import debug

# written by the image pipeline, never by a feed update
IMAGE_FIELDS = ("primary_image_id", "gallery", "document_id")


class VariantSyncService:
    def __init__(self, store, hashes: HashService):
        self.store = store
        self.hashes = hashes

    def get(self, variant_id: int) -> Optional[ProductVariant]:
        return self.store.get(ProductVariant, variant_id)

    def find_by_sku(self, sku: str) -> Optional[ProductVariant]:
        return self.store.find(ProductVariant, sku=sku)

    def batch_find_by_skus(self, skus: list[str]) -> dict[str, ProductVariant]:
        return {v.sku: v for v in self.store.find_many_by_keys(ProductVariant, "sku", skus)}

    def find_by_product(self, product_id: int) -> list[ProductVariant]:
        return self.store.find_many(ProductVariant, product_id=product_id)

    def find_primary_variants(self, product_id: int) -> list[ProductVariant]:
        return self.store.find_many(ProductVariant, product_id=product_id, is_primary_for_color=True)

    def find_by_color(self, product_id: int, color: Optional[str]) -> list[ProductVariant]:
        return self.store.find_many(ProductVariant, product_id=product_id, color=color)

    def find_by_color_key(self, product_id: int, key: str) -> list[ProductVariant]:
        return self.store.find_many(ProductVariant, product_id=product_id, color_key=key)

    def count_by_product(self, product_id: int) -> int:
        return self.store.count(ProductVariant, product_id=product_id)

    def create_or_update(self, data: dict, existing: ProductVariant | None = None) -> dict:
        problems = validate_variant(data)
        if problems:
            raise ValidationError(f"invalid variant {data.get('sku')!r}: {', '.join(problems)}")

        new_hash = self.hashes.variant_hash(data)
        if existing is None:
            existing = self.find_by_sku(data["sku"])
        if existing is None:
            variant = self.store.create(ProductVariant, {**data, "variant_hash": new_hash})
            return {"variant": variant, "created": True, "updated": False}

        same = (self.hashes.compare_hashes(existing.variant_hash, new_hash)
                and existing.is_primary_for_color == bool(data.get("is_primary_for_color"))
                and existing.color_key == data.get("color_key")
                and existing.product_id == data["product_id"])
        if same:
            debug(f"[variants] {data['sku']} unchanged")
            return {"variant": existing, "created": False, "updated": False}

        fields = {k: v for k, v in data.items() if k not in IMAGE_FIELDS}
        variant = self.store.update(ProductVariant, existing.id, {**fields, "variant_hash": new_hash})
        return {"variant": variant, "created": False, "updated": True}

    def set_primary_for_color(self, product_id: int, key: str, sku: str) -> int:
        """Make sku the only primary of its color group. Returns the number of rows written.

        ``key`` is the grouping key (supplier color code, else color name), so two
        codes sharing one color name keep a primary each.
        """
        writes = 0
        for v in self.find_by_color_key(product_id, key):
            want = v.sku == sku
            if v.is_primary_for_color != want:
                self.store.update(ProductVariant, v.id, {"is_primary_for_color": want})
                writes += 1
        return writes

    def update_images(self, variant_id: int, primary_image_id: int | None = None,
                      gallery: list[int] | None = None) -> Optional[ProductVariant]:
        data = {}
        if primary_image_id is not None:
            data["primary_image_id"] = primary_image_id
        if gallery is not None:
            data["gallery"] = gallery
        if not data:
            return None
        return self.store.update(ProductVariant, variant_id, data)

    def add_gallery_image(self, variant_id: int, asset_id: int, position: int | None = None):
        v = self.store.get(ProductVariant, variant_id)
        if v is None:
            return None
        gallery = list(v.gallery or [])
        if asset_id in gallery:
            return v
        if position is None or position >= len(gallery):
            gallery.append(asset_id)
        else:
            gallery.insert(position, asset_id)
        return self.store.update(ProductVariant, variant_id, {"gallery": gallery})

    def delete_by_product(self, product_id: int) -> int:
        return self.store.delete_where(ProductVariant, product_id=product_id)
