# feedsync/services/search_documents.py
from datetime import datetime, timezone
from typing import Optional

from ..models import MediaAsset, Product, ProductVariant, Supplier

SEARCH_LANGUAGES = ("en", "de", "fr", "es")
LOCALIZED_FIELDS = ("name", "description", "short_description", "material")
DEFAULT_CURRENCY = "EUR"


def _ms(dt: Optional[datetime]) -> Optional[int]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def _append_unique(out: list, value):
    if value and value not in out:
        out.append(value)


def product_document(product: Product, variants: list[ProductVariant], supplier: Supplier | None = None,
                     main_image_url: str | None = None) -> dict:
    """Flat Meilisearch document: one per product, variants folded into facets."""
    doc = {
        "id": product.document_id,
        "sku": product.sku,
        "a_number": product.a_number,
    }
    for field in LOCALIZED_FIELDS:
        values = getattr(product, field) or {}
        for lang in SEARCH_LANGUAGES:
            doc[f"{field}_{lang}"] = values.get(lang) if isinstance(values, dict) else None

    colors, sizes, hex_colors = [], [], []
    for v in variants:
        _append_unique(colors, v.color)
        _append_unique(sizes, v.size)
        _append_unique(hex_colors, v.hex_color)
        for s in v.sizes or []:
            _append_unique(sizes, s)

    prices = [t["price"] for t in product.price_tiers or [] if isinstance(t, dict) and t.get("price")]
    currency = next((t["currency"] for t in product.price_tiers or []
                     if isinstance(t, dict) and t.get("currency")), DEFAULT_CURRENCY)

    doc.update({
        "brand": product.brand,
        "supplier_name": (supplier.name if supplier else None) or product.supplier_name or "",
        "supplier_code": supplier.code if supplier else "",
        "supplier_sku": product.supplier_sku,
        "is_active": product.is_active is not False,
        "country_of_origin": product.country_of_origin,
        "colors": colors,
        "sizes": sizes,
        "hex_colors": hex_colors,
        "price_min": min(prices) if prices else None,
        "price_max": max(prices) if prices else None,
        "currency": currency,
        "createdAt": _ms(product.created_at),
        "updatedAt": _ms(product.updated_at),
        "last_synced": _ms(product.last_synced),
        "total_variants_count": product.total_variants_count or len(variants),
        "promidata_hash": product.source_hash,
        "main_image_url": main_image_url,
    })
    return doc


class SearchDocumentBuilder:
    """Loads a product with its variants, supplier and main image and renders its document."""

    def __init__(self, store):
        self.store = store

    def for_product(self, product: Product) -> dict:
        variants = self.store.find_many(ProductVariant, product_id=product.id)
        supplier = self.store.get(Supplier, product.supplier_id)
        image = self.store.get(MediaAsset, product.main_image_id) if product.main_image_id else None
        return product_document(product, variants, supplier, image.url if image else None)
