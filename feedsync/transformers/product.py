# feedsync/transformers/product.py
from datetime import datetime, timezone
from typing import Optional

from . import fields as f
from .grouping import sort_sizes

DEFAULT_NAME = {"en": "Unnamed Product"}
DIMENSIONS = ("length", "width", "height", "diameter", "depth", "weight")
MAX_PRICE_TIERS = 8


def _price_tiers_flat(record: dict) -> list[dict]:
    tiers = []
    for i in range(1, MAX_PRICE_TIERS + 1):
        price = f.to_float(f.first(record, (f"price_{i}", f"Price{i}", f"PRICE_{i}")))
        if price is None:
            continue
        min_qty = f.to_int(f.first(record, (f"min_qty_{i}", f"MinQty{i}")))
        if min_qty is None and i == 1:
            min_qty = 1
        tiers.append({"tier": i, "price": price, "min_quantity": min_qty})
    return tiers


def _price_tiers_nested(record: dict) -> list[dict]:
    # ProductPriceCountryBased: {"<region>": {"RecommendedSellingPrice": [{"Price", "Quantity"}]}}
    regions = record.get("ProductPriceCountryBased")
    if not isinstance(regions, dict):
        return []
    for region in regions.values():
        rows = region.get("RecommendedSellingPrice") if isinstance(region, dict) else None
        if not isinstance(rows, list):
            continue
        tiers = []
        for row in rows[:MAX_PRICE_TIERS]:
            price = f.to_float(row.get("Price")) if isinstance(row, dict) else None
            if price is None:
                continue
            tiers.append({"tier": len(tiers) + 1, "price": price,
                          "min_quantity": f.to_int(row.get("Quantity")) or (1 if not tiers else None)})
        if tiers:
            return tiers
    return []


def extract_price_tiers(record: dict) -> list[dict]:
    return _price_tiers_flat(record) or _price_tiers_nested(record)


def extract_dimensions(record: dict) -> dict:
    out = {}
    for d in DIMENSIONS:
        value = f.to_float(f.detail(record, (d, d.capitalize(), d.upper())))
        if value is not None:
            out[d] = value
    return out


def transform_product(a_number: str, variants: list[dict], supplier_id: int,
                      source_hash: Optional[str] = None) -> dict:
    """Shared family fields taken from the first variant, aggregates from all of them."""
    base = variants[0] if variants else {}
    name = f.localized(base, ("Name", "name", "NAME"), "Name") or dict(DEFAULT_NAME)
    colors = []
    for v in variants:
        c = f.color_name(v)
        if c and c not in colors:
            colors.append(c)
    return {
        "a_number": a_number,
        "sku": a_number,
        "supplier_id": supplier_id,
        "supplier_sku": f.text(f.first(base, ("supplier_sku", "SupplierSKU", "supplierSku", "SupplierSku"))),
        "supplier_name": f.text(f.first(base, ("supplier_name", "SupplierName", "supplierName", "Supplier"))),
        "brand": f.text(f.detail(base, ("brand", "Brand", "BRAND"))),
        "name": name,
        "description": f.localized(base, ("Description", "description", "DESC"), "Description"),
        "short_description": f.localized(base, ("short_description", "ShortDescription"), "ShortDescription"),
        "material": f.localized(base, ("material", "Material", "MATERIAL"), "Material"),
        "model_name": f.text(f.first(base, ("model_name", "ModelName", "modelName"))),
        "country_of_origin": f.text(f.detail(base, ("country_of_origin", "CountryOfOrigin", "countryOfOrigin"))),
        "price_tiers": extract_price_tiers(base),
        "dimensions": extract_dimensions(base),
        "total_variants_count": len(variants),
        "available_colors": colors,
        "available_sizes": sort_sizes(f.size(v) for v in variants),
        "source_hash": source_hash,
        "last_synced": datetime.now(timezone.utc),
        "is_active": True,
    }


def validate_product(data: dict) -> list[str]:
    problems = []
    if not data.get("a_number"):
        problems.append("missing a_number")
    if not data.get("sku"):
        problems.append("missing sku")
    if not data.get("name"):
        problems.append("missing name")
    if not isinstance(data.get("supplier_id"), int) or isinstance(data.get("supplier_id"), bool):
        problems.append("supplier_id must be an integer")
    return problems
