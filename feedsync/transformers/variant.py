# feedsync/transformers/variant.py
from typing import Optional

from . import fields as f
from .grouping import color_key


def _base_name(product_name: dict) -> str:
    return product_name.get("en") or product_name.get("nl") or "Product"


def variant_name(product_name: dict, color: Optional[str], size: Optional[str]) -> str:
    return " - ".join(p for p in (_base_name(product_name), color, size) if p)


def meta_description(product_name: dict, color: Optional[str], size: Optional[str]) -> str:
    base = _base_name(product_name)
    if color and size:
        return f"{base} in {color}, size {size}"
    if color:
        return f"{base} in {color}"
    if size:
        return f"{base}, size {size}"
    return base


def available_sizes(record: dict) -> list[str]:
    sizes = f.first(record, ("available_sizes", "AvailableSizes", "sizes", "Sizes"))
    if isinstance(sizes, list):
        return [s for s in sizes if isinstance(s, str)]
    one = f.size(record)
    return [one] if one else []


def _dimension(record: dict, name: str) -> Optional[float]:
    return f.to_float(f.detail(record, (name, name.capitalize(), name.upper())))


def transform_variant(record: dict, product_id: int, product_name: dict,
                      is_primary_for_color: bool = False) -> dict:
    color = f.color_name(record)
    size = f.size(record)
    base = _base_name(product_name) if product_name else ""
    return {
        "sku": f.sku(record),
        "product_id": product_id,
        "name": variant_name(product_name, color, size),
        "description": f.text(f.localized(record, ("Description", "description", "DESC"), "Description")),
        "color": color,
        "hex_color": f.hex_color(record),
        "supplier_color_code": f.color_code(record) or f.unstructured(record, "PMSValue"),
        "supplier_search_color": f.search_color(record),
        "color_key": color_key(record),
        "size": size,
        "sizes": available_sizes(record),
        "material": f.text(f.localized(record, ("material", "Material", "MATERIAL"), "Material")),
        "country_of_origin": f.text(f.detail(record, ("country_of_origin", "CountryOfOrigin",
                                                      "countryOfOrigin", "origin_country"))),
        "dimensions_length": _dimension(record, "length"),
        "dimensions_width": _dimension(record, "width"),
        "dimensions_height": _dimension(record, "height"),
        "dimensions_diameter": _dimension(record, "diameter"),
        "weight": _dimension(record, "weight"),
        "embroidery_sizes": f.text(f.first(record, ("embroidery_sizes", "EmbroiderySizes", "embroiderySizes"))),
        "imprint_required": f.to_bool(f.first(record, ("imprint_required", "ImprintRequired", "imprintRequired"))),
        "is_fragile": f.to_bool(f.detail(record, ("fragile", "Fragile", "FRAGILE", "IsFragile"))),
        "is_service_base": f.to_bool(f.first(record, ("is_service_base", "IsServiceBase", "isServiceBase"))),
        "meta_name": variant_name(product_name, color, size),
        "meta_description": meta_description(product_name, color, size),
        "meta_keywords": ", ".join(p for p in (base, color, size) if p),
        "is_primary_for_color": is_primary_for_color,
        "is_active": True,
    }


def extract_image_urls(record: dict) -> dict:
    """{primary_image, gallery_images} from the flat fields or the nested media block."""
    primary = f.first(record, ("primary_image", "PrimaryImage", "primaryImage", "image"))
    gallery = f.first(record, ("gallery_images", "GalleryImages", "Images", "images"))
    if isinstance(gallery, list):
        gallery = [g for g in gallery if isinstance(g, str)]
    else:
        gallery = []
    if not primary or not gallery:
        # nested layout: ProductDetails[lang].Image {Url} and MediaGalleryImages [{Url}]
        for lang in ("en", "de", "nl", "fr"):
            block = f.localized_details(record).get(lang)
            if not isinstance(block, dict):
                continue
            img = block.get("Image")
            if not primary and isinstance(img, dict) and isinstance(img.get("Url"), str):
                primary = img["Url"]
            media = block.get("MediaGalleryImages")
            if not gallery and isinstance(media, list):
                gallery = [m["Url"] for m in media if isinstance(m, dict) and isinstance(m.get("Url"), str)]
            if primary and gallery:
                break
    return {
        "primary_image": primary if isinstance(primary, str) else None,
        "gallery_images": gallery,
    }


def validate_variant(data: dict) -> list[str]:
    problems = []
    if not data.get("sku"):
        problems.append("missing sku")
    if not data.get("name"):
        problems.append("missing name")
    if not data.get("product_id"):
        problems.append("missing product id")
    return problems
