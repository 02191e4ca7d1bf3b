# feedsync/transformers/fields.py
"""Lookups over loosely-typed feed records.

Records come either flat (``color_code``, ``Size``...) or in the nested
Promidata layout (``NonLanguageDependedProductDetails``, ``ProductDetails``
per language with ``ConfigurationFields`` and ``UnstructuredInformation``).
Every helper returns None (or an empty container) when nothing matches,
never raises.
"""
from typing import Any, Iterable, Optional

LOCALE_ORDER = ("en", "de", "nl", "fr")

COLOR_CODE_FIELDS = ("color_code", "ColorCode", "colorCode", "search_color", "SearchColor")
COLOR_NAME_FIELDS = ("color_name", "ColorName", "colorName", "Color", "color")
HEX_FIELDS = ("hex_color", "HexColor", "hexColor", "color_hex")
SIZE_FIELDS = ("size", "Size", "SIZE")
SKU_FIELDS = ("SKU", "sku", "Sku")

COLOR_CONFIG_WORDS = ("color", "colour", "kleur", "farbe", "config_2")
SIZE_CONFIG_WORDS = ("size", "maat", "größe", "groesse", "config_3")
MODEL_CONFIG_WORDS = ("model",)


def first(record: dict, fields: Iterable[str]) -> Any:
    for f in fields:
        value = record.get(f)
        if value not in (None, "", [], {}):
            return value
    return None


def text(value: Any) -> Optional[str]:
    """A plain string from a string or a multilingual dict."""
    if isinstance(value, str):
        return value.strip() or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, dict):
        for lang in LOCALE_ORDER:
            if isinstance(value.get(lang), str) and value[lang].strip():
                return value[lang].strip()
        for v in value.values():
            if isinstance(v, str) and v.strip():
                return v.strip()
    return None


def to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(str(value).replace(",", ".")) if isinstance(value, str) else float(value)
    except (TypeError, ValueError):
        return None


def to_int(value: Any) -> Optional[int]:
    f = to_float(value)
    return int(f) if f is not None else None


def to_bool(value: Any) -> bool:
    return value is True or value == 1 or (isinstance(value, str) and value.strip().lower() in ("true", "1"))


def plain_details(record: dict) -> dict:
    d = record.get("NonLanguageDependedProductDetails")
    return d if isinstance(d, dict) else {}


def localized_details(record: dict) -> dict:
    d = record.get("ProductDetails")
    return d if isinstance(d, dict) else {}


def _ordered_locales(details: dict) -> list[str]:
    known = [l for l in LOCALE_ORDER if l in details]
    return known + [l for l in details if l not in known]


def detail(record: dict, fields: Iterable[str]) -> Any:
    """Flat field first, then the language-independent details block."""
    fields = tuple(fields)
    value = first(record, fields)
    if value is None:
        value = first(plain_details(record), fields)
    return value


def localized(record: dict, flat_fields: Iterable[str], detail_key: str) -> dict[str, str]:
    """Multilingual value from a flat field or from ProductDetails[lang][detail_key]."""
    value = first(record, flat_fields)
    if isinstance(value, dict):
        return {k: v for k, v in value.items() if isinstance(v, str) and v}
    if isinstance(value, str) and value:
        return {lang: value for lang in ("en", "nl", "de", "fr")}
    out = {}
    for lang, block in localized_details(record).items():
        if isinstance(block, dict) and isinstance(block.get(detail_key), str) and block[detail_key]:
            out[lang] = block[detail_key]
    return out


def config_value(record: dict, words: Iterable[str]) -> Optional[str]:
    """First ConfigurationFields value whose (translated) name contains one of words."""
    words = tuple(w.lower() for w in words)
    details = localized_details(record)
    for lang in _ordered_locales(details):
        block = details.get(lang)
        fields = block.get("ConfigurationFields") if isinstance(block, dict) else None
        for field in fields or []:
            if not isinstance(field, dict):
                continue
            names = " ".join(str(field.get(k) or "") for k in ("ConfigurationName", "ConfigurationNameTranslated")).lower()
            value = field.get("ConfigurationValue")
            if value and any(w in names for w in words):
                return str(value)
    return None


def config_values_by_locale(record: dict, words: Iterable[str]) -> dict[str, str]:
    words = tuple(w.lower() for w in words)
    out = {}
    for lang, block in localized_details(record).items():
        for field in (block.get("ConfigurationFields") if isinstance(block, dict) else None) or []:
            if not isinstance(field, dict):
                continue
            names = " ".join(str(field.get(k) or "") for k in ("ConfigurationName", "ConfigurationNameTranslated")).lower()
            if field.get("ConfigurationValue") and any(w in names for w in words):
                out[lang] = str(field["ConfigurationValue"])
                break
    return out


def unstructured(record: dict, key: str) -> Optional[str]:
    details = localized_details(record)
    for lang in _ordered_locales(details):
        block = details.get(lang)
        info = block.get("UnstructuredInformation") if isinstance(block, dict) else None
        if isinstance(info, dict) and info.get(key):
            return str(info[key])
    return None


def sku(record: dict) -> Optional[str]:
    return text(first(record, SKU_FIELDS))


def color_code(record: dict) -> Optional[str]:
    return text(detail(record, COLOR_CODE_FIELDS))


def search_color(record: dict) -> Optional[str]:
    return text(detail(record, ("search_color", "SearchColor", "searchColor"))) or unstructured(record, "SupplierSearchColor")


def color_name(record: dict) -> Optional[str]:
    return text(first(record, COLOR_NAME_FIELDS)) or config_value(record, COLOR_CONFIG_WORDS)


def hex_color(record: dict) -> Optional[str]:
    return text(detail(record, HEX_FIELDS))


def size(record: dict) -> Optional[str]:
    return text(first(record, SIZE_FIELDS)) or config_value(record, SIZE_CONFIG_WORDS)


def model(record: dict) -> Optional[str]:
    return config_value(record, MODEL_CONFIG_WORDS)
