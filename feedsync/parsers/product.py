# feedsync/parsers/product.py
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Optional

from ..utils.logger import info, warn

PRODUCT_KEYS = ("SKU", "sku", "Name", "name", "ChildProducts", "childProducts")
CHILD_KEYS = ("ChildProducts", "childProducts")
LANGUAGES = ("en", "nl", "de", "fr")
FAMILY_ID_FIELDS = ("a_number", "ANumber", "A_Number", "aNumber", "model", "Model", "ModelNumber")

# set on every flattened child so family grouping can fall back to the document
PARENT_SKU = "_parent_sku"
SOURCE_SKU = "_source_sku"


def looks_like_product(doc: Any) -> bool:
    return isinstance(doc, dict) and any(doc.get(k) for k in PRODUCT_KEYS)


def normalize_document(doc: Any) -> Any:
    """Unwrap the envelope shapes the feed has been seen to use."""
    if looks_like_product(doc):
        return doc
    if isinstance(doc, list) and doc:
        return doc[0]
    if isinstance(doc, dict):
        if doc.get("product"):
            return doc["product"]
        data = doc.get("data")
        if isinstance(data, list) and data:
            return data[0]
        if isinstance(data, dict) and data:
            return data
        for value in doc.values():
            if looks_like_product(value):
                return value
    # let the transformers reject it
    return doc


def extract_child_products(doc: dict) -> list[dict]:
    for key in CHILD_KEYS:
        children = doc.get(key)
        if isinstance(children, list):
            return children
    return [doc]


def has_child_products(doc: dict) -> bool:
    children = extract_child_products(doc)
    return len(children) > 1 or (len(children) == 1 and children[0] is not doc)


def parse_multilingual_field(value: Any) -> dict[str, str]:
    if isinstance(value, dict):
        return value
    if isinstance(value, str) and value:
        return {lang: value for lang in LANGUAGES}
    return {}


def extract_a_number(doc: dict) -> Optional[str]:
    for field in FAMILY_ID_FIELDS:
        value = doc.get(field)
        if value:
            return str(value)
    return None


def flatten_document(doc: dict, source_sku: str | None = None) -> list[dict]:
    """One record per child variant, with parent-level fields inherited.

    Child fields win over parent fields. A document without children is its
    own single variant.
    """
    children = extract_child_products(doc)
    if len(children) == 1 and children[0] is doc:
        record = dict(doc)
        record.setdefault(PARENT_SKU, doc.get("SKU") or doc.get("sku"))
        if source_sku:
            record[SOURCE_SKU] = source_sku
        return [record]

    parent = {k: v for k, v in doc.items() if k not in CHILD_KEYS}
    parent_sku = doc.get("SKU") or doc.get("sku")
    family_id = extract_a_number(doc)
    out = []
    for child in children:
        if not isinstance(child, dict):
            continue
        record = {**parent, **child}
        # the parent sku belongs to the document, not to the variant
        if not (child.get("SKU") or child.get("sku")):
            record.pop("SKU", None)
            record.pop("sku", None)
        if family_id and not extract_a_number(child):
            record["a_number"] = family_id
        record[PARENT_SKU] = parent_sku
        if source_sku:
            record[SOURCE_SKU] = source_sku
        out.append(record)
    return out


class DocumentFetcher:
    """Fetches product documents with bounded concurrency and per-item isolation."""

    def __init__(self, client, concurrency: int = 5):
        self.client = client
        self.concurrency = max(1, concurrency)

    def fetch(self, url: str) -> Any:
        return normalize_document(self.client.fetch_json(url))

    def _one(self, entry) -> dict:
        try:
            return {"entry": entry, "document": self.fetch(entry.url), "error": None}
        except Exception as e:
            warn(f"[documents] fetch failed {entry.url}: {e}")
            return {"entry": entry, "document": None, "error": str(e)}

    def fetch_batch(self, entries: list) -> list[dict]:
        """Results in input order, each ``{entry, document, error}``."""
        if not entries:
            return []
        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(entries))) as pool:
            results = list(pool.map(self._one, entries))
        ok = sum(1 for r in results if r["error"] is None)
        info(f"[documents] fetched {ok}/{len(entries)} documents")
        return results


def fetch_documents(client, entries: list, concurrency: int = 5) -> list[dict]:
    return DocumentFetcher(client, concurrency).fetch_batch(entries)
