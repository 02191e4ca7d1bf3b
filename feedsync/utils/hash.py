# feedsync/utils/hash.py
import json, hashlib, re
from typing import Any, Optional

_HEX = re.compile(r"^[0-9a-fA-F]+$")


def canonicalize(value: Any) -> Any:
    """Return a copy of value with every nested dict rebuilt in sorted key order."""
    if isinstance(value, dict):
        return {k: canonicalize(value[k]) for k in sorted(value, key=str)}
    if isinstance(value, (list, tuple)):
        return [canonicalize(v) for v in value]
    return value


def _dumps(value: Any) -> str:
    return json.dumps(canonicalize(value), sort_keys=True, separators=(",", ":"),
                      ensure_ascii=False, default=str)


def _normalize_price_tiers(tiers) -> list[dict]:
    out = []
    for t in tiers or []:
        out.append({
            "tier": t.get("tier"),
            "price": t.get("price"),
            "min_quantity": t.get("min_quantity"),
        })
    return sorted(out, key=lambda t: (t["tier"] is None, t["tier"] or 0))


class HashService:
    """Content hashes used for change detection.

    Internal hashes (family and variant) are 32 hex MD5 digests over a
    canonical JSON rendering. The upstream feed publishes 40 hex SHA-1
    digests; both formats are accepted by :meth:`is_valid_hash` and compared
    case-insensitively.
    """

    def family_hash(self, product: dict) -> str:
        fields = {
            "a_number": product.get("a_number"),
            "name": product.get("name"),
            "description": product.get("description"),
            "model_name": product.get("model_name"),
            "brand": product.get("brand"),
            "price_tiers": _normalize_price_tiers(product.get("price_tiers")),
        }
        return self.digest(fields)

    def variant_hash(self, variant: dict) -> str:
        fields = {
            "sku": variant.get("sku"),
            "color": variant.get("color"),
            "hex_color": variant.get("hex_color"),
            "size": variant.get("size"),
            "dimensions": {
                "length": variant.get("dimensions_length"),
                "width": variant.get("dimensions_width"),
                "height": variant.get("dimensions_height"),
                "diameter": variant.get("dimensions_diameter"),
            },
            "weight": variant.get("weight"),
            "material": variant.get("material"),
            "country_of_origin": variant.get("country_of_origin"),
        }
        return self.digest(fields)

    def family_hashes(self, products: list[dict]) -> dict[str, str]:
        return {p["a_number"]: self.family_hash(p) for p in products if p.get("a_number")}

    def variant_hashes(self, variants: list[dict]) -> dict[str, str]:
        return {v["sku"]: self.variant_hash(v) for v in variants if v.get("sku")}

    @staticmethod
    def digest(value: Any) -> str:
        return hashlib.md5(_dumps(value).encode("utf-8")).hexdigest()

    @staticmethod
    def raw_hash(value: Any) -> str:
        # same shape as the feed's own fingerprints
        data = value if isinstance(value, str) else _dumps(value)
        return hashlib.sha1(data.encode("utf-8")).hexdigest().upper()

    @staticmethod
    def combine(hashes: list[str]) -> str:
        """Digest for a family made of several upstream documents."""
        if len(hashes) == 1:
            return hashes[0]
        joined = "|".join(sorted(h.upper() for h in hashes))
        return hashlib.sha1(joined.encode("utf-8")).hexdigest().upper()

    @staticmethod
    def is_valid_hash(value: Optional[str]) -> bool:
        return bool(value) and len(value) in (32, 40) and bool(_HEX.match(value))

    @staticmethod
    def compare_hashes(a: Optional[str], b: Optional[str]) -> bool:
        if not a or not b:
            return False
        return a.strip().lower() == b.strip().lower()
