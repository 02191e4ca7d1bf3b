# feedsync/transformers/grouping.py
from dataclasses import dataclass, field
from typing import Optional

from . import fields as f
from ..parsers.product import FAMILY_ID_FIELDS, PARENT_SKU
from ..utils.logger import debug, info, warn

UNKNOWN_COLOR = "UNKNOWN"

SIZE_PRIORITY = {"XS": 1, "S": 2, "M": 3, "L": 4, "XL": 5, "XXL": 6, "3XL": 7, "4XL": 8, "5XL": 9}

PRIMARY_FLAG_FIELDS = ("is_primary", "IsPrimary", "isPrimary", "is_primary_for_color")


@dataclass
class ColorGroup:
    key: str
    color: str
    hex_color: Optional[str] = None
    variants: list[dict] = field(default_factory=list)


@dataclass
class FamilyGroup:
    a_number: str
    variants: list[dict] = field(default_factory=list)
    entries: list = field(default_factory=list)


def family_id(record: dict) -> Optional[str]:
    value = f.first(record, FAMILY_ID_FIELDS)
    if value:
        return str(value)
    return f.model(record) or f.text(record.get(PARENT_SKU)) or f.sku(record)


def group_by_family(records: list[dict]) -> dict[str, list[dict]]:
    grouped: dict[str, list[dict]] = {}
    for r in records:
        fid = family_id(r)
        if not fid:
            warn("[grouping] record without family id or sku, skipped")
            continue
        grouped.setdefault(fid, []).append(r)
    info(f"[grouping] {len(records)} records -> {len(grouped)} families")
    return grouped


def color_key(variant: dict) -> str:
    return f.color_code(variant) or f.color_name(variant) or UNKNOWN_COLOR


def group_by_color(variants: list[dict]) -> dict[str, ColorGroup]:
    """Color groups in first-seen order, variants in input order within each group."""
    groups: dict[str, ColorGroup] = {}
    for v in variants:
        key = color_key(v)
        g = groups.get(key)
        if g is None:
            g = groups[key] = ColorGroup(key=key, color=f.color_name(v) or key, hex_color=f.hex_color(v))
        g.variants.append(v)
    debug(f"[grouping] {len(variants)} variants -> {len(groups)} colors")
    return groups


def create_family_groups(entries_and_records: list[tuple]) -> list[FamilyGroup]:
    """Family groups from (manifest entry, flattened records) pairs.

    A record without any family id falls back to the manifest entry sku.
    """
    families: dict[str, FamilyGroup] = {}
    for entry, records in entries_and_records:
        for r in records:
            fid = family_id(r) or entry.sku
            g = families.get(fid)
            if g is None:
                g = families[fid] = FamilyGroup(a_number=fid)
            g.variants.append(r)
            if entry not in g.entries:
                g.entries.append(entry)
    return list(families.values())


def size_rank(value: Optional[str]) -> int:
    return SIZE_PRIORITY.get((value or "").strip().upper(), 999)


def sort_by_size(variants: list[dict]) -> list[dict]:
    return sorted(variants, key=lambda v: size_rank(f.size(v)))


def sort_sizes(sizes) -> list[str]:
    return sorted({s for s in sizes if s}, key=lambda s: (size_rank(s), s))


def primary_variant(group: ColorGroup) -> dict:
    # first-seen wins unless the feed flags one explicitly
    for v in group.variants:
        if f.to_bool(f.first(v, PRIMARY_FLAG_FIELDS)):
            return v
    return group.variants[0]


def primary_variants(groups: dict[str, ColorGroup]) -> dict[str, dict]:
    return {key: primary_variant(g) for key, g in groups.items() if g.variants}


def validate_family(group: FamilyGroup) -> list[str]:
    problems = []
    if not group.a_number:
        problems.append("missing family id")
    if not group.variants:
        problems.append("no variants")
    seen = set()
    for v in group.variants:
        s = f.sku(v)
        if not s:
            problems.append("variant without sku")
        elif s in seen:
            problems.append(f"duplicate sku {s}")
        else:
            seen.add(s)
    return problems


def group_stats(groups: list[FamilyGroup]) -> dict:
    sizes = [len(g.variants) for g in groups]
    return {
        "families": len(groups),
        "variants": sum(sizes),
        "single_variant_families": sum(1 for n in sizes if n == 1),
        "max_variants": max(sizes) if sizes else 0,
        "avg_variants": round(sum(sizes) / len(sizes), 2) if sizes else 0,
    }
