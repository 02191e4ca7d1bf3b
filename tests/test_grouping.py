from feedsync.parsers.manifest import ManifestEntry
from feedsync.transformers.grouping import (
    UNKNOWN_COLOR, FamilyGroup, create_family_groups, family_id, group_by_color, group_by_family, group_stats,
    primary_variant, primary_variants, sort_by_size, sort_sizes, validate_family,
)


def _v(sku, color=None, size=None, **extra):
    record = {"SKU": sku, **extra}
    if color:
        record["color_name"] = color
    if size:
        record["size"] = size
    return record


def test_family_id_prefers_explicit_a_number_then_parent_sku():
    assert family_id({"a_number": "F1", "SKU": "X"}) == "F1"
    assert family_id({"_parent_sku": "P-1", "SKU": "X"}) == "P-1"
    assert family_id({"SKU": "X"}) == "X"
    assert family_id({}) is None


def test_group_by_family_skips_records_without_identity():
    grouped = group_by_family([_v("1", a_number="F1"), _v("2", a_number="F1"), {}, _v("3", a_number="F2")])
    assert {k: len(v) for k, v in grouped.items()} == {"F1": 2, "F2": 1}


def test_group_by_color_keeps_first_seen_order():
    variants = [_v("a", "Red", "M"), _v("b", "Blue", "M"), _v("c", "Red", "L"), _v("d")]
    groups = group_by_color(variants)
    assert list(groups) == ["Red", "Blue", UNKNOWN_COLOR]
    assert [v["SKU"] for v in groups["Red"].variants] == ["a", "c"]


def test_color_code_wins_over_name_for_grouping():
    groups = group_by_color([_v("a", "Red", color_code="R1"), _v("b", "Rouge", color_code="R1")])
    assert list(groups) == ["R1"]
    assert groups["R1"].color == "Red"


def test_primary_is_first_seen_unless_flagged():
    groups = group_by_color([_v("a", "Red"), _v("b", "Red"), _v("c", "Blue"), _v("d", "Blue", IsPrimary=True)])
    primaries = primary_variants(groups)
    assert primaries["Red"]["SKU"] == "a"
    assert primaries["Blue"]["SKU"] == "d"
    assert primary_variant(groups["Red"]) is groups["Red"].variants[0]


def test_sizes_sort_by_apparel_order():
    assert sort_sizes(["XL", "S", "M", None, "S", "One size"]) == ["S", "M", "XL", "One size"]
    assert [v["SKU"] for v in sort_by_size([_v("a", size="L"), _v("b", size="XS")])] == ["b", "a"]


def test_create_family_groups_tracks_manifest_entries():
    e1 = ManifestEntry(url="u1", hash="h1", sku="A113-1", supplier_code="A113")
    e2 = ManifestEntry(url="u2", hash="h2", sku="A113-2", supplier_code="A113")
    groups = create_family_groups([
        (e1, [_v("A113-1-R", a_number="F1"), _v("A113-1-B", a_number="F1")]),
        (e2, [_v("A113-2-R", a_number="F1"), {"color_name": "Red"}]),
    ])
    by_id = {g.a_number: g for g in groups}
    assert sorted(by_id) == ["A113-2", "F1"]
    assert by_id["F1"].entries == [e1, e2]
    assert len(by_id["F1"].variants) == 3


def test_validate_family_reports_duplicates_and_missing_skus():
    group = FamilyGroup(a_number="F1", variants=[_v("a"), _v("a"), {"color_name": "Red"}])
    problems = validate_family(group)
    assert "duplicate sku a" in problems
    assert "variant without sku" in problems
    assert validate_family(FamilyGroup(a_number="F1", variants=[_v("a")])) == []


def test_group_stats():
    stats = group_stats([FamilyGroup("F1", [_v("a")]), FamilyGroup("F2", [_v("b"), _v("c"), _v("d")])])
    assert stats == {"families": 2, "variants": 4, "single_variant_families": 1, "max_variants": 3,
                     "avg_variants": 2.0}
