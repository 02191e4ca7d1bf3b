# feedsync/services/dedup.py
from dataclasses import dataclass
from typing import Optional

from ..models import MediaAsset
from ..utils.content_type import IMAGE_EXTENSIONS
from ..utils.logger import debug


@dataclass
class DedupHit:
    asset_id: int
    url: str
    file_name: str
    matched_by: str  # "source_url" | "filename" | "url" | "hash"


def _hit(asset: Optional[MediaAsset], matched_by: str) -> Optional[DedupHit]:
    if asset is None:
        return None
    return DedupHit(asset_id=asset.id, url=asset.url, file_name=asset.name, matched_by=matched_by)


class DeduplicationService:
    """Finds an already stored asset for a candidate image.

    Lookup order is the upstream source URL first (suppliers reuse one
    physical image across many SKUs) and the generated file name second.
    """

    def __init__(self, store):
        self.store = store

    def check_by_source_url(self, source_url: str) -> Optional[DedupHit]:
        if not source_url:
            return None
        return _hit(self.store.find(MediaAsset, source_url=source_url), "source_url")

    def check_by_filename(self, file_name: str) -> Optional[DedupHit]:
        if not file_name:
            return None
        return _hit(self.store.find(MediaAsset, name=file_name), "filename")

    def check_by_url(self, url: str) -> Optional[DedupHit]:
        return _hit(self.store.find(MediaAsset, url=url), "url") if url else None

    def check_by_hash(self, hash_: str) -> Optional[DedupHit]:
        return _hit(self.store.find(MediaAsset, hash=hash_), "hash") if hash_ else None

    def check(self, source_url: str, file_name: str | None = None) -> Optional[DedupHit]:
        hit = self.check_by_source_url(source_url)
        if hit is None and file_name:
            hit = self.check_by_filename(file_name)
        if hit:
            debug(f"[dedup] {source_url} -> asset {hit.asset_id} by {hit.matched_by}")
        return hit

    def batch_check_by_source_url(self, source_urls: list[str]) -> dict[str, DedupHit]:
        rows = self.store.find_many_by_keys(MediaAsset, "source_url", [u for u in source_urls if u])
        return {a.source_url: _hit(a, "source_url") for a in rows}

    def batch_check_by_filename(self, file_names: list[str]) -> dict[str, DedupHit]:
        rows = self.store.find_many_by_keys(MediaAsset, "name", [n for n in file_names if n])
        return {a.name: _hit(a, "filename") for a in rows}

    def check_by_file_stem(self, stem: str) -> Optional[DedupHit]:
        """A stored asset named ``<stem>.<ext>`` for any image extension."""
        if not stem:
            return None
        names = [f"{stem}.{ext}" for ext in IMAGE_EXTENSIONS]
        hits = self.batch_check_by_filename(names)
        return next((hits[n] for n in names if n in hits), None)

    def get(self, asset_id: int) -> Optional[MediaAsset]:
        return self.store.get(MediaAsset, asset_id)

    def stats(self) -> dict:
        by_type: dict[str, int] = {}
        total_kb = 0.0
        assets = self.store.find_many(MediaAsset)
        for a in assets:
            by_type[a.mime or "unknown"] = by_type.get(a.mime or "unknown", 0) + 1
            total_kb += a.size_kb or 0
        return {"total": len(assets), "total_size_kb": round(total_kb, 2), "by_type": by_type}

    def find_orphaned(self) -> list[MediaAsset]:
        # reference scanning across products and variants is not done here
        return []
