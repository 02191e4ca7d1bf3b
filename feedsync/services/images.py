# feedsync/services/images.py
import hashlib
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from sqlalchemy.exc import IntegrityError

from ..errors import TransientError
from ..models import MediaAsset
from ..utils import content_type
from ..utils.logger import info, warn

CLAIM_TTL_SEC = 120


def generate_file_name(entity_type: str, entity_id: int | str, field: str, index: int | None = None,
                       source_url: str | None = None) -> str:
    """``<entity>-<id>-<field>[-<index>]-<suffix>`` without extension.

    The suffix is a digest of the source URL when one is known so the same
    image always maps to the same name; otherwise a millisecond timestamp.
    """
    suffix = hashlib.md5(source_url.encode("utf-8")).hexdigest()[:12] if source_url else str(int(time.time() * 1000))
    idx = f"-{index}" if index else ""
    return f"{entity_type}-{entity_id}-{field}{idx}-{suffix}"


class ImageUploadService:
    def __init__(self, store, storage, fetcher, dedup, kv=None):
        self.store = store
        self.storage = storage
        self.fetcher = fetcher  # anything with fetch_bytes(url)
        self.dedup = dedup
        self.kv = kv

    def _claim(self, source_url: str) -> bool:
        if self.kv is None:
            return True
        key = f"image:upload:{hashlib.md5(source_url.encode('utf-8')).hexdigest()}"
        return self.kv.set_if_absent(key, "1", CLAIM_TTL_SEC)

    def _unclaim(self, source_url: str):
        if self.kv is not None:
            self.kv.delete(f"image:upload:{hashlib.md5(source_url.encode('utf-8')).hexdigest()}")

    def upload_from_url(self, source_url: str, file_name: str) -> dict:
        """Dedup, then fetch, sniff, put and record.

        Returns ``{success, asset_id, url, file_name, deduplicated}``. Raises
        on fetch/storage failure so the queue can retry.
        """
        # the stored extension comes from the content, so the name is matched on its stem
        hit = self.dedup.check_by_source_url(source_url) or self.dedup.check_by_file_stem(file_name)
        if hit:
            return {"success": True, "asset_id": hit.asset_id, "url": hit.url,
                    "file_name": hit.file_name, "deduplicated": True}

        if not self._claim(source_url):
            raise TransientError(f"upload of {source_url} already in progress")
        try:
            # another worker may have finished between the check and the claim
            hit = self.dedup.check_by_source_url(source_url)
            if hit:
                return {"success": True, "asset_id": hit.asset_id, "url": hit.url,
                        "file_name": hit.file_name, "deduplicated": True}

            data = self.fetcher.fetch_bytes(source_url)
            mime, ext = content_type.detect(data, source_url)
            key = f"{file_name}.{ext}"
            url = self.storage.put(key, data, mime)
            try:
                asset = self.store.create(MediaAsset, {
                    "name": key,
                    "hash": hashlib.md5(key.encode("utf-8")).hexdigest(),
                    "ext": f".{ext}",
                    "mime": mime,
                    "size_kb": round(len(data) / 1024, 2),
                    "url": url,
                    "source_url": source_url,
                    "bucket_key": key,
                })
            except IntegrityError:
                existing = self.dedup.check_by_filename(key)
                if existing is None:
                    raise
                return {"success": True, "asset_id": existing.asset_id, "url": existing.url,
                        "file_name": key, "deduplicated": True}
            info(f"[images] uploaded {key} ({mime}, {len(data)} bytes) asset={asset.id}")
            return {"success": True, "asset_id": asset.id, "url": url, "file_name": key, "deduplicated": False}
        finally:
            self._unclaim(source_url)

    def _safe_upload(self, item: dict) -> dict:
        try:
            return self.upload_from_url(item["url"], item["file_name"])
        except Exception as e:
            warn(f"[images] upload failed {item['url']}: {e}")
            return {"success": False, "asset_id": None, "url": None, "file_name": item["file_name"],
                    "deduplicated": False, "error": str(e)}

    def batch_upload(self, items: list[dict], concurrency: int = 5) -> list[dict]:
        """items: ``[{url, file_name}]``. One failure never aborts the batch."""
        if not items:
            return []
        with ThreadPoolExecutor(max_workers=max(1, min(concurrency, len(items)))) as pool:
            results = list(pool.map(self._safe_upload, items))
        ok = sum(1 for r in results if r["success"])
        deduped = sum(1 for r in results if r["deduplicated"])
        info(f"[images] batch: {ok}/{len(items)} ok ({deduped} deduplicated)")
        return results

    def delete(self, asset_id: int) -> bool:
        asset = self.store.get(MediaAsset, asset_id)
        if asset is None:
            warn(f"[images] asset {asset_id} not found")
            return False
        self.storage.delete(asset.bucket_key or asset.name)
        return self.store.delete(MediaAsset, asset_id)

    def stats(self) -> dict:
        return self.dedup.stats()

    def get(self, asset_id: int) -> Optional[MediaAsset]:
        return self.store.get(MediaAsset, asset_id)
