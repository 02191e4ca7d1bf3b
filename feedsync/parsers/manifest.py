# feedsync/parsers/manifest.py
"""Import.txt manifest parsing.

Each manifest line is ``<url>|<hash>`` where the URL points at one product
document laid out as ``.../<CODE>/<CODE>-<sku>.json`` and the hash is the
feed's own SHA-1 fingerprint of that document. The category file (CAT.csv)
is listed in the same manifest and is skipped here.
"""
import re
from dataclasses import dataclass

from ..utils.logger import debug, info, warn

SUPPLIER_RE = re.compile(r"/([A-Z]\d+)/")
CATEGORY_FILE = "CAT.csv"


@dataclass(frozen=True)
class ManifestEntry:
    url: str
    hash: str
    sku: str
    supplier_code: str


def _sku_from_url(url: str) -> str:
    name = url.rstrip("/").rsplit("/", 1)[-1]
    return name[:-5] if name.lower().endswith(".json") else name


def parse_line(line: str) -> ManifestEntry | None:
    line = line.strip()
    if not line or CATEGORY_FILE in line or "|" not in line:
        return None
    url, _, hash_ = line.partition("|")
    url, hash_ = url.strip(), hash_.strip()
    if not url or not hash_:
        return None
    m = SUPPLIER_RE.search(url)
    if not m:
        debug(f"[manifest] no supplier code in {url}, dropped")
        return None
    return ManifestEntry(url=url, hash=hash_, sku=_sku_from_url(url), supplier_code=m.group(1))


def parse_manifest(text: str) -> list[ManifestEntry]:
    entries, dropped = [], 0
    for line in (text or "").splitlines():
        entry = parse_line(line)
        if entry:
            entries.append(entry)
        elif "|" in line and CATEGORY_FILE not in line:
            dropped += 1
    if dropped:
        warn(f"[manifest] dropped {dropped} entries without a supplier code")
    info(f"[manifest] parsed {len(entries)} product entries")
    return entries


def group_by_supplier(entries: list[ManifestEntry]) -> dict[str, list[ManifestEntry]]:
    grouped: dict[str, list[ManifestEntry]] = {}
    for e in entries:
        grouped.setdefault(e.supplier_code, []).append(e)
    return grouped


def entries_for_supplier(entries: list[ManifestEntry], supplier_code: str) -> list[ManifestEntry]:
    return [e for e in entries if e.supplier_code == supplier_code]


def get_supplier_codes(entries: list[ManifestEntry]) -> list[str]:
    return sorted({e.supplier_code for e in entries})


class ManifestReader:
    """Fetches Import.txt through the feed client and parses it."""

    def __init__(self, client):
        self.client = client

    def fetch_entries(self) -> list[ManifestEntry]:
        return parse_manifest(self.client.fetch_text(self.client.import_url()))

    def for_supplier(self, supplier_code: str) -> list[ManifestEntry]:
        entries = entries_for_supplier(self.fetch_entries(), supplier_code)
        info(f"[manifest] {len(entries)} entries for supplier {supplier_code}")
        return entries

    def supplier_codes(self) -> list[str]:
        return get_supplier_codes(self.fetch_entries())
