# feedsync/utils/content_type.py
from typing import Optional
from urllib.parse import urlparse

EXT_BY_MIME = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
}

MIME_BY_EXT = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "gif": "image/gif",
    "webp": "image/webp",
    "svg": "image/svg+xml",
}

DEFAULT_MIME = "image/jpeg"

# extensions stored asset names can carry
IMAGE_EXTENSIONS = tuple(EXT_BY_MIME.values())


def sniff(data: bytes) -> Optional[str]:
    if not data:
        return None
    if data[:8] == b"\x89PNG\r\n\x1a\n" or data[:2] == b"\x89P":
        return "image/png"
    if data[:3] == b"\xff\xd8\xff" or data[:2] == b"\xff\xd8":
        return "image/jpeg"
    if data[:4] == b"GIF8":
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    head = data[:256].lstrip().lower()
    if head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in head):
        return "image/svg+xml"
    return None


def extension_from_url(url: str) -> Optional[str]:
    path = urlparse(url or "").path.lower()
    if "." not in path.rsplit("/", 1)[-1]:
        return None
    ext = path.rsplit(".", 1)[-1]
    if ext == "jpeg":
        return "jpg"
    return ext if ext in MIME_BY_EXT else None


def detect(data: bytes, url: str = "") -> tuple[str, str]:
    """(mime, ext) from the magic bytes, then the URL, then jpeg."""
    mime = sniff(data)
    if mime:
        return mime, EXT_BY_MIME[mime]
    ext = extension_from_url(url)
    if ext:
        return MIME_BY_EXT[ext], ext
    return DEFAULT_MIME, "jpg"
