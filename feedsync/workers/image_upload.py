# feedsync/workers/image_upload.py
from ..errors import ValidationError
from ..jobs.queue import JobContext
from ..utils.logger import exc, info, warn
from .product_family import GALLERY_IMAGES, PRIMARY_IMAGE, PRODUCT, VARIANT

ENTITY_TYPES = (VARIANT, PRODUCT)


def validate_payload(data) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("image upload payload must be an object")
    problems = []
    if not isinstance(data.get("imageUrl"), str) or not data["imageUrl"].startswith(("http://", "https://")):
        problems.append("imageUrl must be an http(s) URL")
    if not isinstance(data.get("fileName"), str) or not data["fileName"].strip():
        problems.append("fileName must be a non-empty string")
    targets = data.get("targets")
    if not isinstance(targets, list) or not targets:
        problems.append("targets must be a non-empty list")
    else:
        for t in targets:
            if not isinstance(t, dict) or t.get("entityType") not in ENTITY_TYPES \
                    or isinstance(t.get("entityId"), bool) or not isinstance(t.get("entityId"), int):
                problems.append(f"invalid target {t!r}")
    if problems:
        raise ValidationError(f"invalid image upload payload: {'; '.join(problems)}")
    return data


class ImageUploadWorker:
    """Uploads one source image (or reuses the stored asset) and links it to every target."""

    def __init__(self, images, products, variants, sessions=None):
        self.images = images
        self.products = products
        self.variants = variants
        self.sessions = sessions

    def process(self, data: dict, ctx: JobContext | None = None) -> dict:
        ctx = ctx or JobContext()
        session_id = data.get("sessionId") if isinstance(data, dict) else None
        try:
            payload = validate_payload(data)
            ctx.progress("uploading", 20)
            upload = self.images.upload_from_url(payload["imageUrl"], payload["fileName"])
        except Exception as e:
            exc(f"[images] {data.get('imageUrl') if isinstance(data, dict) else data} failed", e)
            if session_id and self.sessions is not None and (isinstance(e, ValidationError) or ctx.final_attempt):
                self.sessions.increment_counter(session_id, "images_failed")
                self.sessions.add_error(session_id, "images", str(e), {"imageUrl": data.get("imageUrl")})
                self.sessions.advance(session_id)
            raise

        ctx.progress("linking", 70)
        linked = sum(1 for t in payload["targets"] if self._link(t, upload["asset_id"]))

        if session_id and self.sessions is not None:
            counter = "images_deduplicated" if upload["deduplicated"] else "images_uploaded"
            self.sessions.increment_counter(session_id, counter)
            self.sessions.advance(session_id)

        ctx.progress("complete", 100)
        info(f"[images] {upload['file_name']} -> asset {upload['asset_id']}, "
             f"{linked}/{len(payload['targets'])} targets linked")
        return {
            "imageUrl": payload["imageUrl"],
            "assetId": upload["asset_id"],
            "url": upload["url"],
            "fileName": upload["file_name"],
            "deduplicated": upload["deduplicated"],
            "linked": linked,
            "sessionId": session_id,
        }

    def _link(self, target: dict, asset_id: int) -> bool:
        if target["entityType"] == PRODUCT:
            return self.products.set_main_image(target["entityId"], asset_id, only_if_missing=False)

        variant = self.variants.get(target["entityId"])
        if variant is None:
            warn(f"[images] variant {target['entityId']} is gone, asset {asset_id} not linked")
            return False
        field = target.get("fieldName")
        if field == PRIMARY_IMAGE:
            if variant.primary_image_id != asset_id:
                self.variants.update_images(variant.id, primary_image_id=asset_id)
        elif field == GALLERY_IMAGES:
            self.variants.add_gallery_image(variant.id, asset_id, target.get("index"))
        else:
            warn(f"[images] unknown field {field!r} on variant {variant.id}")
            return False
        if target.get("parentProductId"):
            self.products.set_main_image(target["parentProductId"], asset_id, only_if_missing=True)
        return True
