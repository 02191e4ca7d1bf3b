# feedsync/workers/product_family.py
from ..config import IMAGE_UPLOAD_QUEUE, MEILISEARCH_SYNC_QUEUE, SEARCH_SYNC_DELAY_SEC
from ..errors import ValidationError
from ..jobs.queue import JobContext, job_id
from ..services.images import generate_file_name
from ..transformers import fields as f
from ..transformers import grouping
from ..transformers.product import transform_product
from ..transformers.variant import extract_image_urls, transform_variant
from ..utils.logger import exc, info

VARIANT = "product-variant"
PRODUCT = "product"
PRIMARY_IMAGE = "primary_image"
GALLERY_IMAGES = "gallery_images"


def validate_payload(data) -> dict:
    if not isinstance(data, dict):
        raise ValidationError("product family payload must be an object")
    problems = []
    if not isinstance(data.get("aNumber"), str) or not data["aNumber"].strip():
        problems.append("aNumber must be a non-empty string")
    variants = data.get("variants")
    if not isinstance(variants, list) or not variants or not all(isinstance(v, dict) for v in variants):
        problems.append("variants must be a non-empty list of objects")
    supplier_id = data.get("supplierId")
    if isinstance(supplier_id, bool) or not isinstance(supplier_id, int) or supplier_id <= 0:
        problems.append("supplierId must be a positive integer")
    if not isinstance(data.get("supplierCode"), str) or not data["supplierCode"].strip():
        problems.append("supplierCode must be a non-empty string")
    if problems:
        raise ValidationError(f"invalid product family payload: {'; '.join(problems)}")
    return data


class ProductFamilyWorker:
    """Reconciles one product family into the catalog store.

    Product first, then its variants color group by color. Images already
    known by source URL are linked straight away; the rest get one upload
    job per distinct URL carrying every place the image belongs. Search
    sync is enqueued only for what was created or changed.
    """

    def __init__(self, products, variants, dedup, queue, sessions=None,
                 search_delay_sec: int = SEARCH_SYNC_DELAY_SEC):
        self.products = products
        self.variants = variants
        self.dedup = dedup
        self.queue = queue
        self.sessions = sessions
        self.search_delay_sec = search_delay_sec

    def process(self, data: dict, ctx: JobContext | None = None) -> dict:
        ctx = ctx or JobContext()
        session_id = data.get("sessionId") if isinstance(data, dict) else None
        try:
            payload = validate_payload(data)
            result = self._run(payload, ctx)
        except Exception as e:
            a_number = data.get("aNumber") if isinstance(data, dict) else None
            exc(f"[family {a_number}] failed", e)
            if session_id and self.sessions is not None and (isinstance(e, ValidationError) or ctx.final_attempt):
                self.sessions.increment_counter(session_id, "promidata_families_failed")
                self.sessions.add_error(session_id, "promidata", str(e),
                                        {"aNumber": a_number, "supplierCode": data.get("supplierCode")})
                self.sessions.advance(session_id)
            raise

        if session_id and self.sessions is not None:
            # downstream totals first so the promidata stage never closes before they are known
            if result["imageJobIds"]:
                self.sessions.increment_counter(session_id, "images_total", len(result["imageJobIds"]))
            if result["searchJobIds"]:
                self.sessions.increment_counter(session_id, "meilisearch_total", len(result["searchJobIds"]))
            if result["created"]:
                outcome = "promidata_families_created"
            elif result["updated"] or result["variantsCreated"] or result["variantsUpdated"]:
                outcome = "promidata_families_updated"
            else:
                outcome = "promidata_families_unchanged"
            self.sessions.increment_counter(session_id, outcome)
            self.sessions.advance(session_id)
        return result

    def _run(self, payload: dict, ctx: JobContext) -> dict:
        a_number = payload["aNumber"]
        records = payload["variants"]
        supplier_id = payload["supplierId"]
        tag = f"[family {a_number}]"

        ctx.progress("grouping_colors", 10)
        color_groups = grouping.group_by_color(records)
        primaries = {id(p) for p in grouping.primary_variants(color_groups).values()}

        ctx.progress("creating_product", 30)
        product_data = transform_product(a_number, records, supplier_id, payload.get("productHash"))
        outcome = self.products.create_or_update(product_data)
        product = outcome["product"]

        ctx.progress("creating_variants", 50)
        existing = self.variants.batch_find_by_skus([s for s in (f.sku(r) for r in records) if s])
        touched, created, updated = [], 0, 0
        targets_by_url: dict[str, list[dict]] = {}
        first = True
        processed = 0
        for group in color_groups.values():
            primary = None
            for record in group.variants:
                data = transform_variant(record, product.id, product_data["name"], id(record) in primaries)
                result = self.variants.create_or_update(data, existing.get(data["sku"]))
                variant = result["variant"]
                if data["is_primary_for_color"]:
                    primary = variant
                if result["created"]:
                    created += 1
                elif result["updated"]:
                    updated += 1
                if result["created"] or result["updated"]:
                    touched.append(variant)

                urls = extract_image_urls(record)
                if urls["primary_image"]:
                    targets_by_url.setdefault(urls["primary_image"], []).append({
                        "entityType": VARIANT, "entityId": variant.id, "fieldName": PRIMARY_IMAGE,
                        "index": None, "parentProductId": product.id if first else None,
                    })
                for idx, url in enumerate(urls["gallery_images"]):
                    targets_by_url.setdefault(url, []).append({
                        "entityType": VARIANT, "entityId": variant.id, "fieldName": GALLERY_IMAGES,
                        "index": idx, "parentProductId": None,
                    })
                first = False
                processed += 1
                ctx.progress("creating_variants", 50 + processed * 30 // len(records),
                             processed=processed, total=len(records))
            if primary is not None:
                self.variants.set_primary_for_color(product.id, group.key, primary.sku)

        ctx.progress("images", 80)
        deduplicated, image_job_ids = self._images(product, targets_by_url, payload.get("sessionId"))

        ctx.progress("search", 90)
        search_job_ids = []
        if outcome["created"] or outcome["updated"]:
            search_job_ids.append(self._enqueue_search(PRODUCT, product.id, product.document_id,
                                                       payload.get("sessionId")))
        for variant in touched:
            search_job_ids.append(self._enqueue_search(VARIANT, variant.id, variant.document_id,
                                                       payload.get("sessionId")))

        self.products.record_source_documents(supplier_id, a_number, payload.get("sourceDocuments") or [])
        ctx.progress("complete", 100)
        state = "created" if outcome["created"] else "updated" if outcome["updated"] else "unchanged"
        info(f"{tag} product {product.id} {state}, "
             f"variants +{created}/~{updated}, images {len(image_job_ids)} queued {deduplicated} linked")
        return {
            "aNumber": a_number,
            "productId": product.id,
            "created": outcome["created"],
            "updated": outcome["updated"],
            "variantsCreated": created,
            "variantsUpdated": updated,
            "imagesEnqueued": len(image_job_ids),
            "imagesDeduplicated": deduplicated,
            "imageJobIds": image_job_ids,
            "searchJobIds": search_job_ids,
            "sessionId": payload.get("sessionId"),
        }

    # ===== images =====

    def _images(self, product, targets_by_url: dict[str, list[dict]], session_id: str | None) -> tuple[int, list[str]]:
        if not targets_by_url:
            return 0, []
        hits = self.dedup.batch_check_by_source_url(list(targets_by_url))
        deduplicated, job_ids = 0, []
        main_image_id = product.main_image_id
        for url, targets in targets_by_url.items():
            hit = hits.get(url)
            if hit is None:
                first = targets[0]
                file_name = generate_file_name(first["entityType"], first["entityId"], first["fieldName"],
                                               first["index"], source_url=url)
                job_ids.append(self.queue.enqueue(IMAGE_UPLOAD_QUEUE, {
                    "imageUrl": url,
                    "fileName": file_name,
                    "targets": targets,
                    "sessionId": session_id,
                }, {"job_id": job_id("image", product.id)}))
                continue
            for target in targets:
                self._link(target, hit.asset_id)
                deduplicated += 1
                if target.get("parentProductId") and main_image_id is None:
                    self.products.set_main_image(product.id, hit.asset_id)
                    main_image_id = hit.asset_id
        return deduplicated, job_ids

    def _link(self, target: dict, asset_id: int):
        variant = self.variants.get(target["entityId"])
        if variant is None:
            return
        if target["fieldName"] == PRIMARY_IMAGE:
            if variant.primary_image_id != asset_id:
                self.variants.update_images(variant.id, primary_image_id=asset_id)
        else:
            self.variants.add_gallery_image(variant.id, asset_id, target.get("index"))

    def _enqueue_search(self, entity_type: str, entity_id: int, document_id: str, session_id: str | None) -> str:
        return self.queue.enqueue(MEILISEARCH_SYNC_QUEUE, {
            "operation": "update",
            "entityType": entity_type,
            "entityId": entity_id,
            "documentId": document_id,
            "sessionId": session_id,
        }, {"job_id": job_id("search", entity_type, entity_id), "countdown": self.search_delay_sec})
