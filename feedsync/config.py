import os

from dotenv import load_dotenv

# celery workers import this module without going through create_app
load_dotenv()


def _bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///feedsync.db")
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
CELERY_BROKER_URL = os.getenv("CELERY_BROKER_URL", REDIS_URL)
CELERY_RESULT_BACKEND = os.getenv("CELERY_RESULT_BACKEND", REDIS_URL)

HTTP_TIMEOUT = int(os.getenv("HTTP_TIMEOUT", "30"))

PROMIDATA = {
    "base_url": os.getenv("PROMIDATA_BASE_URL", "https://promi-dl.de/Profiles/Live/849c892e-b443-4f49-be3a-61a351cbdd23"),
    "max_retries": int(os.getenv("PROMIDATA_MAX_RETRIES", "3")),
    "retry_base_sec": float(os.getenv("PROMIDATA_RETRY_BASE_SEC", "1")),
    "retry_max_sec": float(os.getenv("PROMIDATA_RETRY_MAX_SEC", "30")),
    "fetch_concurrency": int(os.getenv("PROMIDATA_FETCH_CONCURRENCY", "5")),
}

R2 = {
    "endpoint_url": os.getenv("R2_ENDPOINT"),
    "access_key_id": os.getenv("R2_ACCESS_KEY_ID"),
    "secret_access_key": os.getenv("R2_SECRET_ACCESS_KEY"),
    "region": os.getenv("R2_REGION", "auto"),
    "bucket": os.getenv("R2_BUCKET_NAME", "promo-images"),
    "public_url": (os.getenv("R2_PUBLIC_URL") or "").rstrip("/"),
}

MEILISEARCH = {
    "host": (os.getenv("MEILISEARCH_HOST") or "http://localhost:7700").rstrip("/"),
    "api_key": os.getenv("MEILISEARCH_API_KEY"),
    "index": os.getenv("MEILISEARCH_INDEX", "products"),
    "task_poll_sec": float(os.getenv("MEILISEARCH_TASK_POLL_SEC", "0.5")),
    "task_timeout_sec": float(os.getenv("MEILISEARCH_TASK_TIMEOUT_SEC", "30")),
}

GEMINI = {
    "api_key": os.getenv("GEMINI_API_KEY"),
    "base_url": os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com"),
    "store": os.getenv("GEMINI_FILE_SEARCH_STORE"),
    "operation_poll_sec": float(os.getenv("GEMINI_OPERATION_POLL_SEC", "3")),
    "operation_max_polls": int(os.getenv("GEMINI_OPERATION_MAX_POLLS", "20")),
    "auto_sync": _bool("GEMINI_AUTO_SYNC"),
}

# locks & cancellation
LOCK_TTL_SEC = int(os.getenv("SYNC_LOCK_TTL_SEC", "3600"))
STOP_TTL_SEC = int(os.getenv("SYNC_STOP_TTL_SEC", "300"))
ACTIVE_SYNCS_CACHE_SEC = float(os.getenv("ACTIVE_SYNCS_CACHE_SEC", "5"))
STOP_CHECK_INTERVAL = int(os.getenv("STOP_CHECK_INTERVAL", "25"))

# queues
QUEUE_STATS_CACHE_SEC = float(os.getenv("QUEUE_STATS_CACHE_SEC", "2"))
SEARCH_SYNC_DELAY_SEC = int(os.getenv("SEARCH_SYNC_DELAY_SEC", "300"))
COMPLETED_RETENTION_SEC = 24 * 3600
FAILED_RETENTION_SEC = 7 * 24 * 3600

SUPPLIER_SYNC_QUEUE = "supplier-sync"
PRODUCT_FAMILY_QUEUE = "product-family"
IMAGE_UPLOAD_QUEUE = "image-upload"
MEILISEARCH_SYNC_QUEUE = "meilisearch-sync"
GEMINI_SYNC_QUEUE = "gemini-sync"

# backoff "exponential": delay * 2**retries, "fixed": delay
QUEUES = {
    SUPPLIER_SYNC_QUEUE: {
        "concurrency": 1, "attempts": 2, "backoff": "exponential", "delay": 30, "timeout": 30 * 60,
    },
    PRODUCT_FAMILY_QUEUE: {
        "concurrency": int(os.getenv("FAMILY_CONCURRENCY", "3")), "attempts": 3,
        "backoff": "exponential", "delay": 10, "timeout": 5 * 60,
    },
    IMAGE_UPLOAD_QUEUE: {
        "concurrency": int(os.getenv("IMAGE_CONCURRENCY", "10")), "attempts": 5,
        "backoff": "fixed", "delay": 30, "timeout": 2 * 60,
    },
    MEILISEARCH_SYNC_QUEUE: {
        "concurrency": 5, "attempts": 3, "backoff": "exponential", "delay": 10, "timeout": 60,
    },
    GEMINI_SYNC_QUEUE: {
        "concurrency": 5, "attempts": 3, "backoff": "exponential", "delay": 10, "timeout": 2 * 60,
    },
}
