# feedsync/container.py
import threading

from .clients.gemini import FileSearchClient
from .clients.kv import KeyValueStore
from .clients.meilisearch import SearchIndexClient
from .clients.promidata import PromidataClient
from .clients.storage import ObjectStorage
from .config import DATABASE_URL, PROMIDATA
from .db import create_all, make_engine, make_session_factory
from .jobs.backend import CeleryQueueBackend
from .jobs.celery_app import celery_app
from .jobs.queue import JobQueue
from .parsers.manifest import ManifestReader
from .parsers.product import DocumentFetcher
from .services.dedup import DeduplicationService
from .services.images import ImageUploadService
from .services.product_sync import ProductSyncService
from .services.queue_manager import QueueManager
from .services.search_documents import SearchDocumentBuilder
from .services.semantic import SemanticIndexService, SemanticSyncRunner
from .services.suppliers import SupplierService
from .services.sync import SyncTriggerService
from .services.sync_lock import SyncLockService
from .services.sync_session import SyncSessionService
from .services.variant_sync import VariantSyncService
from .store import CatalogStore
from .utils.hash import HashService
from .workers.image_upload import ImageUploadWorker
from .workers.product_family import ProductFamilyWorker
from .workers.search_sync import SearchSyncWorker
from .workers.semantic_sync import SemanticSyncWorker
from .workers.supplier_sync import SupplierSyncWorker


class Container:
    """Every service built once per process and handed to the workers and routes.

    Collaborators can be swapped through keyword arguments; anything not
    given is built from ``feedsync.config``.
    """

    def __init__(self, store=None, kv=None, queue=None, feed=None, storage=None, search=None,
                 semantic_client=None, queue_backend=None, gemini_auto_sync: bool | None = None):
        if store is None:
            engine = make_engine(DATABASE_URL)
            create_all(engine)
            store = CatalogStore(make_session_factory(engine))
        self.store = store
        self.kv = kv or KeyValueStore()
        self.queue = queue or JobQueue(celery_app)
        self.feed = feed or PromidataClient()
        self._storage = storage
        self.search = search or SearchIndexClient()
        self.semantic_client = semantic_client or FileSearchClient()

        self.hashes = HashService()
        self.manifest = ManifestReader(self.feed)
        self.fetcher = DocumentFetcher(self.feed, PROMIDATA["fetch_concurrency"])
        self.products = ProductSyncService(self.store, self.hashes)
        self.variants = VariantSyncService(self.store, self.hashes)
        self.dedup = DeduplicationService(self.store)
        self.suppliers = SupplierService(self.store, self.manifest)
        self.locks = SyncLockService(self.kv)
        self.documents = SearchDocumentBuilder(self.store)
        self.semantic = SemanticIndexService(self.semantic_client, self.search, self.products)
        self.sessions = SyncSessionService(self.store, self.queue, self.search, self.semantic,
                                           gemini_auto_sync=gemini_auto_sync)
        self.runner = SemanticSyncRunner(self.store, self.locks, self.queue, self.sessions)
        self.trigger = SyncTriggerService(self.suppliers, self.sessions, self.locks, self.queue)
        self.queue_backend = queue_backend or CeleryQueueBackend(celery_app, self.kv.client)
        self.queue_manager = QueueManager(self.queue_backend, self.kv)

        self.supplier_worker = SupplierSyncWorker(self.manifest, self.fetcher, self.products, self.suppliers,
                                                  self.locks, self.queue, self.sessions, self.hashes)
        self.family_worker = ProductFamilyWorker(self.products, self.variants, self.dedup, self.queue,
                                                 self.sessions)
        self.search_worker = SearchSyncWorker(self.search, self.documents, self.products, self.variants,
                                              self.sessions)
        self.semantic_worker = SemanticSyncWorker(self.semantic, self.runner, self.sessions)

    # built on first use: ObjectStorage refuses to start without R2 credentials
    @property
    def storage(self) -> ObjectStorage:
        if self._storage is None:
            self._storage = ObjectStorage()
        return self._storage

    @property
    def images(self) -> ImageUploadService:
        return ImageUploadService(self.store, self.storage, self.feed, self.dedup, self.kv)

    @property
    def image_worker(self) -> ImageUploadWorker:
        return ImageUploadWorker(self.images, self.products, self.variants, self.sessions)


_container: Container | None = None
_lock = threading.Lock()


def get_container() -> Container:
    global _container
    with _lock:
        if _container is None:
            _container = Container()
        return _container


def set_container(container: Container | None):
    global _container
    with _lock:
        _container = container
