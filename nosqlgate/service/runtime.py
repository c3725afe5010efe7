from __future__ import annotations

import threading
from typing import Optional
from urllib.parse import urlparse, urlunparse

from nosqlgate.config import Settings, StoreBackend, get_settings, reset_settings_cache
from nosqlgate.logging import get_logger
from nosqlgate.service.filters import FilterTranslator
from nosqlgate.service.lookups import (
    AllowAllPermissions,
    PermissionChecker,
    StaticUserProvider,
    TemplateLookupResolver,
)
from nosqlgate.service.records import RecordService
from nosqlgate.service.schema import SchemaRegistry
from nosqlgate.service.shaper import RecordShaper
from nosqlgate.service.tables import TableCatalog
from nosqlgate.storage.base import BackendAdapter
from nosqlgate.storage.couchdb import DocumentAdapter
from nosqlgate.storage.memory import MemoryAdapter
from nosqlgate.storage.postgres import WideColumnAdapter
from nosqlgate.storage.redis_store import KeyValueAdapter

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


def build_adapter(settings: Settings) -> BackendAdapter:
    """Instantiate the adapter selected by ``settings.backend``."""
    backend = settings.backend
    if backend is StoreBackend.KEYVALUE:
        logger.info("runtime_backend_selected", backend=backend.value, url=_mask_url_password(settings.redis_url))
        return KeyValueAdapter(
            settings.redis_url,
            namespace=settings.redis_namespace,
            socket_timeout=settings.request_timeout_seconds,
        )
    if backend is StoreBackend.DOCUMENT:
        logger.info("runtime_backend_selected", backend=backend.value, url=_mask_url_password(settings.couchdb_url))
        return DocumentAdapter(
            settings.couchdb_url,
            username=settings.couchdb_user,
            password=settings.couchdb_password,
            timeout=settings.request_timeout_seconds,
        )
    if backend is StoreBackend.WIDECOLUMN:
        logger.info("runtime_backend_selected", backend=backend.value, url=_mask_url_password(settings.database_url))
        return WideColumnAdapter(settings.database_url, timeout=settings.request_timeout_seconds)
    logger.info("runtime_backend_selected", backend=StoreBackend.MEMORY.value)
    return MemoryAdapter()


class Runtime:
    """Holds the adapter, table catalog and schema registry for the FastAPI app."""

    def __init__(self, settings: Optional[Settings] = None, adapter: Optional[BackendAdapter] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            backend=self.settings.backend.value,
            test_mode=self.settings.test_mode,
        )
        try:
            self.adapter = adapter or build_adapter(self.settings)
        except Exception as exc:
            logger.error(
                "runtime_adapter_init_failed",
                backend=self.settings.backend.value,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise
        self.schema = SchemaRegistry.from_file(self.settings.schema_path)
        self.catalog = TableCatalog(self.adapter)
        self.permissions: PermissionChecker = AllowAllPermissions()
        logger.info("runtime_init_completed", backend=self.adapter.capabilities.name)

    def record_service(self, user_id: Optional[str] = None) -> RecordService:
        """Build a request-scoped record service for ``user_id``."""
        users = StaticUserProvider(user_id)
        resolver = TemplateLookupResolver(self.settings.lookups, users)
        shaper = RecordShaper(user_provider=users, resolver=resolver)
        dialect = self.adapter.capabilities.dialect
        return RecordService(
            self.adapter,
            self.catalog,
            self.schema,
            shaper=shaper,
            translator_factory=lambda: FilterTranslator(dialect, resolver),
            max_records_returned=self.settings.max_records_returned,
        )

    def close(self) -> None:
        try:
            self.adapter.close()
        except Exception as exc:
            logger.warning("runtime_close_failed", error_type=type(exc).__name__, error=str(exc))
        else:
            logger.info("runtime_closed", backend=self.adapter.capabilities.name)


runtime: Runtime | None = None

_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking: a lock-free fast path for an existing
    runtime, then a second check under the lock before creating one.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def close_runtime() -> None:
    global runtime
    with _runtime_lock:
        if runtime is not None:
            runtime.close()
            runtime = None


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None:
            runtime.close()
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
