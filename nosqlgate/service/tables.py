from __future__ import annotations

import threading
from typing import Any, Dict, List, Mapping, Optional

from nosqlgate.logging import get_logger
from nosqlgate.service.errors import BadRequestError, ConflictError, NotFoundError
from nosqlgate.storage.base import BackendAdapter
from nosqlgate.storage.errors import ConstraintViolation

logger = get_logger(__name__)


class TableCatalog:
    """Cached table listing for one adapter.

    The listing is fetched lazily on first use and only re-read on an explicit
    ``refresh()``. Tables created or deleted through the catalog update the
    cache directly.
    """

    def __init__(self, adapter: BackendAdapter) -> None:
        self.adapter = adapter
        self._tables: Optional[List[str]] = None
        self._lock = threading.RLock()

    def refresh(self) -> List[str]:
        with self._lock:
            self._tables = list(self.adapter.list_tables())
            logger.debug("table_catalog_refreshed", count=len(self._tables))
            return list(self._tables)

    def list_tables(self, refresh: bool = False) -> List[str]:
        with self._lock:
            if refresh or self._tables is None:
                return self.refresh()
            return list(self._tables)

    def correct_table_name(self, name: Optional[str]) -> str:
        """Return the stored spelling of ``name``, failing on empty or unknown names."""
        if not name or not str(name).strip():
            raise BadRequestError("Table name can not be empty.")
        name = str(name).strip()
        tables = self.list_tables()
        if name in tables:
            return name
        lowered = name.lower()
        for existing in tables:
            if existing.lower() == lowered:
                return existing
        raise NotFoundError(f"Table '{name}' not found.", detail={"table": name})

    def does_table_exist(self, name: Optional[str]) -> bool:
        try:
            self.correct_table_name(name)
        except (BadRequestError, NotFoundError):
            return False
        return True

    def create_table(self, name: str, properties: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        if not name or not str(name).strip():
            raise BadRequestError("Table name can not be empty.")
        try:
            info = self.adapter.create_table(name, properties)
        except ConstraintViolation as exc:
            raise ConflictError(f"Table '{name}' already exists.", detail=exc.detail) from exc
        with self._lock:
            if self._tables is not None and name not in self._tables:
                self._tables.append(name)
        return info.to_dict()

    def describe_table(self, name: str) -> Dict[str, Any]:
        name = self.correct_table_name(name)
        return self.adapter.describe_table(name).to_dict()

    def delete_table(self, name: str) -> None:
        name = self.correct_table_name(name)
        self.adapter.delete_table(name)
        with self._lock:
            if self._tables is not None and name in self._tables:
                self._tables.remove(name)
        logger.info("table_removed_from_catalog", table=name)


__all__ = ["TableCatalog"]
