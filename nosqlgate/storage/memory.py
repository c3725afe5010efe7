from __future__ import annotations

import copy
import threading
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence

from nosqlgate.logging import get_logger
from nosqlgate.service.errors import NotFoundError
from nosqlgate.service.filters import TOKEN
from nosqlgate.service.predicate import apply_filter
from nosqlgate.storage.base import Record, project
from nosqlgate.storage.errors import ConstraintViolation
from nosqlgate.storage.models import (
    Action,
    BackendCapabilities,
    QueryOptions,
    TableInfo,
    page_records,
)


class MemoryAdapter:
    """In-process store keeping each table as a dict of records.

    Batches are applied atomically: every record is checked before any is
    written, and records missing from the table are skipped so the caller can
    spot the short result.
    """

    def __init__(self, id_field: str = "id") -> None:
        self.logger = get_logger(__name__)
        self.capabilities = BackendCapabilities(
            name="memory",
            id_fields=(id_field,),
            batch_actions=frozenset(
                {Action.CREATE, Action.REPLACE, Action.MERGE, Action.DELETE, Action.FETCH}
            ),
            dialect=TOKEN,
        )
        self.tables: Dict[str, Dict[str, Record]] = {}
        self.table_properties: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    @property
    def id_field(self) -> str:
        return self.capabilities.id_fields[0]

    @staticmethod
    def _key(id: Any) -> str:
        if isinstance(id, Mapping):
            raise NotFoundError("Composite ids are not supported by this store.", detail={"id": id})
        return str(id)

    def _table(self, table: str) -> Dict[str, Record]:
        try:
            return self.tables[table]
        except KeyError:
            raise NotFoundError(f"Table '{table}' does not exist in the database.") from None

    def _existing(self, table: str, id: Any) -> Record:
        rows = self._table(table)
        key = self._key(id)
        if key not in rows:
            raise NotFoundError(f"Record with id '{id}' not found.", detail={"table": table, "id": id})
        return rows[key]

    def _prepare_insert(self, table: str, record: Mapping[str, Any]) -> Record:
        row = copy.deepcopy(dict(record))
        if row.get(self.id_field) in (None, ""):
            row[self.id_field] = uuid.uuid4().hex
        if self._key(row[self.id_field]) in self._table(table):
            raise ConstraintViolation(
                "record id already exists",
                {"table": table, "id": row[self.id_field]},
            )
        return row

    # record primitives

    def get(self, table: str, id: Any, fields: Optional[Sequence[str]] = None) -> Record:
        with self._lock:
            row = self._existing(table, id)
            return project(copy.deepcopy(row), fields, (self.id_field,))

    def insert(self, table: str, record: Mapping[str, Any]) -> Record:
        with self._lock:
            row = self._prepare_insert(table, record)
            self.tables[table][self._key(row[self.id_field])] = row
            return copy.deepcopy(row)

    def update(self, table: str, id: Any, record: Mapping[str, Any]) -> Record:
        with self._lock:
            self._existing(table, id)
            row = copy.deepcopy(dict(record))
            row[self.id_field] = id
            self.tables[table][self._key(id)] = row
            return copy.deepcopy(row)

    def merge(self, table: str, id: Any, record: Mapping[str, Any]) -> Record:
        with self._lock:
            row = self._existing(table, id)
            for name, value in record.items():
                if name != self.id_field:
                    row[name] = copy.deepcopy(value)
            return copy.deepcopy(row)

    def delete(self, table: str, id: Any) -> Record:
        with self._lock:
            row = self._existing(table, id)
            del self.tables[table][self._key(id)]
            return row

    def batch_insert(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]:
        with self._lock:
            rows = [self._prepare_insert(table, record) for record in records]
            keys = [self._key(row[self.id_field]) for row in rows]
            if len(set(keys)) != len(keys):
                raise ConstraintViolation("duplicate ids in batch", {"table": table})
            for key, row in zip(keys, rows):
                self.tables[table][key] = row
            return copy.deepcopy(rows)

    def _batch_write(self, table: str, records: Sequence[Mapping[str, Any]], merge: bool) -> List[Record]:
        with self._lock:
            rows = self._table(table)
            out = []
            for record in records:
                key = self._key(record.get(self.id_field))
                if key not in rows:
                    continue
                if merge:
                    rows[key].update(copy.deepcopy(dict(record)))
                else:
                    rows[key] = copy.deepcopy(dict(record))
                out.append(copy.deepcopy(rows[key]))
            return out

    def batch_update(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]:
        return self._batch_write(table, records, merge=False)

    def batch_merge(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]:
        return self._batch_write(table, records, merge=True)

    def batch_delete(self, table: str, ids: Sequence[Any]) -> List[Record]:
        with self._lock:
            rows = self._table(table)
            out = []
            for id in ids:
                row = rows.pop(self._key(id), None)
                if row is not None:
                    out.append(row)
            return out

    def query(
        self, table: str, native_filter: str = "", options: Optional[QueryOptions] = None
    ) -> List[Record]:
        with self._lock:
            rows = copy.deepcopy(list(self._table(table).values()))
        matched = page_records(apply_filter(rows, native_filter), options)
        fields = options.fields if options else None
        return [project(row, fields, (self.id_field,)) for row in matched]

    # table primitives

    def list_tables(self) -> List[str]:
        with self._lock:
            return sorted(self.tables)

    def create_table(self, name: str, properties: Optional[Mapping[str, Any]] = None) -> TableInfo:
        with self._lock:
            if name in self.tables:
                raise ConstraintViolation("table already exists", {"table": name})
            self.tables[name] = {}
            self.table_properties[name] = dict(properties or {})
            self.logger.info("table_created", table=name, backend="memory")
            return TableInfo(name=name, properties=dict(self.table_properties[name]))

    def describe_table(self, name: str) -> TableInfo:
        with self._lock:
            rows = self._table(name)
            props = dict(self.table_properties.get(name, {}))
            props["record_count"] = len(rows)
            return TableInfo(name=name, properties=props)

    def delete_table(self, name: str) -> None:
        with self._lock:
            self._table(name)
            del self.tables[name]
            self.table_properties.pop(name, None)
            self.logger.info("table_deleted", table=name, backend="memory")

    def close(self) -> None:
        return None
