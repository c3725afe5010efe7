"""Wide-column entity store on Postgres.

Entities are addressed by ``PartitionKey`` and ``RowKey``; every other
property is kept in a JSONB column together with its EDM type so integers,
doubles and booleans come back with the type they were written with.
"""

from __future__ import annotations

import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool, PoolTimeout

from nosqlgate.logging import get_logger
from nosqlgate.service.codec import decode_value, encode_value
from nosqlgate.service.errors import BackendUnavailableError, BadRequestError, NotFoundError
from nosqlgate.service.filters import TOKEN
from nosqlgate.service.predicate import apply_filter, count_comparisons
from nosqlgate.storage.base import Record, project
from nosqlgate.storage.errors import ConstraintViolation
from nosqlgate.storage.models import (
    Action,
    BackendCapabilities,
    QueryOptions,
    TableInfo,
    page_records,
)

PARTITION_KEY = "PartitionKey"
ROW_KEY = "RowKey"
_KEYS = (PARTITION_KEY, ROW_KEY)

EDM_STRING = "Edm.String"
EDM_BOOLEAN = "Edm.Boolean"
EDM_DOUBLE = "Edm.Double"
EDM_INT32 = "Edm.Int32"
EDM_INT64 = "Edm.Int64"

INT32_MAX = 2147483647
INT32_MIN = -2147483648

# Azure-style tables allow 15 comparisons per filter.
MAX_FILTER_CLAUSES = 15


def edm_type(value: Any) -> str:
    if isinstance(value, bool):
        return EDM_BOOLEAN
    if isinstance(value, float):
        return EDM_DOUBLE
    if isinstance(value, int):
        return EDM_INT64 if value > INT32_MAX or value < INT32_MIN else EDM_INT32
    return EDM_STRING


def to_properties(record: Mapping[str, Any]) -> Dict[str, Dict[str, Any]]:
    """Typed JSONB properties for every non-key, non-null field of ``record``."""
    out: Dict[str, Dict[str, Any]] = {}
    for name, value in record.items():
        if name in _KEYS or value is None:
            continue
        kind = edm_type(value)
        stored = value if kind != EDM_STRING else encode_value(value)
        if kind == EDM_STRING and not isinstance(stored, str):
            stored = str(stored)
        out[name] = {"type": kind, "value": stored}
    return out


def from_properties(properties: Mapping[str, Mapping[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for name, prop in (properties or {}).items():
        kind = prop.get("type", EDM_STRING)
        value = prop.get("value")
        if value is None:
            out[name] = None
        elif kind == EDM_BOOLEAN:
            out[name] = bool(value)
        elif kind in (EDM_INT32, EDM_INT64):
            out[name] = int(value)
        elif kind == EDM_DOUBLE:
            out[name] = float(value)
        else:
            out[name] = decode_value(value)
    return out


def split_id(id: Any, partition_key: Any = None) -> Tuple[str, str]:
    """Return ``(partition_key, row_key)`` for a composite or scalar id."""
    if isinstance(id, Mapping):
        partition = id.get(PARTITION_KEY, partition_key)
        row = id.get(ROW_KEY)
    else:
        partition, row = partition_key, id
    if row in (None, ""):
        raise BadRequestError("No valid identifier found in request.", detail={"id": id})
    return ("" if partition is None else str(partition), str(row))


class WideColumnAdapter:
    """Entity store over a psycopg connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 10.0,
        pool: Optional[ConnectionPool] = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool if pool is not None else ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.capabilities = BackendCapabilities(
            name="widecolumn",
            id_fields=_KEYS,
            batch_actions=frozenset({Action.CREATE, Action.REPLACE, Action.MERGE, Action.DELETE}),
            dialect=TOKEN,
            max_filter_clauses=MAX_FILTER_CLAUSES,
            partition_field=PARTITION_KEY,
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _guard(self, table: Optional[str], operation: str) -> Iterator[None]:
        try:
            yield
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error("widecolumn_unavailable", table=table, operation=operation, error=str(exc))
            raise BackendUnavailableError(
                "Wide-column store is unavailable.", table=table, operation=operation
            ) from exc

    def _ensure_schema(self) -> None:
        """Create the table registry and entity tables if they are missing."""
        with self._guard(None, "ensure_schema"), self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS nosqlgate_table (
                    name TEXT PRIMARY KEY,
                    properties JSONB NOT NULL DEFAULT '{}'::jsonb,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS nosqlgate_entity (
                    table_name TEXT NOT NULL REFERENCES nosqlgate_table(name) ON DELETE CASCADE,
                    partition_key TEXT NOT NULL,
                    row_key TEXT NOT NULL,
                    properties JSONB NOT NULL DEFAULT '{}'::jsonb,
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    PRIMARY KEY (table_name, partition_key, row_key)
                )
                """
            )

    @staticmethod
    def _row_to_record(row: Mapping[str, Any]) -> Record:
        record = from_properties(row.get("properties") or {})
        record[PARTITION_KEY] = row["partition_key"]
        record[ROW_KEY] = row["row_key"]
        return record

    def _require_table(self, conn, table: str) -> None:
        found = conn.execute("SELECT 1 FROM nosqlgate_table WHERE name = %s", (table,)).fetchone()
        if not found:
            raise NotFoundError(f"Table '{table}' does not exist in the database.")

    # statements shared by single and batch writes

    def _insert_one(self, conn, table: str, record: Mapping[str, Any]) -> Record:
        partition = record.get(PARTITION_KEY)
        row = record.get(ROW_KEY)
        key = ("" if partition is None else str(partition), str(row) if row not in (None, "") else uuid.uuid4().hex)
        props = to_properties(record)
        try:
            conn.execute(
                "INSERT INTO nosqlgate_entity (table_name, partition_key, row_key, properties) "
                "VALUES (%s, %s, %s, %s)",
                (table, key[0], key[1], Jsonb(props)),
            )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "entity already exists",
                {"table": table, PARTITION_KEY: key[0], ROW_KEY: key[1]},
            ) from exc
        return self._row_to_record({"partition_key": key[0], "row_key": key[1], "properties": props})

    def _replace_one(self, conn, table: str, id: Any, record: Mapping[str, Any]) -> Optional[Record]:
        partition, row = split_id(id, record.get(PARTITION_KEY))
        found = conn.execute(
            "UPDATE nosqlgate_entity SET properties = %s, updated_at = now() "
            "WHERE table_name = %s AND partition_key = %s AND row_key = %s "
            "RETURNING partition_key, row_key, properties",
            (Jsonb(to_properties(record)), table, partition, row),
        ).fetchone()
        return self._row_to_record(found) if found else None

    def _merge_one(self, conn, table: str, id: Any, record: Mapping[str, Any]) -> Optional[Record]:
        partition, row = split_id(id, record.get(PARTITION_KEY))
        removed = [name for name, value in record.items() if value is None and name not in _KEYS]
        found = conn.execute(
            "UPDATE nosqlgate_entity SET properties = (properties || %s) - %s::text[], updated_at = now() "
            "WHERE table_name = %s AND partition_key = %s AND row_key = %s "
            "RETURNING partition_key, row_key, properties",
            (Jsonb(to_properties(record)), removed, table, partition, row),
        ).fetchone()
        return self._row_to_record(found) if found else None

    def _delete_one(self, conn, table: str, id: Any) -> Optional[Record]:
        partition, row = split_id(id)
        found = conn.execute(
            "DELETE FROM nosqlgate_entity "
            "WHERE table_name = %s AND partition_key = %s AND row_key = %s "
            "RETURNING partition_key, row_key, properties",
            (table, partition, row),
        ).fetchone()
        return self._row_to_record(found) if found else None

    @staticmethod
    def _missing(table: str, id: Any) -> NotFoundError:
        return NotFoundError(f"Record with id '{id}' not found.", detail={"table": table, "id": id})

    # record primitives

    def get(self, table: str, id: Any, fields: Optional[Sequence[str]] = None) -> Record:
        partition, row = split_id(id)
        with self._guard(table, "get"), self._connect() as conn:
            self._require_table(conn, table)
            found = conn.execute(
                "SELECT partition_key, row_key, properties FROM nosqlgate_entity "
                "WHERE table_name = %s AND partition_key = %s AND row_key = %s",
                (table, partition, row),
            ).fetchone()
        if not found:
            raise self._missing(table, id)
        return project(self._row_to_record(found), fields, _KEYS)

    def insert(self, table: str, record: Mapping[str, Any]) -> Record:
        with self._guard(table, "insert"), self._connect() as conn, conn.transaction():
            self._require_table(conn, table)
            return self._insert_one(conn, table, record)

    def update(self, table: str, id: Any, record: Mapping[str, Any]) -> Record:
        with self._guard(table, "update"), self._connect() as conn, conn.transaction():
            self._require_table(conn, table)
            out = self._replace_one(conn, table, id, record)
        if out is None:
            raise self._missing(table, id)
        return out

    def merge(self, table: str, id: Any, record: Mapping[str, Any]) -> Record:
        with self._guard(table, "merge"), self._connect() as conn, conn.transaction():
            self._require_table(conn, table)
            out = self._merge_one(conn, table, id, record)
        if out is None:
            raise self._missing(table, id)
        return out

    def delete(self, table: str, id: Any) -> Record:
        with self._guard(table, "delete"), self._connect() as conn, conn.transaction():
            self._require_table(conn, table)
            out = self._delete_one(conn, table, id)
        if out is None:
            raise self._missing(table, id)
        return out

    def batch_insert(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]:
        with self._guard(table, "batch_insert"), self._connect() as conn, conn.transaction():
            self._require_table(conn, table)
            return [self._insert_one(conn, table, record) for record in records]

    def batch_update(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]:
        with self._guard(table, "batch_update"), self._connect() as conn, conn.transaction():
            self._require_table(conn, table)
            results = [self._replace_one(conn, table, record, record) for record in records]
        return [r for r in results if r is not None]

    def batch_merge(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]:
        with self._guard(table, "batch_merge"), self._connect() as conn, conn.transaction():
            self._require_table(conn, table)
            results = [self._merge_one(conn, table, record, record) for record in records]
        return [r for r in results if r is not None]

    def batch_delete(self, table: str, ids: Sequence[Any]) -> List[Record]:
        with self._guard(table, "batch_delete"), self._connect() as conn, conn.transaction():
            self._require_table(conn, table)
            results = [self._delete_one(conn, table, id) for id in ids]
        return [r for r in results if r is not None]

    def query(
        self, table: str, native_filter: str = "", options: Optional[QueryOptions] = None
    ) -> List[Record]:
        clauses = count_comparisons(native_filter)
        if clauses > MAX_FILTER_CLAUSES:
            raise BadRequestError(
                f"Filter has {clauses} comparisons; at most {MAX_FILTER_CLAUSES} are allowed.",
                detail={"table": table},
            )
        with self._guard(table, "query"), self._connect() as conn:
            self._require_table(conn, table)
            rows = conn.execute(
                "SELECT partition_key, row_key, properties FROM nosqlgate_entity "
                "WHERE table_name = %s ORDER BY partition_key, row_key",
                (table,),
            ).fetchall()
        records = [self._row_to_record(row) for row in rows]
        matched = page_records(apply_filter(records, native_filter), options)
        fields = options.fields if options else None
        return [project(record, fields, _KEYS) for record in matched]

    # table primitives

    def list_tables(self) -> List[str]:
        with self._guard(None, "list_tables"), self._connect() as conn:
            rows = conn.execute("SELECT name FROM nosqlgate_table ORDER BY name").fetchall()
        return [row["name"] for row in rows]

    def create_table(self, name: str, properties: Optional[Mapping[str, Any]] = None) -> TableInfo:
        try:
            with self._guard(name, "create_table"), self._connect() as conn, conn.transaction():
                conn.execute(
                    "INSERT INTO nosqlgate_table (name, properties) VALUES (%s, %s)",
                    (name, Jsonb(dict(properties or {}))),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("table already exists", {"table": name}) from exc
        self.logger.info("table_created", table=name, backend="widecolumn")
        return TableInfo(name=name, properties=dict(properties or {}))

    def describe_table(self, name: str) -> TableInfo:
        with self._guard(name, "describe_table"), self._connect() as conn:
            row = conn.execute(
                "SELECT t.properties, count(e.row_key) AS entity_count FROM nosqlgate_table t "
                "LEFT JOIN nosqlgate_entity e ON e.table_name = t.name "
                "WHERE t.name = %s GROUP BY t.name, t.properties",
                (name,),
            ).fetchone()
        if not row:
            raise NotFoundError(f"Table '{name}' does not exist in the database.")
        props = dict(row.get("properties") or {})
        props["entity_count"] = int(row.get("entity_count") or 0)
        return TableInfo(name=name, properties=props)

    def delete_table(self, name: str) -> None:
        with self._guard(name, "delete_table"), self._connect() as conn, conn.transaction():
            found = conn.execute(
                "DELETE FROM nosqlgate_table WHERE name = %s RETURNING name", (name,)
            ).fetchone()
        if not found:
            raise NotFoundError(f"Table '{name}' does not exist in the database.")
        self.logger.info("table_deleted", table=name, backend="widecolumn")

    def close(self) -> None:
        self.pool.close()
