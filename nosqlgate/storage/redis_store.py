from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from nosqlgate.logging import get_logger
from nosqlgate.service.codec import decode_attributes, encode_attributes
from nosqlgate.service.errors import BackendUnavailableError, NotFoundError
from nosqlgate.service.filters import SYMBOLIC
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

ITEM_NAME = "Name"


class KeyValueAdapter:
    """Domain/item/attribute store kept in Redis.

    Each table (domain) is a set of item names; each item is a hash whose
    fields hold a JSON list of codec-encoded strings, so attributes may carry
    several values. ``Replace`` on an attribute pair overwrites the stored
    values, otherwise the value is added next to them.
    """

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        client: Optional[Redis] = None,
        namespace: str = "nosqlgate",
        socket_timeout: float = 5.0,
    ) -> None:
        if client is None:
            if not redis_url:
                raise ValueError("redis_url is required when no client is given")
            client = Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.client = client
        self.namespace = namespace
        self.logger = get_logger(__name__)
        self.capabilities = BackendCapabilities(
            name="keyvalue",
            id_fields=(ITEM_NAME,),
            batch_actions=frozenset({Action.CREATE, Action.REPLACE, Action.DELETE, Action.FETCH}),
            dialect=SYMBOLIC,
        )

    # key layout

    def _domains_key(self) -> str:
        return f"{self.namespace}:domains"

    def _items_key(self, table: str) -> str:
        return f"{self.namespace}:domain:{table}:items"

    def _item_key(self, table: str, name: Any) -> str:
        return f"{self.namespace}:domain:{table}:item:{name}"

    @contextmanager
    def _guard(self, table: Optional[str], operation: str) -> Iterator[None]:
        try:
            yield
        except (RedisConnectionError, RedisTimeoutError) as exc:
            self.logger.error("keyvalue_unavailable", table=table, operation=operation, error=str(exc))
            raise BackendUnavailableError(
                "Key/attribute store is unavailable.", table=table, operation=operation
            ) from exc

    def _require_table(self, table: str) -> None:
        if not self.client.sismember(self._domains_key(), table):
            raise NotFoundError(f"Table '{table}' does not exist in the database.")

    # attribute helpers

    @staticmethod
    def _apply_pairs(current: Dict[str, List[str]], pairs: Sequence[Mapping[str, Any]]) -> Dict[str, List[str]]:
        for pair in pairs:
            name = pair["Name"]
            value = pair["Value"]
            if pair.get("Replace"):
                current[name] = [value]
                continue
            values = current.setdefault(name, [])
            if value not in values:
                values.append(value)
        return current

    @staticmethod
    def _load(raw: Mapping[str, str]) -> Dict[str, List[str]]:
        return {name: json.loads(values) for name, values in (raw or {}).items()}

    @staticmethod
    def _dump(attributes: Mapping[str, List[str]]) -> Dict[str, str]:
        return {name: json.dumps(values) for name, values in attributes.items()}

    def _to_record(self, name: str, attributes: Mapping[str, List[str]]) -> Record:
        pairs = [{"Name": field, "Value": value} for field, values in attributes.items() for value in values]
        record = decode_attributes(pairs)
        record[ITEM_NAME] = name
        return record

    def _item_name(self, record: Mapping[str, Any], id: Any = None) -> str:
        name = id if id is not None else record.get(ITEM_NAME)
        if isinstance(name, Mapping):
            name = name.get(ITEM_NAME)
        return str(name) if name not in (None, "") else uuid.uuid4().hex

    def _attributes(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in record.items() if k != ITEM_NAME}

    def _read(self, table: str, name: str) -> Optional[Dict[str, List[str]]]:
        raw = self.client.hgetall(self._item_key(table, name))
        return self._load(raw) if raw else None

    def _write(self, pipe, table: str, name: str, attributes: Mapping[str, List[str]]) -> None:
        key = self._item_key(table, name)
        pipe.delete(key)
        if attributes:
            pipe.hset(key, mapping=self._dump(attributes))
        pipe.sadd(self._items_key(table), name)

    # record primitives

    def get(self, table: str, id: Any, fields: Optional[Sequence[str]] = None) -> Record:
        name = self._item_name({}, id)
        with self._guard(table, "get"):
            self._require_table(table)
            attributes = self._read(table, name)
        if attributes is None:
            raise NotFoundError(f"Record with id '{name}' not found.", detail={"table": table, "id": name})
        return project(self._to_record(name, attributes), fields, (ITEM_NAME,))

    def insert(self, table: str, record: Mapping[str, Any]) -> Record:
        return self.batch_insert(table, [record])[0]

    def update(self, table: str, id: Any, record: Mapping[str, Any]) -> Record:
        name = self._item_name(record, id)
        with self._guard(table, "update"):
            self._require_table(table)
            if self._read(table, name) is None:
                raise NotFoundError(f"Record with id '{name}' not found.", detail={"table": table, "id": name})
            attributes = self._apply_pairs({}, encode_attributes(self._attributes(record), replace=True))
            pipe = self.client.pipeline(transaction=True)
            self._write(pipe, table, name, attributes)
            pipe.execute()
        return self._to_record(name, attributes)

    def merge(self, table: str, id: Any, record: Mapping[str, Any]) -> Record:
        name = self._item_name(record, id)
        with self._guard(table, "merge"):
            self._require_table(table)
            current = self._read(table, name)
            if current is None:
                raise NotFoundError(f"Record with id '{name}' not found.", detail={"table": table, "id": name})
            attributes = self._apply_pairs(current, encode_attributes(self._attributes(record), replace=True))
            # null values remove the attribute
            for field, value in record.items():
                if value is None:
                    attributes.pop(field, None)
            pipe = self.client.pipeline(transaction=True)
            self._write(pipe, table, name, attributes)
            pipe.execute()
        return self._to_record(name, attributes)

    def delete(self, table: str, id: Any) -> Record:
        name = self._item_name({}, id)
        with self._guard(table, "delete"):
            self._require_table(table)
            current = self._read(table, name)
            if current is None:
                raise NotFoundError(f"Record with id '{name}' not found.", detail={"table": table, "id": name})
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(self._item_key(table, name))
            pipe.srem(self._items_key(table), name)
            pipe.execute()
        return self._to_record(name, current)

    def batch_insert(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]:
        with self._guard(table, "batch_insert"):
            self._require_table(table)
            prepared = []
            for record in records:
                name = self._item_name(record)
                if self.client.exists(self._item_key(table, name)):
                    raise ConstraintViolation("record id already exists", {"table": table, "id": name})
                attributes = self._apply_pairs({}, encode_attributes(self._attributes(record)))
                prepared.append((name, attributes))
            pipe = self.client.pipeline(transaction=True)
            for name, attributes in prepared:
                self._write(pipe, table, name, attributes)
            pipe.execute()
        return [self._to_record(name, attributes) for name, attributes in prepared]

    def batch_update(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]:
        with self._guard(table, "batch_update"):
            self._require_table(table)
            prepared = []
            for record in records:
                name = self._item_name(record)
                if not self.client.exists(self._item_key(table, name)):
                    continue
                attributes = self._apply_pairs({}, encode_attributes(self._attributes(record), replace=True))
                prepared.append((name, attributes))
            pipe = self.client.pipeline(transaction=True)
            for name, attributes in prepared:
                self._write(pipe, table, name, attributes)
            pipe.execute()
        return [self._to_record(name, attributes) for name, attributes in prepared]

    def batch_merge(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]:
        out = []
        for record in records:
            try:
                out.append(self.merge(table, record.get(ITEM_NAME), record))
            except NotFoundError:
                continue
        return out

    def batch_delete(self, table: str, ids: Sequence[Any]) -> List[Record]:
        with self._guard(table, "batch_delete"):
            self._require_table(table)
            found = []
            for id in ids:
                name = self._item_name({}, id)
                current = self._read(table, name)
                if current is not None:
                    found.append((name, current))
            pipe = self.client.pipeline(transaction=True)
            for name, _ in found:
                pipe.delete(self._item_key(table, name))
                pipe.srem(self._items_key(table), name)
            pipe.execute()
        return [self._to_record(name, current) for name, current in found]

    def query(
        self, table: str, native_filter: str = "", options: Optional[QueryOptions] = None
    ) -> List[Record]:
        with self._guard(table, "query"):
            self._require_table(table)
            names = sorted(self.client.smembers(self._items_key(table)))
            pipe = self.client.pipeline(transaction=False)
            for name in names:
                pipe.hgetall(self._item_key(table, name))
            raws = pipe.execute() if names else []
        records = [
            self._to_record(name, self._load(raw)) for name, raw in zip(names, raws) if raw is not None
        ]
        matched = page_records(apply_filter(records, native_filter), options)
        fields = options.fields if options else None
        return [project(record, fields, (ITEM_NAME,)) for record in matched]

    # table primitives

    def list_tables(self) -> List[str]:
        with self._guard(None, "list_tables"):
            return sorted(self.client.smembers(self._domains_key()))

    def create_table(self, name: str, properties: Optional[Mapping[str, Any]] = None) -> TableInfo:
        with self._guard(name, "create_table"):
            if not self.client.sadd(self._domains_key(), name):
                raise ConstraintViolation("table already exists", {"table": name})
        self.logger.info("table_created", table=name, backend="keyvalue")
        return TableInfo(name=name, properties={"DomainName": name})

    def describe_table(self, name: str) -> TableInfo:
        with self._guard(name, "describe_table"):
            self._require_table(name)
            count = self.client.scard(self._items_key(name))
        return TableInfo(name=name, properties={"DomainName": name, "ItemCount": int(count or 0)})

    def delete_table(self, name: str) -> None:
        with self._guard(name, "delete_table"):
            self._require_table(name)
            names = self.client.smembers(self._items_key(name))
            pipe = self.client.pipeline(transaction=True)
            for item in names:
                pipe.delete(self._item_key(name, item))
            pipe.delete(self._items_key(name))
            pipe.srem(self._domains_key(), name)
            pipe.execute()
        self.logger.info("table_deleted", table=name, backend="keyvalue")

    def close(self) -> None:
        self.client.close()
