"""Backend adapter interface shared by every store.

Records cross this boundary decoded: adapters own their wire encoding (typed
attributes, CouchDB documents, EDM properties) and hand back plain dicts that
always carry the adapter's id field(s).
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, runtime_checkable

from nosqlgate.storage.models import BackendCapabilities, QueryOptions, TableInfo

Record = Dict[str, Any]


@runtime_checkable
class BackendAdapter(Protocol):
    capabilities: BackendCapabilities

    def get(self, table: str, id: Any, fields: Optional[Sequence[str]] = None) -> Record: ...

    def insert(self, table: str, record: Mapping[str, Any]) -> Record: ...

    def update(self, table: str, id: Any, record: Mapping[str, Any]) -> Record: ...

    def merge(self, table: str, id: Any, record: Mapping[str, Any]) -> Record: ...

    def delete(self, table: str, id: Any) -> Record: ...

    def batch_insert(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]: ...

    def batch_update(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]: ...

    def batch_merge(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]: ...

    def batch_delete(self, table: str, ids: Sequence[Any]) -> List[Record]: ...

    def query(
        self, table: str, native_filter: str = "", options: Optional[QueryOptions] = None
    ) -> List[Record]: ...

    def list_tables(self) -> List[str]: ...

    def create_table(self, name: str, properties: Optional[Mapping[str, Any]] = None) -> TableInfo: ...

    def describe_table(self, name: str) -> TableInfo: ...

    def delete_table(self, name: str) -> None: ...

    def close(self) -> None: ...


def record_id(capabilities: BackendCapabilities, record: Mapping[str, Any]) -> Any:
    """Extract the id of a record: a scalar, or a dict for composite keys."""
    if capabilities.composite:
        return {name: record.get(name) for name in capabilities.id_fields}
    return record.get(capabilities.id_fields[0])


def with_id(capabilities: BackendCapabilities, id: Any, record: Mapping[str, Any]) -> Record:
    """Return ``record`` with the id field(s) set from ``id``."""
    out = dict(record)
    if isinstance(id, Mapping):
        for name in capabilities.id_fields:
            if name in id:
                out[name] = id[name]
    else:
        out[capabilities.row_field] = id
    return out


def project(record: Mapping[str, Any], fields: Optional[Sequence[str]], id_fields: Sequence[str]) -> Record:
    """Reduce a record to ``fields`` plus its id fields; ``None`` or ``*`` keeps all."""
    if not fields or "*" in fields:
        return dict(record)
    keep = list(id_fields) + [f for f in fields if f not in id_fields]
    return {name: record[name] for name in keep if name in record}


__all__ = ["BackendAdapter", "Record", "record_id", "with_id", "project"]
