from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx

from nosqlgate.logging import get_logger, sanitize_error_message
from nosqlgate.service.errors import BackendUnavailableError, NotFoundError, ServerError
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

ID_FIELD = "_id"
REV_FIELD = "_rev"
_OUTPUT_IDS = (ID_FIELD, REV_FIELD)


class DocumentAdapter:
    """CouchDB databases as tables, documents as records, over the HTTP API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        username: Optional[str] = None,
        password: Optional[str] = None,
        timeout: float = 10.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if client is None:
            if not base_url:
                raise ValueError("base_url is required when no client is given")
            auth = (username, password or "") if username else None
            client = httpx.Client(base_url=base_url, auth=auth, timeout=timeout)
        self.client = client
        self.logger = get_logger(__name__)
        self.capabilities = BackendCapabilities(
            name="document",
            id_fields=(ID_FIELD,),
            batch_actions=frozenset(
                {Action.CREATE, Action.REPLACE, Action.MERGE, Action.DELETE, Action.FETCH}
            ),
            dialect=TOKEN,
        )

    @staticmethod
    def _path(*parts: str) -> str:
        return "/" + "/".join(quote(str(part), safe="") for part in parts)

    def _request(
        self,
        method: str,
        path: str,
        *,
        table: Optional[str],
        operation: str,
        missing_ok: bool = False,
        **kwargs: Any,
    ) -> Any:
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            self.logger.error("document_store_unavailable", table=table, operation=operation, error=str(exc))
            raise BackendUnavailableError(
                "Document store is unavailable.", table=table, operation=operation
            ) from exc
        if response.status_code == 404:
            if missing_ok:
                return None
            raise NotFoundError(
                f"Table '{table}' does not exist in the database." if operation.endswith("table")
                else "Requested document was not found.",
                detail={"table": table, "operation": operation},
            )
        if response.status_code in (401, 403):
            self.logger.error(
                "document_store_auth_failed",
                table=table,
                operation=operation,
                status_code=response.status_code,
            )
            raise BackendUnavailableError(
                "Document store rejected the credentials.", table=table, operation=operation
            )
        if response.status_code in (409, 412):
            raise ConstraintViolation(
                "document conflict", {"table": table, "operation": operation}
            )
        if response.status_code >= 400:
            self.logger.error(
                "document_store_error",
                table=table,
                operation=operation,
                status_code=response.status_code,
            )
            raise ServerError(
                f"Document store request failed: {sanitize_error_message(response.text)}",
                detail={"table": table, "operation": operation, "status_code": response.status_code},
            )
        return response.json() if response.content else {}

    # document helpers

    def _fetch_docs(self, table: str, ids: Sequence[Any]) -> List[Tuple[str, Optional[Record]]]:
        keys = [str(id) for id in ids]
        if not keys:
            return []
        body = self._request(
            "POST",
            self._path(table, "_all_docs"),
            table=table,
            operation="fetch",
            params={"include_docs": "true"},
            json={"keys": keys},
        )
        out = []
        for key, row in zip(keys, body.get("rows", [])):
            doc = row.get("doc") if not row.get("error") else None
            out.append((key, doc))
        return out

    def _bulk(self, table: str, docs: List[Dict[str, Any]], operation: str) -> List[Dict[str, Any]]:
        if not docs:
            return []
        results = self._request(
            "POST", self._path(table, "_bulk_docs"), table=table, operation=operation, json={"docs": docs}
        )
        written = []
        for doc, result in zip(docs, results):
            if result.get("error"):
                self.logger.warning(
                    "document_bulk_item_failed",
                    table=table,
                    operation=operation,
                    id=result.get("id"),
                    error=result.get("error"),
                )
                continue
            written.append({**doc, ID_FIELD: result.get("id"), REV_FIELD: result.get("rev")})
        return written

    # record primitives

    def get(self, table: str, id: Any, fields: Optional[Sequence[str]] = None) -> Record:
        doc = self._request("GET", self._path(table, id), table=table, operation="get", missing_ok=True)
        if doc is None:
            raise NotFoundError(f"Record with id '{id}' not found.", detail={"table": table, "id": id})
        return project(doc, fields, _OUTPUT_IDS)

    def insert(self, table: str, record: Mapping[str, Any]) -> Record:
        doc = {k: v for k, v in record.items() if k != REV_FIELD}
        if doc.get(ID_FIELD) not in (None, ""):
            result = self._request(
                "PUT", self._path(table, doc[ID_FIELD]), table=table, operation="insert", json=doc
            )
        else:
            doc.pop(ID_FIELD, None)
            result = self._request("POST", self._path(table), table=table, operation="insert", json=doc)
        return {**doc, ID_FIELD: result.get("id"), REV_FIELD: result.get("rev")}

    def _store(self, table: str, id: Any, doc: Dict[str, Any], operation: str) -> Record:
        result = self._request("PUT", self._path(table, id), table=table, operation=operation, json=doc)
        return {**doc, ID_FIELD: result.get("id", id), REV_FIELD: result.get("rev")}

    def update(self, table: str, id: Any, record: Mapping[str, Any]) -> Record:
        current = self.get(table, id)
        doc = {k: v for k, v in record.items() if k not in _OUTPUT_IDS}
        doc[ID_FIELD] = current[ID_FIELD]
        doc[REV_FIELD] = current[REV_FIELD]
        return self._store(table, id, doc, "update")

    def merge(self, table: str, id: Any, record: Mapping[str, Any]) -> Record:
        doc = self.get(table, id)
        doc.update({k: v for k, v in record.items() if k not in _OUTPUT_IDS})
        return self._store(table, id, doc, "merge")

    def delete(self, table: str, id: Any) -> Record:
        current = self.get(table, id)
        self._request(
            "DELETE",
            self._path(table, id),
            table=table,
            operation="delete",
            params={"rev": current[REV_FIELD]},
        )
        return current

    def batch_insert(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]:
        docs = []
        for record in records:
            doc = {k: v for k, v in record.items() if k != REV_FIELD}
            if doc.get(ID_FIELD) in (None, ""):
                doc.pop(ID_FIELD, None)
            docs.append(doc)
        return self._bulk(table, docs, "batch_insert")

    def batch_update(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]:
        current = dict(self._fetch_docs(table, [r.get(ID_FIELD) for r in records]))
        docs = []
        for record in records:
            old = current.get(str(record.get(ID_FIELD)))
            if old is None:
                continue
            doc = {k: v for k, v in record.items() if k not in _OUTPUT_IDS}
            doc[ID_FIELD] = old[ID_FIELD]
            doc[REV_FIELD] = old[REV_FIELD]
            docs.append(doc)
        return self._bulk(table, docs, "batch_update")

    def batch_merge(self, table: str, records: Sequence[Mapping[str, Any]]) -> List[Record]:
        current = dict(self._fetch_docs(table, [r.get(ID_FIELD) for r in records]))
        docs = []
        for record in records:
            old = current.get(str(record.get(ID_FIELD)))
            if old is None:
                continue
            doc = dict(old)
            doc.update({k: v for k, v in record.items() if k not in _OUTPUT_IDS})
            docs.append(doc)
        return self._bulk(table, docs, "batch_merge")

    def batch_delete(self, table: str, ids: Sequence[Any]) -> List[Record]:
        found = [doc for _, doc in self._fetch_docs(table, ids) if doc is not None]
        tombstones = [{ID_FIELD: doc[ID_FIELD], REV_FIELD: doc[REV_FIELD], "_deleted": True} for doc in found]
        deleted = {doc[ID_FIELD] for doc in self._bulk(table, tombstones, "batch_delete")}
        return [doc for doc in found if doc[ID_FIELD] in deleted]

    def query(
        self, table: str, native_filter: str = "", options: Optional[QueryOptions] = None
    ) -> List[Record]:
        body = self._request(
            "GET",
            self._path(table, "_all_docs"),
            table=table,
            operation="query",
            params={"include_docs": "true"},
        )
        docs = [
            row["doc"]
            for row in body.get("rows", [])
            if row.get("doc") and not str(row.get("id", "")).startswith("_design/")
        ]
        matched = page_records(apply_filter(docs, native_filter), options)
        fields = options.fields if options else None
        return [project(doc, fields, _OUTPUT_IDS) for doc in matched]

    # table primitives

    def list_tables(self) -> List[str]:
        names = self._request("GET", "/_all_dbs", table=None, operation="list_tables")
        return [name for name in names if not name.startswith("_")]

    def create_table(self, name: str, properties: Optional[Mapping[str, Any]] = None) -> TableInfo:
        self._request("PUT", self._path(name), table=name, operation="create_table")
        self.logger.info("table_created", table=name, backend="document")
        return TableInfo(name=name, properties=dict(properties or {}))

    def describe_table(self, name: str) -> TableInfo:
        info = self._request("GET", self._path(name), table=name, operation="describe_table")
        info.pop("db_name", None)
        return TableInfo(name=name, properties=info)

    def delete_table(self, name: str) -> None:
        self._request("DELETE", self._path(name), table=name, operation="delete_table")
        self.logger.info("table_deleted", table=name, backend="document")

    def close(self) -> None:
        self.client.close()
