"""Record operations for one request, on top of the transaction coordinator.

Every public operation funnels into ``RecordService._run``, which verifies the
table, resolves identifiers, feeds each record to a fresh coordinator and turns
per-record failures into either error entries (continue mode) or a single
error for the whole request.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from nosqlgate.logging import get_logger, sanitize_error_message
from nosqlgate.service.coordinator import TransactionCoordinator, TransactionExtras
from nosqlgate.service.errors import (
    BadRequestError,
    BatchError,
    ConflictError,
    NotFoundError,
    ServerError,
    ServiceError,
)
from nosqlgate.service.filters import FilterTranslator
from nosqlgate.service.schema import SchemaRegistry
from nosqlgate.service.shaper import RecordShaper
from nosqlgate.service.tables import TableCatalog
from nosqlgate.storage.base import BackendAdapter
from nosqlgate.storage.common import (
    MISSING,
    FieldList,
    check_for_ids,
    clean_records,
    parse_csv,
    records_as_ids,
)
from nosqlgate.storage.errors import ConstraintViolation
from nosqlgate.storage.models import Action, QueryOptions

logger = get_logger(__name__)

_VERBS = {
    Action.CREATE: ("create", "in"),
    Action.REPLACE: ("update", "in"),
    Action.MERGE: ("patch", "in"),
    Action.DELETE: ("delete", "in"),
    Action.FETCH: ("retrieve", "from"),
}


@dataclass
class RequestExtras:
    """Caller options for one record request."""

    fields: FieldList = None
    id_field: FieldList = None
    id_type: FieldList = None
    rollback: bool = False
    continue_on_error: bool = False
    partition_key: Any = None
    limit: Optional[int] = None
    offset: int = 0
    order: Optional[str] = None
    include_count: bool = False


def _error_entry(index: int, exc: Exception) -> Dict[str, Any]:
    if isinstance(exc, ServiceError):
        code, message = exc.error_code, exc.message
    elif isinstance(exc, ConstraintViolation):
        code, message = "conflict", exc.message
    else:
        code, message = "server_error", sanitize_error_message(str(exc))
    return {"error": {"index": index, "code": code, "message": message}}


def _as_records(records: Any, message: str) -> List[Mapping[str, Any]]:
    if isinstance(records, Mapping):
        records = [records]
    if not isinstance(records, (list, tuple)) or not records:
        raise BadRequestError(message)
    for record in records:
        if not isinstance(record, Mapping):
            raise BadRequestError(message)
    return list(records)


def _as_ids(ids: Any) -> List[Any]:
    if isinstance(ids, str):
        ids = parse_csv(ids)
    elif isinstance(ids, (int, float, Mapping)):
        ids = [ids]
    if not isinstance(ids, (list, tuple)) or not ids:
        raise BadRequestError("The request contains no valid identifiers.")
    return list(ids)


def _as_update(record: Any) -> Dict[str, Any]:
    if not isinstance(record, Mapping):
        raise BadRequestError("There are no fields in the record.")
    return dict(record)


class RecordService:
    """Create, replace, merge, delete and fetch records of one backend."""

    def __init__(
        self,
        adapter: BackendAdapter,
        catalog: TableCatalog,
        schema: Optional[SchemaRegistry] = None,
        shaper: Optional[RecordShaper] = None,
        translator_factory: Optional[Callable[[], FilterTranslator]] = None,
        max_records_returned: int = 1000,
    ) -> None:
        self.adapter = adapter
        self.catalog = catalog
        self.schema = schema or SchemaRegistry()
        self.shaper = shaper or RecordShaper()
        self.translator_factory = translator_factory or (
            lambda: FilterTranslator(self.adapter.capabilities.dialect, self.shaper.resolver)
        )
        self.max_records_returned = max_records_returned

    # driver

    def _params(self, extras: RequestExtras) -> Dict[str, Any]:
        partition_field = self.adapter.capabilities.partition_field
        if partition_field and extras.partition_key not in (None, ""):
            return {partition_field: extras.partition_key}
        return {}

    def _run(
        self,
        action: Action,
        table: str,
        items: Sequence[Any],
        extras: Optional[RequestExtras],
        *,
        by_ids: bool,
        updates: Optional[Dict[str, Any]] = None,
    ) -> List[Any]:
        extras = extras or RequestExtras()
        single = len(items) == 1
        rollback = False if single or action is Action.FETCH else extras.rollback
        continue_on_error = False if single else extras.continue_on_error
        if rollback and continue_on_error:
            raise BadRequestError("Rollback and continue operations can not be requested at the same time.")

        table = self.catalog.correct_table_name(table)
        schema = self.schema.get(table)
        capabilities = self.adapter.capabilities
        ids_info = schema.ids_info(capabilities, parse_csv(extras.id_field), parse_csv(extras.id_type))
        params = self._params(extras)

        coordinator = TransactionCoordinator(self.adapter, action, self.shaper, self.translator_factory())
        coordinator.init_transaction(table)
        tx = TransactionExtras(
            fields=extras.fields,
            fields_info=schema.fields,
            server_filters=schema.server_filters,
            updates=updates,
            partition_key=extras.partition_key,
            continue_on_error=continue_on_error,
        )

        out: List[Any] = [None] * len(items)
        requested_ids: List[Any] = [None] * len(items)
        errors: List[int] = []
        try:
            for index, item in enumerate(items):
                try:
                    if by_ids:
                        record = None
                        id = check_for_ids(item, ids_info, params, on_create=True)
                        if id is MISSING or id is None:
                            raise BadRequestError(f"Required id field(s) not valid in request {index}: {item!r}.")
                    else:
                        record = dict(item)
                        id = check_for_ids(record, ids_info, params, on_create=action is Action.CREATE)
                        if id is MISSING:
                            raise BadRequestError(f"Required id field(s) not found in record {index}.")
                    requested_ids[index] = id
                    out[index] = coordinator.add_to_transaction(
                        record, id, tx, rollback, continue_on_error, single
                    )
                except Exception as exc:
                    if single or rollback or not continue_on_error:
                        if index != 0:
                            errors.append(index)
                            out[index] = _error_entry(index, exc)
                        raise
                    errors.append(index)
                    out[index] = _error_entry(index, exc)
                    logger.info(
                        "record_skipped",
                        table=table,
                        action=action.value,
                        index=index,
                        error=out[index]["error"]["message"],
                    )

            result = coordinator.commit_transaction(tx)
            if result is not None:
                # deferred results fill the slots that did not fail, in request order
                remaining = iter(result)
                for index in range(len(out)):
                    if index in errors:
                        continue
                    row = next(remaining, None)
                    if row is not None:
                        out[index] = row
                        continue
                    shown = coordinator.display_id(requested_ids[index])
                    errors.append(index)
                    out[index] = _error_entry(
                        index, NotFoundError(f"Record with id '{shown}' not found.", detail={"id": shown})
                    )
                    logger.info(
                        "record_skipped",
                        table=table,
                        action=action.value,
                        index=index,
                        error=out[index]["error"]["message"],
                    )
                errors.sort()
            return out
        except Exception as exc:
            self._raise_failure(action, table, coordinator, exc, errors, out, rollback)
            raise

    def _raise_failure(
        self,
        action: Action,
        table: str,
        coordinator: TransactionCoordinator,
        exc: Exception,
        errors: List[int],
        out: List[Any],
        rollback: bool,
    ) -> None:
        verb, preposition = _VERBS[action]
        if isinstance(exc, ServiceError):
            message = exc.message
        elif isinstance(exc, ConstraintViolation):
            message = exc.message
        else:
            message = sanitize_error_message(str(exc))
        if errors:
            message = f"Batch Error: Not all records could be {action.past_tense}."
        if rollback:
            coordinator.rollback_transaction()
            message += " All changes rolled back."
        logger.warning(
            "record_request_failed",
            table=table,
            action=action.value,
            failed_indexes=errors,
            rolled_back=rollback,
            error_type=type(exc).__name__,
        )

        if errors:
            raise BatchError(message, detail={"error": errors, "record": out}) from exc
        if isinstance(exc, ServiceError):
            if message == exc.message:
                return
            raise exc.with_message(message) from exc
        if isinstance(exc, ConstraintViolation):
            raise ConflictError(message, detail=exc.detail) from exc
        raise ServerError(f"Failed to {verb} records {preposition} '{table}'.\n{message}") from exc

    # create

    def create_records(self, table: str, records: Any, extras: Optional[RequestExtras] = None) -> List[Any]:
        items = _as_records(records, "The request contains no valid record sets.")
        return self._run(Action.CREATE, table, items, extras, by_ids=False)

    def create_record(self, table: str, record: Any, extras: Optional[RequestExtras] = None) -> Any:
        items = _as_records(record, "The request contains no valid record fields.")
        return self.create_records(table, items[:1], extras)[0]

    # replace

    def update_records(self, table: str, records: Any, extras: Optional[RequestExtras] = None) -> List[Any]:
        items = _as_records(records, "The request contains no valid record sets.")
        return self._run(Action.REPLACE, table, items, extras, by_ids=False)

    def update_record(self, table: str, record: Any, extras: Optional[RequestExtras] = None) -> Any:
        items = _as_records(record, "The request contains no valid record fields.")
        return self.update_records(table, items[:1], extras)[0]

    def update_records_by_ids(
        self, table: str, record: Any, ids: Any, extras: Optional[RequestExtras] = None
    ) -> List[Any]:
        updates = _as_update(record)
        return self._run(Action.REPLACE, table, _as_ids(ids), extras, by_ids=True, updates=updates)

    def update_record_by_id(
        self, table: str, record: Any, id: Any, extras: Optional[RequestExtras] = None
    ) -> Any:
        return self.update_records_by_ids(table, record, [id], extras)[0]

    def update_records_by_filter(
        self,
        table: str,
        record: Any,
        filter: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        extras: Optional[RequestExtras] = None,
    ) -> List[Any]:
        updates = _as_update(record)
        ids = self._ids_by_filter(table, filter, params, extras)
        if not ids:
            return []
        return self._run(Action.REPLACE, table, ids, extras, by_ids=True, updates=updates)

    # merge

    def merge_records(self, table: str, records: Any, extras: Optional[RequestExtras] = None) -> List[Any]:
        items = _as_records(records, "The request contains no valid record sets.")
        return self._run(Action.MERGE, table, items, extras, by_ids=False)

    def merge_record(self, table: str, record: Any, extras: Optional[RequestExtras] = None) -> Any:
        items = _as_records(record, "The request contains no valid record fields.")
        return self.merge_records(table, items[:1], extras)[0]

    def merge_records_by_ids(
        self, table: str, record: Any, ids: Any, extras: Optional[RequestExtras] = None
    ) -> List[Any]:
        updates = _as_update(record)
        return self._run(Action.MERGE, table, _as_ids(ids), extras, by_ids=True, updates=updates)

    def merge_record_by_id(
        self, table: str, record: Any, id: Any, extras: Optional[RequestExtras] = None
    ) -> Any:
        return self.merge_records_by_ids(table, record, [id], extras)[0]

    def merge_records_by_filter(
        self,
        table: str,
        record: Any,
        filter: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        extras: Optional[RequestExtras] = None,
    ) -> List[Any]:
        updates = _as_update(record)
        ids = self._ids_by_filter(table, filter, params, extras)
        if not ids:
            return []
        return self._run(Action.MERGE, table, ids, extras, by_ids=True, updates=updates)

    # delete

    def delete_records(self, table: str, records: Any, extras: Optional[RequestExtras] = None) -> List[Any]:
        items = _as_records(records, "The request contains no valid record sets.")
        return self._run(Action.DELETE, table, items, extras, by_ids=False)

    def delete_record(self, table: str, record: Any, extras: Optional[RequestExtras] = None) -> Any:
        items = _as_records(record, "The request contains no valid record fields.")
        return self.delete_records(table, items[:1], extras)[0]

    def delete_records_by_ids(self, table: str, ids: Any, extras: Optional[RequestExtras] = None) -> List[Any]:
        return self._run(Action.DELETE, table, _as_ids(ids), extras, by_ids=True)

    def delete_record_by_id(self, table: str, id: Any, extras: Optional[RequestExtras] = None) -> Any:
        return self.delete_records_by_ids(table, [id], extras)[0]

    def delete_records_by_filter(
        self,
        table: str,
        filter: Any,
        params: Optional[Mapping[str, Any]] = None,
        extras: Optional[RequestExtras] = None,
    ) -> List[Any]:
        ids = self._ids_by_filter(table, filter, params, extras)
        if not ids:
            return []
        return self._run(Action.DELETE, table, ids, extras, by_ids=True)

    # fetch

    def retrieve_records(self, table: str, records: Any, extras: Optional[RequestExtras] = None) -> List[Any]:
        items = _as_records(records, "The request contains no valid record sets.")
        return self._run(Action.FETCH, table, items, self._read_extras(extras), by_ids=False)

    def retrieve_record(self, table: str, record: Any, extras: Optional[RequestExtras] = None) -> Any:
        items = _as_records(record, "The request contains no valid record fields.")
        return self.retrieve_records(table, items[:1], extras)[0]

    def retrieve_records_by_ids(self, table: str, ids: Any, extras: Optional[RequestExtras] = None) -> List[Any]:
        return self._run(Action.FETCH, table, _as_ids(ids), self._read_extras(extras), by_ids=True)

    def retrieve_record_by_id(self, table: str, id: Any, extras: Optional[RequestExtras] = None) -> Any:
        return self.retrieve_records_by_ids(table, [id], extras)[0]

    def retrieve_records_by_filter(
        self,
        table: str,
        filter: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        extras: Optional[RequestExtras] = None,
    ) -> Dict[str, Any]:
        """Query a table; returns ``{"record": [...]}`` plus ``meta.count`` on request."""
        extras = self._read_extras(extras)
        table = self.catalog.correct_table_name(table)
        schema = self.schema.get(table)
        native = self.translator_factory().build(filter, params, schema.server_filters)

        limit = extras.limit
        if not limit or limit < 1 or limit > self.max_records_returned:
            limit = self.max_records_returned
        options = QueryOptions(limit=limit, offset=max(extras.offset or 0, 0), order=extras.order)
        rows = self.adapter.query(table, native, options)

        id_fields = parse_csv(extras.id_field) or list(self.adapter.capabilities.id_fields)
        out: Dict[str, Any] = {"record": clean_records(rows, extras.fields, id_fields)}
        if extras.include_count:
            out["meta"] = {"count": len(self.adapter.query(table, native, QueryOptions()))}
        logger.debug("records_queried", table=table, returned=len(out["record"]))
        return out

    # helpers

    @staticmethod
    def _read_extras(extras: Optional[RequestExtras]) -> RequestExtras:
        extras = extras or RequestExtras()
        if extras.fields is None:
            return RequestExtras(**{**extras.__dict__, "fields": "*"})
        return extras

    def _ids_by_filter(
        self,
        table: str,
        filter: Any,
        params: Optional[Mapping[str, Any]],
        extras: Optional[RequestExtras],
    ) -> List[Any]:
        extras = extras or RequestExtras()
        lookup = RequestExtras(**{**extras.__dict__, "fields": "", "include_count": False})
        found = self.retrieve_records_by_filter(table, filter, params, lookup)["record"]
        table = self.catalog.correct_table_name(table)
        ids_info = self.schema.get(table).ids_info(
            self.adapter.capabilities, parse_csv(extras.id_field), parse_csv(extras.id_type)
        )
        return [id for id in records_as_ids(found, ids_info) if id is not MISSING]


__all__ = ["RequestExtras", "RecordService"]
