"""Per-request batch and rollback coordination over one backend adapter.

A coordinator drives a single REST action (create, replace, merge, delete or
fetch) for one table. Records are either written immediately or, when the
adapter can batch the action and the caller asked for neither rollback nor
continue-on-error, collected in a ``BatchContext`` and sent in one call at
commit time. Immediate writes made with rollback requested leave an entry in
the rollback log so they can be undone in reverse order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from nosqlgate.logging import get_logger
from nosqlgate.service.errors import BadRequestError, BatchError, NotFoundError
from nosqlgate.service.filters import FilterTranslator, ServerFilterSet
from nosqlgate.service.predicate import compile_filter, count_comparisons
from nosqlgate.service.shaper import FieldInfo, RecordShaper
from nosqlgate.storage.base import BackendAdapter, Record, record_id, with_id
from nosqlgate.storage.common import FieldList, clean_record, remove_ids, require_more_fields
from nosqlgate.storage.models import Action, QueryOptions

logger = get_logger(__name__)


class TransactionState(str, Enum):
    INIT = "init"
    ACCUMULATING = "accumulating"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass
class RollbackEntry:
    action: Action
    id: Any
    record: Optional[Record] = None


@dataclass
class BatchContext:
    table: str
    batch_records: List[Record] = field(default_factory=list)
    batch_ids: List[Any] = field(default_factory=list)
    rollback_log: List[RollbackEntry] = field(default_factory=list)

    @property
    def pending(self) -> bool:
        return bool(self.batch_records or self.batch_ids)

    def clear_batch(self) -> None:
        self.batch_records = []
        self.batch_ids = []


@dataclass
class TransactionExtras:
    """Request-wide options threaded through every record of a transaction."""

    fields: FieldList = None
    fields_info: List[FieldInfo] = field(default_factory=list)
    server_filters: Optional[ServerFilterSet] = None
    updates: Optional[Dict[str, Any]] = None
    partition_key: Any = None
    continue_on_error: bool = False


class TransactionCoordinator:
    def __init__(
        self,
        adapter: BackendAdapter,
        action: Action,
        shaper: Optional[RecordShaper] = None,
        translator: Optional[FilterTranslator] = None,
    ) -> None:
        self.adapter = adapter
        self.action = Action(action)
        self.shaper = shaper or RecordShaper()
        self.translator = translator or FilterTranslator(adapter.capabilities.dialect)
        self.context: Optional[BatchContext] = None
        self.state = TransactionState.INIT

    @property
    def capabilities(self):
        return self.adapter.capabilities

    @property
    def id_fields(self) -> Sequence[str]:
        return self.capabilities.id_fields

    def init_transaction(self, table: str) -> BatchContext:
        self.context = BatchContext(table=table)
        self.state = TransactionState.ACCUMULATING
        return self.context

    def _context(self) -> BatchContext:
        if self.context is None:
            raise RuntimeError("init_transaction must be called before use")
        return self.context

    # shaping helpers

    def _clean(self, record: Mapping[str, Any], extras: TransactionExtras) -> Record:
        return clean_record(record, extras.fields, self.id_fields)

    def _require_more(self, extras: TransactionExtras) -> bool:
        return require_more_fields(extras.fields, self.id_fields)

    def _full_id(self, id: Any, extras: TransactionExtras) -> Any:
        partition_field = self.capabilities.partition_field
        if partition_field and extras.partition_key not in (None, ""):
            if isinstance(id, Mapping):
                if partition_field not in id:
                    return {partition_field: extras.partition_key, **id}
            elif id is not None:
                return {partition_field: extras.partition_key, self.capabilities.row_field: id}
        return id

    def _shape(
        self,
        record: Mapping[str, Any],
        extras: TransactionExtras,
        for_update: bool,
        old_record: Optional[Mapping[str, Any]] = None,
    ) -> Record:
        source = remove_ids(dict(record or {}), self.id_fields)
        parsed = self.shaper.parse(
            source, extras.fields_info, extras.server_filters, for_update, old_record
        )
        if not parsed:
            raise BadRequestError("No valid fields were found in record.")
        return parsed

    def _has_server_filters(self, extras: TransactionExtras) -> bool:
        filter_set = ServerFilterSet.from_value(extras.server_filters)
        return bool(filter_set and filter_set.filters)

    def _visible(self, record: Mapping[str, Any], extras: TransactionExtras) -> bool:
        if not self._has_server_filters(extras):
            return True
        native = self.translator.build_server_filter(extras.server_filters)
        return compile_filter(native)(record)

    def _defer(self, single: bool, continue_on_error: bool, rollback: bool, extras: TransactionExtras) -> bool:
        if (
            self.action is Action.FETCH
            and self.capabilities.partition_field
            and extras.partition_key not in (None, "")
        ):
            return True
        return self.capabilities.supports_batch(self.action) and not (single or continue_on_error or rollback)

    # accumulation

    def add_to_transaction(
        self,
        record: Optional[Mapping[str, Any]] = None,
        id: Any = None,
        extras: Optional[TransactionExtras] = None,
        rollback: bool = False,
        continue_on_error: bool = False,
        single: bool = False,
    ) -> Optional[Record]:
        """Shape one record and either queue it or execute it right away.

        Returns the record as the caller will see it, reduced to the requested
        fields with the id fields always present.
        """
        ctx = self._context()
        extras = extras or TransactionExtras()
        id = self._full_id(id, extras)
        defer = self._defer(single, continue_on_error, rollback, extras)
        handler: Callable[..., Optional[Record]] = {
            Action.CREATE: self._add_create,
            Action.REPLACE: self._add_replace,
            Action.MERGE: self._add_merge,
            Action.DELETE: self._add_delete,
            Action.FETCH: self._add_fetch,
        }[self.action]
        return handler(ctx, record, id, extras, defer, rollback)

    def _add_create(self, ctx, record, id, extras, defer, rollback):
        parsed = self._shape(record, extras, for_update=False)
        row = with_id(self.capabilities, id, parsed) if id not in (None, {}) else parsed
        if defer:
            ctx.batch_records.append(row)
            return self._clean(row, extras)
        created = self.adapter.insert(ctx.table, row)
        if rollback:
            ctx.rollback_log.append(RollbackEntry(Action.CREATE, record_id(self.capabilities, created)))
        return self._clean(created, extras)

    def _write_source(self, record, id, extras) -> Dict[str, Any]:
        if extras.updates is not None:
            return dict(extras.updates)
        return dict(record or {})

    def _add_replace(self, ctx, record, id, extras, defer, rollback):
        old = None
        if not defer and (rollback or self._has_server_filters(extras)):
            old = self.adapter.get(ctx.table, id)
        parsed = self._shape(self._write_source(record, id, extras), extras, True, old)
        row = with_id(self.capabilities, id, parsed)
        if defer:
            ctx.batch_records.append(row)
            return self._clean(row, extras)
        updated = self.adapter.update(ctx.table, id, row)
        if rollback:
            ctx.rollback_log.append(RollbackEntry(Action.REPLACE, id, old))
        return self._clean(updated, extras)

    def _add_merge(self, ctx, record, id, extras, defer, rollback):
        old = None
        if not defer and (rollback or self._has_server_filters(extras)):
            old = self.adapter.get(ctx.table, id)
        parsed = self._shape(self._write_source(record, id, extras), extras, True, old)
        row = with_id(self.capabilities, id, parsed)
        if defer:
            ctx.batch_records.append(row)
            return self._clean(row, extras)
        merged = self.adapter.merge(ctx.table, id, row)
        if rollback:
            ctx.rollback_log.append(RollbackEntry(Action.MERGE, id, old))
        if self._require_more(extras) and old is not None:
            return self._clean({**old, **merged}, extras)
        return self._clean(merged, extras)

    def _add_delete(self, ctx, record, id, extras, defer, rollback):
        if defer:
            ctx.batch_ids.append(id)
            return self._clean(with_id(self.capabilities, id, {}), extras)
        if self._has_server_filters(extras):
            current = self.adapter.get(ctx.table, id)
            if not self._visible(current, extras):
                raise NotFoundError(f"Record with id '{id}' not found.", detail={"id": id})
        deleted = self.adapter.delete(ctx.table, id)
        if rollback:
            ctx.rollback_log.append(RollbackEntry(Action.DELETE, id, deleted))
        if self._require_more(extras):
            return self._clean(deleted, extras)
        return self._clean(with_id(self.capabilities, id, {}), extras)

    def _add_fetch(self, ctx, record, id, extras, defer, rollback):
        if defer:
            ctx.batch_ids.append(id)
            return self._clean(with_id(self.capabilities, id, {}), extras)
        found = self.adapter.get(ctx.table, id)
        if not self._visible(found, extras):
            raise NotFoundError(f"Record with id '{id}' not found.", detail={"id": id})
        return self._clean(found, extras)

    # commit

    def _id_key(self, id: Any) -> tuple:
        if isinstance(id, Mapping):
            return tuple(str(id.get(name)) for name in self.id_fields if name in id)
        return (str(id),)

    def display_id(self, id: Any) -> Any:
        if isinstance(id, Mapping) and self.capabilities.row_field in id:
            return id[self.capabilities.row_field]
        return id

    def _row_key(self, row: Mapping[str, Any], like: Any) -> tuple:
        if isinstance(like, Mapping):
            return tuple(str(row.get(name)) for name in self.id_fields if name in like)
        return (str(row.get(self.capabilities.row_field)),)

    def fetch_by_ids(self, table: str, ids: Sequence[Any], extras: TransactionExtras) -> List[Record]:
        """Fetch full records for ``ids`` with capped id filters, in ``ids`` order.

        Ids that match nothing (or are hidden by server filters) are left out.
        """
        return [row for row in self._fetch_aligned(table, ids, extras) if row is not None]

    def _fetch_aligned(self, table: str, ids: Sequence[Any], extras: TransactionExtras) -> List[Optional[Record]]:
        """Like :meth:`fetch_by_ids` but with ``None`` standing in for each miss."""
        if not ids:
            return []
        caps = self.capabilities
        partition_key = extras.partition_key if caps.partition_field else None
        shared_partition = partition_key not in (None, "") and all(
            isinstance(id, Mapping)
            and id.get(caps.partition_field) == partition_key
            and set(id) <= {caps.partition_field, caps.row_field}
            for id in ids
        )
        if shared_partition:
            plain_ids = [id.get(caps.row_field) for id in ids]
        else:
            partition_key = None
            plain_ids = list(ids)
        max_clauses = caps.max_filter_clauses
        if max_clauses:
            # server filters are ANDed into every group and share its comparison cap
            server_cost = count_comparisons(self.translator.build_server_filter(extras.server_filters))
            max_clauses = max(2, max_clauses - server_cost)
        width = max((len(id) for id in plain_ids if isinstance(id, Mapping)), default=1)
        if max_clauses and width > 1:
            # each composite id costs one comparison per key field
            max_clauses = max(2, max_clauses // width)
        groups = self.translator.build_ids_filter(
            plain_ids,
            caps.row_field,
            partition_key=partition_key,
            partition_field=caps.partition_field or "PartitionKey",
            max_clauses=max_clauses,
        )
        rows: List[Record] = []
        for group in groups:
            native = self.translator.build(group, None, extras.server_filters)
            rows.extend(self.adapter.query(table, native, QueryOptions()))

        by_key: Dict[tuple, Record] = {}
        for row in rows:
            by_key.setdefault(self._row_key(row, ids[0]), row)
        return [by_key.get(self._id_key(id)) for id in ids]

    def commit_transaction(self, extras: Optional[TransactionExtras] = None) -> Optional[List[Record]]:
        """Send everything queued so far in one native batch.

        Returns ``None`` without touching the backend when nothing was queued.
        A fetch committed with ``continue_on_error`` keeps one slot per queued
        id, ``None`` where the record was not found.
        """
        ctx = self._context()
        if not ctx.pending:
            return None
        extras = extras or TransactionExtras()
        records, ids = list(ctx.batch_records), list(ctx.batch_ids)
        ctx.clear_batch()
        table = ctx.table
        require_more = self._require_more(extras)

        if self.action is Action.CREATE:
            requested = len(records)
            output = self.adapter.batch_insert(table, records)
        elif self.action is Action.REPLACE:
            requested = len(records)
            output = self.adapter.batch_update(table, records)
        elif self.action is Action.MERGE:
            requested = len(records)
            output = self.adapter.batch_merge(table, records)
            if require_more and output:
                output = self.fetch_by_ids(table, [record_id(self.capabilities, r) for r in output], extras)
        elif self.action is Action.DELETE:
            requested = len(ids)
            before = self.fetch_by_ids(table, ids, extras) if require_more else None
            output = self.adapter.batch_delete(table, ids)
            if before is not None:
                deleted = {self._id_key(record_id(self.capabilities, r)) for r in output}
                output = [r for r in before if self._id_key(record_id(self.capabilities, r)) in deleted]
        else:
            requested = len(ids)
            aligned = self._fetch_aligned(table, ids, extras)
            missing = [id for id, row in zip(ids, aligned) if row is None]
            if missing and requested == 1:
                self.state = TransactionState.COMMITTED
                raise NotFoundError(
                    f"Record with id '{self.display_id(missing[0])}' not found.",
                    detail={"table": table, "id": self.display_id(missing[0])},
                )
            if extras.continue_on_error:
                self.state = TransactionState.COMMITTED
                logger.info(
                    "batch_committed",
                    table=table,
                    action=self.action.value,
                    requested=requested,
                    processed=requested - len(missing),
                )
                return [None if row is None else self._clean(row, extras) for row in aligned]
            output = [row for row in aligned if row is not None]

        self.state = TransactionState.COMMITTED
        logger.info(
            "batch_committed",
            table=table,
            action=self.action.value,
            requested=requested,
            processed=len(output),
        )
        if len(output) < requested and not extras.continue_on_error:
            raise BatchError(
                f"Batch Error: Not all records could be {self.action.past_tense}.",
                detail={"table": table, "requested": requested, "processed": len(output)},
            )
        return [self._clean(record, extras) for record in output]

    # rollback

    def _undo(self, step: str, fn: Callable[..., Any], *args: Any) -> bool:
        try:
            fn(*args)
            return True
        except Exception as exc:
            logger.error(
                "rollback_failed",
                table=self.context.table if self.context else None,
                action=self.action.value,
                step=step,
                error=str(exc),
            )
            return False

    def rollback_transaction(self) -> bool:
        """Undo logged writes in reverse order; failures are logged, not raised."""
        ctx = self._context()
        entries = list(reversed(ctx.rollback_log))
        ctx.rollback_log = []
        ctx.clear_batch()
        self.state = TransactionState.ROLLED_BACK
        if not entries:
            return True

        caps = self.capabilities
        table = ctx.table
        ok = True
        if self.action is Action.CREATE:
            ids = [entry.id for entry in entries]
            if caps.supports_batch(Action.DELETE):
                ok = self._undo("batch_delete", self.adapter.batch_delete, table, ids)
            else:
                for id in ids:
                    ok = self._undo("delete", self.adapter.delete, table, id) and ok
        elif self.action in (Action.REPLACE, Action.MERGE):
            restorable = [entry for entry in entries if entry.record is not None]
            if caps.supports_batch(Action.REPLACE):
                olds = [with_id(caps, entry.id, entry.record) for entry in restorable]
                ok = self._undo("batch_update", self.adapter.batch_update, table, olds)
            else:
                for entry in restorable:
                    old = with_id(caps, entry.id, entry.record)
                    ok = self._undo("update", self.adapter.update, table, entry.id, old) and ok
        elif self.action is Action.DELETE:
            restored = [with_id(caps, entry.id, entry.record) for entry in entries if entry.record is not None]
            if caps.supports_batch(Action.CREATE):
                ok = self._undo("batch_insert", self.adapter.batch_insert, table, restored)
            else:
                for record in restored:
                    ok = self._undo("insert", self.adapter.insert, table, record) and ok

        logger.info("transaction_rolled_back", table=table, action=self.action.value, entries=len(entries), ok=ok)
        return ok


__all__ = [
    "TransactionState",
    "RollbackEntry",
    "BatchContext",
    "TransactionExtras",
    "TransactionCoordinator",
]
