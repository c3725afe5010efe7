from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Sequence, Tuple

from nosqlgate.service.filters import TOKEN, FilterDialect


class Action(str, Enum):
    """REST-level record actions a transaction can carry."""

    CREATE = "create"
    REPLACE = "replace"
    MERGE = "merge"
    DELETE = "delete"
    FETCH = "fetch"

    @property
    def past_tense(self) -> str:
        return {
            Action.CREATE: "created",
            Action.REPLACE: "updated",
            Action.MERGE: "patched",
            Action.DELETE: "deleted",
            Action.FETCH: "retrieved",
        }[self]


@dataclass(frozen=True)
class BackendCapabilities:
    """What a backend adapter can do natively.

    ``max_filter_clauses`` caps the comparisons allowed in one query filter;
    ``None`` means unbounded. ``partition_field`` is set for stores whose
    records are addressed by a partition key plus ``id_fields[-1]``.
    """

    name: str
    id_fields: Tuple[str, ...] = ("id",)
    batch_actions: FrozenSet[Action] = frozenset()
    dialect: FilterDialect = TOKEN
    max_filter_clauses: Optional[int] = None
    partition_field: Optional[str] = None
    assigns_ids: bool = True

    def supports_batch(self, action: Action) -> bool:
        return action in self.batch_actions

    @property
    def row_field(self) -> str:
        return self.id_fields[-1]

    @property
    def composite(self) -> bool:
        return len(self.id_fields) > 1


@dataclass
class QueryOptions:
    fields: Optional[Sequence[str]] = None
    limit: Optional[int] = None
    offset: int = 0
    order: Optional[str] = None


@dataclass
class TableInfo:
    name: str
    properties: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, **self.properties}


def sort_records(records: List[Dict[str, Any]], order: Optional[str]) -> List[Dict[str, Any]]:
    """Order records by a ``field [asc|desc], ...`` clause, stable and None-last."""
    if not order:
        return records
    ordered = list(records)
    for part in reversed([p.strip() for p in order.split(",") if p.strip()]):
        pieces = part.split()
        name = pieces[0]
        descending = len(pieces) > 1 and pieces[1].lower() == "desc"
        present = [r for r in ordered if r.get(name) is not None]
        missing = [r for r in ordered if r.get(name) is None]
        present.sort(key=lambda r: _sort_key(r.get(name)), reverse=descending)
        ordered = present + missing
    return ordered


def _sort_key(value: Any) -> Tuple[int, Any]:
    if isinstance(value, bool):
        return (0, int(value))
    if isinstance(value, (int, float)):
        return (0, value)
    return (1, str(value))


def page_records(records: List[Dict[str, Any]], options: Optional[QueryOptions]) -> List[Dict[str, Any]]:
    """Apply order, offset and limit from query options."""
    if options is None:
        return records
    records = sort_records(records, options.order)
    start = max(options.offset or 0, 0)
    if options.limit:
        return records[start : start + options.limit]
    return records[start:]
