"""Record and identifier helpers shared by the coordinator and the record service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union


FieldList = Union[str, Sequence[str], None]

# Returned by check_for_ids when a record carries no usable identifier.
MISSING = object()


@dataclass(frozen=True)
class IdInfo:
    name: str
    type: str = "string"
    required: bool = False


def parse_csv(value: FieldList) -> List[str]:
    """Split a comma separated list; sequences are stripped and kept."""
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.strip(",").split(",") if part.strip()]
    return [str(part).strip() for part in value if str(part).strip()]


def _as_fields(id_fields: FieldList) -> List[str]:
    return parse_csv(id_fields)


def require_more_fields(fields: FieldList, id_fields: FieldList = None) -> bool:
    """True when the caller asked for anything beyond the identifier fields."""
    ids = _as_fields(id_fields)
    if fields == "*" or not ids:
        return True
    requested = parse_csv(fields)
    if "*" in requested:
        return True
    return any(name not in ids for name in requested)


def clean_record(record: Mapping[str, Any], include: FieldList = "*", id_fields: FieldList = None) -> Dict[str, Any]:
    """Reduce a record to ``include`` plus its id fields.

    ``*`` keeps the whole record; an empty include keeps only the ids. Fields
    that are asked for but absent come back as ``None``.
    """
    if include == "*" or (not isinstance(include, str) and include and "*" in include):
        return dict(record)
    names = parse_csv(include)
    for name in _as_fields(id_fields):
        if name not in names:
            names.append(name)
    return {name: record.get(name) for name in names}


def clean_records(records: Iterable[Mapping[str, Any]], include: FieldList = "*", id_fields: FieldList = None) -> List[Dict[str, Any]]:
    return [clean_record(record, include, id_fields) for record in records]


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


def _coerce(value: Any, type_name: str) -> Any:
    if type_name == "int":
        if isinstance(value, bool):
            raise ValueError("boolean is not an id")
        return int(value)
    if type_name == "string":
        return str(value)
    return value


def check_for_ids(
    record: Any,
    ids_info: Sequence[IdInfo],
    params: Optional[Mapping[str, Any]] = None,
    on_create: bool = False,
    remove: bool = False,
) -> Any:
    """Pull the identifier out of a record, a raw scalar or a composite key.

    Returns the id (a scalar, or a dict for composite keys), ``None`` when a
    record being created carries no id and none is required, or ``MISSING``
    when a required identifier cannot be found. Required fields may also be
    supplied once for the whole request through ``params``.
    """
    if not ids_info:
        return None if on_create else MISSING
    params = params or {}

    if len(ids_info) == 1:
        info = ids_info[0]
        if isinstance(record, Mapping):
            value = record.pop(info.name, None) if remove and isinstance(record, dict) else record.get(info.name)
        else:
            value = record
        if not _is_blank(value):
            try:
                return _coerce(value, info.type)
            except (TypeError, ValueError):
                return MISSING
        if on_create and not (info.required and _is_blank(params.get(info.name))):
            return None
        return MISSING

    out: Dict[str, Any] = {}
    row_field = ids_info[-1].name
    for info in ids_info:
        if isinstance(record, Mapping):
            value = record.pop(info.name, None) if remove and isinstance(record, dict) else record.get(info.name)
        else:
            value = None
        if not _is_blank(value):
            try:
                out[info.name] = _coerce(value, info.type)
            except (TypeError, ValueError):
                return MISSING
            continue
        if on_create and info.required and _is_blank(params.get(info.name)):
            if not isinstance(record, Mapping) and not _is_blank(record) and info.name == row_field:
                out[info.name] = _coerce(record, info.type)
            else:
                return MISSING
    if out:
        return out
    return None if on_create else MISSING


def records_as_ids(
    records: Iterable[Any],
    ids_info: Sequence[IdInfo],
    params: Optional[Mapping[str, Any]] = None,
    on_create: bool = False,
    remove: bool = False,
) -> List[Any]:
    return [check_for_ids(record, ids_info, params, on_create, remove) for record in records]


def remove_ids(record: Dict[str, Any], id_fields: FieldList) -> Dict[str, Any]:
    for name in _as_fields(id_fields):
        record.pop(name, None)
    return record


__all__ = [
    "MISSING",
    "IdInfo",
    "parse_csv",
    "require_more_fields",
    "clean_record",
    "clean_records",
    "check_for_ids",
    "records_as_ids",
    "remove_ids",
]
