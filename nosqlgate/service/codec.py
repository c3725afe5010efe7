"""Typed-value codec for stores that keep every attribute as a string.

Values that are not plain strings are written with a short type marker so they
come back with their original type:

    #DFJ#  JSON array or object
    #DFB#  boolean ("1" / "0"; an empty payload is false)
    #DFF#  float
    #DFI#  integer

Unmarked strings decode as themselves, so legacy untagged data stays readable.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Iterable, List, Mapping

from nosqlgate.service.errors import DecodeError

JSON_MARKER = "#DFJ#"
BOOL_MARKER = "#DFB#"
FLOAT_MARKER = "#DFF#"
INT_MARKER = "#DFI#"

_MARKER_LEN = 5


def encode_value(value: Any) -> Any:
    """Encode one application value into its wire string."""
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple, dict)):
        return JSON_MARKER + json.dumps(value, separators=(",", ":"))
    # bool is an int subclass
    if isinstance(value, bool):
        return BOOL_MARKER + ("1" if value else "0")
    if isinstance(value, float):
        return FLOAT_MARKER + repr(value)
    if isinstance(value, int):
        return INT_MARKER + str(value)
    return value


def decode_value(value: Any) -> Any:
    """Decode a wire string back into the value it was encoded from."""
    if not isinstance(value, str) or len(value) < _MARKER_LEN:
        return value
    marker, payload = value[:_MARKER_LEN], value[_MARKER_LEN:]
    if marker == JSON_MARKER:
        try:
            return json.loads(payload)
        except json.JSONDecodeError as exc:
            raise DecodeError(
                "Stored value has a malformed JSON payload.",
                detail={"marker": marker, "position": exc.pos},
            ) from exc
    if marker == BOOL_MARKER:
        return payload.strip().lower() in {"1", "true"}
    if marker == FLOAT_MARKER:
        try:
            return float(payload)
        except ValueError as exc:
            raise DecodeError(
                "Stored value has a malformed float payload.",
                detail={"marker": marker},
            ) from exc
    if marker == INT_MARKER:
        try:
            return int(payload)
        except ValueError as exc:
            raise DecodeError(
                "Stored value has a malformed integer payload.",
                detail={"marker": marker},
            ) from exc
    return value


def encode_attributes(record: Mapping[str, Any], replace: bool = False) -> List[Dict[str, Any]]:
    """Flatten a record into ``Name``/``Value`` attribute pairs.

    A list value becomes one pair per element; only the first pair of a field
    carries the ``Replace`` flag so the remaining elements are appended to it.
    ``None`` values produce no pair.
    """
    out: List[Dict[str, Any]] = []
    for name, value in (record or {}).items():
        if value is None:
            continue
        if isinstance(value, list):
            for index, part in enumerate(value):
                pair = {"Name": name, "Value": encode_value(part)}
                if index == 0:
                    pair["Replace"] = replace
                out.append(pair)
        else:
            out.append({"Name": name, "Value": encode_value(value), "Replace": replace})
    return out


def decode_attributes(pairs: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
    """Rebuild a record from attribute pairs.

    The first value seen for a name is stored as a scalar; any further value for
    the same name turns the field into a list, or is appended when the field
    already holds a list. A field written from a one-element list therefore
    reads back as a scalar.
    """
    out: Dict[str, Any] = {}
    for pair in pairs or ():
        name = pair.get("Name")
        if not name:
            continue
        value = decode_value(pair.get("Value"))
        if name in out:
            current = out[name]
            if isinstance(current, list):
                current.append(value)
            else:
                out[name] = [current, value]
        else:
            out[name] = value
    return out


__all__ = [
    "JSON_MARKER",
    "BOOL_MARKER",
    "FLOAT_MARKER",
    "INT_MARKER",
    "encode_value",
    "decode_value",
    "encode_attributes",
    "decode_attributes",
]
