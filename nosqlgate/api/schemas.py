from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# Bounds on request bodies
MAX_JSON_DEPTH = 20
MAX_ARRAY_ITEMS = 1000

_TABLE_NAME = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.$()+/-]{0,254}$")


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject payloads nested deeper than ``max_depth`` or with oversized arrays."""
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "forbidden",
    "not_found",
    "conflict",
    "batch_error",
    "server_error",
    "configuration_error",
    "backend_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class TableCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=255)
    properties: Optional[Dict[str, Any]] = None

    @field_validator("name")
    @classmethod
    def _validate_name(cls, value: str) -> str:
        value = value.strip()
        if not _TABLE_NAME.match(value):
            raise ValueError("table name contains invalid characters")
        return value

    @field_validator("properties")
    @classmethod
    def _validate_properties(cls, value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if value is not None:
            _validate_json_depth(value)
        return value


class RecordsRequest(BaseModel):
    """Body of record writes.

    ``record`` carries one record or a list of them. For by-ids and by-filter
    writes it is the single set of fields applied to every matching record.
    ``ids``, ``filter`` and ``params`` may also be given in the body instead of
    the query string.
    """

    model_config = ConfigDict(extra="ignore")

    record: Union[List[Dict[str, Any]], Dict[str, Any], None] = None
    ids: Union[List[Any], str, None] = None
    filter: Optional[str] = None
    params: Optional[Dict[str, Any]] = None

    @model_validator(mode="after")
    def _validate_payload(self) -> "RecordsRequest":
        if self.record is not None:
            _validate_json_depth(self.record)
        if isinstance(self.ids, list) and len(self.ids) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(self.ids)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        return self

    def records(self) -> List[Dict[str, Any]]:
        if self.record is None:
            return []
        if isinstance(self.record, dict):
            return [self.record]
        return list(self.record)


class RecordsResponse(BaseModel):
    record: List[Any]
    meta: Optional[Dict[str, Any]] = None


class TableListResponse(BaseModel):
    table: List[Dict[str, Any]]
