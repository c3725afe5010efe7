from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from jsonschema import Draft202012Validator

from nosqlgate.logging import get_logger
from nosqlgate.service.errors import ConfigurationError
from nosqlgate.service.filters import ServerFilterSet
from nosqlgate.service.shaper import FieldInfo
from nosqlgate.storage.common import IdInfo, parse_csv
from nosqlgate.storage.models import BackendCapabilities

logger = get_logger(__name__)

_NAMES = {"anyOf": [{"type": "string"}, {"type": "array", "items": {"type": "string"}}]}

SCHEMA_FILE_SCHEMA: Dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "additionalProperties": {
        "type": "object",
        "properties": {
            "id_field": _NAMES,
            "id_type": _NAMES,
            "fields": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "name": {"type": "string", "minLength": 1},
                        "type": {"type": "string"},
                        "required": {"type": "boolean"},
                        "validation": {"anyOf": [{"type": "object"}, {"type": "array"}]},
                        "picklist": {"type": "array"},
                        "value": {"type": "array"},
                    },
                    "required": ["name"],
                },
            },
            "server_filters": {
                "type": "object",
                "properties": {
                    "filter_op": {"type": "string"},
                    "filters": {
                        "type": "array",
                        "items": {
                            "type": "object",
                            "properties": {
                                "name": {"type": "string"},
                                "operator": {"type": "string"},
                                "value": {},
                            },
                            "required": ["name", "operator"],
                        },
                    },
                },
            },
        },
    },
}


@dataclass
class TableSchema:
    """Per-table configuration: identifier fields, field infos and server filters."""

    name: str
    id_fields: Tuple[str, ...] = ()
    id_types: Tuple[str, ...] = ()
    fields: List[FieldInfo] = field(default_factory=list)
    server_filters: Optional[ServerFilterSet] = None

    @classmethod
    def from_dict(cls, name: str, data: Mapping[str, Any]) -> "TableSchema":
        return cls(
            name=name,
            id_fields=tuple(parse_csv(data.get("id_field"))),
            id_types=tuple(parse_csv(data.get("id_type"))),
            fields=[FieldInfo.from_dict(item) for item in data.get("fields") or []],
            server_filters=ServerFilterSet.from_value(data.get("server_filters")),
        )

    def ids_info(
        self,
        capabilities: BackendCapabilities,
        id_fields: Optional[Sequence[str]] = None,
        id_types: Optional[Sequence[str]] = None,
    ) -> List[IdInfo]:
        """Identifier descriptions, request overrides first, then this schema, then the store."""
        names = list(id_fields or self.id_fields or capabilities.id_fields)
        types = list(id_types or self.id_types)
        declared = {info.name: info for info in self.fields}
        out = []
        for index, name in enumerate(names):
            type_name = types[index] if index < len(types) else None
            if type_name is None and name in declared and declared[name].type in {"int", "string"}:
                type_name = declared[name].type
            required = name in declared and declared[name].required
            if len(names) > 1 or not capabilities.assigns_ids:
                required = True
            out.append(IdInfo(name=name, type=type_name or "string", required=required))
        return out


class SchemaRegistry:
    """Table schemas loaded from a JSON file, looked up by table name."""

    def __init__(self, tables: Optional[Mapping[str, TableSchema]] = None) -> None:
        self._tables: Dict[str, TableSchema] = dict(tables or {})

    @staticmethod
    def validate(data: Any) -> None:
        validator = Draft202012Validator(SCHEMA_FILE_SCHEMA)
        errors = sorted(validator.iter_errors(data), key=lambda e: list(e.path))
        if errors:
            messages = [
                f"{'/'.join(str(p) for p in error.path) or '<root>'}: {error.message}" for error in errors
            ]
            raise ConfigurationError("Invalid table schema configuration.", detail={"errors": messages})

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SchemaRegistry":
        cls.validate(data)
        return cls({name: TableSchema.from_dict(name, entry) for name, entry in data.items()})

    @classmethod
    def from_file(cls, path: Union[str, Path, None]) -> "SchemaRegistry":
        if not path:
            return cls()
        source = Path(path)
        try:
            data = json.loads(source.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise ConfigurationError(
                "Table schema file not found.", detail={"path": str(source)}
            ) from exc
        except json.JSONDecodeError as exc:
            raise ConfigurationError(
                "Table schema file is not valid JSON.",
                detail={"path": str(source), "line": exc.lineno, "error": exc.msg},
            ) from exc
        registry = cls.from_dict(data)
        logger.info("schema_registry_loaded", path=str(source), tables=len(registry._tables))
        return registry

    def get(self, table: str) -> TableSchema:
        """Schema for ``table``; unknown tables get an empty schema."""
        if table in self._tables:
            return self._tables[table]
        lowered = table.lower()
        for name, schema in self._tables.items():
            if name.lower() == lowered:
                return schema
        return TableSchema(name=table)

    def table_names(self) -> List[str]:
        return list(self._tables)

    def __contains__(self, table: str) -> bool:
        return table in self._tables


__all__ = ["SCHEMA_FILE_SCHEMA", "TableSchema", "SchemaRegistry"]
