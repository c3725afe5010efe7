"""Record shaping: field filtering, validation and computed fields.

``RecordShaper.parse`` turns a caller-supplied record into the record that is
written to the store. Only declared fields survive; each one runs through its
configured validators, computed fields (timestamps and user ids) are stamped,
and the result is checked against the table's server filters.
"""

from __future__ import annotations

import base64
import binascii
import re
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from urllib.parse import urlparse

from nosqlgate.logging import get_logger
from nosqlgate.service.errors import ConfigurationError, ForbiddenError, ValidationError
from nosqlgate.service.filters import ServerFilterSet, interpret_filter_value
from nosqlgate.service.lookups import CurrentUserProvider, LookupResolver, TemplateLookupResolver
from nosqlgate.service.predicate import compare

logger = get_logger(__name__)

_EMAIL_RE = re.compile(r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?(?:\.[A-Za-z0-9](?:[A-Za-z0-9-]{0,61}[A-Za-z0-9])?)+$")
_INT_RE = re.compile(r"^[+-]?\d+$")
_TRUE_WORDS = {"1", "true", "on", "yes"}
_FALSE_WORDS = {"0", "false", "off", "no", ""}


class ComputedField(str, Enum):
    PLAIN = "plain"
    CREATE_TIMESTAMP = "timestamp_on_create"
    UPDATE_TIMESTAMP = "timestamp_on_update"
    CREATE_USER_ID = "user_id_on_create"
    UPDATE_USER_ID = "user_id_on_update"

    @classmethod
    def from_type(cls, value: Optional[str]) -> "ComputedField":
        for member in cls:
            if member.value == value:
                return member
        return cls.PLAIN


@dataclass
class FieldInfo:
    name: str
    type: str = "string"
    required: bool = False
    validation: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    picklist: List[Any] = field(default_factory=list)

    @property
    def computed(self) -> ComputedField:
        return ComputedField.from_type(self.type)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FieldInfo":
        validation = data.get("validation") or {}
        # a bare list of validator names carries no per-validator settings
        if isinstance(validation, (list, tuple)):
            validation = {name: {} for name in validation}
        return cls(
            name=data["name"],
            type=data.get("type") or "string",
            required=bool(data.get("required", False)),
            validation={key: dict(config or {}) for key, config in validation.items()},
            picklist=list(data.get("picklist") or data.get("value") or []),
        )


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {} or value is False or value == 0 or value == "0"


def _check_read_only(info, value, config, for_update):
    return f"Field '{info.name}' is read only."


def _check_create_only(info, value, config, for_update):
    if for_update:
        return f"Field '{info.name}' can only be set during record creation."
    return None


def _check_not_null(info, value, config, for_update):
    if value is None:
        return f"Field '{info.name}' value can not be null."
    return None


def _check_not_empty(info, value, config, for_update):
    if value is not None and _is_empty(value):
        return f"Field '{info.name}' value can not be empty."
    return None


def _check_not_zero(info, value, config, for_update):
    if value is not None and not isinstance(value, bool) and str(value).strip() in {"0", "0.0"}:
        return f"Field '{info.name}' value can not be zero."
    return None


def _check_email(info, value, config, for_update):
    if value and not (isinstance(value, str) and _EMAIL_RE.match(value)):
        return f"Field '{info.name}' value must be a valid email address."
    return None


def _check_url(info, value, config, for_update):
    if not value:
        return None
    parsed = urlparse(str(value))
    sections = {str(s).lower() for s in config.get("sections") or []}
    valid = bool(parsed.scheme and parsed.netloc)
    if "path" in sections and not parsed.path:
        valid = False
    if "query" in sections and not parsed.query:
        valid = False
    if not valid:
        return f"Field '{info.name}' value must be a valid URL."
    return None


def _check_int(info, value, config, for_update):
    if value is None:
        return None
    message = f"Field '{info.name}' value is not in the valid range."
    if isinstance(value, bool):
        return message
    if isinstance(value, int):
        number = value
    elif isinstance(value, str) and _INT_RE.match(value.strip()):
        number = int(value.strip())
    else:
        return message
    bounds = config.get("range") or {}
    minimum, maximum = bounds.get("min"), bounds.get("max")
    if isinstance(minimum, int) and number < minimum:
        return message
    if isinstance(maximum, int) and number > maximum:
        return message
    return None


def _check_float(info, value, config, for_update):
    if value is None or (isinstance(value, (int, float)) and not isinstance(value, bool)):
        return None
    decimal = config.get("decimal") or "."
    try:
        float(str(value).replace(decimal, "."))
    except ValueError:
        return f"Field '{info.name}' value is not an acceptable float value."
    return None


def _check_boolean(info, value, config, for_update):
    if value is None or isinstance(value, bool):
        return None
    if str(value).strip().lower() in _TRUE_WORDS | _FALSE_WORDS:
        return None
    return f"Field '{info.name}' value is not an acceptable boolean value."


def _decode_pattern(info: FieldInfo, encoded: Any) -> re.Pattern:
    if not encoded:
        raise ConfigurationError(f"Invalid validation configuration: Field '{info.name}' has no 'regexp'.")
    try:
        pattern = base64.b64decode(encoded).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise ConfigurationError(
            f"Invalid validation configuration: Field '{info.name}' has an undecodable 'regexp'."
        ) from exc
    flags = 0
    # delimited form such as /^[a-z]+$/i
    delimited = re.match(r"^/(.*)/([imsx]*)$", pattern, re.DOTALL)
    if delimited:
        pattern = delimited.group(1)
        for flag in delimited.group(2):
            flags |= {"i": re.I, "m": re.M, "s": re.S, "x": re.X}[flag]
    try:
        return re.compile(pattern, flags)
    except re.error as exc:
        raise ConfigurationError(
            f"Invalid validation configuration: Field '{info.name}' has an invalid 'regexp'."
        ) from exc


def _check_match(info, value, config, for_update):
    pattern = _decode_pattern(info, config.get("regexp"))
    if value and not pattern.search(str(value)):
        return f"Field '{info.name}' value is invalid."
    return None


def _require_picklist(info: FieldInfo) -> List[Any]:
    if not info.picklist:
        raise ConfigurationError(
            f"Invalid validation configuration: Field '{info.name}' has no 'value' in schema settings."
        )
    return info.picklist


def _check_picklist(info, value, config, for_update):
    values = _require_picklist(info)
    if value and value not in values:
        return f"Field '{info.name}' value is invalid."
    return None


def _check_multi_picklist(info, value, config, for_update):
    values = _require_picklist(info)
    if not value:
        return None
    if isinstance(value, str):
        delimiter = config.get("delimiter") or ","
        selections = [part.strip() for part in value.split(delimiter) if part.strip()]
    else:
        selections = list(value)
    minimum = config.get("min", 1)
    maximum = config.get("max")
    if minimum and len(selections) < minimum:
        return f"Field '{info.name}' value does not contain enough selections."
    if maximum and len(selections) > maximum:
        return f"Field '{info.name}' value contains too many selections."
    if any(item not in values for item in selections):
        return f"Field '{info.name}' value is invalid."
    return None


Validator = Callable[[FieldInfo, Any, Mapping[str, Any], bool], Optional[str]]

VALIDATORS: Dict[str, Validator] = {
    "api_read_only": _check_read_only,
    "create_only": _check_create_only,
    "not_null": _check_not_null,
    "not_empty": _check_not_empty,
    "not_zero": _check_not_zero,
    "email": _check_email,
    "url": _check_url,
    "int": _check_int,
    "float": _check_float,
    "boolean": _check_boolean,
    "match": _check_match,
    "picklist": _check_picklist,
    "multi_picklist": _check_multi_picklist,
}


def validate_field_value(info: FieldInfo, value: Any, for_update: bool = False) -> bool:
    """Run a field's validators; False means the field is silently dropped."""
    for key, config in info.validation.items():
        check = VALIDATORS.get(key)
        if check is None:
            continue
        failure = check(info, value, config, for_update)
        if failure is None:
            continue
        on_fail = config.get("on_fail")
        if on_fail and str(on_fail).lower() == "ignore_field":
            return False
        raise ValidationError(on_fail or failure, detail={"field": info.name, "validation": key})
    return True


_OPERATOR_ALIASES = {
    "=": "eq",
    "==": "eq",
    "!=": "ne",
    "<>": "ne",
    ">": "gt",
    "<": "lt",
    ">=": "ge",
    "<=": "le",
    "gte": "ge",
    "lte": "le",
    "starts with": "starts_with",
    "ends with": "ends_with",
    "not in": "not_in",
    "is null": "is_null",
    "is not null": "is_not_null",
    "does exist": "does_exist",
    "does not exist": "does_not_exist",
}


def _as_list(value: Any) -> List[Any]:
    if isinstance(value, (list, tuple, set)):
        return list(value)
    if value is None:
        return []
    return [part.strip() for part in str(value).split(",")]


def compare_by_operator(operator: str, found: bool, left: Any, right: Any) -> bool:
    op = str(operator or "").strip().lower()
    op = _OPERATOR_ALIASES.get(op, op)
    if op in {"eq", "ne", "gt", "lt", "ge", "le"}:
        return compare(op, left, right)
    if op == "starts_with":
        return left is not None and str(left).startswith(str(right))
    if op == "ends_with":
        return left is not None and str(left).endswith(str(right))
    if op == "contains":
        return left is not None and str(right) in str(left)
    if op == "in":
        return any(compare("eq", left, item) for item in _as_list(right))
    if op == "not_in":
        return not any(compare("eq", left, item) for item in _as_list(right))
    if op == "is_null":
        return left is None
    if op == "is_not_null":
        return left is not None
    if op == "does_exist":
        return found
    if op == "does_not_exist":
        return not found
    raise ConfigurationError(
        "Invalid server-side filter configuration detected.", detail={"operator": operator}
    )


class RecordShaper:
    """Shapes records against field infos and server filters."""

    def __init__(
        self,
        user_provider: Optional[CurrentUserProvider] = None,
        resolver: Optional[LookupResolver] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.user_provider = user_provider
        self.resolver = resolver or TemplateLookupResolver(user_provider=user_provider)
        self.clock = clock

    def _current_user(self) -> Optional[str]:
        if self.user_provider is None:
            return None
        return self.user_provider.current_user_id()

    def parse(
        self,
        record: Mapping[str, Any],
        fields_info: Optional[Sequence[FieldInfo]],
        filter_info: Any = None,
        for_update: bool = False,
        old_record: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not fields_info:
            parsed = dict(record)
        else:
            parsed = {}
            for info in fields_info:
                if info.name in record:
                    value = record[info.name]
                    if isinstance(value, (list, dict)) and not value:
                        value = None
                    if validate_field_value(info, value, for_update):
                        parsed[info.name] = value
                elif (
                    info.required
                    and not for_update
                    and info.computed is ComputedField.PLAIN
                ):
                    raise ValidationError(
                        f"Required field '{info.name}' can not be omitted.",
                        detail={"field": info.name},
                    )
                self._apply_computed(info, parsed, for_update)

        if filter_info:
            self.validate_record(parsed, filter_info, for_update, old_record)
        return parsed

    def _apply_computed(self, info: FieldInfo, parsed: Dict[str, Any], for_update: bool) -> None:
        computed = info.computed
        if computed is ComputedField.CREATE_TIMESTAMP and not for_update:
            parsed[info.name] = int(self.clock())
        elif computed is ComputedField.UPDATE_TIMESTAMP:
            parsed[info.name] = int(self.clock())
        elif computed in (ComputedField.CREATE_USER_ID, ComputedField.UPDATE_USER_ID):
            if computed is ComputedField.CREATE_USER_ID and for_update:
                return
            user_id = self._current_user()
            if user_id is not None:
                parsed[info.name] = user_id

    def validate_record(
        self,
        record: Mapping[str, Any],
        filter_info: Any,
        for_update: bool = False,
        old_record: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Check a shaped record against the table's server filters.

        With ``and`` every filter must hold; with ``or`` one is enough. On
        update, filters on fields the caller is not setting are checked
        against the old record, and skipped when the old record lacks them.
        """
        filter_set = ServerFilterSet.from_value(filter_info)
        if filter_set is None or not filter_set.filters or not record:
            return

        combiner = filter_set.combiner
        old_record = old_record or {}
        checked = 0
        for entry in filter_set.filters:
            in_record = entry.name in record
            in_old = entry.name in old_record
            found = in_record or (for_update and in_old)
            if for_update and not found:
                continue
            value = record.get(entry.name) if in_record else (old_record.get(entry.name) if for_update else None)
            expected = interpret_filter_value(entry.value, self.resolver)
            checked += 1
            passed = compare_by_operator(entry.operator, found, value, expected)
            if combiner == "and" and not passed:
                logger.info("server_filter_denied", field=entry.name, operator=entry.operator)
                raise ForbiddenError("Denied access to some of the requested fields.")
            if combiner == "or" and passed:
                return
        if combiner == "or" and checked:
            logger.info("server_filter_denied", combiner="or", checked=checked)
            raise ForbiddenError("Denied access to some of the requested fields.")


__all__ = [
    "ComputedField",
    "FieldInfo",
    "RecordShaper",
    "VALIDATORS",
    "validate_field_value",
    "compare_by_operator",
]
