"""Translation of portable filter expressions into backend filter syntax.

A portable filter is a string such as ``status eq 'active' && age >= 21``.
Logical operators are normalised first (``||``, ``&&`` and upper-case words
become ``or`` / ``and``), then comparison operators are mapped to the tokens of
the target dialect and finally the null rule turns ``x = null`` into
``x is null``. Quoted literals are never rewritten.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable, List, Mapping, Optional, Sequence, Union

from nosqlgate.logging import get_logger
from nosqlgate.service.errors import BadRequestError, ConfigurationError
from nosqlgate.service.lookups import LookupResolver, TemplateLookupResolver

logger = get_logger(__name__)

_COMPARISON_ALIASES = {
    "=": "eq",
    "==": "eq",
    "!=": "ne",
    "<>": "ne",
    ">=": "ge",
    "<=": "le",
    ">": "gt",
    "<": "lt",
    "eq": "eq",
    "ne": "ne",
    "ge": "ge",
    "gte": "ge",
    "le": "le",
    "lte": "le",
    "gt": "gt",
    "lt": "lt",
}

_QUOTED = r"'(?:[^']|'')*'|\"(?:[^\"]|\"\")*\""

_LOGICAL_RE = re.compile(
    rf"(?P<q>{_QUOTED})|(?P<op>\|\||&&|\b(?:and|or|not|nor)\b)", re.IGNORECASE
)
# Longer symbols come first so ">=" is never read as ">" followed by "=".
_COMPARISON_RE = re.compile(
    rf"(?P<q>{_QUOTED})|(?P<op>==|!=|<>|>=|<=|>|<|=|\b(?:gte|lte|eq|ne|ge|le|gt|lt)\b)",
    re.IGNORECASE,
)
_NULL_RE = re.compile(
    rf"(?P<q>{_QUOTED})|(?P<op>!=|(?<![<>!=])=|\bne\b|\beq\b)\s*(?P<null>null)\b", re.IGNORECASE
)
_NUMERIC_RE = re.compile(r"^[+-]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?$")
_INTEGER_RE = re.compile(r"^[+-]?\d+$")


@dataclass(frozen=True)
class FilterDialect:
    """Native comparison tokens of one backend's filter language."""

    name: str
    comparisons: Mapping[str, str]

    def token(self, canonical: str) -> str:
        return self.comparisons[canonical]


SYMBOLIC = FilterDialect(
    "symbolic",
    {"eq": "=", "ne": "!=", "ge": ">=", "le": "<=", "gt": ">", "lt": "<"},
)
TOKEN = FilterDialect(
    "token",
    {"eq": "eq", "ne": "ne", "ge": "ge", "le": "le", "gt": "gt", "lt": "lt"},
)


@dataclass
class ServerFilter:
    name: str
    operator: str
    value: Any = None


@dataclass
class ServerFilterSet:
    """Access-policy filters merged into every query on a table."""

    filters: List[ServerFilter] = field(default_factory=list)
    filter_op: str = "and"

    @classmethod
    def from_value(
        cls, value: Union["ServerFilterSet", Mapping[str, Any], None]
    ) -> Optional["ServerFilterSet"]:
        if value is None or isinstance(value, ServerFilterSet):
            return value
        entries = []
        for raw in value.get("filters") or []:
            if isinstance(raw, ServerFilter):
                entries.append(raw)
                continue
            entries.append(
                ServerFilter(
                    name=raw.get("name") or "",
                    operator=raw.get("operator") or "",
                    value=raw.get("value"),
                )
            )
        return cls(filters=entries, filter_op=value.get("filter_op") or "and")

    @property
    def combiner(self) -> str:
        """The validated, lower-cased combiner; anything but and/or is rejected."""
        combiner = str(self.filter_op or "").strip().lower()
        if combiner not in {"and", "or"}:
            raise ConfigurationError(
                "Invalid server-side filter configuration detected.",
                detail={"filter_op": self.filter_op},
            )
        return combiner


def _pad(match: re.Match, token: str, group: Any = "op") -> str:
    """Surround a replacement with spaces where its neighbours are not blank."""
    text = match.string
    start, end = match.span(group)
    prefix = " " if start > 0 and not text[start - 1].isspace() else ""
    suffix = " " if end < len(text) and not text[end].isspace() else ""
    return f"{prefix}{token}{suffix}"


def is_numeric(value: str) -> bool:
    return bool(_NUMERIC_RE.match(value.strip()))


def to_number(value: str) -> Union[int, float]:
    value = value.strip()
    return int(value) if _INTEGER_RE.match(value) else float(value)


def quote_literal(value: Any) -> str:
    """Render a Python value as a filter literal."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    text = str(value).replace("'", "''")
    return f"'{text}'"


def interpret_filter_value(value: Any, resolver: Optional[LookupResolver] = None) -> Any:
    """Turn a configured filter value into a Python value.

    Quoted strings lose their quotes, ``true``/``false``/``null`` become
    bool/None, numerals become int or float, and anything else is resolved as a
    lookup reference (or kept as a plain string).
    """
    if not isinstance(value, str) or not value:
        return value

    if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
        return value[1:-1]

    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered == "null":
        return None

    if is_numeric(value):
        return to_number(value)

    return resolver.resolve(value) if resolver is not None else value


class FilterTranslator:
    """Builds native filter strings for one backend dialect."""

    def __init__(
        self,
        dialect: FilterDialect = TOKEN,
        resolver: Optional[LookupResolver] = None,
    ) -> None:
        self.dialect = dialect
        self.resolver = resolver or TemplateLookupResolver()

    def translate_operators(self, text: str) -> str:
        """Rewrite logical, comparison and null operators outside quoted literals."""

        def _logical(match: re.Match) -> str:
            if match.group("q"):
                return match.group("q")
            op = match.group("op")
            native = {"||": "or", "&&": "and"}.get(op, op.lower())
            return native if native == op else _pad(match, native)

        def _comparison(match: re.Match) -> str:
            if match.group("q"):
                return match.group("q")
            op = match.group("op")
            native = self.dialect.token(_COMPARISON_ALIASES[op.lower()])
            return op if native == op else _pad(match, native)

        def _null(match: re.Match) -> str:
            if match.group("q"):
                return match.group("q")
            negated = match.group("op").lower() in {"!=", "ne"}
            return _pad(match, "is not null" if negated else "is null", group=0)

        text = _LOGICAL_RE.sub(_logical, text)
        text = _COMPARISON_RE.sub(_comparison, text)
        text = _NULL_RE.sub(_null, text)
        return text.strip()

    def parse_filter(self, filter: Any, params: Optional[Mapping[str, Any]] = None) -> str:
        if filter is None or filter == "":
            return ""
        if not isinstance(filter, str):
            raise BadRequestError("Filtering in array format is not currently supported.")

        text = self.translate_operators(self.resolver.resolve(filter))
        # Parameters are spliced in after translation so their values are never
        # read as operators.
        values = {str(name): _param_text(value) for name, value in (params or {}).items() if str(name)}
        if values:
            # longest names first so ":ab" is never read as ":a" followed by "b"
            names = sorted(values, key=len, reverse=True)
            pattern = re.compile("|".join(re.escape(name) for name in names))
            text = pattern.sub(lambda match: values[match.group(0)], text)
        return text

    def build_server_filter(self, server_filters: Any) -> str:
        filter_set = ServerFilterSet.from_value(server_filters)
        if filter_set is None or not filter_set.filters:
            return ""

        combiner = filter_set.combiner
        parts = []
        for entry in filter_set.filters:
            if not entry.name or not entry.operator:
                raise ConfigurationError(
                    "Invalid server-side filter configuration detected.",
                    detail={"name": entry.name, "operator": entry.operator},
                )
            parts.append(self._render_server_entry(entry))
        return f" {combiner} ".join(parts)

    def _render_server_entry(self, entry: ServerFilter) -> str:
        op = entry.operator.strip().lower()
        if op in {"is_null", "is null"}:
            return f"{entry.name} is null"
        if op in {"is_not_null", "is not null"}:
            return f"{entry.name} is not null"
        canonical = _COMPARISON_ALIASES.get(op)
        if canonical is None:
            raise ConfigurationError(
                "Invalid server-side filter configuration detected.",
                detail={"name": entry.name, "operator": entry.operator},
            )
        value = interpret_filter_value(entry.value, self.resolver)
        return self.translate_operators(
            f"{entry.name} {self.dialect.token(canonical)} {quote_literal(value)}"
        )

    def build(
        self,
        filter: Any = None,
        params: Optional[Mapping[str, Any]] = None,
        server_filters: Any = None,
    ) -> str:
        """Combine a user filter with server filters as ``(server) and (user)``."""
        resolved = {
            name: self.resolver.resolve(value) for name, value in (params or {}).items()
        }
        criteria = self.parse_filter(filter, resolved)
        server = self.build_server_filter(server_filters)
        if server:
            criteria = f"({server}) and ({criteria})" if criteria else server
        logger.debug("filter_built", dialect=self.dialect.name, criteria=criteria)
        return criteria

    def build_ids_filter(
        self,
        ids: Iterable[Any],
        id_field: str,
        *,
        partition_key: Any = None,
        partition_field: str = "PartitionKey",
        max_clauses: Optional[int] = None,
    ) -> List[str]:
        """OR together one equality clause per id, split into capped groups.

        When ``max_clauses`` is set each group holds at most ``max_clauses - 1``
        id clauses; the remaining slot belongs to the partition constraint.
        """
        eq = self.dialect.token("eq")
        per_group = max(1, max_clauses - 1) if max_clauses else None

        def _clause(value: Any) -> str:
            if isinstance(value, Mapping):
                inner = " and ".join(
                    f"{name} {eq} {quote_literal(part)}" for name, part in value.items()
                )
                return f"({inner})"
            return f"{id_field} {eq} {quote_literal(value)}"

        def _group(clauses: Sequence[str]) -> str:
            body = " or ".join(clauses)
            if partition_key not in (None, ""):
                return f"{partition_field} {eq} {quote_literal(partition_key)} and ( {body} )"
            return body

        groups: List[str] = []
        clauses: List[str] = []
        for value in ids:
            clauses.append(_clause(value))
            if per_group and len(clauses) >= per_group:
                groups.append(_group(clauses))
                clauses = []
        if clauses:
            groups.append(_group(clauses))
        return groups


def _param_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return quote_literal(value)


__all__ = [
    "FilterDialect",
    "SYMBOLIC",
    "TOKEN",
    "ServerFilter",
    "ServerFilterSet",
    "FilterTranslator",
    "interpret_filter_value",
    "quote_literal",
    "is_numeric",
    "to_number",
]
