"""Evaluate rendered native filters against decoded records.

Stores without a query engine of their own (the in-memory store, the Redis
attribute store, CouchDB without indexes, the Postgres entity table) scan
records and keep the ones matching the filter string produced by
``FilterTranslator``. Both the symbolic (``=``, ``!=``) and the token
(``eq``, ``ne``) dialects are understood.
"""

from __future__ import annotations

import re
from typing import Any, Callable, List, Mapping, Optional, Tuple

from nosqlgate.service.errors import BadRequestError

Predicate = Callable[[Mapping[str, Any]], bool]

_TOKEN_RE = re.compile(
    r"""\s*(?:
        (?P<string>'(?:[^']|'')*'|"(?:[^"]|"")*")
       |(?P<number>[+-]?(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)(?![\w.])
       |(?P<op>!=|<>|>=|<=|==|=|>|<)
       |(?P<lparen>\()
       |(?P<rparen>\))
       |(?P<word>[A-Za-z_][\w.]*)
    )""",
    re.VERBOSE,
)

_WORD_OPS = {"eq": "eq", "ne": "ne", "gt": "gt", "ge": "ge", "gte": "ge", "lt": "lt", "le": "le", "lte": "le"}
_SYMBOL_OPS = {"=": "eq", "==": "eq", "!=": "ne", "<>": "ne", ">": "gt", ">=": "ge", "<": "lt", "<=": "le"}


def _tokenize(text: str) -> List[Tuple[str, Any]]:
    tokens: List[Tuple[str, Any]] = []
    pos = 0
    text = text.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise BadRequestError(
                "Invalid filter expression.", detail={"filter": text, "position": pos}
            )
        pos = match.end()
        kind = match.lastgroup
        value = match.group(kind)
        if kind == "string":
            quote = value[0]
            tokens.append(("literal", value[1:-1].replace(quote * 2, quote)))
        elif kind == "number":
            tokens.append(("literal", float(value) if any(c in value for c in ".eE") else int(value)))
        elif kind == "op":
            tokens.append(("op", _SYMBOL_OPS[value]))
        elif kind == "word":
            lowered = value.lower()
            if lowered in _WORD_OPS:
                tokens.append(("op", _WORD_OPS[lowered]))
            elif lowered in {"and", "or", "not", "is", "null", "true", "false"}:
                tokens.append((lowered, lowered))
            else:
                tokens.append(("name", value))
        else:
            tokens.append((kind, value))
    return tokens


def _coerce_pair(left: Any, right: Any) -> Tuple[Any, Any]:
    """Make mixed number/string operands comparable where the string is numeric."""
    if isinstance(left, str) and isinstance(right, (int, float)) and not isinstance(right, bool):
        try:
            return float(left), right
        except ValueError:
            return left, str(right)
    if isinstance(right, str) and isinstance(left, (int, float)) and not isinstance(left, bool):
        try:
            return left, float(right)
        except ValueError:
            return str(left), right
    return left, right


def compare(op: str, left: Any, right: Any) -> bool:
    # multi-valued attributes match when any of their values does
    if isinstance(left, list):
        return any(compare(op, item, right) for item in left)
    if op in {"eq", "ne"}:
        left, right = _coerce_pair(left, right)
        equal = left == right
        return equal if op == "eq" else not equal
    if left is None or right is None:
        return False
    left, right = _coerce_pair(left, right)
    try:
        if op == "gt":
            return left > right
        if op == "ge":
            return left >= right
        if op == "lt":
            return left < right
        if op == "le":
            return left <= right
    except TypeError:
        return False
    raise BadRequestError(f"Unsupported comparison operator '{op}'.")


class _Parser:
    def __init__(self, tokens: List[Tuple[str, Any]], text: str) -> None:
        self.tokens = tokens
        self.text = text
        self.pos = 0

    def _peek(self) -> Optional[str]:
        return self.tokens[self.pos][0] if self.pos < len(self.tokens) else None

    def _take(self, kind: str) -> Any:
        if self._peek() != kind:
            raise BadRequestError(
                "Invalid filter expression.",
                detail={"filter": self.text, "expected": kind},
            )
        value = self.tokens[self.pos][1]
        self.pos += 1
        return value

    def parse(self) -> Predicate:
        predicate = self._or()
        if self.pos != len(self.tokens):
            raise BadRequestError("Invalid filter expression.", detail={"filter": self.text})
        return predicate

    def _or(self) -> Predicate:
        parts = [self._and()]
        while self._peek() == "or":
            self.pos += 1
            parts.append(self._and())
        if len(parts) == 1:
            return parts[0]
        return lambda record: any(part(record) for part in parts)

    def _and(self) -> Predicate:
        parts = [self._not()]
        while self._peek() == "and":
            self.pos += 1
            parts.append(self._not())
        if len(parts) == 1:
            return parts[0]
        return lambda record: all(part(record) for part in parts)

    def _not(self) -> Predicate:
        if self._peek() == "not":
            self.pos += 1
            inner = self._not()
            return lambda record: not inner(record)
        return self._primary()

    def _primary(self) -> Predicate:
        if self._peek() == "lparen":
            self.pos += 1
            inner = self._or()
            self._take("rparen")
            return inner
        return self._comparison()

    def _literal(self) -> Any:
        kind = self._peek()
        if kind == "literal":
            return self._take("literal")
        if kind in {"true", "false"}:
            self.pos += 1
            return kind == "true"
        if kind == "null":
            self.pos += 1
            return None
        raise BadRequestError(
            "Invalid filter expression.", detail={"filter": self.text, "expected": "value"}
        )

    def _comparison(self) -> Predicate:
        name = self._take("name")
        if self._peek() == "is":
            self.pos += 1
            negated = False
            if self._peek() == "not":
                self.pos += 1
                negated = True
            self._take("null")
            if negated:
                return lambda record: record.get(name) is not None
            return lambda record: record.get(name) is None
        op = self._take("op")
        right = self._literal()
        return lambda record: compare(op, record.get(name), right)


def compile_filter(text: Optional[str]) -> Predicate:
    """Compile a native filter string into a predicate over records."""
    if not text or not text.strip():
        return lambda record: True
    return _Parser(_tokenize(text), text).parse()


def count_comparisons(text: Optional[str]) -> int:
    """Number of comparisons (including null tests) in a native filter."""
    if not text or not text.strip():
        return 0
    return sum(1 for kind, _ in _tokenize(text) if kind in {"op", "is"})


def apply_filter(records, text: Optional[str]) -> list:
    predicate = compile_filter(text)
    return [record for record in records if predicate(record)]
