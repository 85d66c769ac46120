"""
Parsing of the `hive_result_schema` attribute of a job.

The schema is normally a JSON array of `[name, type]` pairs. Pig jobs leave
anonymous columns (such as the output of COUNT or SUM) without a name, and
the service then renders that name as a bare `nil`, which is not JSON. For
those jobs a small lenient grammar accepts nested arrays of quoted strings,
numbers and bare words, and names every anonymous column `_col<index>`.
"""

import json
import re
from typing import Any, NamedTuple

from .errors import SchemaParseError


class ColumnSchema(NamedTuple):
    name: str
    type: str


_TOKEN = re.compile(
    r"""
    \s*(?:
        (?P<punct>[\[\],])
      | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
      | (?P<number>-?\d+(?:\.\d+)?(?:[eE][-+]?\d+)?)
      | (?P<word>[A-Za-z_][\w.:<>()]*)
    )
    """,
    re.VERBOSE | re.DOTALL,
)

_BARE_CONSTANTS: dict[str, Any] = {
    "nil": None,
    "null": None,
    "true": True,
    "false": False,
}


def _unquote(literal: str) -> str:
    body = literal[1:-1]
    if literal[0] == '"':
        return json.loads(literal)
    return re.sub(r"\\(.)", r"\1", body)


class _LenientArrayParser:
    def __init__(self, text: str):
        self.tokens: list[tuple[str, str]] = []
        pos = 0
        text = text.rstrip()
        while pos < len(text):
            m = _TOKEN.match(text, pos)
            if m is None or m.end() == pos:
                raise SchemaParseError(f"unexpected character at offset {pos}: {text[pos:pos + 10]!r}")
            kind = m.lastgroup
            assert kind is not None
            self.tokens.append((kind, m.group(kind)))
            pos = m.end()
        self.index = 0

    def _next(self) -> tuple[str, str]:
        if self.index >= len(self.tokens):
            raise SchemaParseError("unexpected end of schema")
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _peek(self) -> tuple[str, str] | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def parse(self) -> Any:
        value = self._value()
        if self._peek() is not None:
            raise SchemaParseError(f"unexpected trailing token {self._peek()[1]!r}")
        return value

    def _value(self) -> Any:
        kind, text = self._next()
        match kind:
            case "punct" if text == "[":
                return self._array()
            case "string":
                return _unquote(text)
            case "number":
                return json.loads(text)
            case "word":
                return _BARE_CONSTANTS.get(text, text)
            case _:
                raise SchemaParseError(f"unexpected token {text!r}")

    def _array(self) -> list[Any]:
        items: list[Any] = []
        if self._peek() == ("punct", "]"):
            self._next()
            return items

        while True:
            items.append(self._value())
            kind, text = self._next()
            if (kind, text) == ("punct", "]"):
                return items
            if (kind, text) != ("punct", ","):
                raise SchemaParseError(f"expected ',' or ']' but found {text!r}")


def parse_lenient(text: str) -> Any:
    """Parse a JSON-like array whose strings may be unquoted or `nil`."""
    return _LenientArrayParser(text).parse()


def _to_columns(parsed: Any) -> list[ColumnSchema]:
    if not isinstance(parsed, list):
        raise SchemaParseError(f"result schema must be an array, not {type(parsed).__name__}")

    columns: list[ColumnSchema] = []
    for idx, col in enumerate(parsed):
        if not isinstance(col, list) or len(col) < 2:
            raise SchemaParseError(f"column {idx} of the result schema is not a [name, type] pair")
        name, type_ = col[0], col[1]
        if name is None:
            name = f"_col{idx}"
        columns.append(ColumnSchema(str(name), str(type_)))
    return columns


def parse_result_schema(text: str | None, job_type: str | None = None) -> list[ColumnSchema] | None:
    if not text:
        return None

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as err:
        if job_type != "pig" or re.search(r"[{}]", text):
            raise SchemaParseError(f"invalid result schema: {err}") from err
        try:
            parsed = parse_lenient(text)
        except SchemaParseError:
            raise SchemaParseError(f"invalid result schema: {err}") from err

    return _to_columns(parsed)
