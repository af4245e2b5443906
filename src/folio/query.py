"""Query language for paper predicates.

Parses strings produced by :mod:`folio.filters` (and typed by users in
advanced search mode) into a predicate over :class:`~folio.models.PaperDraft`.

Grammar::

    query       := [or_expr] [LIMIT "(" NUMBER ")"]
    or_expr     := and_expr ((OR | "||") and_expr)*
    and_expr    := not_expr ((AND | "&&") not_expr)*
    not_expr    := (NOT | "!") not_expr | primary
    primary     := "(" or_expr ")" | TRUEPREDICATE | FALSEPREDICATE | comparison
    comparison  := [ANY | SOME | ALL | NONE] keypath operator ["[c]"] literal
    operator    := == | = | != | <> | < | <= | > | >= | LIKE | CONTAINS | BEGINSWITH | ENDSWITH
    literal     := "string" | 'string' | NUMBER | TIMESTAMP | true | false | null

Keywords are case-insensitive.  Key paths use the camelCase field names in
:data:`folio.models.QUERY_FIELDS`; list fields (``tags``, ``folders``,
``supURLs``) compare element-wise with ANY semantics unless a quantifier
says otherwise, and ``tags.@count`` yields the list length.  ``LIKE``
understands ``*`` (any run) and ``?`` (one character).  Timestamps look
like ``2021-02-20@17:30:15`` and are read as UTC.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from folio.errors import QuerySyntaxError
from folio.models import QUERY_FIELDS, PaperDraft

Predicate = Callable[[PaperDraft], bool]

# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<timestamp>\d{4}-\d{2}-\d{2}@\d{2}:\d{2}:\d{2}(?::\d+)?)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>==|!=|<>|<=|>=|&&|\|\||=|<|>|!)
  | (?P<modifier>\[[cC]\])
  | (?P<lparen>\()
  | (?P<rparen>\))
  | (?P<ident>@?[A-Za-z_][A-Za-z0-9_]*(?:\.@?[A-Za-z_][A-Za-z0-9_]*)*)
    """,
    re.VERBOSE,
)

_KEYWORDS = frozenset(
    {
        "AND",
        "OR",
        "NOT",
        "ANY",
        "SOME",
        "ALL",
        "NONE",
        "LIKE",
        "CONTAINS",
        "BEGINSWITH",
        "ENDSWITH",
        "TRUEPREDICATE",
        "FALSEPREDICATE",
        "TRUE",
        "FALSE",
        "NULL",
        "NIL",
        "LIMIT",
    }
)

_STRING_OPERATORS = frozenset({"LIKE", "CONTAINS", "BEGINSWITH", "ENDSWITH"})
_SYMBOL_OPERATORS = frozenset({"==", "=", "!=", "<>", "<", "<=", ">", ">="})


@dataclass
class Token:
    kind: str  # string | timestamp | number | op | modifier | lparen | rparen | ident | keyword | eof
    text: str
    pos: int


def tokenize(text: str) -> list[Token]:
    """Split *text* into tokens; keywords are upper-cased into kind ``keyword``."""
    tokens: list[Token] = []
    pos = 0
    while pos < len(text):
        m = _TOKEN_RE.match(text, pos)
        if m is None:
            raise QuerySyntaxError(text, pos, f"unexpected character {text[pos]!r}")
        kind = m.lastgroup or ""
        value = m.group(kind)
        if kind == "ident" and value.upper() in _KEYWORDS:
            tokens.append(Token("keyword", value.upper(), pos))
        elif kind != "ws":
            tokens.append(Token(kind, value, pos))
        pos = m.end()
    tokens.append(Token("eof", "", len(text)))
    return tokens


def _unquote(raw: str) -> str:
    body = raw[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


def parse_timestamp_literal(text: str) -> datetime:
    """Parse ``YYYY-MM-DD@HH:MM:SS[:NN]`` as a UTC datetime."""
    date_part, time_part = text.split("@", 1)
    hms = time_part.split(":")[:3]
    return datetime.strptime(f"{date_part} {':'.join(hms)}", "%Y-%m-%d %H:%M:%S").replace(
        tzinfo=UTC
    )


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


@dataclass
class Query:
    """A parsed query: predicate plus optional result limit (0 = unlimited)."""

    predicate: Predicate
    limit: int = 0
    text: str = ""

    def __call__(self, draft: PaperDraft) -> bool:
        return self.predicate(draft)


def _always(_: PaperDraft) -> bool:
    return True


def _never(_: PaperDraft) -> bool:
    return False


class _Parser:
    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.i = 0

    # -- token helpers ------------------------------------------------------

    @property
    def current(self) -> Token:
        return self.tokens[self.i]

    def advance(self) -> Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def at_keyword(self, *words: str) -> bool:
        return self.current.kind == "keyword" and self.current.text in words

    def at_op(self, *ops: str) -> bool:
        return self.current.kind == "op" and self.current.text in ops

    def expect(self, kind: str, what: str) -> Token:
        if self.current.kind != kind:
            self.fail(f"expected {what}, found {self.current.text or 'end of query'!r}")
        return self.advance()

    def fail(self, detail: str) -> None:
        raise QuerySyntaxError(self.text, self.current.pos, detail)

    # -- grammar ------------------------------------------------------------

    def parse(self) -> Query:
        predicate: Predicate = _always
        if self.current.kind != "eof" and not self.at_keyword("LIMIT"):
            predicate = self.or_expr()
        limit = 0
        if self.at_keyword("LIMIT"):
            self.advance()
            self.expect("lparen", "'(' after LIMIT")
            number = self.expect("number", "a positive integer")
            if not number.text.isdigit() or int(number.text) < 1:
                raise QuerySyntaxError(self.text, number.pos, "LIMIT needs a positive integer")
            limit = int(number.text)
            self.expect("rparen", "')'")
        if self.current.kind != "eof":
            self.fail(f"unexpected {self.current.text!r}")
        return Query(predicate=predicate, limit=limit, text=self.text)

    def or_expr(self) -> Predicate:
        parts = [self.and_expr()]
        while self.at_keyword("OR") or self.at_op("||"):
            self.advance()
            parts.append(self.and_expr())
        if len(parts) == 1:
            return parts[0]
        return lambda d: any(p(d) for p in parts)

    def and_expr(self) -> Predicate:
        parts = [self.not_expr()]
        while self.at_keyword("AND") or self.at_op("&&"):
            self.advance()
            parts.append(self.not_expr())
        if len(parts) == 1:
            return parts[0]
        return lambda d: all(p(d) for p in parts)

    def not_expr(self) -> Predicate:
        if self.at_keyword("NOT") or self.at_op("!"):
            self.advance()
            inner = self.not_expr()
            return lambda d: not inner(d)
        return self.primary()

    def primary(self) -> Predicate:
        if self.current.kind == "lparen":
            self.advance()
            inner = self.or_expr()
            self.expect("rparen", "')'")
            return inner
        if self.at_keyword("TRUEPREDICATE"):
            self.advance()
            return _always
        if self.at_keyword("FALSEPREDICATE"):
            self.advance()
            return _never
        return self.comparison()

    def comparison(self) -> Predicate:
        quantifier = "ANY"
        explicit = False
        if self.at_keyword("ANY", "SOME", "ALL", "NONE"):
            quantifier = "ANY" if self.current.text == "SOME" else self.current.text
            explicit = True
            self.advance()

        path_tok = self.expect("ident", "a field name")
        getter = _compile_keypath(self.text, path_tok)

        if self.current.kind == "op" and self.current.text in _SYMBOL_OPERATORS:
            operator = self.advance().text
        elif self.at_keyword(*_STRING_OPERATORS):
            operator = self.advance().text
        else:
            self.fail(f"expected a comparison operator after {path_tok.text!r}")

        case_insensitive = False
        if self.current.kind == "modifier":
            case_insensitive = True
            self.advance()

        literal = self.literal()
        test = _compile_test(self.text, path_tok, operator, literal, case_insensitive)

        def predicate(draft: PaperDraft) -> bool:
            value = getter(draft)
            if isinstance(value, list):
                matches = (test(v) for v in value)
                if quantifier == "ALL":
                    return all(matches)
                if quantifier == "NONE":
                    return not any(matches)
                return any(matches)
            if explicit and quantifier != "ANY":
                return test(value) if quantifier == "ALL" else not test(value)
            return test(value)

        return predicate

    def literal(self) -> Any:
        tok = self.current
        if tok.kind == "string":
            self.advance()
            return _unquote(tok.text)
        if tok.kind == "number":
            self.advance()
            return float(tok.text) if "." in tok.text else int(tok.text)
        if tok.kind == "timestamp":
            self.advance()
            return parse_timestamp_literal(tok.text)
        if tok.kind == "keyword" and tok.text in ("TRUE", "FALSE"):
            self.advance()
            return tok.text == "TRUE"
        if tok.kind == "keyword" and tok.text in ("NULL", "NIL"):
            self.advance()
            return None
        self.fail(f"expected a value, found {tok.text or 'end of query'!r}")


# ---------------------------------------------------------------------------
# Key paths and comparisons
# ---------------------------------------------------------------------------


def _compile_keypath(text: str, tok: Token) -> Callable[[PaperDraft], Any]:
    head, *rest = tok.text.split(".")
    attr = QUERY_FIELDS.get(head)
    if attr is None:
        raise QuerySyntaxError(
            text, tok.pos, f"unknown field {head!r} (known: {', '.join(sorted(QUERY_FIELDS))})"
        )

    def get(draft: PaperDraft) -> Any:
        value = getattr(draft, attr)
        for segment in rest:
            if segment in ("@count", "@size"):
                value = len(value) if isinstance(value, list) else 0
            elif isinstance(value, list):
                value = [getattr(v, segment, None) for v in value]
            else:
                value = getattr(value, segment, None)
        return value

    return get


def _like_regex(pattern: str, case_insensitive: bool) -> re.Pattern:
    parts = []
    for ch in pattern:
        if ch == "*":
            parts.append(".*")
        elif ch == "?":
            parts.append(".")
        else:
            parts.append(re.escape(ch))
    flags = re.DOTALL | (re.IGNORECASE if case_insensitive else 0)
    return re.compile("".join(parts), flags)


def _coerce(value: Any, literal: Any) -> tuple[Any, Any]:
    """Bring a field value and a literal to comparable types."""
    if isinstance(value, datetime) and isinstance(literal, str):
        try:
            literal = parse_timestamp_literal(literal)
        except ValueError:
            return str(value), literal
    elif isinstance(value, str) and isinstance(literal, (int, float)) and not isinstance(
        literal, bool
    ):
        literal = str(literal)
    elif isinstance(value, bool) and isinstance(literal, int) and not isinstance(literal, bool):
        value = int(value)
    return value, literal


def _compile_test(
    text: str, tok: Token, operator: str, literal: Any, case_insensitive: bool
) -> Callable[[Any], bool]:
    if operator in _STRING_OPERATORS:
        if not isinstance(literal, str):
            raise QuerySyntaxError(text, tok.pos, f"{operator} needs a string value")
        needle = literal.lower() if case_insensitive else literal

        if operator == "LIKE":
            rx = _like_regex(literal, case_insensitive)
            return lambda v: isinstance(v, str) and rx.fullmatch(v) is not None

        def string_test(v: Any) -> bool:
            if not isinstance(v, str):
                return False
            hay = v.lower() if case_insensitive else v
            if operator == "CONTAINS":
                return needle in hay
            if operator == "BEGINSWITH":
                return hay.startswith(needle)
            return hay.endswith(needle)

        return string_test

    def compare(v: Any) -> bool:
        a, b = _coerce(v, literal)
        if case_insensitive and isinstance(a, str) and isinstance(b, str):
            a, b = a.lower(), b.lower()
        if operator in ("==", "="):
            return a == b
        if operator in ("!=", "<>"):
            return a != b
        if a is None or b is None:
            return False
        try:
            if operator == "<":
                return a < b
            if operator == "<=":
                return a <= b
            if operator == ">":
                return a > b
            return a >= b
        except TypeError:
            return False

    return compare


def parse_query(text: str) -> Query:
    """Parse a predicate string; an empty string matches every paper.

    Raises:
        QuerySyntaxError: On malformed input or unknown fields.
    """
    return _Parser(text or "").parse()
