"""Compile structured filter options into a query predicate string.

The predicate is written in the query language understood by
:mod:`folio.query` (and therefore by :class:`folio.catalog.Catalog`).
Compilation is a pure function of the option state plus the current time:
nothing is patched incrementally, so compiling the same options twice
within the same second yields the same string.

Search modes:

- ``general``: fuzzy, case-insensitive match over title, authors,
  publication and note: ``"foo bar"`` becomes the pattern ``*foo*bar*``.
- ``fulltext``: ``fulltext CONTAINS[c] "..."``; routed through the
  full-text cache by :meth:`folio.library.PaperLibrary.load`.
- ``advanced``: the search string *is* the predicate, with one macro:
  ``[<N> DAYS]`` expands to the timestamp N days before now.  A comparison
  operator right before the macro is inverted first, so
  ``addTime > [3 DAYS]`` compiles to ``addTime < <now - 3 days>``.  The
  expression is parenthesized before the other clauses are ANDed on, and a
  trailing ``LIMIT(n)`` is lifted out and merged with the option limit.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta

GENERAL = "general"
FULLTEXT = "fulltext"
ADVANCED = "advanced"
SEARCH_MODES = frozenset({GENERAL, FULLTEXT, ADVANCED})

GENERAL_FIELDS = ("title", "authors", "publication", "note")

# Store timestamp literal, e.g. 2021-02-20@17:30:15 (UTC)
TIMESTAMP_FORMAT = "%Y-%m-%d@%H:%M:%S"

_DAYS_MACRO = r"\[(\d+) DAYS\]"
_OPERATOR_BEFORE_MACRO_RE = re.compile(r"(<=|>=|<|>)(\s*)(?=" + _DAYS_MACRO + ")")
_DAYS_MACRO_RE = re.compile(_DAYS_MACRO)
_INVERTED = {"<": ">", ">": "<", "<=": ">=", ">=": "<="}

_WS_RE = re.compile(r"\s+")
# Trailing LIMIT(n) typed at the end of an advanced search
_TRAILING_LIMIT_RE = re.compile(r"\s*\bLIMIT\s*\(\s*(\d+)\s*\)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class FilterOptions:
    """Structured query state for loading papers."""

    search: str = ""
    search_mode: str = GENERAL
    flagged: bool = False
    tag: str = ""
    folder: str = ""
    limit: int = 0

    def __post_init__(self) -> None:
        if self.search_mode not in SEARCH_MODES:
            raise ValueError(
                f"Invalid search_mode '{self.search_mode}'. Valid modes: {sorted(SEARCH_MODES)}"
            )
        if self.limit < 0:
            raise ValueError(f"limit must be >= 0, got {self.limit}")

    def apply(self, patch: FilterPatch) -> FilterOptions:
        """Return a copy with every field set in *patch* replaced."""
        changes: dict[str, object] = {}
        if patch.search is not None:
            changes["search"] = patch.search
        if patch.search_mode is not None:
            changes["search_mode"] = patch.search_mode
        if patch.flagged is not None:
            changes["flagged"] = patch.flagged
        if patch.tag is not None:
            changes["tag"] = patch.tag
        if patch.folder is not None:
            changes["folder"] = patch.folder
        if patch.limit is not None:
            changes["limit"] = patch.limit
        return replace(self, **changes)

    def __str__(self) -> str:
        return compile_filter(self)


@dataclass(frozen=True)
class FilterPatch:
    """Partial update for :class:`FilterOptions`; ``None`` leaves a field as is.

    Clear a field by patching its empty value (``""``, ``False`` or ``0``).
    """

    search: str | None = None
    search_mode: str | None = None
    flagged: bool | None = None
    tag: str | None = None
    folder: str | None = None
    limit: int | None = None


def sanitize_search(text: str) -> str:
    """Drop newlines and collapse whitespace runs to single spaces."""
    return _WS_RE.sub(" ", text.replace("\r", " ").replace("\n", " ")).strip()


def quote(value: str) -> str:
    """Render *value* as a double-quoted query string literal."""
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def format_timestamp(dt: datetime) -> str:
    """Render a datetime as a store timestamp literal (UTC, second precision)."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(UTC)
    return dt.strftime(TIMESTAMP_FORMAT)


def expand_date_macros(expression: str, now: datetime | None = None) -> str:
    """Invert operators preceding ``[<N> DAYS]``, then substitute timestamps.

    Runs both passes exactly once; each macro uses its own N.
    """
    if now is None:
        now = datetime.now(UTC)

    inverted = _OPERATOR_BEFORE_MACRO_RE.sub(
        lambda m: _INVERTED[m.group(1)] + m.group(2), expression
    )
    return _DAYS_MACRO_RE.sub(
        lambda m: format_timestamp(now - timedelta(days=int(m.group(1)))), inverted
    )


def split_limit(expression: str) -> tuple[str, int]:
    """Split a trailing ``LIMIT(n)`` off *expression*; ``0`` when there is none."""
    m = _TRAILING_LIMIT_RE.search(expression)
    if m is None:
        return expression, 0
    return expression[: m.start()], int(m.group(1))


def _general_clause(search: str) -> str:
    pattern = quote("*" + "*".join(search.split(" ")) + "*")
    return "(" + " OR ".join(f"{f} LIKE[c] {pattern}" for f in GENERAL_FIELDS) + ")"


def filter_clauses(options: FilterOptions, now: datetime | None = None) -> list[str]:
    """Return the ordered predicate clauses for *options*."""
    clauses: list[str] = []

    search = sanitize_search(options.search) if options.search else ""
    if search:
        if options.search_mode == GENERAL:
            clauses.append(_general_clause(search))
        elif options.search_mode == ADVANCED:
            expression, _limit = split_limit(search)
            if expression:
                clauses.append(f"({expand_date_macros(expression, now)})")
        elif options.search_mode == FULLTEXT:
            clauses.append(f"(fulltext CONTAINS[c] {quote(search)})")

    if options.flagged:
        clauses.append("(flag == true)")
    if options.tag:
        clauses.append(f"(ANY tags.name == {quote(options.tag)})")
    if options.folder:
        clauses.append(f"(ANY folders.name == {quote(options.folder)})")
    return clauses


def compile_filter(options: FilterOptions, now: datetime | None = None) -> str:
    """Compile *options* into a predicate string (``""`` matches everything)."""
    predicate = " AND ".join(filter_clauses(options, now))
    limit = effective_limit(options)
    if limit:
        return f"{predicate} LIMIT({limit})".lstrip()
    return predicate


def effective_limit(options: FilterOptions) -> int:
    """The option limit, tightened by a ``LIMIT(n)`` typed into an advanced search."""
    limit = options.limit
    if options.search_mode == ADVANCED and options.search:
        _expression, typed = split_limit(sanitize_search(options.search))
        if typed:
            limit = min(limit, typed) if limit else typed
    return limit
