"""catalog.db: SQLite record store for paper drafts.

One row per paper in ``papers``; tags and folders live in ``categorizers``
and are linked through ``memberships``.  Every write runs in its own
transaction (commit on success, rollback on error).  Reads return fresh
:class:`~folio.models.PaperDraft` copies; filtering uses the query
language in :mod:`folio.query`, applied after the rows are loaded.

The catalog owns file *names* but never touches files: when two papers
claim the same ``main_url`` the later write gets a suffixed name
(``paper_ab12cd34-1.pdf``) written back into the draft, and the update
pipeline renames the physical file to match.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path, PurePath
from typing import Any

from folio.errors import PersistenceError, StoreUnavailable
from folio.events import EventBus
from folio.models import (
    CATEGORIZER_KINDS,
    FOLDER,
    QUERY_FIELDS,
    TAG,
    Categorizer,
    PaperDraft,
    new_id,
    parse_timestamp,
    utcnow,
)
from folio.query import parse_query

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS papers (
    id              TEXT PRIMARY KEY,
    title           TEXT NOT NULL DEFAULT '',
    authors         TEXT NOT NULL DEFAULT '',
    publication     TEXT NOT NULL DEFAULT '',
    pub_time        TEXT NOT NULL DEFAULT '',
    pub_type        INTEGER NOT NULL DEFAULT 0,
    doi             TEXT NOT NULL DEFAULT '',
    arxiv           TEXT NOT NULL DEFAULT '',
    pages           TEXT NOT NULL DEFAULT '',
    volume          TEXT NOT NULL DEFAULT '',
    number          TEXT NOT NULL DEFAULT '',
    publisher       TEXT NOT NULL DEFAULT '',
    note            TEXT NOT NULL DEFAULT '',
    flag            INTEGER NOT NULL DEFAULT 0,
    rating          INTEGER NOT NULL DEFAULT 0,

    -- Files (bare names inside the library folder)
    main_url        TEXT NOT NULL DEFAULT '',
    sup_urls        TEXT NOT NULL DEFAULT '[]',

    add_time        TEXT NOT NULL
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_main_url ON papers(main_url) WHERE main_url != '';
CREATE INDEX IF NOT EXISTS idx_add_time ON papers(add_time);

CREATE TABLE IF NOT EXISTS categorizers (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL CHECK(length(name) > 0),
    kind            TEXT NOT NULL CHECK(kind IN ('tag', 'folder')),
    color           TEXT NOT NULL DEFAULT ''
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_categorizer_name ON categorizers(kind, name);

CREATE TABLE IF NOT EXISTS memberships (
    paper_id        TEXT REFERENCES papers(id) ON DELETE CASCADE,
    categorizer_id  TEXT REFERENCES categorizers(id) ON DELETE CASCADE,
    PRIMARY KEY (paper_id, categorizer_id)
);

CREATE INDEX IF NOT EXISTS idx_membership_categorizer ON memberships(categorizer_id);
"""

_PAPER_COLUMNS = (
    "id",
    "title",
    "authors",
    "publication",
    "pub_time",
    "pub_type",
    "doi",
    "arxiv",
    "pages",
    "volume",
    "number",
    "publisher",
    "note",
    "flag",
    "rating",
    "main_url",
    "sup_urls",
    "add_time",
)

_UPSERT_PAPER = (
    f"INSERT INTO papers ({', '.join(_PAPER_COLUMNS)}) "
    f"VALUES ({', '.join(':' + c for c in _PAPER_COLUMNS)}) "
    "ON CONFLICT(id) DO UPDATE SET "
    + ", ".join(f"{c}=excluded.{c}" for c in _PAPER_COLUMNS if c not in ("id", "add_time"))
)

# Busy timeout for concurrent readers/writers across processes
_CONNECT_TIMEOUT = 10.0


class Catalog:
    """SQLite-backed paper store.

    Construct, then call :meth:`open`.  Until :meth:`open` returns the
    catalog reports ``initializing`` and every operation raises
    :class:`~folio.errors.StoreUnavailable`.
    """

    def __init__(self, db_path: Path, bus: EventBus | None = None):
        self.db_path = db_path
        self.bus = bus if bus is not None else EventBus()
        self.initializing = True

    # -----------------------------------------------------------------------
    # Lifecycle
    # -----------------------------------------------------------------------

    def open(self) -> Catalog:
        """Create tables if needed and publish ``store.initialized``."""
        self.initializing = True
        with self._db() as conn:
            conn.executescript(_SCHEMA)
        self.initializing = False
        logger.info("Catalog ready at %s", self.db_path)
        self.bus.publish("store.initialized", str(self.db_path))
        self.bus.publish("store.count", self.count())
        return self

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        """Connection with WAL mode and foreign keys; commits or rolls back."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=_CONNECT_TIMEOUT)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _require_open(self) -> None:
        if self.initializing:
            raise StoreUnavailable(f"catalog {self.db_path.name} is initializing")

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    def load(
        self,
        predicate: str = "",
        sort_by: str = "add_time",
        sort_order: str = "desc",
    ) -> list[PaperDraft]:
        """Return papers matching *predicate*, sorted, honouring ``LIMIT(n)``.

        Raises:
            QuerySyntaxError: If *predicate* does not parse.
            StoreUnavailable: While initializing.
        """
        self._require_open()
        query = parse_query(predicate)
        with self._db() as conn:
            drafts = self._read_papers(conn)
        matched = [d for d in drafts if query(d)]
        matched = sort_drafts(matched, sort_by, sort_order)
        if query.limit:
            matched = matched[: query.limit]
        return matched

    def load_by_ids(self, ids: list[str]) -> list[PaperDraft]:
        """Return papers with the given ids, in the order of *ids*."""
        self._require_open()
        if not ids:
            return []
        with self._db() as conn:
            by_id = {d.id: d for d in self._read_papers(conn, ids)}
        return [by_id[i] for i in ids if i in by_id]

    def count(self) -> int:
        self._require_open()
        with self._db() as conn:
            return conn.execute("SELECT COUNT(*) FROM papers").fetchone()[0]

    def categorizers(self, kind: str = TAG) -> list[tuple[Categorizer, int]]:
        """List tags or folders with the number of papers holding each."""
        self._require_open()
        if kind not in CATEGORIZER_KINDS:
            raise ValueError(f"Invalid categorizer kind '{kind}'")
        with self._db() as conn:
            rows = conn.execute(
                """
                SELECT c.id, c.name, c.kind, c.color, COUNT(m.paper_id) AS n
                FROM categorizers c
                LEFT JOIN memberships m ON m.categorizer_id = c.id
                WHERE c.kind = ?
                GROUP BY c.id
                ORDER BY c.name
                """,
                (kind,),
            ).fetchall()
        return [
            (Categorizer(name=r["name"], kind=r["kind"], id=r["id"], color=r["color"]), r["n"])
            for r in rows
        ]

    def _read_papers(
        self, conn: sqlite3.Connection, ids: list[str] | None = None
    ) -> list[PaperDraft]:
        if ids is None:
            rows = conn.execute("SELECT * FROM papers").fetchall()
            links = conn.execute(
                "SELECT m.paper_id, c.id, c.name, c.kind, c.color FROM memberships m "
                "JOIN categorizers c ON c.id = m.categorizer_id ORDER BY c.name"
            ).fetchall()
        else:
            marks = ",".join("?" * len(ids))
            rows = conn.execute(f"SELECT * FROM papers WHERE id IN ({marks})", ids).fetchall()
            links = conn.execute(
                "SELECT m.paper_id, c.id, c.name, c.kind, c.color FROM memberships m "
                f"JOIN categorizers c ON c.id = m.categorizer_id WHERE m.paper_id IN ({marks}) "
                "ORDER BY c.name",
                ids,
            ).fetchall()

        drafts = {r["id"]: _row_to_draft(r) for r in rows}
        for link in links:
            draft = drafts.get(link["paper_id"])
            if draft is None:
                continue
            cat = Categorizer(name=link["name"], kind=link["kind"], id=link["id"], color=link["color"])
            draft.memberships(cat.kind).append(cat)
        return list(drafts.values())

    # -----------------------------------------------------------------------
    # Writes
    # -----------------------------------------------------------------------

    def update(self, draft: PaperDraft) -> bool:
        """Insert or update one paper in its own transaction.

        Assigns ``id`` and ``add_time`` to new drafts, adopts existing
        categorizers that share kind and name, and resolves ``main_url``
        name collisions.  All of these are written back into *draft*.

        Raises:
            PersistenceError: If the write fails; nothing is committed.
            StoreUnavailable: While initializing.
        """
        self._require_open()
        if not draft.id:
            draft.id = new_id()
        if draft.add_time is None:
            draft.add_time = utcnow()

        try:
            with self._db() as conn:
                draft.main_url = _unique_main_url(conn, draft.id, draft.main_url)
                conn.execute(_UPSERT_PAPER, _draft_to_row(draft))
                conn.execute("DELETE FROM memberships WHERE paper_id = ?", (draft.id,))
                for kind in (TAG, FOLDER):
                    linked: list[Categorizer] = []
                    for cat in draft.memberships(kind):
                        cat.kind = kind
                        _upsert_categorizer(conn, cat)
                        if any(c.id == cat.id for c in linked):
                            continue
                        conn.execute(
                            "INSERT OR IGNORE INTO memberships (paper_id, categorizer_id) "
                            "VALUES (?, ?)",
                            (draft.id, cat.id),
                        )
                        linked.append(cat)
                    draft.set_memberships(kind, linked)
        except sqlite3.Error as exc:
            raise PersistenceError(draft.id, str(exc)) from exc

        self._announce()
        return True

    def delete(
        self,
        ids: list[str] | None = None,
        drafts: list[PaperDraft] | None = None,
    ) -> list[str]:
        """Delete papers by id (or by draft).  Returns their file names."""
        self._require_open()
        targets = list(ids or []) + [d.id for d in drafts or [] if d.id]
        if not targets:
            return []

        files: list[str] = []
        marks = ",".join("?" * len(targets))
        with self._db() as conn:
            rows = conn.execute(
                f"SELECT main_url, sup_urls FROM papers WHERE id IN ({marks})", targets
            ).fetchall()
            for row in rows:
                files.append(row["main_url"])
                files.extend(json.loads(row["sup_urls"] or "[]"))
            conn.execute(f"DELETE FROM papers WHERE id IN ({marks})", targets)

        logger.info("Deleted %d paper(s) from %s", len(rows), self.db_path.name)
        self._announce()
        return [f for f in files if f]

    def delete_categorizer(self, categorizer_id: str) -> bool:
        """Remove a tag or folder and every membership of it."""
        self._require_open()
        with self._db() as conn:
            cursor = conn.execute("DELETE FROM categorizers WHERE id = ?", (categorizer_id,))
            found = cursor.rowcount > 0
        if found:
            self._announce()
        return found

    def _announce(self) -> None:
        self.bus.publish("store.updated", time.time())
        self.bus.publish("store.count", self.count())


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def _draft_to_row(draft: PaperDraft) -> dict[str, Any]:
    return {
        "id": draft.id,
        "title": draft.title,
        "authors": draft.authors,
        "publication": draft.publication,
        "pub_time": draft.pub_time,
        "pub_type": draft.pub_type,
        "doi": draft.doi,
        "arxiv": draft.arxiv,
        "pages": draft.pages,
        "volume": draft.volume,
        "number": draft.number,
        "publisher": draft.publisher,
        "note": draft.note,
        "flag": 1 if draft.flag else 0,
        "rating": draft.rating,
        "main_url": draft.main_url,
        "sup_urls": json.dumps(draft.sup_urls, ensure_ascii=False),
        "add_time": (draft.add_time or utcnow()).isoformat(),
    }


def _row_to_draft(row: sqlite3.Row) -> PaperDraft:
    return PaperDraft(
        id=row["id"],
        title=row["title"],
        authors=row["authors"],
        publication=row["publication"],
        pub_time=row["pub_time"],
        pub_type=row["pub_type"],
        doi=row["doi"],
        arxiv=row["arxiv"],
        pages=row["pages"],
        volume=row["volume"],
        number=row["number"],
        publisher=row["publisher"],
        note=row["note"],
        flag=bool(row["flag"]),
        rating=row["rating"],
        main_url=row["main_url"],
        sup_urls=json.loads(row["sup_urls"] or "[]"),
        add_time=parse_timestamp(row["add_time"]),
    )


def _unique_main_url(conn: sqlite3.Connection, paper_id: str, name: str) -> str:
    """Return *name*, suffixed ``-1``, ``-2``… if another paper already owns it."""
    if not name:
        return name
    stem, suffix = PurePath(name).stem, PurePath(name).suffix
    candidate = name
    n = 0
    while conn.execute(
        "SELECT 1 FROM papers WHERE main_url = ? AND id != ?", (candidate, paper_id)
    ).fetchone():
        n += 1
        candidate = f"{stem}-{n}{suffix}"
    if candidate != name:
        logger.info("File name %s taken; paper %s gets %s", name, paper_id, candidate)
    return candidate


def _upsert_categorizer(conn: sqlite3.Connection, cat: Categorizer) -> None:
    """Insert *cat* or adopt the existing one with the same kind and name."""
    existing = conn.execute(
        "SELECT id FROM categorizers WHERE kind = ? AND name = ?", (cat.kind, cat.name)
    ).fetchone()
    if existing and existing["id"] != cat.id:
        cat.id = existing["id"]
        return
    conn.execute(
        """
        INSERT INTO categorizers (id, name, kind, color) VALUES (?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET name=excluded.name, color=excluded.color
        """,
        (cat.id, cat.name, cat.kind, cat.color),
    )


# ---------------------------------------------------------------------------
# Sorting
# ---------------------------------------------------------------------------


def sort_drafts(drafts: list[PaperDraft], sort_by: str, sort_order: str) -> list[PaperDraft]:
    """Sort by a draft attribute or its query-language name (``addTime``)."""
    attr = QUERY_FIELDS.get(sort_by, sort_by)
    if attr not in PaperDraft.__dataclass_fields__:
        raise ValueError(f"Cannot sort by unknown field '{sort_by}'")
    descending = sort_order.lower().startswith("desc")

    def key(draft: PaperDraft) -> tuple[bool, Any]:
        value = getattr(draft, attr)
        if isinstance(value, str):
            value = value.lower()
        elif isinstance(value, list):
            value = len(value)
        return (value is not None, value if value is not None else 0)

    return sorted(drafts, key=key, reverse=descending)
