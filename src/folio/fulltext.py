"""Full-text cache of normalized PDF text per paper, refreshed in the background.

The cache lives in its own SQLite file (``cache.db``).  One row per paper
holds the text of every page, extracted with PyMuPDF and normalized
(NFKC, hyphenated line breaks rejoined, smart quotes flattened,
case-folded, whitespace collapsed) so that a pasted phrase matches
regardless of ligatures or line wrapping.

Refreshes never block the update pipeline: :meth:`FullTextCache.update_full_text_cache`
puts snapshots of the drafts on a :class:`queue.Queue` consumed by one
daemon thread, started lazily on first use.  :meth:`FullTextCache.wait_idle`
blocks until the queue is drained (CLI exit, tests).
"""

from __future__ import annotations

import logging
import queue
import re
import sqlite3
import threading
import unicodedata
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import fitz  # PyMuPDF

from folio.files import FileService, sha256_file
from folio.models import PaperDraft

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS fulltext (
    paper_id    TEXT PRIMARY KEY,
    source      TEXT NOT NULL,
    digest      TEXT NOT NULL DEFAULT '',
    pages       INTEGER NOT NULL DEFAULT 0,
    text        TEXT NOT NULL DEFAULT ''
);
"""

_QUOTE_MAP = str.maketrans(
    {
        "\u2018": "'",
        "\u2019": "'",
        "\u201c": '"',
        "\u201d": '"',
        "\u2013": "-",
        "\u2014": "-",
        "\u00ad": "",  # soft hyphen
    }
)
_HYPHEN_BREAK = re.compile(r"-\s*\n\s*")
_MULTI_WS = re.compile(r"\s+")


def normalize(text: str) -> str:
    """Normalize text for tolerant substring matching."""
    text = unicodedata.normalize("NFKC", text)
    text = _HYPHEN_BREAK.sub("", text)
    text = text.translate(_QUOTE_MAP)
    text = text.lower()
    return _MULTI_WS.sub(" ", text).strip()


def extract_text(pdf_path: Path) -> tuple[int, str]:
    """Return ``(page_count, joined page text)`` of a PDF."""
    doc = fitz.open(str(pdf_path))
    try:
        pages = [page.get_text() for page in doc]
    finally:
        doc.close()
    return len(pages), "\n".join(pages)


class FullTextCache:
    """Searchable page text for every paper with a readable primary PDF."""

    def __init__(self, db_path: Path, files: FileService):
        self.db_path = db_path
        self.files = files
        self._queue: queue.Queue[list[PaperDraft] | None] = queue.Queue()
        self._worker: threading.Thread | None = None
        self._lock = threading.Lock()
        self.busy = False
        with self._db() as conn:
            conn.executescript(_SCHEMA)
            columns = {r["name"] for r in conn.execute("PRAGMA table_info(fulltext)")}
            if "digest" not in columns:
                conn.execute("ALTER TABLE fulltext ADD COLUMN digest TEXT NOT NULL DEFAULT ''")

    @contextmanager
    def _db(self) -> Iterator[sqlite3.Connection]:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    # -----------------------------------------------------------------------
    # Background refresh
    # -----------------------------------------------------------------------

    def update_full_text_cache(self, drafts: list[PaperDraft]) -> None:
        """Queue a refresh for *drafts* and return immediately."""
        if not drafts:
            return
        self._ensure_worker()
        self._queue.put([d.clone() for d in drafts])
        logger.debug("Queued full-text refresh for %d paper(s)", len(drafts))

    def wait_idle(self) -> None:
        """Block until every queued refresh has been processed."""
        self._queue.join()

    def shutdown(self, timeout: float = 30.0) -> None:
        """Stop the worker thread after the queue drains."""
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                self._queue.put(None)
                self._worker.join(timeout=timeout)
            self._worker = None

    def _ensure_worker(self) -> None:
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._worker = threading.Thread(
                target=self._worker_loop, name="folio-fulltext", daemon=True
            )
            self._worker.start()
            logger.info("Full-text worker thread started")

    def _worker_loop(self) -> None:
        while True:
            batch = self._queue.get()
            if batch is None:
                self._queue.task_done()
                break
            self.busy = True
            try:
                for draft in batch:
                    try:
                        self.refresh(draft)
                    except Exception:
                        logger.exception("Full-text refresh failed for %s", draft.id)
            finally:
                self.busy = False
                self._queue.task_done()

    def refresh(self, draft: PaperDraft) -> bool:
        """Re-extract one paper's text synchronously.  Returns True if cached."""
        if not draft.main_url or not self.files.access(draft.main_url):
            self.delete([draft.id])
            return False
        path = self.files.resolve(draft.main_url)
        if path.suffix.lower() != ".pdf":
            self.delete([draft.id])
            return False
        # Managed names are stable per paper, so a replaced PDF keeps its name.
        digest = sha256_file(path)
        with self._db() as conn:
            row = conn.execute(
                "SELECT source, digest FROM fulltext WHERE paper_id = ?", (draft.id,)
            ).fetchone()
        if row is not None and (row["source"], row["digest"]) == (draft.main_url, digest):
            return True

        pages, text = extract_text(path)
        with self._db() as conn:
            conn.execute(
                """
                INSERT INTO fulltext (paper_id, source, digest, pages, text) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(paper_id) DO UPDATE SET
                    source=excluded.source, digest=excluded.digest,
                    pages=excluded.pages, text=excluded.text
                """,
                (draft.id, draft.main_url, digest, pages, normalize(text)),
            )
        logger.info("Cached full text of %s (%d pages)", draft.main_url, pages)
        return True

    # -----------------------------------------------------------------------
    # Queries
    # -----------------------------------------------------------------------

    def delete(self, ids: list[str]) -> None:
        if not ids:
            return
        marks = ",".join("?" * len(ids))
        with self._db() as conn:
            conn.execute(f"DELETE FROM fulltext WHERE paper_id IN ({marks})", ids)

    def full_text_filter(self, query: str, drafts: list[PaperDraft]) -> list[PaperDraft]:
        """Keep the drafts whose cached text contains *query*, preserving order."""
        needle = normalize(query)
        if not needle:
            return list(drafts)
        with self._db() as conn:
            rows = conn.execute(
                "SELECT paper_id FROM fulltext WHERE instr(text, ?) > 0", (needle,)
            ).fetchall()
        hits = {r["paper_id"] for r in rows}
        return [d for d in drafts if d.id in hits]
