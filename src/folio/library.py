"""PaperLibrary: every mutation of the paper collection goes through here.

:meth:`PaperLibrary.update` is the single write path.  Create, categorize,
rename, migrate and scrape all build drafts and hand them to it.  It runs
five stages, each finishing for the whole batch before the next starts:

1. **Relocate**: clear references to files that no longer exist, then
   move (or copy) primary and supplementary files into the library folder.
   Runs through :func:`folio.chunk_run.chunk_run`; a failing draft keeps its
   previous references.
2. **Normalize**: an absolute primary path left over from a failed move is
   blanked, everything else is reduced to its base name; absolute
   supplementary paths are dropped.
3. **Persist**: one store write per draft, in order, under the pipeline
   lock.  A failed write marks the slot as failed and the batch goes on.
4. **Reconcile**: files relocated for failed drafts are removed; files
   whose stored name differs from the relocated name (collision suffix)
   are renamed to match.
5. **Cache**: queue a full-text refresh for the persisted drafts.

Only persisted drafts are returned.

Public operations are wrapped by :func:`safe_operation`: they log their
duration, never raise :class:`~folio.errors.FolioError` or unexpected
exceptions to the caller, and return a default instead.
:class:`~folio.cancellation.Cancelled` is the one exception that passes
through, so the scheduler can tell a timed-out run from a finished one.
"""

from __future__ import annotations

import functools
import logging
import os
import threading
import time
import traceback
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import Any, TypeVar

from folio.cancellation import Cancelled, check_cancelled
from folio.categorize import apply_membership, replace_membership
from folio.chunk_run import DEFAULT_CHUNK_SIZE, DEFAULT_MAX_WORKERS, chunk_run
from folio.errors import AccessError, FolioError, RelocationError, StoreUnavailable
from folio.events import EventBus
from folio.filters import FULLTEXT, FilterOptions, FilterPatch, compile_filter, quote, sanitize_search
from folio.models import TAG, Categorizer, PaperDraft
from folio.protocols import FileAccess, FullTextIndex, PreferenceStore, RecordStore, Scraper
from folio.scrapers import ScrapePayload

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

DEFAULT_PREPRINT_VENUES = ("arXiv", "openreview")


# ---------------------------------------------------------------------------
# Error boundary
# ---------------------------------------------------------------------------


def safe_operation(message: str, default: Any = None) -> Callable[[F], F]:
    """Log timing and failures of a public operation; return *default* on error.

    ``StoreUnavailable`` is logged at info (the store is still opening),
    other ``FolioError`` at warning, anything else at error with the
    traceback.  ``Cancelled`` propagates.
    """

    def decorator(fn: F) -> F:
        @functools.wraps(fn)
        def wrapped(*args: Any, **kwargs: Any) -> Any:
            name = fn.__name__
            t0 = time.monotonic()
            try:
                result = fn(*args, **kwargs)
            except Cancelled:
                logger.info("OP %s cancelled after %.2fs", name, time.monotonic() - t0)
                raise
            except StoreUnavailable as exc:
                logger.info("OP %s skipped: %s", name, exc)
                return _fresh(default)
            except FolioError as exc:
                logger.warning("%s %s", message, exc)
                return _fresh(default)
            except Exception:
                logger.error(
                    "%s OP %s crashed after %.2fs:\n%s",
                    message,
                    name,
                    time.monotonic() - t0,
                    traceback.format_exc(),
                )
                return _fresh(default)
            logger.info("OP %s completed in %.2fs", name, time.monotonic() - t0)
            return result

        return wrapped  # type: ignore[return-value]

    return decorator


def _fresh(default: Any) -> Any:
    # Mutable defaults ([] / {}) are copied so callers never share them.
    return default.copy() if isinstance(default, (list, dict)) else default


def preprint_predicate(venues: Sequence[str] = DEFAULT_PREPRINT_VENUES) -> str:
    """Query matching papers from a preprint venue or with no venue at all."""
    clauses = [f"(publication CONTAINS[c] {quote(v)})" for v in venues]
    clauses.append('publication == ""')
    return " OR ".join(clauses)


# ---------------------------------------------------------------------------
# Library
# ---------------------------------------------------------------------------


class PaperLibrary:
    """Paper operations over a record store, managed files and caches."""

    def __init__(
        self,
        store: RecordStore,
        files: FileAccess,
        scraper: Scraper,
        cache: FullTextIndex,
        preferences: PreferenceStore,
        bus: EventBus | None = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_workers: int = DEFAULT_MAX_WORKERS,
        preprint_venues: Sequence[str] = DEFAULT_PREPRINT_VENUES,
    ):
        self.store = store
        self.files = files
        self.scraper = scraper
        self.cache = cache
        self.preferences = preferences
        self.bus = bus if bus is not None else EventBus()
        self.chunk_size = chunk_size
        self.max_workers = max_workers
        self.preprint_venues = tuple(preprint_venues)
        # Serializes stages 3-4 across concurrent update() calls.
        self._write_lock = threading.RLock()

        self.bus.subscribe("store.count", lambda n: self.bus.publish("library.count", n))
        self.bus.subscribe("store.updated", lambda t: self.bus.publish("library.updated", t))

    def _require_ready(self) -> None:
        if self.store.initializing:
            raise StoreUnavailable()

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------

    @safe_operation("Failed to load papers.", default=[])
    def load(
        self,
        query: str | FilterOptions = "",
        sort_by: str = "add_time",
        sort_order: str = "desc",
    ) -> list[PaperDraft]:
        """Load papers matching a predicate string or :class:`FilterOptions`.

        Full-text searches load every paper matching the remaining options
        and filter them through the full-text cache; the limit is applied
        afterwards.
        """
        self._require_ready()
        if isinstance(query, FilterOptions):
            text = sanitize_search(query.search)
            if query.search_mode == FULLTEXT and text:
                rest = query.apply(FilterPatch(search="", limit=0))
                drafts = self.store.load(compile_filter(rest), sort_by, sort_order)
                drafts = self.cache.full_text_filter(text, drafts)
                return drafts[: query.limit] if query.limit else drafts
            query = compile_filter(query)
        return self.store.load(query, sort_by, sort_order)

    @safe_operation("Failed to load papers by id.", default=[])
    def load_by_ids(self, ids: list[str]) -> list[PaperDraft]:
        self._require_ready()
        return self.store.load_by_ids(ids)

    # -----------------------------------------------------------------------
    # The update pipeline
    # -----------------------------------------------------------------------

    @safe_operation("Failed to update papers.", default=[])
    def update(self, drafts: Sequence[PaperDraft]) -> list[PaperDraft]:
        """Relocate files, persist, reconcile and cache; return persisted drafts."""
        self._require_ready()
        logger.info("Updating %d paper(s)", len(drafts))
        cut = self.preferences.get("source_file_operation") == "cut"

        # 1. Relocate files into the library folder
        def relocate(draft: PaperDraft) -> PaperDraft:
            if draft.main_url and not self.files.access(draft.main_url):
                logger.warning("%s", AccessError(draft.main_url))
                draft.main_url = ""
            moved = self.files.move(draft, cut)
            if moved is None:
                raise RelocationError(
                    draft.main_url or draft.title or draft.id, "the file service returned no result"
                )
            return moved

        outcome = chunk_run(
            [d.clone() for d in drafts],
            relocate,
            lambda d: d,
            chunk_size=self.chunk_size,
            max_workers=self.max_workers,
        )
        for item, exc in outcome.errors:
            logger.error("Failed to move files of %s: %s", item.title or item.id or "paper", exc)
        moved = outcome.results

        # 2. Normalize references
        for draft in moved:
            if draft.main_url and os.path.isabs(draft.main_url):
                draft.main_url = ""
            else:
                draft.main_url = os.path.basename(draft.main_url)
            draft.sup_urls = [u for u in draft.sup_urls if u and not os.path.isabs(u)]

        with self._write_lock:
            # 3. Persist, one transaction per draft
            relocated = [d.main_url for d in moved]
            persisted: list[PaperDraft | None] = []
            for draft in moved:
                try:
                    ok = self.store.update(draft)
                except FolioError as exc:
                    logger.error("%s", exc)
                    ok = False
                except Exception:
                    logger.exception("Failed to write paper %s", draft.id or draft.title)
                    ok = False
                persisted.append(draft if ok else None)

            # 4. Reconcile the filesystem with what was stored
            for name, draft, result in zip(relocated, moved, persisted):
                if result is None:
                    draft.main_url = name
                    self._remove_files(draft)
                elif name and result.main_url != name:
                    try:
                        self.files.move_file(name, result.main_url)
                    except FolioError as exc:
                        logger.error("%s", exc)

        # 5. Refresh the full-text cache in the background
        successes = [d for d in persisted if d is not None]
        self.cache.update_full_text_cache(successes)

        logger.info("Updated %d of %d paper(s)", len(successes), len(drafts))
        return successes

    def _remove_files(self, draft: PaperDraft) -> None:
        try:
            self.files.remove(draft)
        except OSError:
            logger.exception("Could not remove files of unsaved paper %s", draft.id or draft.title)

    # -----------------------------------------------------------------------
    # Operations built on update()
    # -----------------------------------------------------------------------

    @safe_operation("Failed to create papers.", default=[])
    def create(self, urls: Sequence[str | Path]) -> list[PaperDraft]:
        """Scrape metadata for new files and add them to the library."""
        self._require_ready()
        payloads = [ScrapePayload.file(url) for url in urls]
        drafts = self.scraper.scrape(payloads, (), False)
        return self.update(drafts)

    @safe_operation("Failed to create papers with categorizer.", default=[])
    def create_into_categorizer(
        self, urls: Sequence[str | Path], categorizer: Categorizer, kind: str
    ) -> list[PaperDraft]:
        """Create papers from *urls*, each holding *categorizer* as its only tag.

        Imports always file the categorizer as a tag; *kind* does not select
        a folder membership.
        """
        self._require_ready()
        if kind != TAG:
            logger.info("Import into %s '%s' is filed as a tag", kind, categorizer.name)
        drafts = self.create(urls)
        return self.update(replace_membership(drafts, categorizer, TAG))

    @safe_operation("Failed to update papers with categorizer.", default=[])
    def update_with_categorizer(
        self, ids: list[str], categorizer: Categorizer, kind: str
    ) -> list[PaperDraft]:
        """Add *categorizer* to the papers with *ids* (idempotent)."""
        self._require_ready()
        drafts = self.store.load_by_ids(ids)
        return self.update(apply_membership(drafts, categorizer, kind))

    @safe_operation("Failed to delete papers.", default=None)
    def delete(
        self, ids: list[str] | None = None, drafts: list[PaperDraft] | None = None
    ) -> None:
        """Delete records, then their files, then their cache entries."""
        self._require_ready()
        logger.info("Deleting %d paper(s)", len(ids or []) + len(drafts or []))
        for url in self.store.delete(ids, drafts):
            try:
                self.files.remove_file(url)
            except OSError as exc:
                logger.warning("Could not remove %s: %s", url, exc)
        cache_ids = list(ids or []) + [d.id for d in drafts or [] if d.id]
        if cache_ids:
            self.cache.delete(cache_ids)

    @safe_operation("Failed to delete supplementary file.", default=[])
    def delete_sup(self, draft: PaperDraft, url: str) -> list[PaperDraft]:
        """Remove one supplementary file and drop it from *draft*."""
        self._require_ready()
        logger.info("Removing supplementary file %s", url)
        self.files.remove_file(url)
        updated = draft.clone()
        updated.sup_urls = [u for u in updated.sup_urls if u != os.path.basename(url)]
        return self.update([updated])

    @safe_operation("Failed to rename all papers.", default=[])
    def rename_all(self) -> list[PaperDraft]:
        """Rename every managed file after its paper's current title."""
        self._require_ready()
        logger.info("Renaming all papers")
        drafts = self.store.load("", "title", "desc")
        renamed = []
        for draft in drafts:
            moved = self.files.move(draft, True, forced=True)
            renamed.append(moved if moved is not None else draft)
        return self.update(renamed)

    @safe_operation("Failed to migrate papers.", default=[])
    def migrate(self, source: RecordStore) -> list[PaperDraft]:
        """Replay every paper of *source* into this library's store."""
        self._require_ready()
        drafts = source.load("", "add_time", "asc")
        migrated = self.update(drafts)
        logger.info("Migrated %d of %d paper(s)", len(migrated), len(drafts))
        return migrated

    @safe_operation("Failed to scrape metadata.", default=None)
    def scrape(
        self, drafts: Sequence[PaperDraft], scrapers: Sequence[str] | None = None
    ) -> list[PaperDraft]:
        """Refresh metadata of existing papers and store the result.

        With *scrapers*, only those scrapers run.
        """
        self._require_ready()
        logger.info("Scraping %d paper(s)", len(drafts))
        payloads = [ScrapePayload.draft(d) for d in drafts]
        scraped = self.scraper.scrape(payloads, scrapers or (), scrapers is not None)
        check_cancelled("scrape: persist")
        return self.update(scraped)

    @safe_operation("Failed to scrape metadata of preprints.", default=None)
    def scrape_preprint(self) -> list[PaperDraft]:
        """Rescrape every paper from a preprint venue or with no venue."""
        self._require_ready()
        logger.info("Scraping metadata of preprint paper(s)")
        drafts = self.store.load(preprint_predicate(self.preprint_venues), "add_time", "desc")
        check_cancelled("scrape preprints: scrape")
        return self.scrape(drafts)
