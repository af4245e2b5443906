"""Interfaces of the collaborators :class:`folio.library.PaperLibrary` drives.

The default implementations are :class:`folio.catalog.Catalog`,
:class:`folio.files.FileService`, :class:`folio.scrapers.ScrapeService`,
:class:`folio.fulltext.FullTextCache` and :class:`folio.preferences.Preferences`.
Tests substitute fakes.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any, Protocol

from folio.models import PaperDraft

if TYPE_CHECKING:
    from folio.scrapers import ScrapePayload


class RecordStore(Protocol):
    initializing: bool

    def load(
        self, predicate: str = "", sort_by: str = "add_time", sort_order: str = "desc"
    ) -> list[PaperDraft]: ...

    def load_by_ids(self, ids: list[str]) -> list[PaperDraft]: ...

    def update(self, draft: PaperDraft) -> bool:
        """Persist one draft atomically; may raise."""
        ...

    def delete(
        self, ids: list[str] | None = None, drafts: list[PaperDraft] | None = None
    ) -> list[str]:
        """Delete records; return the file names they referenced."""
        ...


class FileAccess(Protocol):
    def access(self, url: str) -> bool: ...

    def move(self, draft: PaperDraft, cut: bool, forced: bool = False) -> PaperDraft | None:
        """Relocate files into the library; ``None`` means failure."""
        ...

    def remove(self, draft: PaperDraft) -> None: ...

    def remove_file(self, url: str) -> None: ...

    def move_file(self, src: str, dst: str) -> None: ...


class Scraper(Protocol):
    def scrape(
        self, payloads: list[ScrapePayload], scrapers: Sequence[str] = (), exclusive: bool = False
    ) -> list[PaperDraft]: ...


class FullTextIndex(Protocol):
    def update_full_text_cache(self, drafts: list[PaperDraft]) -> None:
        """Schedule a refresh; must not block on extraction."""
        ...

    def delete(self, ids: list[str]) -> None: ...

    def full_text_filter(self, query: str, drafts: list[PaperDraft]) -> list[PaperDraft]: ...


class PreferenceStore(Protocol):
    def get(self, key: str) -> Any: ...

    def set(self, values: dict[str, Any]) -> None: ...
