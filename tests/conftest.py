"""Shared test fixtures for Folio."""

from __future__ import annotations

from collections.abc import Sequence
from pathlib import Path

import fitz
import pytest

from folio.catalog import Catalog
from folio.events import EventBus
from folio.files import FileService
from folio.library import PaperLibrary
from folio.models import PaperDraft
from folio.preferences import Preferences
from folio.scrapers import ScrapePayload


def make_pdf(path: Path, text: str = "Hello world.", title: str = "", author: str = "") -> Path:
    """Write a one-page PDF with *text* on it."""
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text(fitz.Point(72, 72), text)
    if title or author:
        doc.set_metadata({"title": title, "author": author})
    path.parent.mkdir(parents=True, exist_ok=True)
    doc.save(str(path))
    doc.close()
    return path


class StemScraper:
    """Scraper fake: titles new files after their stem, leaves drafts alone."""

    def __init__(self) -> None:
        self.calls: list[tuple[list[ScrapePayload], tuple[str, ...], bool]] = []

    def scrape(
        self, payloads: list[ScrapePayload], scrapers: Sequence[str] = (), exclusive: bool = False
    ) -> list[PaperDraft]:
        self.calls.append((list(payloads), tuple(scrapers), exclusive))
        drafts = []
        for payload in payloads:
            draft = payload.to_draft()
            if not draft.title and draft.main_url:
                draft.title = Path(draft.main_url).stem.replace("_", " ")
            drafts.append(draft)
        return drafts


class RecordingCache:
    """Full-text cache fake keyed by paper id."""

    def __init__(self) -> None:
        self.refreshed: list[list[PaperDraft]] = []
        self.deleted: list[str] = []
        self.texts: dict[str, str] = {}

    def update_full_text_cache(self, drafts: list[PaperDraft]) -> None:
        self.refreshed.append(list(drafts))

    def delete(self, ids: list[str]) -> None:
        self.deleted.extend(ids)

    def full_text_filter(self, query: str, drafts: list[PaperDraft]) -> list[PaperDraft]:
        return [d for d in drafts if query.lower() in self.texts.get(d.id, "").lower()]


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def catalog(tmp_path: Path, bus: EventBus) -> Catalog:
    return Catalog(tmp_path / ".folio" / "catalog.db", bus).open()


@pytest.fixture
def files(tmp_path: Path) -> FileService:
    return FileService(tmp_path / "library")


@pytest.fixture
def prefs(tmp_path: Path) -> Preferences:
    return Preferences(tmp_path / ".folio" / "preferences.json")


@pytest.fixture
def cache() -> RecordingCache:
    return RecordingCache()


@pytest.fixture
def scraper() -> StemScraper:
    return StemScraper()


@pytest.fixture
def library(catalog, files, scraper, cache, prefs, bus) -> PaperLibrary:
    return PaperLibrary(catalog, files, scraper, cache, prefs, bus=bus)


@pytest.fixture
def inbox(tmp_path: Path) -> Path:
    """Folder outside the library holding files to import."""
    path = tmp_path / "inbox"
    path.mkdir()
    return path
