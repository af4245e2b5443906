"""Metadata scrapers and the service that dispatches payloads to them.

A payload is either a file to import or an existing draft to refresh.
:class:`ScrapeService` turns every payload into a draft and passes it
through the selected scrapers in order.  A scraper failing for one draft
is logged and skipped; the draft continues with the metadata it has.

Built-in scrapers:

- ``pdf``: title / authors from the PDF metadata (file stem as a last
  resort) and a DOI or arXiv id spotted on the first page.
- ``crossref``: refreshes bibliographic fields from CrossRef, by DOI when
  known, else by an exact-title search.
"""

from __future__ import annotations

import logging
import re
import time
import unicodedata
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol
from urllib.parse import quote

import fitz  # PyMuPDF
import httpx

from folio.chunk_run import chunk_run
from folio.errors import ScrapeError, UnknownScraper
from folio.models import PaperDraft

logger = logging.getLogger(__name__)

FILE = "file"
DRAFT = "draft"


@dataclass
class ScrapePayload:
    """Something to scrape: a file path (``type="file"``) or a draft."""

    type: str
    value: str | PaperDraft

    @classmethod
    def file(cls, url: str | Path) -> ScrapePayload:
        return cls(FILE, str(Path(url).expanduser().resolve()))

    @classmethod
    def draft(cls, draft: PaperDraft) -> ScrapePayload:
        return cls(DRAFT, draft)

    def to_draft(self) -> PaperDraft:
        if self.type == FILE:
            return PaperDraft(main_url=str(self.value))
        if self.type == DRAFT and isinstance(self.value, PaperDraft):
            return self.value.clone()
        raise ValueError(f"Unknown scrape payload type '{self.type}'")


class MetadataScraper(Protocol):
    name: str

    def scrape(self, draft: PaperDraft) -> PaperDraft: ...


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

DEFAULT_TIMEOUT = 15.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_BASE = 1.0  # seconds, doubled per retry


def get_with_retry(
    client: httpx.Client,
    url: str,
    *,
    max_retries: int = DEFAULT_MAX_RETRIES,
    backoff_base: float = DEFAULT_BACKOFF_BASE,
    **kwargs,
) -> httpx.Response:
    """GET with exponential backoff on connection errors, 429 and 5xx.

    Returns the last response, which may still be an error status.

    Raises:
        httpx.ConnectError, httpx.TimeoutException: When every attempt failed
            to connect.
    """
    for attempt in range(max_retries + 1):
        wait = backoff_base * (2**attempt)
        try:
            resp = client.get(url, **kwargs)
        except (httpx.ConnectError, httpx.TimeoutException):
            if attempt == max_retries:
                raise
            time.sleep(wait)
            continue
        if (resp.status_code == 429 or resp.status_code >= 500) and attempt < max_retries:
            retry_after = resp.headers.get("retry-after", "")
            if retry_after.isdigit():
                wait = max(wait, float(retry_after))
            time.sleep(wait)
            continue
        return resp
    raise AssertionError("unreachable")


# ---------------------------------------------------------------------------
# PDF scraper
# ---------------------------------------------------------------------------

_DOI_RE = re.compile(r"\b(10\.\d{4,9}/[^\s\"<>]+)", re.IGNORECASE)
_ARXIV_RE = re.compile(r"arXiv:\s*(\d{4}\.\d{4,5})(v\d+)?", re.IGNORECASE)


class PdfScraper:
    """Fill empty title / authors / doi / arxiv from the PDF itself."""

    name = "pdf"

    def __init__(self, library_dir: Path | None = None):
        self.library_dir = library_dir

    def _path(self, url: str) -> Path:
        path = Path(url)
        if not path.is_absolute() and self.library_dir is not None:
            path = self.library_dir / path
        return path

    def scrape(self, draft: PaperDraft) -> PaperDraft:
        if not draft.main_url:
            return draft
        path = self._path(draft.main_url)
        if path.suffix.lower() != ".pdf":
            return draft
        if not path.is_file():
            raise ScrapeError(self.name, draft.main_url, "file not found")

        try:
            doc = fitz.open(str(path))
        except Exception as exc:
            raise ScrapeError(self.name, draft.main_url, f"unreadable PDF ({exc})") from exc
        try:
            meta = doc.metadata or {}
            first_page = doc[0].get_text() if len(doc) else ""
        finally:
            doc.close()

        if not draft.title:
            draft.title = (meta.get("title") or "").strip() or path.stem.replace("_", " ")
        if not draft.authors:
            draft.authors = (meta.get("author") or "").strip()
        if not draft.doi:
            m = _DOI_RE.search(first_page)
            if m:
                draft.doi = m.group(1).rstrip(".,;)")
        if not draft.arxiv:
            m = _ARXIV_RE.search(first_page)
            if m:
                draft.arxiv = m.group(1)
                if not draft.publication:
                    draft.publication = "arXiv"
        return draft


# ---------------------------------------------------------------------------
# CrossRef scraper
# ---------------------------------------------------------------------------

CROSSREF_API = "https://api.crossref.org/works"

# CrossRef work type -> pub_type (0 article, 1 conference, 2 others, 3 book)
_PUB_TYPES = {
    "journal-article": 0,
    "proceedings-article": 1,
    "book": 3,
    "monograph": 3,
    "edited-book": 3,
}


def _normalize_title(title: str) -> str:
    text = unicodedata.normalize("NFKD", title).encode("ascii", "ignore").decode().lower()
    return re.sub(r"[^a-z0-9]+", "", text)


class CrossrefScraper:
    """Refresh bibliographic fields from the CrossRef works API."""

    name = "crossref"

    def __init__(self, client: httpx.Client | None = None, mailto: str = ""):
        ua = f"Folio/0.1 (mailto:{mailto})" if mailto else "Folio/0.1"
        self.client = client or httpx.Client(
            headers={"User-Agent": ua}, timeout=DEFAULT_TIMEOUT, follow_redirects=True
        )

    def scrape(self, draft: PaperDraft) -> PaperDraft:
        target = draft.doi or draft.title
        if not target:
            return draft
        try:
            message = self._by_doi(draft.doi) if draft.doi else self._by_title(draft.title)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise ScrapeError(self.name, target, f"CrossRef unreachable ({exc})") from exc
        if message is None:
            return draft
        _apply_crossref(draft, message)
        return draft

    def _by_doi(self, doi: str) -> dict:
        resp = get_with_retry(self.client, f"{CROSSREF_API}/{quote(doi, safe='')}")
        if resp.status_code != 200:
            raise ScrapeError(self.name, doi, f"CrossRef returned HTTP {resp.status_code}")
        return resp.json().get("message", {})

    def _by_title(self, title: str) -> dict | None:
        resp = get_with_retry(
            self.client, CROSSREF_API, params={"query.bibliographic": title, "rows": 1}
        )
        if resp.status_code != 200:
            raise ScrapeError(self.name, title, f"CrossRef returned HTTP {resp.status_code}")
        items = resp.json().get("message", {}).get("items", [])
        if not items:
            return None
        found = (items[0].get("title") or [""])[0]
        if _normalize_title(found) != _normalize_title(title):
            logger.debug("CrossRef best match %r differs from %r; ignored", found, title)
            return None
        return items[0]


def _apply_crossref(draft: PaperDraft, message: dict) -> None:
    titles = message.get("title") or []
    if titles:
        draft.title = titles[0]
    authors = []
    for author in message.get("author", []):
        given, family = author.get("given", ""), author.get("family", "")
        name = f"{given} {family}".strip() or author.get("name", "")
        if name:
            authors.append(name)
    if authors:
        draft.authors = ", ".join(authors)
    venues = message.get("container-title") or []
    if venues:
        draft.publication = venues[0]
    published = (
        message.get("published-print")
        or message.get("published-online")
        or message.get("issued")
        or {}
    )
    parts = published.get("date-parts") or [[]]
    if parts and parts[0] and parts[0][0]:
        draft.pub_time = str(parts[0][0])
    if message.get("DOI"):
        draft.doi = message["DOI"]
    draft.publisher = message.get("publisher", draft.publisher)
    draft.volume = message.get("volume", draft.volume)
    draft.number = message.get("issue", draft.number)
    draft.pages = message.get("page", draft.pages)
    draft.pub_type = _PUB_TYPES.get(message.get("type", ""), 2)


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ScrapeService:
    """Runs payloads through an ordered list of registered scrapers."""

    def __init__(
        self,
        scrapers: Sequence[MetadataScraper],
        enabled: Sequence[str] | None = None,
        chunk_size: int = 20,
        max_workers: int = 4,
    ):
        self.registry = {s.name: s for s in scrapers}
        self.enabled = list(enabled) if enabled is not None else list(self.registry)
        self.chunk_size = chunk_size
        self.max_workers = max_workers
        for name in self.enabled:
            self._get(name)

    def _get(self, name: str) -> MetadataScraper:
        if name not in self.registry:
            raise UnknownScraper(name, sorted(self.registry))
        return self.registry[name]

    def scrape(
        self,
        payloads: list[ScrapePayload],
        scrapers: Sequence[str] = (),
        exclusive: bool = False,
    ) -> list[PaperDraft]:
        """Return one draft per payload, in payload order.

        Args:
            payloads: Files to import or drafts to refresh.
            scrapers: Extra scraper names to run after the enabled ones,
                or the only ones to run when *exclusive*.
            exclusive: Run only *scrapers*.

        Raises:
            UnknownScraper: If a name in *scrapers* is not registered.
        """
        names = list(scrapers) if exclusive else self.enabled + [
            s for s in scrapers if s not in self.enabled
        ]
        chain = [self._get(n) for n in names]
        drafts = [p.to_draft() for p in payloads]

        def run_chain(draft: PaperDraft) -> PaperDraft:
            for scraper in chain:
                try:
                    draft = scraper.scrape(draft)
                except ScrapeError as exc:
                    logger.warning("%s", exc)
                except Exception:
                    logger.exception("Scraper '%s' crashed on %s", scraper.name, draft.main_url or draft.id)
            return draft

        outcome = chunk_run(
            drafts,
            run_chain,
            lambda d: d,
            chunk_size=self.chunk_size,
            max_workers=self.max_workers,
        )
        for item, exc in outcome.errors:
            logger.error("Scraping %s failed: %s", item.main_url or item.id, exc)
        logger.info("Scraped %d payload(s) with %s", len(drafts), ", ".join(names) or "no scrapers")
        return outcome.results
