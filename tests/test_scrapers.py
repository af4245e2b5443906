"""Tests for folio.scrapers — PDF / CrossRef scrapers and the scrape service.

HTTP is mocked; no test touches the network.
"""

from unittest.mock import MagicMock, patch

import httpx
import pytest

from conftest import make_pdf
from folio.errors import ScrapeError, UnknownScraper
from folio.models import PaperDraft
from folio.scrapers import (
    CrossrefScraper,
    PdfScraper,
    ScrapePayload,
    ScrapeService,
    get_with_retry,
)


def _resp(status: int, payload: dict | None = None, headers: dict | None = None) -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.headers = headers or {}
    resp.json.return_value = payload or {}
    return resp


# ---------------------------------------------------------------------------
# Payloads
# ---------------------------------------------------------------------------


class TestPayload:
    def test_file_payload_is_absolute(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        payload = ScrapePayload.file("a.pdf")
        assert payload.to_draft().main_url == str(tmp_path.resolve() / "a.pdf")

    def test_draft_payload_is_cloned(self):
        draft = PaperDraft(id="x", title="T")
        out = ScrapePayload.draft(draft).to_draft()
        out.title = "changed"
        assert draft.title == "T"

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown scrape payload"):
            ScrapePayload("url", "https://example.com").to_draft()


# ---------------------------------------------------------------------------
# HTTP retry
# ---------------------------------------------------------------------------


class TestGetWithRetry:
    @patch("folio.scrapers.time.sleep")
    def test_success_no_retry(self, mock_sleep):
        client = MagicMock()
        client.get.return_value = _resp(200)
        assert get_with_retry(client, "https://example.com").status_code == 200
        mock_sleep.assert_not_called()

    @patch("folio.scrapers.time.sleep")
    def test_503_retries_then_succeeds(self, mock_sleep):
        client = MagicMock()
        client.get.side_effect = [_resp(503), _resp(503), _resp(200)]
        assert get_with_retry(client, "https://example.com").status_code == 200
        assert client.get.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [1.0, 2.0]

    @patch("folio.scrapers.time.sleep")
    def test_retry_after_header(self, mock_sleep):
        client = MagicMock()
        client.get.side_effect = [_resp(429, headers={"retry-after": "5"}), _resp(200)]
        get_with_retry(client, "https://example.com")
        mock_sleep.assert_called_once_with(5.0)

    @patch("folio.scrapers.time.sleep")
    def test_gives_up_and_returns_last(self, mock_sleep):
        client = MagicMock()
        client.get.return_value = _resp(500)
        assert get_with_retry(client, "https://example.com", max_retries=2).status_code == 500
        assert client.get.call_count == 3

    @patch("folio.scrapers.time.sleep")
    def test_404_not_retried(self, mock_sleep):
        client = MagicMock()
        client.get.return_value = _resp(404)
        assert get_with_retry(client, "https://example.com").status_code == 404
        assert client.get.call_count == 1

    @patch("folio.scrapers.time.sleep")
    def test_connect_error_raises_after_retries(self, mock_sleep):
        client = MagicMock()
        client.get.side_effect = httpx.ConnectError("refused")
        with pytest.raises(httpx.ConnectError):
            get_with_retry(client, "https://example.com", max_retries=1)
        assert client.get.call_count == 2


# ---------------------------------------------------------------------------
# PDF scraper
# ---------------------------------------------------------------------------


class TestPdfScraper:
    def test_metadata_title_and_author(self, tmp_path):
        pdf = make_pdf(tmp_path / "x.pdf", "Some text", title="Deep Nets", author="Ada Lovelace")
        draft = PdfScraper().scrape(PaperDraft(main_url=str(pdf)))
        assert draft.title == "Deep Nets"
        assert draft.authors == "Ada Lovelace"

    def test_stem_fallback(self, tmp_path):
        pdf = make_pdf(tmp_path / "graph_theory.pdf", "Nothing here")
        assert PdfScraper().scrape(PaperDraft(main_url=str(pdf))).title == "graph theory"

    def test_existing_title_kept(self, tmp_path):
        pdf = make_pdf(tmp_path / "x.pdf", title="From PDF")
        assert PdfScraper().scrape(PaperDraft(title="Mine", main_url=str(pdf))).title == "Mine"

    def test_doi_and_arxiv_from_first_page(self, tmp_path):
        pdf = make_pdf(tmp_path / "x.pdf", "doi: 10.1234/abc.5678. arXiv:2101.01234v2")
        draft = PdfScraper().scrape(PaperDraft(main_url=str(pdf)))
        assert draft.doi == "10.1234/abc.5678"
        assert draft.arxiv == "2101.01234"
        assert draft.publication == "arXiv"

    def test_relative_url_resolved_in_library(self, tmp_path):
        make_pdf(tmp_path / "lib" / "p.pdf", title="Managed")
        draft = PdfScraper(tmp_path / "lib").scrape(PaperDraft(main_url="p.pdf"))
        assert draft.title == "Managed"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ScrapeError, match="file not found"):
            PdfScraper().scrape(PaperDraft(main_url=str(tmp_path / "gone.pdf")))

    def test_non_pdf_ignored(self, tmp_path):
        draft = PaperDraft(main_url=str(tmp_path / "notes.txt"))
        assert PdfScraper().scrape(draft) is draft


# ---------------------------------------------------------------------------
# CrossRef scraper
# ---------------------------------------------------------------------------

WORK = {
    "DOI": "10.1038/nature12373",
    "title": ["Nanometre-scale thermometry in a living cell"],
    "author": [{"given": "G.", "family": "Kucsko"}, {"given": "P. C.", "family": "Maurer"}],
    "container-title": ["Nature"],
    "published-print": {"date-parts": [[2013, 8, 1]]},
    "publisher": "Springer",
    "volume": "500",
    "issue": "7460",
    "page": "54-58",
    "type": "journal-article",
}


class TestCrossrefScraper:
    def test_by_doi(self):
        with patch("folio.scrapers.get_with_retry") as mock:
            mock.return_value = _resp(200, {"message": WORK})
            draft = CrossrefScraper(client=MagicMock()).scrape(PaperDraft(doi="10.1038/nature12373"))
        assert mock.call_args.args[1].endswith("10.1038%2Fnature12373")
        assert draft.title == "Nanometre-scale thermometry in a living cell"
        assert draft.authors == "G. Kucsko, P. C. Maurer"
        assert (draft.publication, draft.pub_time, draft.pub_type) == ("Nature", "2013", 0)
        assert (draft.volume, draft.number, draft.pages) == ("500", "7460", "54-58")

    def test_by_exact_title(self):
        with patch("folio.scrapers.get_with_retry") as mock:
            mock.return_value = _resp(200, {"message": {"items": [WORK]}})
            draft = CrossrefScraper(client=MagicMock()).scrape(
                PaperDraft(title="Nanometre-scale Thermometry in a Living Cell")
            )
        assert mock.call_args.kwargs["params"]["query.bibliographic"].startswith("Nanometre")
        assert draft.doi == "10.1038/nature12373"

    def test_title_mismatch_ignored(self):
        with patch("folio.scrapers.get_with_retry") as mock:
            mock.return_value = _resp(200, {"message": {"items": [WORK]}})
            draft = CrossrefScraper(client=MagicMock()).scrape(PaperDraft(title="Something else"))
        assert draft.doi == ""
        assert draft.publication == ""

    def test_http_error(self):
        with patch("folio.scrapers.get_with_retry", return_value=_resp(404)):
            with pytest.raises(ScrapeError, match="HTTP 404"):
                CrossrefScraper(client=MagicMock()).scrape(PaperDraft(doi="10.1/x"))

    def test_unreachable(self):
        with patch("folio.scrapers.get_with_retry", side_effect=httpx.TimeoutException("")):
            with pytest.raises(ScrapeError, match="unreachable"):
                CrossrefScraper(client=MagicMock()).scrape(PaperDraft(doi="10.1/x"))

    def test_nothing_to_look_up(self):
        with patch("folio.scrapers.get_with_retry") as mock:
            CrossrefScraper(client=MagicMock()).scrape(PaperDraft())
        mock.assert_not_called()


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class Suffix:
    """Scraper that appends its name to the title."""

    def __init__(self, name: str, fail_on: str = ""):
        self.name = name
        self.fail_on = fail_on

    def scrape(self, draft: PaperDraft) -> PaperDraft:
        if draft.id == self.fail_on:
            raise ScrapeError(self.name, draft.id, "boom")
        draft.title += f"+{self.name}"
        return draft


class TestScrapeService:
    def test_runs_enabled_in_order(self):
        service = ScrapeService([Suffix("a"), Suffix("b")])
        [out] = service.scrape([ScrapePayload.draft(PaperDraft(id="1", title="t"))])
        assert out.title == "t+a+b"

    def test_extra_scrapers_appended(self):
        service = ScrapeService([Suffix("a"), Suffix("b")], enabled=["a"])
        [out] = service.scrape([ScrapePayload.draft(PaperDraft(id="1"))], scrapers=["b"])
        assert out.title == "+a+b"

    def test_exclusive(self):
        service = ScrapeService([Suffix("a"), Suffix("b")])
        [out] = service.scrape([ScrapePayload.draft(PaperDraft(id="1"))], ["b"], exclusive=True)
        assert out.title == "+b"

    def test_payload_order_preserved(self):
        service = ScrapeService([Suffix("a")], chunk_size=2)
        payloads = [ScrapePayload.draft(PaperDraft(id=str(i), title=str(i))) for i in range(5)]
        assert [d.id for d in service.scrape(payloads)] == ["0", "1", "2", "3", "4"]

    def test_failing_scraper_skipped_per_draft(self):
        service = ScrapeService([Suffix("a", fail_on="2"), Suffix("b")])
        out = service.scrape(
            [ScrapePayload.draft(PaperDraft(id="1")), ScrapePayload.draft(PaperDraft(id="2"))]
        )
        assert [d.title for d in out] == ["+a+b", "+b"]

    def test_unknown_enabled(self):
        with pytest.raises(UnknownScraper, match="'nope'"):
            ScrapeService([Suffix("a")], enabled=["nope"])

    def test_unknown_requested(self):
        service = ScrapeService([Suffix("a")])
        with pytest.raises(UnknownScraper):
            service.scrape([], ["nope"])
