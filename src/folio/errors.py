"""Exception hierarchy for Folio.

Every error message includes: what happened, why, and what to do next.
Per-item errors raised inside the update pipeline are caught, logged and
never reach the caller of a public library operation.
"""

from __future__ import annotations


class FolioError(Exception):
    """Base class for all Folio errors."""


class AccessError(FolioError):
    """A referenced file does not exist or cannot be read."""

    def __init__(self, url: str, reason: str = "file not found"):
        super().__init__(
            f"Cannot access '{url}': {reason}. "
            f"The paper keeps its record but loses the file reference. "
            f"Re-attach the file with an import if it was moved."
        )
        self.url = url
        self.reason = reason


class RelocationError(FolioError):
    """Moving or copying a file into the library folder failed."""

    def __init__(self, url: str, reason: str):
        super().__init__(
            f"Could not relocate '{url}' into the library: {reason}. "
            f"The paper keeps its previous file references. "
            f"Check permissions on the library folder and free disk space."
        )
        self.url = url
        self.reason = reason


class PersistenceError(FolioError):
    """Writing a paper record to the database failed."""

    def __init__(self, paper_id: str, reason: str):
        super().__init__(
            f"Failed to write paper '{paper_id}' to the database: {reason}. "
            f"Files relocated for this paper were removed again. "
            f"Retry the operation; if it keeps failing, check the database file."
        )
        self.paper_id = paper_id
        self.reason = reason


class ScrapeError(FolioError):
    """Metadata extraction for a payload failed."""

    def __init__(self, scraper: str, target: str, reason: str):
        super().__init__(
            f"Scraper '{scraper}' failed for '{target}': {reason}. "
            f"The paper keeps its current metadata. "
            f"Edit it manually or retry the scrape later."
        )
        self.scraper = scraper
        self.target = target
        self.reason = reason


class StoreUnavailable(FolioError):
    """The record store is still initializing or unreachable."""

    def __init__(self, detail: str = "database is initializing"):
        super().__init__(
            f"Paper database unavailable: {detail}. "
            f"Wait for initialization to finish and try again."
        )
        self.detail = detail


class QuerySyntaxError(FolioError):
    """An advanced-mode query string could not be parsed."""

    def __init__(self, query: str, position: int, detail: str):
        super().__init__(
            f"Invalid query at position {position}: {detail}. "
            f"Query was: {query!r}. "
            f'Example: title CONTAINS[c] "graph" AND addTime > [7 DAYS] LIMIT(20)'
        )
        self.query = query
        self.position = position
        self.detail = detail


class ConfigError(FolioError):
    """Project configuration is missing or invalid."""

    def __init__(self, detail: str, hint: str = ""):
        msg = f"Configuration error: {detail}."
        if hint:
            msg += f" {hint}"
        super().__init__(msg)
        self.detail = detail
        self.hint = hint


class UnknownScraper(ConfigError):
    """A scraper name is not registered."""

    def __init__(self, name: str, available: list[str]):
        avail_str = ", ".join(f"'{s}'" for s in available) if available else "(none registered)"
        super().__init__(
            f"Scraper '{name}' is not registered. Available scrapers: {avail_str}",
            hint="Fix the 'scrapers:' list in .folio/config.yaml.",
        )
        self.name = name
