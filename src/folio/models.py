"""Paper drafts and categorizers.

A :class:`PaperDraft` is the in-memory, not-yet-confirmed copy of a paper
record.  Drafts loaded from the catalog are always fresh copies, so callers
mutate them freely and commit through :meth:`folio.library.PaperLibrary.update`.

File references follow one lifecycle for the primary file (``main_url``) and
every supplementary file (``sup_urls``):

- absolute path   — in transit, not yet relocated into the library folder
- bare file name  — persisted; resolved against the library folder
- ``""``          — no file (primary only)
"""

from __future__ import annotations

import copy
import uuid
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any

TAG = "tag"
FOLDER = "folder"
CATEGORIZER_KINDS = frozenset({TAG, FOLDER})


def new_id() -> str:
    """Return a fresh paper / categorizer identity."""
    return uuid.uuid4().hex


@dataclass
class Categorizer:
    """A named tag or folder.  Memberships compare by ``id`` only."""

    name: str
    kind: str = TAG
    id: str = field(default_factory=new_id)
    color: str = ""

    def __post_init__(self) -> None:
        if self.kind not in CATEGORIZER_KINDS:
            raise ValueError(
                f"Invalid categorizer kind '{self.kind}'. Valid kinds: {sorted(CATEGORIZER_KINDS)}"
            )

    def copy(self) -> Categorizer:
        return Categorizer(name=self.name, kind=self.kind, id=self.id, color=self.color)


@dataclass
class PaperDraft:
    """A mutable paper record."""

    # Identity
    id: str = ""
    title: str = ""
    authors: str = ""
    publication: str = ""
    pub_time: str = ""  # year as text, e.g. "2021"
    pub_type: int = 0  # 0 article, 1 conference, 2 others, 3 book
    doi: str = ""
    arxiv: str = ""
    pages: str = ""
    volume: str = ""
    number: str = ""
    publisher: str = ""

    # User state
    note: str = ""
    flag: bool = False
    rating: int = 0
    tags: list[Categorizer] = field(default_factory=list)
    folders: list[Categorizer] = field(default_factory=list)

    # Files
    main_url: str = ""
    sup_urls: list[str] = field(default_factory=list)

    # Timestamps
    add_time: datetime | None = None

    def clone(self) -> PaperDraft:
        """Deep copy; the clone shares no lists or categorizers with ``self``."""
        return copy.deepcopy(self)

    def memberships(self, kind: str) -> list[Categorizer]:
        """Return the tag or folder membership list for *kind*."""
        if kind == TAG:
            return self.tags
        if kind == FOLDER:
            return self.folders
        raise ValueError(f"Invalid categorizer kind '{kind}'")

    def set_memberships(self, kind: str, values: list[Categorizer]) -> None:
        if kind == TAG:
            self.tags = values
        elif kind == FOLDER:
            self.folders = values
        else:
            raise ValueError(f"Invalid categorizer kind '{kind}'")

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dict."""
        data = asdict(self)
        data["add_time"] = self.add_time.isoformat() if self.add_time else None
        return data


def utcnow() -> datetime:
    return datetime.now(UTC)


def parse_timestamp(text: str) -> datetime:
    """Parse an ISO timestamp, assuming UTC when no offset is given."""
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


# Query-language field names (camelCase, part of the user-facing query DSL)
# mapped onto PaperDraft attributes.
QUERY_FIELDS: dict[str, str] = {
    "id": "id",
    "_id": "id",
    "title": "title",
    "authors": "authors",
    "publication": "publication",
    "pubTime": "pub_time",
    "pubType": "pub_type",
    "doi": "doi",
    "arxiv": "arxiv",
    "pages": "pages",
    "volume": "volume",
    "number": "number",
    "publisher": "publisher",
    "note": "note",
    "flag": "flag",
    "rating": "rating",
    "tags": "tags",
    "folders": "folders",
    "mainURL": "main_url",
    "supURLs": "sup_urls",
    "addTime": "add_time",
}
