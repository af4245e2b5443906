"""File names for managed library files.

Primary files are stored as ``<slug>_<id8>.<ext>`` and supplementary files
as ``<slug>_<id8>_sup<k>.<ext>``, where *slug* is a few distinctive words
of the title and *id8* the first eight characters of the paper id.
"""

from __future__ import annotations

import re
from pathlib import PurePath
from unicodedata import normalize

from stop_words import get_stop_words

_ENGLISH_STOPS = frozenset(get_stop_words("en"))

MAX_SLUG_WORDS = 4
MAX_SLUG_CHARS = 48
UNTITLED = "untitled"


def slug_from_title(title: str, max_words: int = MAX_SLUG_WORDS) -> str:
    """Lowercase ASCII slug of the first meaningful title words, joined by ``-``.

    Returns ``"untitled"`` when the title has no usable words.
    """
    text = normalize("NFKD", title).encode("ascii", "ignore").decode().lower()
    words = re.findall(r"[a-z0-9]+", text)
    meaningful = [w for w in words if w not in _ENGLISH_STOPS] or words
    if not meaningful:
        return UNTITLED
    slug = "-".join(meaningful[:max_words])
    return slug[:MAX_SLUG_CHARS].rstrip("-") or UNTITLED


def _extension(source: str, default: str) -> str:
    suffix = PurePath(source).suffix.lower()
    return suffix if re.fullmatch(r"\.[a-z0-9]{1,8}", suffix) else default


def main_file_name(title: str, paper_id: str, source: str = "") -> str:
    """Managed name for a paper's primary file; the extension comes from *source*."""
    return f"{slug_from_title(title)}_{paper_id[:8]}{_extension(source, '.pdf')}"


def sup_file_name(title: str, paper_id: str, index: int, source: str) -> str:
    """Managed name for the *index*-th supplementary file (1-based)."""
    return f"{slug_from_title(title)}_{paper_id[:8]}_sup{index}{_extension(source, '')}"
