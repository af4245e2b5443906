"""Folio project configuration: loads and validates .folio/config.yaml.

The config file lives in the project's ``.folio/`` directory next to the
databases.  It names the library folder and database files and tunes the
update pipeline and the rescrape schedule.  Relative paths are resolved
against the project root.

If no config exists, create_default() writes a commented starter file.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from folio.errors import ConfigError
from folio.paths import DOT_DIR, LIBRARY_DIR


@dataclass
class FolioConfig:
    """Parsed .folio/config.yaml."""

    library_dir: str = f"{DOT_DIR}/{LIBRARY_DIR}"
    database: str = f"{DOT_DIR}/catalog.db"
    local_database: str = f"{DOT_DIR}/local.db"
    cache_database: str = f"{DOT_DIR}/cache.db"
    preferences: str = f"{DOT_DIR}/preferences.json"
    chunk_size: int = 20
    max_workers: int = 4
    rescrape_period_days: float = 7
    rescrape_tolerance_secs: float = 10
    rescrape_timeout_secs: float = 600
    preprint_venues: list[str] = field(default_factory=lambda: ["arXiv", "openreview"])
    scrapers: list[str] = field(default_factory=lambda: ["pdf", "crossref"])
    sha256: str = ""  # checksum of the raw config file

    def resolve(self, root: Path, value: str) -> Path:
        """Resolve a configured path against the project root."""
        path = Path(value).expanduser()
        return path if path.is_absolute() else root / path


_DEFAULT_CONFIG = """\
# Folio project configuration
# Paths are relative to the project root (the folder containing .folio/).

# Folder that holds the managed paper files.
library_dir: .folio/library

# Main paper database, the local database a migration reads from,
# and the full-text cache.
database: .folio/catalog.db
local_database: .folio/local.db
cache_database: .folio/cache.db
preferences: .folio/preferences.json

# Update pipeline: papers per chunk and concurrent file moves per chunk.
chunk_size: 20
max_workers: 4

# Routine rescrape of preprints (arXiv / OpenReview / unknown venue).
# Disable it with `allow_routine_match: false` in preferences.json.
rescrape_period_days: 7
rescrape_tolerance_secs: 10
rescrape_timeout_secs: 600
preprint_venues:
  - arXiv
  - openreview

# Metadata scrapers, tried in order.  Available: pdf, crossref
scrapers:
  - pdf
  - crossref
"""


def config_path(dot_dir: Path) -> Path:
    """Path to config.yaml inside the .folio/ directory."""
    return dot_dir / "config.yaml"


def create_default(dot_dir: Path) -> Path:
    """Write a starter config.yaml if it doesn't exist. Returns the path."""
    p = config_path(dot_dir)
    if not p.exists():
        dot_dir.mkdir(parents=True, exist_ok=True)
        p.write_text(_DEFAULT_CONFIG, encoding="utf-8")
    return p


def _positive(
    data: dict, key: str, default: float, cast: type, p: Path, allow_zero: bool = False
) -> float:
    value = data.get(key, default)
    try:
        value = cast(value)
    except (TypeError, ValueError) as e:
        raise ConfigError(
            f"'{key}' in {p} must be a number, got {value!r}", hint="Fix or remove the entry."
        ) from e
    if value < 0 or (value == 0 and not allow_zero):
        raise ConfigError(f"'{key}' in {p} must be positive, got {value}")
    return value


def _string_list(data: dict, key: str, default: list[str], p: Path) -> list[str]:
    value = data.get(key, default)
    if value is None:
        return list(default)
    if not isinstance(value, list):
        raise ConfigError(f"'{key}' in {p} must be a list, got {type(value).__name__}")
    return [str(v) for v in value]


def load_config(dot_dir: Path) -> FolioConfig:
    """Load and validate config.yaml. Returns defaults if file is missing."""
    p = config_path(dot_dir)
    if not p.exists():
        return FolioConfig()

    raw = p.read_text(encoding="utf-8")
    sha = hashlib.sha256(raw.encode("utf-8")).hexdigest()

    try:
        data = yaml.safe_load(raw) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {p}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Expected a YAML mapping in {p}, got {type(data).__name__}")

    defaults = FolioConfig()
    return FolioConfig(
        library_dir=str(data.get("library_dir", defaults.library_dir)),
        database=str(data.get("database", defaults.database)),
        local_database=str(data.get("local_database", defaults.local_database)),
        cache_database=str(data.get("cache_database", defaults.cache_database)),
        preferences=str(data.get("preferences", defaults.preferences)),
        chunk_size=int(_positive(data, "chunk_size", defaults.chunk_size, int, p)),
        max_workers=int(_positive(data, "max_workers", defaults.max_workers, int, p)),
        rescrape_period_days=_positive(
            data, "rescrape_period_days", defaults.rescrape_period_days, float, p
        ),
        rescrape_tolerance_secs=_positive(
            data, "rescrape_tolerance_secs", defaults.rescrape_tolerance_secs, float, p, True
        ),
        rescrape_timeout_secs=_positive(
            data, "rescrape_timeout_secs", defaults.rescrape_timeout_secs, float, p
        ),
        preprint_venues=_string_list(data, "preprint_venues", defaults.preprint_venues, p),
        scrapers=_string_list(data, "scrapers", defaults.scrapers, p),
        sha256=sha,
    )
