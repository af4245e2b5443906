"""Canonical directory names for Folio.

Layout::

  <project>/.folio/            project_dir()  config.yaml, logs, preferences, databases
  <project>/.folio/library/    managed paper files (flat, keyed by name)
"""

from __future__ import annotations

import os
from pathlib import Path

DOT_DIR = ".folio"
LIBRARY_DIR = "library"


def project_root() -> Path:
    """Project root: FOLIO_ROOT env var, falling back to the working directory."""
    root = os.environ.get("FOLIO_ROOT")
    if root:
        return Path(root)
    return Path.cwd()


def project_dir(root: Path) -> Path:
    """Return <project>/.folio/."""
    return root / DOT_DIR
