"""Managed library folder: relocating, renaming and removing paper files.

Files referenced by an absolute path are *in transit*.  :meth:`FileService.move`
brings them into the library folder under a name derived from the title
and paper id (see :mod:`folio.slug`) and rewrites the draft's references to
bare file names.  The source file is moved ("cut") or copied according to
the caller's preference.

A target that already exists with identical content (same SHA-256) is not
written twice.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
from pathlib import Path

from folio.errors import RelocationError
from folio.models import PaperDraft, new_id
from folio.slug import main_file_name, sup_file_name

logger = logging.getLogger(__name__)

_HASH_CHUNK = 65536


def sha256_file(path: Path) -> str:
    """SHA-256 hex digest of a file, read in 64 KB chunks."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while chunk := f.read(_HASH_CHUNK):
            h.update(chunk)
    return h.hexdigest()


class FileService:
    """File access bound to one library folder."""

    def __init__(self, library_dir: Path):
        self.library_dir = library_dir.resolve()

    def resolve(self, url: str) -> Path:
        """Absolute path for *url* (absolute paths pass through)."""
        path = Path(url)
        return path if path.is_absolute() else self.library_dir / path

    def access(self, url: str) -> bool:
        """True if *url* names an existing regular file."""
        return bool(url) and self.resolve(url).is_file()

    # -----------------------------------------------------------------------
    # Relocation
    # -----------------------------------------------------------------------

    def move(self, draft: PaperDraft, cut: bool, forced: bool = False) -> PaperDraft | None:
        """Relocate the draft's files into the library folder.

        Works on a clone: returns the relocated clone, or ``None`` when any
        file could not be moved (the input draft is never modified).  All or
        nothing: files already relocated for the draft are put back before
        ``None`` is returned.

        Args:
            draft: Paper whose ``main_url`` / ``sup_urls`` may be in transit.
            cut: Move the source instead of copying it.
            forced: Also rename files already in the library to the name
                derived from the current title.
        """
        moved = draft.clone()
        if not moved.id:
            moved.id = new_id()
        self.library_dir.mkdir(parents=True, exist_ok=True)

        journal: list[tuple[str, Path, Path]] = []
        try:
            if moved.main_url:
                target = main_file_name(moved.title, moved.id, moved.main_url)
                moved.main_url = self._relocate(moved.main_url, target, cut, forced, journal)
            sups: list[str] = []
            for index, url in enumerate(moved.sup_urls, start=1):
                target = sup_file_name(moved.title, moved.id, index, url)
                sups.append(self._relocate(url, target, cut, forced, journal))
            moved.sup_urls = sups
        except OSError as exc:
            logger.warning("Could not relocate files of %r: %s", draft.title or draft.id, exc)
            self._undo(journal)
            return None
        for action, source, _target in journal:
            if action == "backup":
                source.unlink(missing_ok=True)
        return moved

    def _relocate(
        self,
        url: str,
        target_name: str,
        cut: bool,
        forced: bool,
        journal: list[tuple[str, Path, Path]],
    ) -> str:
        """Bring one file into the library; return its managed base name.

        Every filesystem change is appended to *journal* as
        ``(action, source, target)`` so :meth:`_undo` can reverse it.
        """
        source = self.resolve(url)
        managed = source.parent == self.library_dir
        if managed and not forced:
            return source.name

        target = self.library_dir / target_name
        if source == target:
            return target_name
        if not source.is_file():
            raise FileNotFoundError(f"source file {source} does not exist")

        if target.exists() and sha256_file(target) == sha256_file(source):
            logger.info("Identical file already in library: %s", target_name)
            if cut or managed:
                source.unlink()
                journal.append(("dropped", source, target))
            return target_name

        if target.exists():
            backup = target.with_name(f"{target.name}.bak")
            os.replace(target, backup)
            journal.append(("backup", backup, target))
        if cut or managed:
            shutil.move(str(source), str(target))
            journal.append(("moved", source, target))
        else:
            shutil.copy2(source, target)
            journal.append(("copied", source, target))
        logger.debug("%s %s -> %s", "Moved" if cut or managed else "Copied", source, target_name)
        return target_name

    def _undo(self, journal: list[tuple[str, Path, Path]]) -> None:
        """Reverse the changes recorded by :meth:`_relocate`, newest first."""
        for action, source, target in reversed(journal):
            try:
                if action == "moved":
                    shutil.move(str(target), str(source))
                elif action == "copied":
                    target.unlink(missing_ok=True)
                elif action == "backup":
                    os.replace(source, target)
                else:
                    shutil.copy2(target, source)
            except OSError as exc:
                logger.error("Could not restore %s from %s: %s", source, target, exc)
            else:
                logger.debug("Restored %s (%s)", source, action)

    # -----------------------------------------------------------------------
    # Removal and renaming
    # -----------------------------------------------------------------------

    def remove(self, draft: PaperDraft) -> None:
        """Delete every managed file the draft references."""
        for url in [draft.main_url, *draft.sup_urls]:
            if url:
                self.remove_file(url)

    def remove_file(self, url: str) -> None:
        """Delete one file; a missing file is not an error."""
        path = self.resolve(url)
        path.unlink(missing_ok=True)
        logger.debug("Removed %s", path)

    def move_file(self, src: str, dst: str) -> None:
        """Rename a managed file.

        Raises:
            RelocationError: If the rename fails.
        """
        source, target = self.resolve(src), self.resolve(dst)
        try:
            os.replace(source, target)
        except OSError as exc:
            raise RelocationError(src, str(exc)) from exc
