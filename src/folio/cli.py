"""Command line interface for a Folio library.

Usage:
    folio init
    folio import paper.pdf other.pdf --tag reading
    folio list --search "graph neural" --limit 10
    folio list --mode advanced --search 'addTime > [7 DAYS]'
    folio tag 3f9a0c12 --name reading
    folio delete 3f9a0c12
    folio rename-all
    folio migrate .folio/local.db
    folio rescrape --force

The project root is the working directory unless FOLIO_ROOT is set.
Paper ids may be abbreviated to any unique prefix.
"""

from __future__ import annotations

import argparse
import json
import logging
import logging.handlers
import sys
from dataclasses import dataclass
from pathlib import Path

from folio.catalog import Catalog
from folio.config import FolioConfig, create_default, load_config
from folio.errors import FolioError
from folio.events import EventBus
from folio.files import FileService
from folio.filters import SEARCH_MODES, FilterOptions
from folio.fulltext import FullTextCache
from folio.library import PaperLibrary
from folio.models import FOLDER, TAG, Categorizer, PaperDraft
from folio.paths import project_dir, project_root
from folio.preferences import Preferences
from folio.scheduler import DAY, RescrapeScheduler
from folio.scrapers import CrossrefScraper, PdfScraper, ScrapeService

logger = logging.getLogger("folio")

_file_handler: logging.Handler | None = None


def _attach_file_log(dot_dir: Path) -> None:
    """Attach a rotating file handler to .folio/folio.log (idempotent)."""
    global _file_handler
    if _file_handler is not None:
        return
    dot_dir.mkdir(parents=True, exist_ok=True)
    fh = logging.handlers.RotatingFileHandler(
        dot_dir / "folio.log",
        maxBytes=2_000_000,
        backupCount=3,
        encoding="utf-8",
    )
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(
        logging.Formatter("%(asctime)s [%(process)d] %(levelname)s %(name)s: %(message)s")
    )
    logger.addHandler(fh)
    logger.setLevel(logging.DEBUG)
    _file_handler = fh


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


@dataclass
class Folio:
    """Every service of one opened project."""

    root: Path
    config: FolioConfig
    bus: EventBus
    catalog: Catalog
    files: FileService
    cache: FullTextCache
    preferences: Preferences
    library: PaperLibrary
    scheduler: RescrapeScheduler

    def close(self) -> None:
        self.scheduler.stop()
        self.cache.wait_idle()
        self.cache.shutdown()


def open_folio(root: Path, config: FolioConfig | None = None) -> Folio:
    """Build and open the services for the project at *root*."""
    config = config or load_config(project_dir(root))
    bus = EventBus()
    catalog = Catalog(config.resolve(root, config.database), bus)
    files = FileService(config.resolve(root, config.library_dir))
    cache = FullTextCache(config.resolve(root, config.cache_database), files)
    preferences = Preferences(config.resolve(root, config.preferences))
    scrapers = ScrapeService(
        [PdfScraper(files.library_dir), CrossrefScraper()],
        enabled=config.scrapers,
        chunk_size=config.chunk_size,
        max_workers=config.max_workers,
    )
    library = PaperLibrary(
        catalog,
        files,
        scrapers,
        cache,
        preferences,
        bus=bus,
        chunk_size=config.chunk_size,
        max_workers=config.max_workers,
        preprint_venues=config.preprint_venues,
    )
    scheduler = RescrapeScheduler(
        library,
        preferences,
        bus,
        period=config.rescrape_period_days * DAY,
        tolerance=config.rescrape_tolerance_secs,
        timeout=config.rescrape_timeout_secs,
    )
    scheduler.register()
    catalog.open()
    return Folio(root, config, bus, catalog, files, cache, preferences, library, scheduler)


# ---------------------------------------------------------------------------
# Output helpers
# ---------------------------------------------------------------------------


def _line(draft: PaperDraft) -> str:
    flag = "*" if draft.flag else " "
    tags = ", ".join(t.name for t in draft.tags)
    venue = f" ({draft.publication} {draft.pub_time})".rstrip() if draft.publication else ""
    tail = f"  [{tags}]" if tags else ""
    return f"{draft.id[:8]} {flag} {draft.title or '(untitled)'}{venue}{tail}"


def _resolve_ids(folio: Folio, prefixes: list[str]) -> list[str]:
    """Expand unique id prefixes to full ids."""
    known = [d.id for d in folio.catalog.load()]
    ids = []
    for prefix in prefixes:
        matches = [i for i in known if i.startswith(prefix)]
        if len(matches) != 1:
            reason = "no paper" if not matches else f"{len(matches)} papers"
            raise FolioError(f"Id '{prefix}' matches {reason}. Use `folio list` to see ids.")
        ids.append(matches[0])
    return ids


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def cmd_init(folio: Folio, args: argparse.Namespace) -> int:
    path = create_default(project_dir(folio.root))
    print(f"Config: {path}")
    print(f"Library: {folio.files.library_dir}")
    print(f"Papers: {folio.catalog.count()}")
    return 0


def cmd_import(folio: Folio, args: argparse.Namespace) -> int:
    if args.tag:
        created = folio.library.create_into_categorizer(args.files, Categorizer(args.tag), TAG)
    else:
        created = folio.library.create(args.files)
    for draft in created:
        print(f"Added {_line(draft)}")
    print(f"{len(created)} of {len(args.files)} file(s) imported")
    return 0 if len(created) == len(args.files) else 1


def cmd_list(folio: Folio, args: argparse.Namespace) -> int:
    options = FilterOptions(
        search=args.search,
        search_mode=args.mode,
        flagged=args.flagged,
        tag=args.tag,
        folder=args.folder,
        limit=args.limit,
    )
    papers = folio.library.load(options, args.sort, "asc" if args.asc else "desc")
    if args.json:
        print(json.dumps([d.to_dict() for d in papers], indent=2))
        return 0
    for draft in papers:
        print(_line(draft))
    print(f"{len(papers)} paper(s)")
    return 0


def cmd_tag(folio: Folio, args: argparse.Namespace) -> int:
    kind = FOLDER if args.folder else TAG
    ids = _resolve_ids(folio, args.ids)
    updated = folio.library.update_with_categorizer(ids, Categorizer(args.name, kind), kind)
    print(f"{kind.capitalize()} '{args.name}' added to {len(updated)} paper(s)")
    return 0


def cmd_delete(folio: Folio, args: argparse.Namespace) -> int:
    ids = _resolve_ids(folio, args.ids)
    folio.library.delete(ids)
    print(f"Deleted {len(ids)} paper(s)")
    return 0


def cmd_rename_all(folio: Folio, args: argparse.Namespace) -> int:
    renamed = folio.library.rename_all()
    print(f"Renamed files of {len(renamed)} paper(s)")
    return 0


def cmd_migrate(folio: Folio, args: argparse.Namespace) -> int:
    source_path = Path(args.local_db) if args.local_db else folio.config.resolve(
        folio.root, folio.config.local_database
    )
    if not source_path.exists():
        raise FolioError(f"Local database {source_path} does not exist. Nothing to migrate.")
    source = Catalog(source_path, EventBus()).open()
    migrated = folio.library.migrate(source)
    print(f"Migrated {len(migrated)} of {source.count()} paper(s)")
    return 0


def cmd_rescrape(folio: Folio, args: argparse.Namespace) -> int:
    if folio.scheduler.fire(force=args.force):
        print("Preprint metadata refreshed")
        return 0
    print("Rescrape skipped (not due, disabled, or failed; see .folio/folio.log)")
    return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="folio", description="Manage a paper library")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log to stderr")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init", help="Create .folio/config.yaml and the database")
    p.set_defaults(func=cmd_init)

    p = sub.add_parser("import", help="Add PDF files to the library")
    p.add_argument("files", nargs="+", help="Files to import")
    p.add_argument("--tag", default="", help="Tag every imported paper")
    p.set_defaults(func=cmd_import)

    p = sub.add_parser("list", help="List papers")
    p.add_argument("--search", default="", help="Search text or advanced query")
    p.add_argument("--mode", default="general", choices=sorted(SEARCH_MODES))
    p.add_argument("--flagged", action="store_true", help="Only flagged papers")
    p.add_argument("--tag", default="", help="Only papers with this tag")
    p.add_argument("--folder", default="", help="Only papers in this folder")
    p.add_argument("--limit", type=int, default=0, help="Maximum number of papers")
    p.add_argument("--sort", default="addTime", help="Sort field (addTime, title, pubTime, ...)")
    p.add_argument("--asc", action="store_true", help="Ascending order")
    p.add_argument("--json", action="store_true", help="Print papers as JSON")
    p.set_defaults(func=cmd_list)

    p = sub.add_parser("tag", help="Add a tag (or folder) to papers")
    p.add_argument("ids", nargs="+", help="Paper ids or unique prefixes")
    p.add_argument("--name", required=True, help="Tag or folder name")
    p.add_argument("--folder", action="store_true", help="Add a folder instead of a tag")
    p.set_defaults(func=cmd_tag)

    p = sub.add_parser("delete", help="Delete papers and their files")
    p.add_argument("ids", nargs="+", help="Paper ids or unique prefixes")
    p.set_defaults(func=cmd_delete)

    p = sub.add_parser("rename-all", help="Rename every file after its paper's title")
    p.set_defaults(func=cmd_rename_all)

    p = sub.add_parser("migrate", help="Copy all papers from another database")
    p.add_argument("local_db", nargs="?", default="", help="Source database (default: local_database)")
    p.set_defaults(func=cmd_migrate)

    p = sub.add_parser("rescrape", help="Refresh metadata of preprints")
    p.add_argument("--force", action="store_true", help="Run even if not due")
    p.set_defaults(func=cmd_rescrape)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    root = project_root()
    _attach_file_log(project_dir(root))
    if args.verbose:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))
        handler.setLevel(logging.INFO)
        logger.addHandler(handler)

    try:
        folio = open_folio(root)
    except FolioError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2
    try:
        return args.func(folio, args)
    except FolioError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1
    finally:
        folio.close()


if __name__ == "__main__":
    sys.exit(main())
