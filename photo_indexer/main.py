import argparse
import logging
import sys
import threading
from datetime import datetime
from pathlib import Path

from tqdm import tqdm

from . import config
from .core import PhotoLibrary
from .events import EventType
from .exceptions import PhotoIndexerError
from .models import QueryFilter
from .reporting import ReportGenerator

def setup_logging(app_dir: Path, verbose: bool):
    """Sets up logging to both console and a file in the app directory."""
    log_level = logging.DEBUG if verbose else logging.INFO

    app_dir.mkdir(parents=True, exist_ok=True)
    log_file = app_dir / "indexer.log"

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        handlers=[
            logging.FileHandler(log_file, encoding='utf-8'),
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Silence chatty libraries
    logging.getLogger("exifread").setLevel(logging.ERROR)
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)

def parse_args(argv=None):
    p = argparse.ArgumentParser(description="Photo Indexer: catalog, thumbnail and watch media folders")
    p.add_argument("--app-dir", type=Path, default=None, help="Application data directory (default: ~/.photo_indexer)")
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")

    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("scan", help="Scan roots into the catalog")
    s.add_argument("roots", nargs="+", type=Path)
    s.add_argument("--report-csv", type=Path, default=None, help="Write skipped entries to this CSV")

    q = sub.add_parser("query", help="List catalog records")
    q.add_argument("--folder")
    q.add_argument("--ext")
    q.add_argument("--search")
    q.add_argument("--sort", choices=sorted(config.SORT_COLUMNS), default=config.DEFAULT_SORT)
    q.add_argument("--order", choices=["asc", "desc"], default="desc")
    q.add_argument("--page", type=int, default=0)
    q.add_argument("--page-size", type=int, default=50)

    sub.add_parser("folders", help="Show per-folder record counts")
    sub.add_parser("stats", help="Show catalog statistics")

    t = sub.add_parser("thumbs", help="Generate thumbnails for catalog records")
    t.add_argument("--folder")

    w = sub.add_parser("watch", help="Scan, then keep the catalog in sync until interrupted")
    w.add_argument("roots", nargs="+", type=Path)

    return p.parse_args(argv)

def run_scan(library: PhotoLibrary, roots, report_csv=None) -> int:
    reporter = ReportGenerator()
    with tqdm(desc="Scanning", unit="file") as bar:
        sub = library.bus.subscribe(EventType.SCAN_PROGRESS, lambda _, payload: bar.update(1))
        try:
            report = library.start_scan(roots).wait()
        finally:
            sub.unsubscribe()
    logging.info(reporter.summarize_scan(report))
    if report_csv:
        reporter.write_scan_csv(report, report_csv)
    return 0

def run_query(library: PhotoLibrary, args) -> int:
    filt = QueryFilter(folder=args.folder, extension=args.ext, search=args.search)
    page = library.query_images(filt, args.sort, args.order, args.page, args.page_size)
    print(f"{page.total} match(es); page {page.page} ({len(page.records)} shown)")
    for rec in page.records:
        modified = datetime.fromtimestamp(rec.modified / 1000).isoformat(sep=' ', timespec='seconds')
        dims = f"{rec.width}x{rec.height}" if rec.width else "-"
        print(f"{modified} | {str(rec.size).rjust(10)} | {dims.rjust(11)} | {rec.path}")
    return 0

def run_thumbs(library: PhotoLibrary, folder=None) -> int:
    records = []
    page_no = 0
    while True:
        page = library.query_images(QueryFilter(folder=folder), page=page_no, page_size=config.DEFAULT_PAGE_SIZE)
        records.extend(page.records)
        if len(records) >= page.total or not page.records:
            break
        page_no += 1

    failed = 0
    with tqdm(total=len(records), desc="Thumbnails", unit="img") as bar:
        def on_result(result):
            bar.update(1)
        results = library.get_thumbnails_batch(records, on_result=on_result)
    for result in results:
        if not result.ok:
            failed += 1
            logging.debug(f"No thumbnail for {result.path}: {result.error}")
    logging.info(f"Thumbnails: {len(results) - failed} ready, {failed} unavailable")
    return 0

def run_watch(library: PhotoLibrary) -> int:
    run_scan(library, library.roots)

    def log_event(event_type, payload):
        logging.info(f"{event_type.value}: {payload.get('path')}")
    for et in (EventType.FILE_ADDED, EventType.FILE_CHANGED, EventType.FILE_REMOVED):
        library.bus.subscribe(et, log_event)

    library.start_watching()
    logging.info("Watching for changes. Press Ctrl+C to stop.")
    try:
        threading.Event().wait()
    finally:
        logging.info(ReportGenerator().summarize_watch(library.watcher.report))
    return 0

def main(argv=None):
    args = parse_args(argv)

    app_dir = (args.app_dir or config.default_app_dir()).expanduser().resolve()
    setup_logging(app_dir, args.verbose)

    logging.info("=== Photo Indexer Started ===")
    logging.info(f"App dir: {app_dir}")

    roots = args.roots if args.command == "watch" else ()
    library = PhotoLibrary(app_dir, roots=roots)
    try:
        if args.command == "scan":
            code = run_scan(library, args.roots, args.report_csv)
        elif args.command == "query":
            code = run_query(library, args)
        elif args.command == "folders":
            for agg in library.get_folders():
                print(f"{str(agg.count).rjust(7)}  {agg.folder}")
            code = 0
        elif args.command == "stats":
            stats = library.get_stats()
            print(f"Total: {stats.total} files, {stats.total_size} bytes")
            for ext, count in stats.by_type:
                print(f"  .{ext.ljust(6)} {count}")
            code = 0
        elif args.command == "thumbs":
            code = run_thumbs(library, args.folder)
        else:
            code = run_watch(library)
    except KeyboardInterrupt:
        logging.warning("Operation cancelled by user.")
        code = 1
    except PhotoIndexerError:
        logging.exception("Fatal catalog error.")
        code = 1
    finally:
        library.close()
    sys.exit(code)

if __name__ == "__main__":
    main()
