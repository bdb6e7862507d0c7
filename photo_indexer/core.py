import os
import logging
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from send2trash import send2trash

from . import config
from .database.db import DBManager
from .database.catalog import Catalog
from .events import EventBus
from .exceptions import FileOperationError, SubscriptionError
from .models import MediaRecord, QueryFilter, QueryPage, FolderAggregate, CatalogStats, ThumbnailResult
from .scanning.filesystem import IgnoreRules
from .scanning.session import Scanner, ScanSession
from .thumbnails.cache import ThumbnailCache, ThumbnailRequest
from .watching.watcher import Watcher


class PhotoLibrary:
    """
    Application context: owns the catalog, thumbnail cache, scanner,
    watcher and event bus for one application-data directory.

    Layout on disk:
      <app_dir>/gallery.db        catalog
      <app_dir>/thumbnails/*.jpg  previews named by cache key
    """
    def __init__(self,
                 app_dir: Optional[Path] = None,
                 roots: Iterable = (),
                 rules: Optional[IgnoreRules] = None,
                 scan_batch_size: int = config.SCAN_BATCH_SIZE,
                 scan_workers: int = config.SCAN_WORKERS,
                 thumb_workers: int = config.THUMB_WORKERS,
                 watch_stability: float = config.WATCH_STABILITY_THRESHOLD_SEC):
        self.app_dir = Path(app_dir) if app_dir else config.default_app_dir()
        self.app_dir.mkdir(parents=True, exist_ok=True)

        self.rules = rules or IgnoreRules()
        self.bus = EventBus()
        self.db_manager = DBManager(self.app_dir / config.DB_FILENAME)
        self.catalog = Catalog(self.db_manager)
        self.thumbnails = ThumbnailCache(self.app_dir / config.THUMB_DIRNAME, self.catalog, max_workers=thumb_workers)
        self.scanner = Scanner(self.catalog, self.bus, self.rules, batch_size=scan_batch_size, max_workers=scan_workers)
        self.watcher = Watcher(self.catalog, self.bus, self.rules, stability_threshold=watch_stability)

        self._roots: List[str] = []
        for root in roots:
            self._add_root_path(root)

    # --- Roots ---

    @property
    def roots(self) -> List[str]:
        return list(self._roots)

    def _add_root_path(self, path) -> Optional[str]:
        normalized = str(Path(path).expanduser().resolve())
        if normalized in self._roots:
            return None
        self._roots.append(normalized)
        return normalized

    def add_root(self, path) -> ScanSession:
        """Adds a root, rescans and (if watching) widens the watch to it."""
        added = self._add_root_path(path)
        if added:
            try:
                self._refresh_watch()
            except SubscriptionError:
                self._roots.remove(added)
                raise
            logging.info(f"Added root {added}")
        return self.start_scan()

    def remove_root(self, path) -> List[str]:
        normalized = str(Path(path).expanduser().resolve())
        if normalized in self._roots:
            self._roots.remove(normalized)
            logging.info(f"Removed root {normalized}")
            self._refresh_watch()
        return self.roots

    # --- Scanning & watching ---

    def start_scan(self, roots: Optional[Sequence] = None) -> ScanSession:
        return self.scanner.start_scan(self._roots if roots is None else roots)

    def start_watching(self):
        self.watcher.subscribe(self._roots)

    def _refresh_watch(self):
        if self.watcher.active:
            self.watcher.resubscribe(self._roots)

    # --- Queries ---

    def query_images(self,
                     filt: Optional[QueryFilter] = None,
                     sort: str = config.DEFAULT_SORT,
                     order: str = 'desc',
                     page: int = 0,
                     page_size: int = config.DEFAULT_PAGE_SIZE) -> QueryPage:
        return self.catalog.query_page(filt, sort, order, page, page_size)

    def get_image(self, path: str) -> Optional[MediaRecord]:
        return self.catalog.get_by_path(path)

    def get_folders(self) -> List[FolderAggregate]:
        return self.catalog.folder_aggregates()

    def search(self, text: str, limit: int = config.SEARCH_LIMIT) -> List[MediaRecord]:
        return self.catalog.search(text, limit)

    def get_stats(self) -> CatalogStats:
        return self.catalog.stats()

    # --- Thumbnails ---

    def get_thumbnail(self, path: str, modified: int) -> Optional[str]:
        return self.thumbnails.get(path, modified)

    def get_thumbnails_batch(self, items: Iterable[ThumbnailRequest], on_result=None) -> List[ThumbnailResult]:
        return self.thumbnails.generate_batch(items, on_result=on_result)

    # --- Mutations ---

    def delete_media(self, path: str) -> bool:
        """
        Sends the file to the trash, then drops its record.
        If trashing fails the record is kept and FileOperationError is raised.
        """
        if os.path.lexists(path):
            try:
                send2trash(path)
            except Exception as e:
                logging.error(f"Failed to trash {path}: {e}")
                raise FileOperationError(f"Cannot move {path} to trash: {e}") from e
        else:
            logging.info(f"{path} already gone from disk; removing record only")
        return self.catalog.delete_by_path(path)

    # --- Lifecycle ---

    def close(self):
        self.scanner.cancel()
        session = self.scanner.session
        if session is not None:
            session.join(config.SCAN_ABORT_WAIT_SEC)
        self.watcher.close()
        self.thumbnails.close()
        self.db_manager.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
