import hashlib
import logging
import threading
from pathlib import Path
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from .. import config
from ..database.catalog import Catalog
from ..exceptions import CatalogError, ThumbnailError
from ..metadata.extract import MetadataExtractor
from ..models import MediaRecord, ThumbnailResult
from .render import ThumbnailRenderer

ThumbnailRequest = Union[MediaRecord, Tuple[str, int]]


class ThumbnailCache:
    """
    Content-addressed preview store.

    The key is md5(path + modified + format version), so a changed source or
    a format bump yields a new key instead of a stale hit. Generation runs on
    a fixed worker pool; concurrent requests for one key share a single
    in-flight generation.
    """
    def __init__(self,
                 cache_dir: Path,
                 catalog: Catalog,
                 renderer: Optional[ThumbnailRenderer] = None,
                 extractor: Optional[MetadataExtractor] = None,
                 max_workers: int = config.THUMB_WORKERS,
                 format_version: str = config.THUMB_FORMAT_VERSION):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.catalog = catalog
        self.extractor = extractor or MetadataExtractor()
        self.renderer = renderer or ThumbnailRenderer(extractor=self.extractor)
        self.format_version = format_version

        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="thumb-worker")
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self.generations = 0

    def cache_key(self, path: str, modified: int) -> str:
        return hashlib.md5(f"{path}{modified}{self.format_version}".encode('utf-8')).hexdigest()

    def cache_path(self, path: str, modified: int) -> Path:
        return self.cache_dir / f"{self.cache_key(path, modified)}.jpg"

    def get(self, path: str, modified: int) -> Optional[str]:
        """
        Returns the preview file path, or None when no preview can be made.
        Blocks until generation finishes. Catalog write failures propagate.
        """
        return self.submit(path, modified).result()

    def submit(self, path: str, modified: int) -> "Future[Optional[str]]":
        key = self.cache_key(path, modified)
        dest = self.cache_dir / f"{key}.jpg"

        if dest.exists():
            hit: Future = Future()
            try:
                self._restore_reference(path, modified, str(dest))
                hit.set_result(str(dest))
            except CatalogError as e:
                hit.set_exception(e)
            return hit

        with self._lock:
            fut = self._inflight.get(key)
            if fut is not None:
                logging.debug(f"Joining in-flight thumbnail generation for {path}")
                return fut
            fut = self._executor.submit(self._generate, path, modified, dest)
            self._inflight[key] = fut

        fut.add_done_callback(lambda f: self._release(key, f))
        return fut

    def generate_batch(self,
                       items: Iterable[ThumbnailRequest],
                       on_result: Optional[Callable[[ThumbnailResult], None]] = None) -> List[ThumbnailResult]:
        """
        Generates previews for every item independently; one failure never
        aborts the rest. Results come back in input order.
        """
        requests = [self._normalize(item) for item in items]
        # Duplicate requests share one future, so a future maps to several slots
        futures: Dict[Future, List[int]] = {}
        for idx, (path, modified) in enumerate(requests):
            futures.setdefault(self.submit(path, modified), []).append(idx)
        results: List[ThumbnailResult] = [ThumbnailResult(path) for path, _ in requests]

        for fut in as_completed(futures):
            for idx in futures[fut]:
                path = requests[idx][0]
                try:
                    thumb = fut.result()
                    result = ThumbnailResult(path, thumbnail_path=thumb, error=None if thumb else "no preview available")
                except Exception as e:
                    logging.error(f"Thumbnail generation failed for {path}: {e}")
                    result = ThumbnailResult(path, error=str(e))
                results[idx] = result
                if on_result:
                    on_result(result)
        return results

    def close(self):
        self._executor.shutdown(wait=True)

    # --- Internals ---

    def _release(self, key: str, fut: Future):
        with self._lock:
            if self._inflight.get(key) is fut:
                del self._inflight[key]

    def _restore_reference(self, path: str, modified: int, thumb: str):
        # A preview can land on disk while its catalog write failed
        rec = self.catalog.get_by_path(path)
        if rec is not None and rec.modified == modified and not rec.thumbnail_path:
            logging.debug(f"Restoring cache reference for {path}")
            self.catalog.update_cache_reference(path, thumb)

    def _generate(self, path: str, modified: int, dest: Path) -> Optional[str]:
        if dest.exists():
            return str(dest)

        with self._lock:
            self.generations += 1

        src = Path(path)
        try:
            dims = self.renderer.render(src, dest)
        except ThumbnailError as e:
            logging.warning(f"No thumbnail for {path}: {e}")
            return None

        self.catalog.update_cache_reference(path, str(dest))
        if dims and dims[0] and dims[1]:
            self.catalog.update_dimensions(path, dims[0], dims[1])
        metadata = self.extractor.get_image_metadata(src)
        if metadata:
            self.catalog.update_metadata(path, metadata)

        logging.debug(f"Generated thumbnail for {path} -> {dest.name}")
        return str(dest)

    def _normalize(self, item: ThumbnailRequest) -> Tuple[str, int]:
        if isinstance(item, MediaRecord):
            return item.path, item.modified
        path, modified = item
        return str(path), modified
