import os
import queue
import logging
import threading
from pathlib import Path
from typing import Iterator, Iterable, Optional, Set, Sequence
from concurrent.futures import ThreadPoolExecutor

from .. import config
from ..models import MediaRecord, ScanReport

# Marks the end of traversal on the output queue
_DONE = object()


class IgnoreRules:
    """
    Which directories and files are indexed. Shared by the scanner and the
    watcher so both see the same tree.
    """
    def __init__(self,
                 skip_dirs: Optional[Set[str]] = None,
                 skip_prefixes: Optional[Sequence[str]] = None,
                 extensions: Optional[Set[str]] = None):
        self.skip_dirs = config.SKIP_DIRS if skip_dirs is None else set(skip_dirs)
        self.skip_prefixes = config.SKIP_PATH_PREFIXES if skip_prefixes is None else tuple(skip_prefixes)
        self.extensions = config.MEDIA_EXTS if extensions is None else set(extensions)

    def is_reserved(self, path: str) -> bool:
        for prefix in self.skip_prefixes:
            if path == prefix or path.startswith(prefix.rstrip('/') + '/'):
                return True
        return False

    def skip_dir(self, path: str, name: str, is_root: bool = False) -> bool:
        if not is_root:
            if name.startswith('.') or name in self.skip_dirs:
                return True
        return self.is_reserved(path)

    def is_media(self, name: str) -> bool:
        ext = os.path.splitext(name)[1].lower().lstrip('.')
        return ext in self.extensions

    def ignores_event_path(self, path: str, root: Optional[str] = None) -> bool:
        """
        Event-side filter: a path is ignored when any component below its
        root is a dotfile or a skip-list name, or it sits under a reserved prefix.
        """
        if self.is_reserved(path):
            return True
        rel = Path(path)
        if root:
            try:
                rel = Path(path).relative_to(root)
            except ValueError:
                pass
        for part in rel.parts:
            if part in ('/', '\\'):
                continue
            if part.startswith('.') or part in self.skip_dirs:
                return True
        return False


class DiskScanner:
    """
    Bounded-concurrency traversal: a directory work queue consumed by a
    fixed pool of workers. Each worker lists one directory, queues the
    surviving subdirectories and emits a MediaRecord per media file.
    """
    def __init__(self, rules: Optional[IgnoreRules] = None, max_workers: int = config.SCAN_WORKERS):
        self.rules = rules or IgnoreRules()
        self.max_workers = max(1, max_workers)

    def iter_records(self,
                     roots: Iterable[Path],
                     cancel: threading.Event,
                     report: ScanReport) -> Iterator[MediaRecord]:
        """
        Yields a record for every media file under `roots` that can be stat'd.
        Inaccessible directories and stat failures land in `report.skipped`.
        Stops promptly once `cancel` is set.
        """
        dir_queue: "queue.Queue[Path]" = queue.Queue()
        out: "queue.Queue" = queue.Queue(maxsize=config.SCAN_BATCH_SIZE * 2)
        # `done`: every queued directory has been handled.
        # `stop`: the consumer went away (generator closed).
        done = threading.Event()
        stop = threading.Event()

        for root in roots:
            root_str = str(root)
            if not root.is_dir():
                logging.warning(f"Scan root does not exist: {root}")
                report.skip(root, "root missing")
                continue
            if self.rules.skip_dir(root_str, root.name, is_root=True):
                logging.info(f"Scan root is in a reserved location, skipping: {root}")
                report.skip(root, "reserved path")
                continue
            dir_queue.put(root)

        def should_stop() -> bool:
            return cancel.is_set() or stop.is_set()

        def emit(item, until=should_stop) -> bool:
            while not until():
                try:
                    out.put(item, timeout=0.1)
                    return True
                except queue.Full:
                    continue
            return False

        def worker():
            while not (stop.is_set() or done.is_set()):
                try:
                    directory = dir_queue.get(timeout=0.05)
                except queue.Empty:
                    continue
                try:
                    if not should_stop():
                        self._process_directory(directory, dir_queue, emit, should_stop, report)
                except Exception as e:
                    logging.error(f"Failed to process directory {directory}: {e}")
                    report.skip(directory, f"error: {e}")
                finally:
                    dir_queue.task_done()

        def closer():
            with dir_queue.all_tasks_done:
                while dir_queue.unfinished_tasks and not stop.is_set():
                    dir_queue.all_tasks_done.wait(0.1)
            done.set()
            emit(_DONE, until=stop.is_set)

        logging.info(f"Scanning with {self.max_workers} workers")
        executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="scan-worker")
        try:
            for _ in range(self.max_workers):
                executor.submit(worker)
            threading.Thread(target=closer, name="scan-closer", daemon=True).start()

            while True:
                item = out.get()
                if item is _DONE:
                    break
                if cancel.is_set():
                    continue
                yield item
        finally:
            stop.set()
            executor.shutdown(wait=True)

    def _process_directory(self, directory: Path, dir_queue, emit, should_stop, report: ScanReport):
        try:
            with os.scandir(directory) as it:
                entries = list(it)
        except OSError as e:
            logging.warning(f"Cannot read directory {directory}: {e}")
            report.skip(directory, f"unreadable directory: {e.strerror or e}")
            return

        # Sort for stable traversal order
        entries.sort(key=lambda e: e.name.lower())

        for entry in entries:
            if should_stop():
                return
            if entry.name.startswith('.'):
                continue
            try:
                is_dir = entry.is_dir(follow_symlinks=False)
                is_file = not is_dir and entry.is_file(follow_symlinks=False)
            except OSError as e:
                report.skip(entry.path, f"unreadable entry: {e}")
                continue

            if is_dir:
                if not self.rules.skip_dir(entry.path, entry.name):
                    dir_queue.put(Path(entry.path))
            elif is_file and self.rules.is_media(entry.name):
                record = self._stat_record(Path(entry.path), report)
                if record is not None and not emit(record):
                    return

    def _stat_record(self, path: Path, report: ScanReport) -> Optional[MediaRecord]:
        try:
            return MediaRecord.from_stat(path, path.stat())
        except OSError as e:
            logging.debug(f"Stat failed for {path}: {e}")
            report.skip(path, f"stat failed: {e.strerror or e}")
            return None
