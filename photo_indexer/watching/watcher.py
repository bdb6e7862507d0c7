"""
Live reconciliation of the catalog with filesystem changes.

Watches the configured roots with watchdog and turns file events into
catalog upserts/deletes plus bus notifications. Adds and changes wait
until the file size has stopped moving, so half-written files are never
ingested. Every handler is safe under redelivery.
"""
import os
import time
import logging
import threading
from dataclasses import asdict
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .. import config
from ..database.catalog import Catalog
from ..events import EventBus, EventType
from ..exceptions import SubscriptionError
from ..models import MediaRecord, SkippedEntry, WatchReport
from ..scanning.filesystem import IgnoreRules

ADD = 'add'
CHANGE = 'change'


class _Pending:
    def __init__(self, kind: str, size: Optional[int], now: float):
        self.kind = kind
        self.last_size = size
        self.stable_since = now


class _RootEventHandler(FileSystemEventHandler):
    """Forwards watchdog events for one root to the Watcher."""

    def __init__(self, watcher: 'Watcher', root: str):
        super().__init__()
        self.watcher = watcher
        self.root = root

    def on_created(self, event):
        if event.is_directory:
            self.watcher.notify_directory_added(os.fsdecode(event.src_path), self.root)
        else:
            self.watcher.notify(ADD, os.fsdecode(event.src_path), self.root)

    def on_modified(self, event):
        if not event.is_directory:
            self.watcher.notify(CHANGE, os.fsdecode(event.src_path), self.root)

    def on_deleted(self, event):
        if event.is_directory:
            self.watcher.notify_directory_removed(os.fsdecode(event.src_path), self.root)
        else:
            self.watcher.notify_removed(os.fsdecode(event.src_path), self.root)

    def on_moved(self, event):
        src = os.fsdecode(event.src_path)
        dest = os.fsdecode(event.dest_path)
        if event.is_directory:
            self.watcher.notify_directory_removed(src, self.root)
            self.watcher.notify_directory_added(dest, self.root)
        else:
            self.watcher.notify_removed(src, self.root)
            self.watcher.notify(ADD, dest, self.root)


class Watcher:
    """
    Owns the single watch subscription. `resubscribe` builds the new
    observer before tearing down the old one; if the new one cannot
    start, the old subscription stays in place and SubscriptionError is raised.
    """
    def __init__(self,
                 catalog: Catalog,
                 bus: EventBus,
                 rules: Optional[IgnoreRules] = None,
                 stability_threshold: float = config.WATCH_STABILITY_THRESHOLD_SEC,
                 poll_interval: float = config.WATCH_POLL_INTERVAL_SEC,
                 observer_factory: Callable = Observer):
        self.catalog = catalog
        self.bus = bus
        self.rules = rules or IgnoreRules()
        self.stability_threshold = stability_threshold
        self.poll_interval = poll_interval
        self.observer_factory = observer_factory
        self.report = WatchReport()

        self._observer = None
        self._roots: List[str] = []
        self._sub_lock = threading.Lock()

        self._pending: Dict[str, _Pending] = {}
        self._pending_dirs: List[Tuple[str, Optional[str]]] = []
        self._pending_lock = threading.Lock()
        # One debounce thread per watcher polls every pending path
        self._debounce_thread: Optional[threading.Thread] = None
        self._debounce_stop = threading.Event()
        # Serializes catalog application so events for a path apply in order
        self._apply_lock = threading.Lock()
        self._closed = False

    @property
    def roots(self) -> List[str]:
        return list(self._roots)

    @property
    def active(self) -> bool:
        return self._observer is not None

    # --- Subscription lifecycle ---

    def subscribe(self, roots: Iterable):
        self.resubscribe(roots)

    def resubscribe(self, roots: Iterable):
        with self._sub_lock:
            self._closed = False
            valid = []
            for root in roots:
                path = Path(root).expanduser().resolve()
                if path.is_dir():
                    valid.append(str(path))
                else:
                    logging.warning(f"Watch root does not exist, skipping: {path}")

            observer = None
            if valid:
                observer = self.observer_factory()
                try:
                    for root in valid:
                        observer.schedule(_RootEventHandler(self, root), root, recursive=True)
                    observer.start()
                except Exception as e:
                    logging.error(f"Failed to establish watch on {valid}: {e}")
                    self._stop_observer(observer)
                    raise SubscriptionError(f"Cannot watch {', '.join(valid)}: {e}") from e

            old = self._observer
            self._observer = observer
            self._roots = valid

        if old is not None:
            self._stop_observer(old)
        logging.info(f"Watching {len(valid)} root(s)")

    def close(self):
        with self._sub_lock:
            self._closed = True
            old = self._observer
            self._observer = None
            self._roots = []
        if old is not None:
            self._stop_observer(old)
        with self._pending_lock:
            self._pending.clear()
            self._pending_dirs.clear()
            thread = self._debounce_thread
            self._debounce_thread = None
            self._debounce_stop.set()
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=5)

    def _stop_observer(self, observer):
        try:
            observer.stop()
            if observer.is_alive():
                observer.join(timeout=5)
        except Exception as e:
            logging.warning(f"Error while stopping watch observer: {e}")

    # --- Event intake ---

    def _root_for(self, path: str) -> Optional[str]:
        for root in self._roots:
            if path == root or path.startswith(root.rstrip('/') + '/'):
                return root
        return None

    def _accepts(self, path: str, root: Optional[str], is_file: bool = True) -> bool:
        root = root or self._root_for(path)
        if self.rules.ignores_event_path(path, root):
            return False
        if is_file and not self.rules.is_media(os.path.basename(path)):
            return False
        return True

    def notify(self, kind: str, path: str, root: Optional[str] = None):
        """Queues an add/change for `path` until its size is stable."""
        if self._closed:
            return
        if not self._accepts(path, root):
            self.report.ignored += 1
            return

        size = self._size_or_none(path)
        now = time.monotonic()
        with self._pending_lock:
            pending = self._pending.get(path)
            if pending is not None:
                # An add stays an add even if changes follow before it settles
                if pending.kind != ADD:
                    pending.kind = kind
                return
            self._pending[path] = _Pending(kind, size, now)
            self._ensure_debounce_thread()

    def notify_removed(self, path: str, root: Optional[str] = None):
        if not self._accepts(path, root):
            self.report.ignored += 1
            return
        with self._pending_lock:
            self._pending.pop(path, None)
        self._guarded(path, self._apply_remove)

    def notify_directory_removed(self, path: str, root: Optional[str] = None):
        if not self._accepts(path, root, is_file=False):
            return
        prefix = path.rstrip('/') + '/'
        with self._pending_lock:
            for key in [k for k in self._pending if k.startswith(prefix)]:
                del self._pending[key]
            self._pending_dirs = [
                (d, r) for d, r in self._pending_dirs if d != path and not d.startswith(prefix)
            ]
        self._guarded(path, self._apply_remove_directory)

    def notify_directory_added(self, path: str, root: Optional[str] = None):
        """
        A directory appeared (created or moved in). Its media files are
        queued from the debounce thread, not the event dispatcher.
        """
        if self._closed or not self._accepts(path, root, is_file=False):
            return
        with self._pending_lock:
            self._pending_dirs.append((path, root))
            self._ensure_debounce_thread()

    # --- Stability debounce ---

    def _ensure_debounce_thread(self):
        # Caller holds _pending_lock
        thread = self._debounce_thread
        if thread is not None and thread.is_alive():
            return
        self._debounce_stop = threading.Event()
        thread = threading.Thread(
            target=self._debounce_loop, args=(self._debounce_stop,),
            name="watch-debounce", daemon=True,
        )
        self._debounce_thread = thread
        thread.start()

    def _debounce_loop(self, stop: threading.Event):
        while not stop.wait(self.poll_interval):
            try:
                self._expand_directories(stop)
                self._check_pending(stop)
            except Exception:
                logging.exception("Watcher debounce pass failed")

    def _expand_directories(self, stop: threading.Event):
        with self._pending_lock:
            dirs, self._pending_dirs = self._pending_dirs, []
        for path, root in dirs:
            for dirpath, dirnames, filenames in os.walk(path):
                if stop.is_set():
                    return
                dirnames[:] = [d for d in dirnames if not self.rules.skip_dir(os.path.join(dirpath, d), d)]
                for name in filenames:
                    self.notify(ADD, os.path.join(dirpath, name), root)

    def _check_pending(self, stop: threading.Event):
        """One pass over every pending path; applies those whose size has settled."""
        with self._pending_lock:
            paths = list(self._pending)

        ready = []
        for path in paths:
            size = self._size_or_none(path)
            now = time.monotonic()
            with self._pending_lock:
                pending = self._pending.get(path)
                if pending is None:
                    continue
                if size is None:
                    # Vanished before it settled; a delete event will follow
                    del self._pending[path]
                    continue
                if size != pending.last_size:
                    pending.last_size = size
                    pending.stable_since = now
                elif (now - pending.stable_since) >= self.stability_threshold:
                    del self._pending[path]
                    ready.append((path, pending.kind))

        for path, kind in ready:
            if stop.is_set():
                return
            self._guarded(path, self._apply_add if kind == ADD else self._apply_change)

    @staticmethod
    def _size_or_none(path: str) -> Optional[int]:
        try:
            return os.stat(path).st_size
        except OSError:
            return None

    # --- Catalog application ---

    def _guarded(self, path: str, apply: Callable[[str], None]):
        try:
            with self._apply_lock:
                apply(path)
        except Exception as e:
            logging.error(f"Watcher failed to apply event for {path}: {e}")
            self.report.errors.append(SkippedEntry(path, str(e)))

    def _stat_record(self, path: str) -> Optional[MediaRecord]:
        p = Path(path)
        try:
            return MediaRecord.from_stat(p, p.stat())
        except OSError as e:
            logging.debug(f"Watcher could not stat {path}: {e}")
            return None

    def _apply_add(self, path: str):
        rec = self._stat_record(path)
        if rec is None:
            return
        self.catalog.upsert(rec)
        self.report.added += 1
        logging.debug(f"Watcher added {path}")
        self.bus.emit(EventType.FILE_ADDED, asdict(rec))

    def _apply_change(self, path: str):
        rec = self._stat_record(path)
        if rec is None:
            return
        if not self.catalog.update_file_state(path, rec.size, rec.modified):
            # Unknown path (e.g. created before the watch started): ingest it
            self._apply_add(path)
            return
        self.report.changed += 1
        logging.debug(f"Watcher updated {path}")
        self.bus.emit(EventType.FILE_CHANGED, {'path': path, 'size': rec.size, 'modified': rec.modified})

    def _apply_remove(self, path: str):
        if not self.catalog.delete_by_path(path):
            logging.debug(f"Watcher remove for unknown path {path}; nothing to do")
            return
        self.report.removed += 1
        logging.debug(f"Watcher removed {path}")
        self.bus.emit(EventType.FILE_REMOVED, {'path': path})

    def _apply_remove_directory(self, path: str):
        removed = self.catalog.delete_under(path)
        if removed:
            logging.debug(f"Watcher removed {len(removed)} records under {path}")
        for record_path in removed:
            self.report.removed += 1
            self.bus.emit(EventType.FILE_REMOVED, {'path': record_path})
