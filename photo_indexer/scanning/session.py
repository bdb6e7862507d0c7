import logging
import threading
from pathlib import Path
from typing import Iterable, List, Optional

from .. import config
from ..database.catalog import Catalog
from ..events import EventBus, EventType
from ..exceptions import CatalogError
from ..models import MediaRecord, ScanReport
from .filesystem import DiskScanner, IgnoreRules


class ScanSession:
    """
    One run of traversal + batched ingest. Runs on its own thread;
    `wait()` returns the ScanReport (or raises the catalog error that ended it).
    """
    def __init__(self, roots: List[Path], commit_lock: threading.Lock):
        self.roots = roots
        self._commit_lock = commit_lock
        self.cancel_token = threading.Event()
        self.report = ScanReport(roots=[str(r) for r in roots])
        self.current_path = ''
        self.error: Optional[BaseException] = None
        self._thread: Optional[threading.Thread] = None
        self._finished = threading.Event()

    @property
    def running(self) -> bool:
        return self._thread is not None and not self._finished.is_set()

    @property
    def found(self) -> int:
        return self.report.found

    def cancel(self):
        # Taken with the commit lock: no batch can commit after this returns
        with self._commit_lock:
            self.cancel_token.set()

    def join(self, timeout: Optional[float] = None) -> bool:
        """Waits for the session thread; True once it has finished."""
        return self._finished.wait(timeout)

    def wait(self, timeout: Optional[float] = None) -> ScanReport:
        if not self.join(timeout):
            raise TimeoutError(f"Scan of {len(self.roots)} root(s) still running")
        if self.error is not None:
            raise self.error
        return self.report


class Scanner:
    """
    Owns the single active scan session. Starting a scan cancels and awaits
    the previous one first, so batches from two sessions never interleave.
    """
    def __init__(self,
                 catalog: Catalog,
                 bus: EventBus,
                 rules: Optional[IgnoreRules] = None,
                 batch_size: int = config.SCAN_BATCH_SIZE,
                 max_workers: int = config.SCAN_WORKERS):
        self.catalog = catalog
        self.bus = bus
        self.disk = DiskScanner(rules, max_workers=max_workers)
        self.batch_size = max(1, batch_size)
        self._session: Optional[ScanSession] = None
        self._start_lock = threading.Lock()
        self._commit_lock = threading.Lock()

    @property
    def session(self) -> Optional[ScanSession]:
        return self._session

    def start_scan(self, roots: Iterable) -> ScanSession:
        with self._start_lock:
            prior = self._session
            if prior is not None and prior.running:
                logging.info("Scan already running; cancelling it before starting a new one.")
                self.cancel()
                if not prior.join(config.SCAN_ABORT_WAIT_SEC):
                    logging.warning("Previous scan did not stop in time; it will not commit further batches.")

            resolved = [Path(r).expanduser().resolve() for r in roots]
            session = ScanSession(resolved, self._commit_lock)
            self._session = session
            thread = threading.Thread(target=self._run, args=(session,), name="scan-session", daemon=True)
            session._thread = thread
            thread.start()
            return session

    def scan(self, roots: Iterable) -> ScanReport:
        """Synchronous convenience: start a session and wait for it."""
        return self.start_scan(roots).wait()

    def cancel(self):
        session = self._session
        if session is not None:
            session.cancel()

    def _run(self, session: ScanSession):
        report = session.report
        token = session.cancel_token
        logging.info(f"Scanning {len(session.roots)} root(s): {', '.join(report.roots)}")
        batch: List[MediaRecord] = []
        try:
            for record in self.disk.iter_records(session.roots, token, report):
                if token.is_set():
                    break
                report.found += 1
                session.current_path = record.path
                self.bus.emit(EventType.SCAN_PROGRESS, {'found': report.found, 'current': record.path})
                batch.append(record)
                if len(batch) >= self.batch_size:
                    self._commit(session, batch)
                    batch = []

            if not token.is_set():
                self._commit(session, batch)

            report.aborted = token.is_set()
            if report.aborted:
                logging.info(f"Scan aborted after {report.found} files ({report.batches_committed} batches committed).")
            else:
                logging.info(f"Scan complete. Found {report.found} files, skipped {len(report.skipped)} entries.")
                self.bus.emit(EventType.SCAN_COMPLETE, {'total': report.found, 'skipped': len(report.skipped)})
        except CatalogError as e:
            logging.error(f"Scan stopped by catalog failure: {e}")
            report.aborted = True
            session.error = e
        except Exception as e:
            logging.exception("Scan failed.")
            report.aborted = True
            session.error = e
        finally:
            session._finished.set()

    def _commit(self, session: ScanSession, batch: List[MediaRecord]):
        if not batch:
            return
        with self._commit_lock:
            if session.cancel_token.is_set():
                return
            inserted = self.catalog.upsert_many(batch)
        session.report.inserted += inserted
        session.report.batches_committed += 1
        logging.debug(f"Committed batch {session.report.batches_committed} ({inserted} records)")
