import json
import sqlite3
import logging
import time
from contextlib import contextmanager
from typing import Optional, List, Iterable, Dict, Any

from .. import config
from ..exceptions import CatalogError
from ..models import MediaRecord, FolderAggregate, QueryFilter, QueryPage, CatalogStats
from .db import DBManager

RECORD_COLUMNS = (
    "filepath, filename, extension, size, width, height, created, modified, "
    "thumbnail_path, exif_json, folder, indexed_at"
)

# Rescanning an unchanged file keeps its enrichment; a new mtime resets it.
UPSERT_SQL = f"""
    INSERT INTO images ({RECORD_COLUMNS})
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(filepath) DO UPDATE SET
        filename = excluded.filename,
        extension = excluded.extension,
        size = excluded.size,
        created = excluded.created,
        modified = excluded.modified,
        folder = excluded.folder,
        indexed_at = excluded.indexed_at,
        width = CASE WHEN images.modified = excluded.modified AND excluded.width = 0
                     THEN images.width ELSE excluded.width END,
        height = CASE WHEN images.modified = excluded.modified AND excluded.height = 0
                      THEN images.height ELSE excluded.height END,
        thumbnail_path = CASE WHEN images.modified = excluded.modified AND excluded.thumbnail_path = ''
                              THEN images.thumbnail_path ELSE excluded.thumbnail_path END,
        exif_json = CASE WHEN images.modified = excluded.modified AND excluded.exif_json = '{{}}'
                         THEN images.exif_json ELSE excluded.exif_json END
"""


def _now_millis() -> int:
    return int(time.time() * 1000)


class Catalog:
    """
    Durable store of MediaRecords keyed by absolute path.

    Every mutating call commits before it returns. Any sqlite3 failure is
    raised as CatalogError: the catalog never degrades silently.
    """
    def __init__(self, db: DBManager):
        self.db = db
        self.db.connect()

    # --- Writes ---

    @contextmanager
    def _writer(self):
        conn = self.db.connect()
        with self.db.write_lock:
            try:
                with conn:
                    yield conn
            except sqlite3.Error as e:
                logging.error(f"Catalog write failed: {e}")
                raise CatalogError(str(e)) from e

    def upsert_many(self, records: Iterable[MediaRecord]) -> int:
        """Inserts or replaces records by path in one transaction (all-or-nothing)."""
        now = _now_millis()
        rows = [self._record_params(rec, now) for rec in records]
        if not rows:
            return 0
        with self._writer() as conn:
            conn.executemany(UPSERT_SQL, rows)
        return len(rows)

    def upsert(self, rec: MediaRecord) -> None:
        self.upsert_many([rec])

    def delete_by_path(self, path: str) -> bool:
        """Returns True if a record was removed. Deleting an absent path is a no-op."""
        with self._writer() as conn:
            cur = conn.execute("DELETE FROM images WHERE filepath = ?", (path,))
            return cur.rowcount > 0

    def update_dimensions(self, path: str, width: int, height: int):
        with self._writer() as conn:
            conn.execute("UPDATE images SET width = ?, height = ? WHERE filepath = ?", (width, height, path))

    def update_cache_reference(self, path: str, thumbnail_path: str):
        with self._writer() as conn:
            conn.execute("UPDATE images SET thumbnail_path = ? WHERE filepath = ?", (thumbnail_path, path))

    def update_metadata(self, path: str, metadata: Dict[str, Any]):
        blob = json.dumps(metadata, default=str)
        with self._writer() as conn:
            conn.execute("UPDATE images SET exif_json = ? WHERE filepath = ?", (blob, path))

    def update_file_state(self, path: str, size: int, modified: int) -> bool:
        """
        Records a content change: new size/mtime and, when the mtime moved,
        a cleared cache reference so the next thumbnail request regenerates.
        Returns False if the path is unknown.
        """
        with self._writer() as conn:
            cur = conn.execute("""
                UPDATE images
                SET size = ?, modified = ?, indexed_at = ?,
                    thumbnail_path = CASE WHEN modified = ? THEN thumbnail_path ELSE '' END
                WHERE filepath = ?
            """, (size, modified, _now_millis(), modified, path))
            return cur.rowcount > 0

    def delete_under(self, folder: str) -> List[str]:
        """Removes every record in `folder` or below it. Returns the removed paths."""
        prefix = folder.rstrip('/') + '/'
        where = "folder = ? OR substr(folder, 1, ?) = ?"
        params = (folder, len(prefix), prefix)
        with self._writer() as conn:
            rows = conn.execute(f"SELECT filepath FROM images WHERE {where} ORDER BY filepath", params).fetchall()
            conn.execute(f"DELETE FROM images WHERE {where}", params)
        return [r[0] for r in rows]

    # --- Reads ---

    @contextmanager
    def _reader(self):
        try:
            yield self.db.reader()
        except sqlite3.Error as e:
            logging.error(f"Catalog read failed: {e}")
            raise CatalogError(str(e)) from e

    def get_by_path(self, path: str) -> Optional[MediaRecord]:
        with self._reader() as conn:
            row = conn.execute(f"SELECT {RECORD_COLUMNS} FROM images WHERE filepath = ?", (path,)).fetchone()
        return self._row_to_record(row) if row else None

    def exists(self, path: str) -> bool:
        with self._reader() as conn:
            row = conn.execute("SELECT 1 FROM images WHERE filepath = ?", (path,)).fetchone()
        return row is not None

    def count(self) -> int:
        with self._reader() as conn:
            return conn.execute("SELECT COUNT(*) FROM images").fetchone()[0]

    def query_page(self,
                   filt: Optional[QueryFilter] = None,
                   sort: str = config.DEFAULT_SORT,
                   order: str = 'desc',
                   page: int = 0,
                   page_size: int = config.DEFAULT_PAGE_SIZE) -> QueryPage:
        """
        Returns one page of matching records plus the total match count.
        Both reads share a single snapshot, so a concurrent batch is seen
        either entirely or not at all.
        """
        where, params = self._build_where(filt or QueryFilter())
        sort_col = config.SORT_COLUMNS.get(sort, config.SORT_COLUMNS[config.DEFAULT_SORT])
        direction = 'ASC' if str(order).lower() == 'asc' else 'DESC'
        page = max(0, page)
        page_size = max(1, page_size)

        with self._reader() as conn:
            conn.execute("BEGIN")
            try:
                rows = conn.execute(f"""
                    SELECT {RECORD_COLUMNS} FROM images {where}
                    ORDER BY {sort_col} {direction}, filepath ASC
                    LIMIT ? OFFSET ?
                """, (*params, page_size, page * page_size)).fetchall()
                total = conn.execute(f"SELECT COUNT(*) FROM images {where}", params).fetchone()[0]
            finally:
                conn.execute("COMMIT")

        return QueryPage(
            records=[self._row_to_record(r) for r in rows],
            total=total,
            page=page,
            page_size=page_size,
        )

    def search(self, text: str, limit: int = config.SEARCH_LIMIT) -> List[MediaRecord]:
        with self._reader() as conn:
            rows = conn.execute(f"""
                SELECT {RECORD_COLUMNS} FROM images WHERE filename LIKE ?
                ORDER BY modified DESC LIMIT ?
            """, (f"%{text}%", limit)).fetchall()
        return [self._row_to_record(r) for r in rows]

    def folder_aggregates(self) -> List[FolderAggregate]:
        with self._reader() as conn:
            rows = conn.execute(
                "SELECT folder, COUNT(*) FROM images GROUP BY folder ORDER BY folder"
            ).fetchall()
        return [FolderAggregate(folder, count) for folder, count in rows]

    def stats(self) -> CatalogStats:
        with self._reader() as conn:
            conn.execute("BEGIN")
            try:
                total = conn.execute("SELECT COUNT(*) FROM images").fetchone()[0]
                total_size = conn.execute("SELECT SUM(size) FROM images").fetchone()[0]
                by_type = conn.execute(
                    "SELECT extension, COUNT(*) AS n FROM images GROUP BY extension ORDER BY n DESC"
                ).fetchall()
                by_folder = conn.execute(
                    "SELECT folder, COUNT(*) AS n FROM images GROUP BY folder ORDER BY n DESC LIMIT ?",
                    (config.STATS_TOP_FOLDERS,),
                ).fetchall()
            finally:
                conn.execute("COMMIT")
        return CatalogStats(total=total, total_size=total_size or 0, by_type=by_type, by_folder=by_folder)

    # --- Helpers ---

    def _build_where(self, filt: QueryFilter):
        clauses = []
        params: List[Any] = []
        if filt.folder:
            clauses.append("folder = ?")
            params.append(filt.folder)
        if filt.extension:
            clauses.append("extension = ?")
            params.append(filt.extension.lower().lstrip('.'))
        if filt.search:
            clauses.append("filename LIKE ?")
            params.append(f"%{filt.search}%")
        if filt.date_from is not None:
            clauses.append("modified >= ?")
            params.append(filt.date_from)
        if filt.date_to is not None:
            clauses.append("modified <= ?")
            params.append(filt.date_to)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    def _record_params(self, rec: MediaRecord, now: int) -> tuple:
        return (
            rec.path, rec.filename, rec.extension, rec.size, rec.width, rec.height,
            rec.created, rec.modified, rec.thumbnail_path or '',
            json.dumps(rec.metadata or {}, default=str), rec.folder, now,
        )

    def _row_to_record(self, row) -> MediaRecord:
        (path, filename, ext, size, width, height, created, modified,
         thumb, exif_json, folder, indexed_at) = row
        try:
            metadata = json.loads(exif_json) if exif_json else {}
        except ValueError:
            logging.warning(f"Unreadable metadata blob for {path}")
            metadata = {}
        return MediaRecord(
            path=path, filename=filename, extension=ext, size=size or 0,
            created=created or 0, modified=modified or 0, folder=folder,
            width=width or 0, height=height or 0, thumbnail_path=thumb or '',
            metadata=metadata, indexed_at=indexed_at or 0,
        )
