import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, List, Dict, Any


def _to_millis(ts: float) -> int:
    return int(ts * 1000)


@dataclass
class MediaRecord:
    """
    One indexed media file. `path` is the unique key.
    Timestamps are milliseconds since the epoch.
    """
    path: str
    filename: str
    extension: str          # lower-cased, no dot
    size: int
    created: int
    modified: int
    folder: str

    # Enrichment (populated by the thumbnail cache)
    width: int = 0
    height: int = 0
    thumbnail_path: str = ''
    metadata: Dict[str, Any] = field(default_factory=dict)

    indexed_at: int = 0

    @classmethod
    def from_stat(cls, path: Path, st: os.stat_result) -> 'MediaRecord':
        # st_birthtime only exists on macOS/BSD (and Windows on 3.12+)
        birth = getattr(st, 'st_birthtime', None)
        created = birth if birth is not None else st.st_ctime
        return cls(
            path=str(path),
            filename=path.name,
            extension=path.suffix.lower().lstrip('.'),
            size=st.st_size,
            created=_to_millis(created),
            modified=_to_millis(st.st_mtime),
            folder=str(path.parent),
        )


@dataclass
class FolderAggregate:
    folder: str
    count: int


@dataclass
class QueryFilter:
    """All fields optional; unset fields do not constrain the query."""
    folder: Optional[str] = None
    extension: Optional[str] = None
    search: Optional[str] = None
    date_from: Optional[int] = None     # inclusive, ms
    date_to: Optional[int] = None       # inclusive, ms


@dataclass
class QueryPage:
    records: List[MediaRecord]
    total: int
    page: int
    page_size: int


@dataclass
class CatalogStats:
    total: int
    total_size: int
    by_type: List[tuple]
    by_folder: List[tuple]


@dataclass
class SkippedEntry:
    path: str
    reason: str


@dataclass
class ScanReport:
    """Outcome of one scan session, including everything that was skipped."""
    roots: List[str] = field(default_factory=list)
    found: int = 0
    inserted: int = 0
    batches_committed: int = 0
    skipped: List[SkippedEntry] = field(default_factory=list)
    aborted: bool = False

    def skip(self, path, reason: str):
        self.skipped.append(SkippedEntry(str(path), reason))


@dataclass
class WatchReport:
    added: int = 0
    changed: int = 0
    removed: int = 0
    ignored: int = 0
    errors: List[SkippedEntry] = field(default_factory=list)


@dataclass
class ThumbnailResult:
    path: str
    thumbnail_path: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.thumbnail_path is not None
