import time
import pytest
from pathlib import Path
from PIL import Image

from photo_indexer.database.db import DBManager
from photo_indexer.database.catalog import Catalog
from photo_indexer.models import MediaRecord
from photo_indexer.scanning.filesystem import IgnoreRules

@pytest.fixture
def db_manager(tmp_path):
    """A file-backed catalog DB (WAL needs a real file, not :memory:)."""
    db = DBManager(tmp_path / "gallery.db")
    try:
        yield db
    finally:
        db.close()

@pytest.fixture
def catalog(db_manager):
    return Catalog(db_manager)

@pytest.fixture
def rules():
    # pytest's tmp_path lives under /tmp, which the default rules reserve
    return IgnoreRules(skip_prefixes=())

def make_record(path, size=100, modified=1_000, created=None, **kw) -> MediaRecord:
    p = Path(path)
    return MediaRecord(
        path=str(p),
        filename=p.name,
        extension=p.suffix.lower().lstrip('.'),
        size=size,
        created=modified if created is None else created,
        modified=modified,
        folder=str(p.parent),
        **kw,
    )

def make_image(path: Path, size=(640, 480), color=(200, 30, 30), fmt=None) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    Image.new("RGB", size, color).save(path, format=fmt)
    return path

def wait_for(predicate, timeout=5.0, interval=0.02) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()

@pytest.fixture
def photo_tree(tmp_path):
    """
    photos/
      a.jpg, b.png, notes.txt
      trip/c.jpg
      .git/hidden.jpg
      node_modules/pkg/icon.png
    """
    root = tmp_path / "photos"
    make_image(root / "a.jpg")
    make_image(root / "b.png", size=(300, 200))
    (root / "notes.txt").write_text("not media")
    make_image(root / "trip" / "c.jpg", size=(100, 400))
    make_image(root / ".git" / "hidden.jpg")
    make_image(root / "node_modules" / "pkg" / "icon.png", size=(16, 16))
    return root
