import os
import threading
import time
import pytest
from watchdog.events import (
    DirDeletedEvent, FileCreatedEvent, FileDeletedEvent, FileModifiedEvent, FileMovedEvent,
)

from photo_indexer.events import EventBus, EventType
from photo_indexer.exceptions import SubscriptionError
from photo_indexer.watching.watcher import ADD, CHANGE, Watcher, _RootEventHandler
from conftest import make_image, wait_for

@pytest.fixture
def bus():
    return EventBus()

@pytest.fixture
def root(tmp_path):
    r = tmp_path / "library"
    r.mkdir()
    return r

@pytest.fixture
def watcher(catalog, bus, rules):
    w = Watcher(catalog, bus, rules, stability_threshold=0.05, poll_interval=0.01)
    try:
        yield w
    finally:
        w.close()

def collect(bus, event_type):
    seen = []
    bus.subscribe(event_type, lambda et, payload: seen.append(payload))
    return seen

def test_add_is_ingested_once_stable(watcher, catalog, bus, root):
    added = collect(bus, EventType.FILE_ADDED)
    path = str(make_image(root / "new.jpg"))

    watcher.notify(ADD, path, str(root))

    assert wait_for(lambda: catalog.exists(path))
    rec = catalog.get_by_path(path)
    assert rec.size == os.path.getsize(path)
    assert rec.folder == str(root)
    assert wait_for(lambda: len(added) == 1)
    assert added[0]["path"] == path
    assert watcher.report.added == 1

def test_add_waits_for_stability_window(catalog, bus, rules, root):
    watcher = Watcher(catalog, bus, rules, stability_threshold=0.4, poll_interval=0.02)
    try:
        path = str(make_image(root / "slow.jpg"))
        watcher.notify(ADD, path, str(root))
        time.sleep(0.1)
        assert not catalog.exists(path)
        assert wait_for(lambda: catalog.exists(path))
    finally:
        watcher.close()

def test_repeated_events_collapse_into_one_add(watcher, catalog, bus, root):
    added = collect(bus, EventType.FILE_ADDED)
    changed = collect(bus, EventType.FILE_CHANGED)
    path = str(make_image(root / "burst.jpg"))

    watcher.notify(ADD, path, str(root))
    watcher.notify(CHANGE, path, str(root))
    watcher.notify(CHANGE, path, str(root))

    assert wait_for(lambda: catalog.exists(path))
    time.sleep(0.1)
    assert len(added) == 1
    assert changed == []

def test_change_updates_size_and_mtime(watcher, catalog, bus, root):
    changed = collect(bus, EventType.FILE_CHANGED)
    path = str(make_image(root / "edit.jpg", size=(50, 50)))
    watcher.notify(ADD, path, str(root))
    assert wait_for(lambda: catalog.exists(path))
    catalog.update_cache_reference(path, "/cache/old.jpg")

    make_image(root / "edit.jpg", size=(500, 500))
    future = int(time.time()) + 60
    os.utime(path, (future, future))
    watcher.notify(CHANGE, path, str(root))

    assert wait_for(lambda: len(changed) == 1)
    rec = catalog.get_by_path(path)
    assert rec.size == os.path.getsize(path)
    assert rec.modified == int(future * 1000)
    assert rec.thumbnail_path == ""
    assert changed[0] == {"path": path, "size": rec.size, "modified": rec.modified}
    assert watcher.report.changed == 1

def test_change_for_unknown_file_is_ingested(watcher, catalog, root):
    path = str(make_image(root / "preexisting.jpg"))
    watcher.notify(CHANGE, path, str(root))
    assert wait_for(lambda: catalog.exists(path))

def test_remove_and_duplicate_remove(watcher, catalog, bus, root):
    removed = collect(bus, EventType.FILE_REMOVED)
    path = str(make_image(root / "gone.jpg"))
    watcher.notify(ADD, path, str(root))
    assert wait_for(lambda: catalog.exists(path))

    os.remove(path)
    watcher.notify_removed(path, str(root))
    assert not catalog.exists(path)
    assert removed == [{"path": path}]

    # Redelivery is a no-op
    watcher.notify_removed(path, str(root))
    assert removed == [{"path": path}]
    assert watcher.report.removed == 1
    assert watcher.report.errors == []

def test_ignored_paths(watcher, catalog, root):
    hidden = make_image(root / ".hidden.jpg")
    in_git = make_image(root / ".git" / "obj.jpg")
    in_deps = make_image(root / "node_modules" / "logo.png")
    text = root / "readme.txt"
    text.write_text("hi")

    for p in (hidden, in_git, in_deps, text):
        watcher.notify(ADD, str(p), str(root))

    assert watcher.report.ignored == 4
    time.sleep(0.15)
    assert catalog.count() == 0

def test_file_vanishing_before_it_settles_is_dropped(watcher, catalog, root):
    path = root / "flash.jpg"
    make_image(path)
    watcher.notify(ADD, str(path), str(root))
    path.unlink()
    time.sleep(0.2)
    assert catalog.count() == 0
    assert watcher.report.errors == []

def test_directory_add_and_remove(watcher, catalog, bus, root):
    removed = collect(bus, EventType.FILE_REMOVED)
    album = root / "album"
    make_image(album / "one.jpg")
    make_image(album / "nested" / "two.png")
    make_image(album / ".cache" / "skip.jpg")

    watcher.notify_directory_added(str(album), str(root))
    assert wait_for(lambda: catalog.count() == 2)

    watcher.notify_directory_removed(str(album), str(root))
    assert catalog.count() == 0
    assert removed == [{"path": str(album / "nested" / "two.png")}, {"path": str(album / "one.jpg")}]
    assert watcher.report.removed == 2

def test_handler_translates_watchdog_events(watcher, catalog, root):
    handler = _RootEventHandler(watcher, str(root))
    first = str(make_image(root / "first.jpg"))

    handler.dispatch(FileCreatedEvent(first))
    assert wait_for(lambda: catalog.exists(first))

    renamed = root / "renamed.jpg"
    os.rename(first, renamed)
    handler.dispatch(FileMovedEvent(first, str(renamed)))
    assert not catalog.exists(first)
    assert wait_for(lambda: catalog.exists(str(renamed)))

    handler.dispatch(FileModifiedEvent(str(renamed)))
    os.remove(renamed)
    handler.dispatch(FileDeletedEvent(str(renamed)))
    assert not catalog.exists(str(renamed))

    handler.dispatch(DirDeletedEvent(str(root / "never-indexed")))
    assert watcher.report.errors == []

def test_catalog_failure_is_recorded_not_raised(watcher, catalog, db_manager, root):
    db_manager.connect().execute("DROP TABLE images")
    path = str(make_image(root / "x.jpg"))

    watcher.notify(ADD, path, str(root))
    assert wait_for(lambda: len(watcher.report.errors) == 1)
    assert watcher.report.errors[0].path == path

class FakeObserver:
    def __init__(self, fail=False):
        self.fail = fail
        self.scheduled = []
        self.started = False
        self.stopped = False

    def schedule(self, handler, path, recursive=False):
        self.scheduled.append(path)

    def start(self):
        if self.fail:
            raise OSError("inotify watch limit reached")
        self.started = True

    def stop(self):
        self.stopped = True

    def is_alive(self):
        return False

    def join(self, timeout=None):
        pass

def test_resubscribe_swaps_observers(catalog, bus, rules, tmp_path, root):
    made = []
    def factory():
        made.append(FakeObserver())
        return made[-1]

    watcher = Watcher(catalog, bus, rules, observer_factory=factory)
    watcher.subscribe([root, tmp_path / "missing"])
    assert watcher.active
    assert watcher.roots == [str(root.resolve())]

    other = tmp_path / "other"
    other.mkdir()
    watcher.resubscribe([root, other])
    assert made[0].stopped
    assert made[1].started and not made[1].stopped
    assert len(watcher.roots) == 2

    watcher.close()
    assert made[1].stopped
    assert not watcher.active

def test_failed_resubscribe_keeps_previous_watch(catalog, bus, rules, tmp_path, root):
    good = FakeObserver()
    watcher = Watcher(catalog, bus, rules, observer_factory=lambda: good)
    watcher.subscribe([root])

    bad = FakeObserver(fail=True)
    watcher.observer_factory = lambda: bad
    other = tmp_path / "other"
    other.mkdir()

    with pytest.raises(SubscriptionError):
        watcher.resubscribe([root, other])

    assert watcher.active
    assert watcher.roots == [str(root.resolve())]
    assert not good.stopped
    assert bad.stopped
    watcher.close()

def test_live_watch_picks_up_new_files(watcher, catalog, root):
    watcher.subscribe([root])
    path = root / "live.jpg"
    make_image(path)
    assert wait_for(lambda: catalog.exists(str(path.resolve())), timeout=10)

def test_duplicate_add_keeps_one_record(watcher, catalog, bus, root):
    added = collect(bus, EventType.FILE_ADDED)
    path = str(make_image(root / "twice.jpg"))

    watcher.notify(ADD, path, str(root))
    assert wait_for(lambda: len(added) == 1)
    watcher.notify(ADD, path, str(root))
    assert wait_for(lambda: len(added) == 2)

    assert catalog.count() == 1

def test_many_pending_adds_share_one_debounce_thread(catalog, bus, rules, root):
    watcher = Watcher(catalog, bus, rules, stability_threshold=1.0, poll_interval=2.0)
    before = threading.active_count()
    try:
        for i in range(300):
            watcher.notify(ADD, str(root / f"img_{i:03d}.jpg"), str(root))
        assert threading.active_count() - before <= 1
        debounce = watcher._debounce_thread
        assert debounce is not None and debounce.is_alive()
    finally:
        watcher.close()
    assert not debounce.is_alive()

def test_directory_walk_runs_off_the_dispatcher(watcher, catalog, root, monkeypatch):
    album = root / "moved-in"
    for i in range(5):
        make_image(album / f"{i}.jpg", size=(8, 8))

    walked_on = []
    real_walk = os.walk
    def spy_walk(path):
        walked_on.append(threading.current_thread().name)
        return real_walk(path)

    monkeypatch.setattr("photo_indexer.watching.watcher.os.walk", spy_walk)
    watcher.notify_directory_added(str(album), str(root))
    assert wait_for(lambda: catalog.count() == 5)

    assert walked_on == ["watch-debounce"]
