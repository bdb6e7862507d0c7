import os
import threading
import pytest
from datetime import datetime
from pathlib import Path

from photo_indexer.events import EventBus, EventType
from photo_indexer.models import QueryFilter, ScanReport
from photo_indexer.scanning.filesystem import DiskScanner, IgnoreRules
from photo_indexer.scanning.session import Scanner

@pytest.fixture
def bus():
    return EventBus()

def collect(bus, event_type):
    seen = []
    bus.subscribe(event_type, lambda et, payload: seen.append(payload))
    return seen

def test_ignore_rules_defaults():
    rules = IgnoreRules()
    assert rules.is_media("IMG_0001.JPG")
    assert rules.is_media("shot.cr2")
    assert rules.is_media("photo.heic")
    assert not rules.is_media("notes.txt")
    assert not rules.is_media("README")

    assert rules.skip_dir("/home/u/.git", ".git")
    assert rules.skip_dir("/home/u/node_modules", "node_modules")
    assert rules.skip_dir("/home/u/.hidden", ".hidden")
    assert not rules.skip_dir("/home/u/Pictures", "Pictures")
    # A root may itself be a dot-directory
    assert not rules.skip_dir("/home/u/.photos", ".photos", is_root=True)

def test_reserved_prefixes_match_whole_components():
    rules = IgnoreRules()
    assert rules.is_reserved("/tmp")
    assert rules.is_reserved("/tmp/x/y.jpg")
    assert not rules.is_reserved("/tmpfiles/y.jpg")
    assert rules.skip_dir("/usr/share", "share")

def test_ignores_event_path(rules):
    root = "/photos"
    assert rules.ignores_event_path("/photos/.DS_Store", root)
    assert rules.ignores_event_path("/photos/.git/objects/a.jpg", root)
    assert rules.ignores_event_path("/photos/node_modules/x.png", root)
    assert not rules.ignores_event_path("/photos/trip/a.jpg", root)
    # Components above the root are not considered
    assert not IgnoreRules(skip_prefixes=()).ignores_event_path("/home/.me/photos/a.jpg", "/home/.me/photos")

def test_scan_photo_tree(catalog, bus, rules, photo_tree):
    progress = collect(bus, EventType.SCAN_PROGRESS)
    complete = collect(bus, EventType.SCAN_COMPLETE)

    scanner = Scanner(catalog, bus, rules, max_workers=2)
    report = scanner.scan([photo_tree])

    assert report.found == 3
    assert report.inserted == 3
    assert not report.aborted
    assert catalog.count() == 3

    aggs = {a.folder: a.count for a in catalog.folder_aggregates()}
    root = str(photo_tree.resolve())
    assert aggs == {root: 2, str(Path(root) / "trip"): 1}

    assert not catalog.exists(str(photo_tree / ".git" / "hidden.jpg"))
    assert not catalog.exists(str(photo_tree / "node_modules" / "pkg" / "icon.png"))
    assert not catalog.exists(str(photo_tree / "notes.txt"))

    assert [p["found"] for p in progress] == [1, 2, 3]
    assert complete == [{"total": 3, "skipped": 0}]

def test_rescan_is_idempotent(catalog, bus, rules, photo_tree):
    scanner = Scanner(catalog, bus, rules)
    scanner.scan([photo_tree])
    scanner.scan([photo_tree])
    assert catalog.count() == 3

def test_scan_records_missing_and_reserved_roots(catalog, bus, tmp_path, photo_tree):
    missing = tmp_path / "does-not-exist"
    rules = IgnoreRules(skip_prefixes=(str(photo_tree),))
    complete = collect(bus, EventType.SCAN_COMPLETE)

    report = Scanner(catalog, bus, rules).scan([missing, photo_tree])

    reasons = {Path(s.path).name: s.reason for s in report.skipped}
    assert reasons == {"does-not-exist": "root missing", "photos": "reserved path"}
    assert report.found == 0
    assert catalog.count() == 0
    assert complete == [{"total": 0, "skipped": 2}]

def test_stat_failure_is_reported_not_fatal(tmp_path, rules):
    report = ScanReport()
    scanner = DiskScanner(rules)
    gone = tmp_path / "vanished.jpg"

    assert scanner._stat_record(gone, report) is None
    assert len(report.skipped) == 1
    assert report.skipped[0].path == str(gone)
    assert report.skipped[0].reason.startswith("stat failed")

def test_symlinks_are_not_followed(catalog, bus, rules, tmp_path, photo_tree):
    link_root = tmp_path / "links"
    link_root.mkdir()
    (link_root / "loop").symlink_to(photo_tree, target_is_directory=True)
    (link_root / "alias.jpg").symlink_to(photo_tree / "a.jpg")

    report = Scanner(catalog, bus, rules).scan([link_root])
    assert report.found == 0

def test_cancel_leaves_only_whole_batches(catalog, bus, rules, tmp_path):
    root = tmp_path / "many"
    root.mkdir()
    for i in range(23):
        (root / f"img_{i:02d}.jpg").write_bytes(b"x")

    scanner = Scanner(catalog, bus, rules, batch_size=5, max_workers=2)
    complete = collect(bus, EventType.SCAN_COMPLETE)

    def on_progress(et, payload):
        if payload["found"] == 12:
            scanner.session.cancel()
    bus.subscribe(EventType.SCAN_PROGRESS, on_progress)

    session = scanner.start_scan([root])
    report = session.wait(timeout=10)

    assert report.aborted
    assert report.batches_committed == 2
    assert catalog.count() == 10
    assert complete == []

def test_starting_a_scan_cancels_the_previous_one(catalog, bus, rules, photo_tree):
    scanner = Scanner(catalog, bus, rules, max_workers=1)
    entered = threading.Event()
    release = threading.Event()

    def hold_first(et, payload):
        if not entered.is_set():
            entered.set()
            release.wait(5)
    bus.subscribe(EventType.SCAN_PROGRESS, hold_first)

    first = scanner.start_scan([photo_tree])
    assert entered.wait(5)

    threading.Timer(0.2, release.set).start()
    second = scanner.start_scan([photo_tree])

    assert first.join(0) is True
    assert first.cancel_token.is_set()
    assert first.report.aborted
    assert first.report.batches_committed == 0

    report = second.wait(timeout=10)
    assert not report.aborted
    assert report.found == 3
    assert catalog.count() == 3
    assert scanner.session is second

def test_wait_times_out_while_running(catalog, bus, rules, photo_tree):
    scanner = Scanner(catalog, bus, rules)
    gate = threading.Event()
    bus.subscribe(EventType.SCAN_PROGRESS, lambda et, p: gate.wait(5))

    session = scanner.start_scan([photo_tree])
    with pytest.raises(TimeoutError):
        session.wait(timeout=0.05)
    assert session.running

    gate.set()
    assert session.wait(timeout=10).found == 3

def test_photos_scenario_with_heic_and_git_config(catalog, bus, rules, tmp_path):
    root = tmp_path / "photos"
    (root / ".git").mkdir(parents=True)
    (root / ".git" / "config").write_text("[core]\n")
    (root / "sub").mkdir()
    (root / "a.jpg").write_bytes(b"jpeg")
    (root / "b.png").write_bytes(b"png")
    (root / "sub" / "c.heic").write_bytes(b"heic")
    jan = datetime(2024, 1, 1).timestamp()
    feb = datetime(2024, 2, 1).timestamp()
    os.utime(root / "a.jpg", (jan, jan))
    os.utime(root / "b.png", (feb, feb))

    report = Scanner(catalog, bus, rules).scan([root])

    assert report.found == 3
    assert report.inserted == 3
    assert [(a.folder, a.count) for a in catalog.folder_aggregates()] == [
        (str(root), 2), (str(root / "sub"), 1),
    ]
    newest_first = catalog.query_page(QueryFilter(folder=str(root))).records
    assert [r.filename for r in newest_first] == ["b.png", "a.jpg"]
    assert newest_first[1].modified == int(jan * 1000)
