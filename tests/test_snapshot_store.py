"""
Tests for snapshot generations: rotation, archiving, pruning and corrupt reads.
"""

import pytest

from spotwatch.models import RawPage, RawSnapshot
from spotwatch.snapshot_store import SnapshotStore, page_id_for


@pytest.fixture
def store(tmp_path):
    return SnapshotStore(tmp_path / "snapshots")


def capture(store, venue_id, pages, run_date):
    """Write normalized pages for a venue and finalize its snapshot."""
    store.clear_pages(venue_id)
    for url, text in pages:
        store.write_page(venue_id, url, text, fetched_at="2025-03-01T00:00:00+00:00")
    return store.finalize_snapshot(venue_id, run_date=run_date)


class TestRotation:
    """Day-boundary rotation of current -> baseline -> archive."""

    def test_first_run_starts_generation(self, store):
        rotated = store.rotate("20250301", retention_days=14)

        assert rotated is False
        assert store.current_generation_date() == "20250301"
        assert store.baseline_venue_ids() == []

    def test_same_day_is_noop(self, store):
        store.rotate("20250301", retention_days=14)
        capture(store, "copper-tap", [("https://coppertap.com/", "Happy hour 4-7")], "20250301")

        assert store.rotate("20250301", retention_days=14) is False
        assert store.current_venue_ids() == ["copper-tap"]
        assert store.read_baseline("copper-tap") is None

    def test_new_day_promotes_current(self, store):
        store.rotate("20250301", retention_days=14)
        snapshot = capture(store, "copper-tap", [("https://coppertap.com/", "Happy hour 4-7")], "20250301")

        assert store.rotate("20250302", retention_days=14) is True

        assert store.baseline_generation_date() == "20250301"
        assert store.read_baseline("copper-tap").aggregate_hash == snapshot.aggregate_hash
        assert store.current_generation_date() == "20250302"
        assert store.current_venue_ids() == []

    def test_outgoing_baseline_archived_under_its_date(self, store):
        store.rotate("20250301", retention_days=14)
        capture(store, "copper-tap", [("https://coppertap.com/", "v1")], "20250301")
        store.rotate("20250302", retention_days=14)
        capture(store, "copper-tap", [("https://coppertap.com/", "v2")], "20250302")

        store.rotate("20250303", retention_days=14)

        archived = store.archive_dir / "20250301" / "copper-tap" / "snapshot.json"
        assert archived.exists()
        assert store.baseline_generation_date() == "20250302"

    def test_empty_current_keeps_baseline(self, store):
        store.rotate("20250301", retention_days=14)
        capture(store, "copper-tap", [("https://coppertap.com/", "v1")], "20250301")
        store.rotate("20250302", retention_days=14)

        # Nothing captured on the 2nd; the 3rd must still diff against the 1st
        assert store.rotate("20250303", retention_days=14) is False
        assert store.baseline_generation_date() == "20250301"
        assert store.read_baseline("copper-tap") is not None

    def test_reset_current_keeps_baseline(self, store):
        store.rotate("20250301", retention_days=14)
        capture(store, "copper-tap", [("https://coppertap.com/", "v1")], "20250301")
        store.rotate("20250302", retention_days=14)
        capture(store, "copper-tap", [("https://coppertap.com/", "v2")], "20250302")

        store.reset_current()

        assert store.current_venue_ids() == []
        assert store.read_baseline("copper-tap") is not None


class TestArchive:
    def test_existing_label_not_overwritten(self, store):
        store.rotate("20250301", retention_days=14)
        capture(store, "copper-tap", [("https://coppertap.com/", "v1")], "20250301")
        store.rotate("20250302", retention_days=14)

        assert store.archive("20250301") is True
        marker = store.archive_dir / "20250301" / "marker.txt"
        marker.write_text("keep me")

        assert store.archive("20250301") is False
        assert marker.read_text() == "keep me"

    def test_empty_baseline_not_archived(self, store):
        assert store.archive("20250301") is False
        assert not (store.archive_dir / "20250301").exists()

    def test_prune_old_dated_archives_only(self, store):
        for label in ("20250101", "20250301", "manual-backup"):
            (store.archive_dir / label).mkdir(parents=True)

        removed = store.prune_archives(retention_days=14, today="20250310")

        assert removed == ["20250101"]
        assert (store.archive_dir / "20250301").exists()
        assert (store.archive_dir / "manual-backup").exists()


class TestReads:
    """Reading layers back, including damaged files."""

    def test_raw_snapshot_round_trip(self, store):
        store.rotate("20250301", retention_days=14)
        url = "https://coppertap.com/"
        raw = RawSnapshot(
            venue_id="copper-tap",
            venue_name="The Copper Tap",
            website=url,
            pages=[RawPage(page_id=page_id_for(url), url=url, html="<p>hi</p>", is_homepage=True)],
        )

        assert not store.has_raw("copper-tap")
        store.write_raw_snapshot(raw)
        assert store.has_raw("copper-tap")

        loaded = store.read_raw_snapshot("copper-tap")
        assert loaded.pages[0].html == "<p>hi</p>"
        assert loaded.pages[0].is_homepage

    def test_corrupt_baseline_reads_as_missing(self, store):
        path = store.baseline_dir / "copper-tap" / "snapshot.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        assert store.read_baseline("copper-tap") is None

        path.write_text('{"venue_id": "copper-tap"}')
        assert store.read_baseline("copper-tap") is None

    def test_snapshot_pages_sorted_and_hashed(self, store):
        store.rotate("20250301", retention_days=14)
        snapshot = capture(store, "copper-tap", [
            ("https://coppertap.com/menu", "Menu"),
            ("https://coppertap.com/", "Home"),
        ], "20250301")

        assert [p.url for p in snapshot.pages] == ["https://coppertap.com/", "https://coppertap.com/menu"]
        assert len(snapshot.aggregate_hash) == 64
        assert store.read_current("copper-tap") == snapshot

    def test_page_id_stable(self):
        assert page_id_for("https://coppertap.com/") == page_id_for("https://coppertap.com/")
        assert len(page_id_for("https://coppertap.com/")) == 12
