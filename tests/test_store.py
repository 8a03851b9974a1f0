"""
Tests for the JSON stores: spot records round-tripping untouched, streak keys.
"""

import json

from spotwatch.models import Spot, StreakRecord, spot_key
from spotwatch.store import SpotStore, StreakStore


class TestSpotStore:
    """Loaded records are written back as they were read."""

    def test_loaded_records_written_back_verbatim(self, tmp_path):
        path = tmp_path / "spots.json"
        records = [
            {"id": "m1", "venue_id": "copper-tap", "title": "Hand made", "category": "Brunch", "source": "manual"},
            {"source": "manual", "title": "Rooftop", "id": 17, "hours": "Fri only"},
        ]
        path.write_text(json.dumps(records), encoding="utf-8")
        store = SpotStore(path)

        spots = store.load()
        store.save(spots)

        assert json.loads(path.read_text(encoding="utf-8")) == records
        assert spots[1].id == 17

    def test_invalid_record_carried_forward(self, tmp_path):
        path = tmp_path / "spots.json"
        broken = {"id": "no-title", "source": "manual"}
        path.write_text(json.dumps([broken, "not a spot"]), encoding="utf-8")
        store = SpotStore(path)

        spots = store.load()
        generated = Spot(id="copper-tap::happy-hour", venue_id="copper-tap", title="The Copper Tap")
        store.save(spots + [generated])

        saved = json.loads(path.read_text(encoding="utf-8"))
        assert spots == []
        assert saved[:2] == [broken, "not a spot"]
        assert saved[2]["id"] == "copper-tap::happy-hour"

    def test_generated_spot_dumps_all_fields(self):
        spot = Spot(id="copper-tap::happy-hour", venue_id="copper-tap", title="The Copper Tap")
        stored = spot.to_stored()
        assert stored["promotion_list"] == []
        assert stored["source"] == "automated"


class TestStreakStore:
    def test_keys_match_spot_keys(self, tmp_path):
        store = StreakStore(tmp_path / "streaks.json")
        record = StreakRecord(venue_id="copper-tap", category="Happy Hour", last_date="20250301")
        store.save({spot_key("copper-tap", "Happy Hour"): record})

        loaded = store.load()

        spot = Spot(id="x", venue_id="copper-tap", title="The Copper Tap", category="Happy Hour")
        assert list(loaded) == [spot.key]
