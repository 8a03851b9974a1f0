"""
Tests for the stage graph and the pipeline orchestrator.

End-to-end runs use a canned HTTP session and a scripted extraction
client, covering the main scenarios: a new venue, a same-day rerun, an
unchanged next day, the extraction ceiling, recovery after a failed stage
and lock refusal.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from conftest import FakeSession, write_venues
from spotwatch.extraction import ExtractionAdapter
from spotwatch.lock import PipelineLock
from spotwatch.models import RawPage, RawSnapshot
from spotwatch.pipeline.models import PipelineRun, RunStatus, Stage, StageStatus
from spotwatch.pipeline.workflow import PipelineOrchestrator, StageNode, merge_raw_pages
from spotwatch.scraper import VenueCrawler
from spotwatch.snapshot_store import SnapshotStore
from spotwatch.store import ConfigStore, GoldStore, ManifestStore


def make_orchestrator(settings, session, llm_client=None):
    crawler = VenueCrawler(settings, session=session, sleep=lambda _s: None)
    adapter = ExtractionAdapter(settings, client=llm_client) if llm_client is not None else None
    return PipelineOrchestrator(settings, crawler=crawler, adapter=adapter)


def load_spots(settings):
    return json.loads(settings.spots_path.read_text(encoding="utf-8"))


def load_streaks(settings):
    return json.loads(settings.streaks_path.read_text(encoding="utf-8"))


class TestStageNodes:
    """Individual node behaviour."""

    @pytest.mark.asyncio
    async def test_exception_becomes_failed_result(self):
        class Exploding(StageNode):
            stage = Stage.MERGED

            async def run(self, state):
                raise RuntimeError("disk full")

        node = Exploding()
        result = await node.execute(SimpleNamespace(run_date="20250301"))

        assert result.status == StageStatus.FAILED
        assert result.error == "RuntimeError: disk full"
        assert node.get_next_nodes(None) == [Stage.TRIMMED.value]

    def test_merge_raw_pages(self):
        raw = RawSnapshot(venue_id="copper-tap", pages=[
            RawPage(page_id="b", url="https://coppertap.com/menu/?utm_source=ig", html="<p>menu dup</p>"),
            RawPage(page_id="a", url="https://coppertap.com/", html="<p>home</p>", is_homepage=True),
            RawPage(page_id="c", url="https://coppertap.com/menu", html="<p>menu</p>"),
            RawPage(page_id="d", url="https://coppertap.com/careers", html="<p>jobs</p>"),
            RawPage(page_id="e", url="https://coppertap.com/deals", html="\x00\x01binary"),
        ])

        merged = merge_raw_pages(raw)

        assert [p.page_id for p in merged.pages] == ["a", "b"]


class TestRunManifest:
    def test_finalize_all_done_is_completed(self):
        run = PipelineRun.new("20250301")
        for stage in Stage:
            run.mark_running(stage)
            run.mark_completed(stage)
        run.finalize()
        assert run.status == RunStatus.COMPLETED
        assert run.finished_at is not None

    def test_finalize_interrupted_stage_is_failed(self):
        run = PipelineRun.new("20250301")
        run.mark_running(Stage.RAW)
        run.finalize()
        assert run.status == RunStatus.FAILED_AT_RAW
        assert run.status.failed_stage == Stage.RAW


class TestPipelineScenarios:
    """Full orchestrator runs against a temp data directory."""

    @pytest.mark.asyncio
    async def test_new_venue(self, settings, copper_tap, site_pages, llm_client):
        write_venues(settings, [copper_tap])
        orchestrator = make_orchestrator(settings, FakeSession(site_pages), llm_client)

        run = await orchestrator.run(run_date="20250301")

        assert run.status == RunStatus.COMPLETED
        assert all(r.status == StageStatus.COMPLETED for r in run.stages)

        snapshot = SnapshotStore(settings.snapshots_dir).read_current("copper-tap")
        assert len(snapshot.pages) == 2

        record = GoldStore(settings.gold_dir).get("copper-tap")
        assert record.found
        assert record.entries[0].confidence == 85
        assert record.source_hash == snapshot.aggregate_hash

        spots = load_spots(settings)
        assert len(spots) == 1
        assert spots[0]["id"] == "copper-tap::happy-hour"
        assert "$5 beers" in spots[0]["promotion_list"]
        assert spots[0]["last_update_date"] == "20250301"

        config = ConfigStore(settings.config_path).load()
        assert config.last_run_status == "completed_successfully"
        assert config.last_spots_processed_date == "20250301"
        assert ManifestStore(settings.runs_dir).load(run.run_id).status == RunStatus.COMPLETED
        assert not settings.lock_path.exists()
        assert llm_client.complete_json.call_count == 1

    @pytest.mark.asyncio
    async def test_same_day_rerun_is_idempotent(self, settings, copper_tap, site_pages, llm_client):
        write_venues(settings, [copper_tap])
        session = FakeSession(site_pages)
        await make_orchestrator(settings, session, llm_client).run(run_date="20250301")
        spots_before = settings.spots_path.read_bytes()
        fetches_before = len(session.calls)

        run = await make_orchestrator(settings, session, llm_client).run(run_date="20250301")

        assert run.status == RunStatus.COMPLETED
        assert len(session.calls) == fetches_before
        assert llm_client.complete_json.call_count == 1
        assert run.stage(Stage.EXTRACT).metrics["work_set"] == 0
        assert settings.spots_path.read_bytes() == spots_before

    @pytest.mark.asyncio
    async def test_unchanged_next_day(self, settings, copper_tap, site_pages, llm_client):
        write_venues(settings, [copper_tap])
        session = FakeSession(site_pages)
        await make_orchestrator(settings, session, llm_client).run(run_date="20250301")
        streaks_before = load_streaks(settings)

        run = await make_orchestrator(settings, session, llm_client).run(run_date="20250302")

        assert run.status == RunStatus.COMPLETED
        assert run.stage(Stage.TRIMMED).metrics["unchanged"] == 1
        assert llm_client.complete_json.call_count == 1
        assert load_spots(settings)[0]["last_update_date"] == "20250301"
        assert load_streaks(settings) == streaks_before
        assert SnapshotStore(settings.snapshots_dir).baseline_generation_date() == "20250301"

    @pytest.mark.asyncio
    async def test_changed_next_day_advances_streak(self, settings, copper_tap, site_pages, llm_client):
        write_venues(settings, [copper_tap])
        await make_orchestrator(settings, FakeSession(site_pages), llm_client).run(run_date="20250301")

        url = "https://www.coppertap.com/happy-hour"
        site_pages[url] = site_pages[url].replace("$5 beers", "$4 beers")
        llm_client.complete_json.return_value = llm_client.complete_json.return_value.replace("$5 beers", "$4 beers")
        run = await make_orchestrator(settings, FakeSession(site_pages), llm_client).run(run_date="20250302")

        assert run.stage(Stage.TRIMMED).metrics["changed"] == 1
        assert llm_client.complete_json.call_count == 2
        spot = load_spots(settings)[0]
        assert "$4 beers" in spot["promotion_list"]
        assert spot["last_update_date"] == "20250302"
        assert load_streaks(settings)[0]["streak"] == 2

    @pytest.mark.asyncio
    async def test_extraction_ceiling_skips_stage(self, settings, copper_tap, site_pages, llm_client):
        settings.max_incremental_files = 0
        write_venues(settings, [copper_tap])

        run = await make_orchestrator(settings, FakeSession(site_pages), llm_client).run(run_date="20250301")

        assert run.status == RunStatus.COMPLETED
        extract = run.stage(Stage.EXTRACT)
        assert extract.status == StageStatus.SKIPPED
        assert "MAX_INCREMENTAL_FILES" in extract.reason
        llm_client.complete_json.assert_not_called()
        assert SnapshotStore(settings.snapshots_dir).read_ledger().pending() == ["copper-tap"]
        assert load_spots(settings) == []

    @pytest.mark.asyncio
    async def test_missing_api_key_skips_extraction(self, settings, copper_tap, site_pages):
        write_venues(settings, [copper_tap])

        run = await make_orchestrator(settings, FakeSession(site_pages)).run(run_date="20250301")

        assert run.status == RunStatus.COMPLETED
        assert run.stage(Stage.EXTRACT).reason == "OPENAI_API_KEY not set"
        assert GoldStore(settings.gold_dir).all() == []

    @pytest.mark.asyncio
    async def test_recovery_resumes_at_failed_stage(self, settings, copper_tap, site_pages, llm_client):
        write_venues(settings, [copper_tap])
        session = FakeSession(site_pages)
        failing = make_orchestrator(settings, session, llm_client)
        failing.nodes[Stage.EXTRACT.value].run = AsyncMock(side_effect=RuntimeError("extract crashed"))

        failed = await failing.run(run_date="20250301")

        assert failed.status == RunStatus.FAILED_AT_EXTRACT
        assert failed.stage(Stage.SPOTS).status == StageStatus.PENDING
        config = ConfigStore(settings.config_path).load()
        assert config.last_failed_stage == "running_extract"
        fetches = len(session.calls)

        run = await make_orchestrator(settings, session, llm_client).run(run_date="20250301")

        assert run.status == RunStatus.COMPLETED
        assert run.resumed_from == Stage.EXTRACT
        for stage in (Stage.RAW, Stage.MERGED, Stage.TRIMMED):
            assert run.stage(stage).status == StageStatus.SKIPPED
        assert len(session.calls) == fetches
        assert llm_client.complete_json.call_count == 1
        assert len(load_spots(settings)) == 1
        assert ConfigStore(settings.config_path).load().last_failed_stage is None

    @pytest.mark.asyncio
    async def test_failure_resumed_on_next_date(self, settings, copper_tap, site_pages, llm_client):
        write_venues(settings, [copper_tap])
        session = FakeSession(site_pages)
        failing = make_orchestrator(settings, session, llm_client)
        failing.nodes[Stage.EXTRACT.value].run = AsyncMock(side_effect=RuntimeError("extract crashed"))
        await failing.run(run_date="20250301")
        fetches = len(session.calls)

        run = await make_orchestrator(settings, session, llm_client).run(run_date="20250302")

        assert run.status == RunStatus.COMPLETED
        assert run.resumed_from == Stage.EXTRACT
        assert run.stage(Stage.RAW).status == StageStatus.SKIPPED
        assert len(session.calls) == fetches
        assert GoldStore(settings.gold_dir).get("copper-tap").found
        assert load_spots(settings)[0]["last_update_date"] == "20250302"

    @pytest.mark.asyncio
    async def test_ceiling_skip_is_extracted_next_day(self, settings, copper_tap, site_pages, llm_client):
        write_venues(settings, [copper_tap])
        settings.max_incremental_files = 0
        await make_orchestrator(settings, FakeSession(site_pages), llm_client).run(run_date="20250301")
        assert GoldStore(settings.gold_dir).get("copper-tap") is None

        settings.max_incremental_files = 15
        run = await make_orchestrator(settings, FakeSession(site_pages), llm_client).run(run_date="20250302")

        assert run.stage(Stage.TRIMMED).metrics["unchanged"] == 1
        extract = run.stage(Stage.EXTRACT)
        assert extract.metrics["work_set"] == 1
        assert extract.metrics["carried_over"] == 1
        assert llm_client.complete_json.call_count == 1
        assert GoldStore(settings.gold_dir).get("copper-tap").found
        assert len(load_spots(settings)) == 1

    @pytest.mark.asyncio
    async def test_rotating_timestamp_is_unchanged(self, settings, copper_tap, site_pages, llm_client):
        write_venues(settings, [copper_tap])
        home = "https://www.coppertap.com/"
        original = site_pages[home]
        site_pages[home] = original.replace("</main>", "<p>Last updated 2025-03-01T09:15:02Z</p></main>")
        await make_orchestrator(settings, FakeSession(site_pages), llm_client).run(run_date="20250301")

        site_pages[home] = original.replace("</main>", "<p>Last updated 2025-03-02T18:44:51Z</p></main>")
        run = await make_orchestrator(settings, FakeSession(site_pages), llm_client).run(run_date="20250302")

        assert run.stage(Stage.TRIMMED).metrics["unchanged"] == 1
        assert run.stage(Stage.EXTRACT).metrics["work_set"] == 0
        assert llm_client.complete_json.call_count == 1

    @pytest.mark.asyncio
    async def test_removed_venue_keeps_gold_and_spot(self, settings, copper_tap, site_pages, llm_client):
        write_venues(settings, [copper_tap])
        await make_orchestrator(settings, FakeSession(site_pages), llm_client).run(run_date="20250301")
        gold_before = GoldStore(settings.gold_dir).get("copper-tap")
        spots_before = load_spots(settings)

        run = await make_orchestrator(settings, FakeSession({}), llm_client).run(run_date="20250302")

        assert run.status == RunStatus.COMPLETED
        assert run.stage(Stage.TRIMMED).metrics["removed"] == 1
        assert run.stage(Stage.EXTRACT).metrics["work_set"] == 0
        assert llm_client.complete_json.call_count == 1
        assert GoldStore(settings.gold_dir).get("copper-tap") == gold_before
        assert load_spots(settings) == spots_before

    @pytest.mark.asyncio
    async def test_hand_written_spots_survive_run(self, settings, copper_tap, site_pages, llm_client):
        write_venues(settings, [copper_tap])
        hand_made = {"id": "m1", "venue_id": "copper-tap", "title": "Hand made", "category": "Brunch",
                     "source": "manual"}
        legacy = {"id": 17, "title": "Rooftop", "source": "manual"}
        broken = {"id": "no-title", "source": "manual"}
        settings.spots_path.write_text(json.dumps([hand_made, legacy, broken]), encoding="utf-8")

        run = await make_orchestrator(settings, FakeSession(site_pages), llm_client).run(run_date="20250301")

        assert run.status == RunStatus.COMPLETED
        spots = load_spots(settings)
        assert spots[:3] == [broken, hand_made, legacy]
        assert list(spots[1]) == list(hand_made)
        assert spots[3]["id"] == "copper-tap::happy-hour"

    @pytest.mark.asyncio
    async def test_unreachable_venue_does_not_fail_run(self, settings, copper_tap, llm_client):
        write_venues(settings, [copper_tap])

        run = await make_orchestrator(settings, FakeSession({}), llm_client).run(run_date="20250301")

        assert run.status == RunStatus.COMPLETED
        assert run.stage(Stage.RAW).metrics["venues_without_pages"] == 1
        llm_client.complete_json.assert_not_called()
        assert GoldStore(settings.gold_dir).get("copper-tap").reason == "no_content"

    @pytest.mark.asyncio
    async def test_lock_held_refuses_run(self, settings, copper_tap, site_pages, llm_client):
        write_venues(settings, [copper_tap])
        PipelineLock(settings.lock_path).acquire("spotwatch run elsewhere")
        session = FakeSession(site_pages)
        orchestrator = make_orchestrator(settings, session, llm_client)

        run = await orchestrator.run(run_date="20250301")

        assert run is None
        assert orchestrator.last_lock_result.holder == "spotwatch run elsewhere"
        assert session.calls == []
        assert ManifestStore(settings.runs_dir).list_ids() == []
        assert settings.lock_path.exists()

    @pytest.mark.asyncio
    async def test_bad_run_date(self, settings, site_pages):
        orchestrator = make_orchestrator(settings, FakeSession(site_pages))

        with pytest.raises(ValueError):
            await orchestrator.run(run_date="2025-03-01")

        assert not settings.lock_path.exists()

    @pytest.mark.asyncio
    async def test_area_filter(self, settings, copper_tap, site_pages, llm_client):
        other = {**copper_tap, "venue_id": "uptown-bar", "area": "Uptown", "website": "https://uptown.example.com/"}
        write_venues(settings, [copper_tap, other])
        session = FakeSession(site_pages)

        run = await make_orchestrator(settings, session, llm_client).run(run_date="20250301", area="downtown")

        assert run.area == "downtown"
        assert not any("uptown" in url for url in session.calls)
        assert [s["venue_id"] for s in load_spots(settings)] == ["copper-tap"]
