"""
Pipeline orchestrator.

A linear graph of stage nodes driven by an explicit run state machine:

    idle -> running_raw -> running_merged -> running_trimmed
         -> running_extract -> running_spots -> completed_successfully

with failed_at_<stage> reachable from any running state. Each node returns
a NodeResult; the orchestrator records it in the run manifest and the
pipeline config record, persisting both at every stage boundary.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..config import PipelineConfig, Settings, get_run_date
from ..delta import DeltaEngine
from ..extraction import ExtractionAdapter
from ..lock import LockResult, PipelineLock
from ..materializer import Materializer
from ..models import GoldRecord, RawSnapshot, Venue
from ..normalizer import is_skip_listed, is_text_content_type, looks_binary, normalize, normalize_url
from ..scraper import VenueCrawler
from ..snapshot_store import SnapshotStore
from ..store import ConfigStore, GoldStore, ManifestStore, SpotStore, StreakStore, VenueDirectory, Watchlist
from .models import STAGE_ORDER, PipelineRun, Stage, StageStatus, failed_stage_from

logger = logging.getLogger(__name__)


@dataclass
class NodeResult:
    """Result from executing a stage node."""
    node_name: str
    status: StageStatus
    output: Optional[Any] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class PipelineState:
    """Run context threaded through every stage."""
    settings: Settings
    run: PipelineRun
    config: PipelineConfig
    store: SnapshotStore
    venues: List[Venue]
    gold_store: GoldStore
    work_set: List[str] = field(default_factory=list)
    same_day: bool = False

    @property
    def run_date(self) -> str:
        return self.run.run_date

    @property
    def scope_ids(self) -> List[str]:
        return [v.venue_id for v in self.venues]


class StageSkipped(Exception):
    """Raised by a stage that decides not to do its work this run."""

    def __init__(self, reason: str, metrics: Optional[Dict[str, Any]] = None):
        super().__init__(reason)
        self.reason = reason
        self.metrics = metrics or {}


# ============================================================================
# STAGE NODES
# ============================================================================

class StageNode(ABC):
    """Base class for pipeline stage nodes."""

    stage: Stage

    def __init__(self):
        self.name = self.stage.value
        self.status = StageStatus.PENDING

    async def execute(self, state: PipelineState) -> NodeResult:
        """
        Execute the stage, converting any exception into a failed NodeResult.

        Args:
            state: Current pipeline state

        Returns:
            NodeResult with status completed, skipped or failed
        """
        self.status = StageStatus.RUNNING
        logger.info(f"🚀 Stage {self.name} ({state.run_date})")
        try:
            metrics = await self.run(state) or {}
            self.status = StageStatus.COMPLETED
            logger.info(f"✅ Stage {self.name} completed {metrics}")
            return NodeResult(node_name=self.name, status=self.status, metadata=metrics)
        except StageSkipped as e:
            self.status = StageStatus.SKIPPED
            logger.info(f"⏭️  Stage {self.name} skipped: {e.reason}")
            return NodeResult(node_name=self.name, status=self.status,
                              metadata={"reason": e.reason, **e.metrics})
        except Exception as e:
            self.status = StageStatus.FAILED
            logger.error(f"❌ Error in {self.name}: {type(e).__name__}: {e}", exc_info=True)
            return NodeResult(node_name=self.name, status=self.status, error=f"{type(e).__name__}: {e}")

    @abstractmethod
    async def run(self, state: PipelineState) -> Dict[str, Any]:
        """Do the stage's work and return metrics for the manifest."""

    def get_next_nodes(self, state: PipelineState) -> List[str]:
        position = STAGE_ORDER.index(self.stage)
        if position + 1 < len(STAGE_ORDER):
            return [STAGE_ORDER[position + 1].value]
        return []


class RawStageNode(StageNode):
    """Day-boundary rotation, then crawl and persist raw pages per venue."""

    stage = Stage.RAW

    def __init__(self, crawler: VenueCrawler):
        super().__init__()
        self.crawler = crawler

    async def run(self, state: PipelineState) -> Dict[str, Any]:
        store = state.store
        run_date = state.run_date
        rotated = False

        if state.run.recrawl:
            logger.info("🔄 Recrawl requested: clearing current generation")
            store.reset_current()
            store.start_current_generation(run_date)
            state.same_day = False
        elif state.same_day:
            if store.current_generation_date() != run_date:
                store.start_current_generation(run_date)
        else:
            rotated = store.rotate(run_date, state.settings.archive_retention_days)
            if store.current_generation_date() != run_date:
                store.start_current_generation(run_date)

        if state.same_day:
            to_crawl = [v for v in state.venues if not store.has_raw(v.venue_id)]
            logger.info(f"📅 Same-day run: {len(to_crawl)} venue(s) not yet captured today")
        else:
            to_crawl = list(state.venues)

        results: List[RawSnapshot] = []
        if to_crawl:
            results = await self.crawler.crawl(to_crawl, on_result=store.write_raw_snapshot)

        return {
            "rotated": rotated,
            "same_day": state.same_day,
            "venues_crawled": len(results),
            "pages_fetched": sum(len(r.pages) for r in results),
            "venues_without_pages": sum(1 for r in results if not r.pages),
        }


def merge_raw_pages(raw: RawSnapshot) -> RawSnapshot:
    """Drop skip-listed, non-text and binary pages; keep the first page per normalized URL."""
    merged = RawSnapshot(
        venue_id=raw.venue_id,
        venue_name=raw.venue_name,
        website=raw.website,
        errors=list(raw.errors),
        fetched_at=raw.fetched_at,
    )
    seen = set()
    # Homepage first so it wins duplicates
    for page in sorted(raw.pages, key=lambda p: not p.is_homepage):
        key = normalize_url(page.url)
        if key in seen:
            continue
        if is_skip_listed(page.url):
            logger.debug(f"  ⏭️  Skip-listed: {page.url}")
            continue
        if not is_text_content_type(page.content_type) or looks_binary(page.html):
            logger.debug(f"  ⏭️  Binary content: {page.url}")
            continue
        seen.add(key)
        merged.pages.append(page)
    return merged


class MergedStageNode(StageNode):
    """Merge each venue's raw pages into one filtered, de-duplicated document."""

    stage = Stage.MERGED

    async def run(self, state: PipelineState) -> Dict[str, Any]:
        venues = 0
        pages = 0
        dropped = 0
        for venue_id in state.scope_ids:
            raw = state.store.read_raw_snapshot(venue_id)
            if raw is None:
                continue
            merged = merge_raw_pages(raw)
            state.store.write_merged(merged)
            venues += 1
            pages += len(merged.pages)
            dropped += len(raw.pages) - len(merged.pages)
        return {"venues_merged": venues, "pages_kept": pages, "pages_dropped": dropped}


class TrimmedStageNode(StageNode):
    """Normalize merged pages into Pages, finalize snapshots and classify changes."""

    stage = Stage.TRIMMED

    async def run(self, state: PipelineState) -> Dict[str, Any]:
        store = state.store
        snapshots = 0
        pages_written = 0
        for venue_id in state.scope_ids:
            merged = store.read_merged(venue_id)
            if merged is None:
                continue
            store.clear_pages(venue_id)
            for raw_page in merged.pages:
                text = normalize(raw_page.html, raw_page.url, state.settings.max_page_chars)
                if not text:
                    continue
                store.write_page(venue_id, raw_page.url, text, fetched_at=raw_page.fetched_at)
                pages_written += 1
            store.finalize_snapshot(venue_id, run_date=state.run_date, venue_name=merged.venue_name)
            snapshots += 1

        report_dir = state.settings.logs_dir / "differences" / state.run.run_id
        outcome = DeltaEngine(store).run(state.run_date, state.scope_ids, report_dir=report_dir)
        state.work_set = outcome.work_set
        return {
            "snapshots": snapshots,
            "pages_written": pages_written,
            "classified": len(outcome.records),
            "work_set": len(outcome.work_set),
            **outcome.counts,
        }


def unextracted_venues(store: SnapshotStore, gold_store: GoldStore, venue_ids: List[str]) -> List[str]:
    """
    Venues whose current snapshot has no reusable GoldRecord.

    Covers work left over from earlier runs that skipped extraction (ceiling,
    disabled, no API key) or hit a transient failure, after rotation has
    turned the unextracted snapshot into the baseline.
    """
    leftover = []
    for venue_id in venue_ids:
        snapshot = store.read_current(venue_id)
        if snapshot is None:
            continue
        gold = gold_store.get(venue_id)
        if not snapshot.pages:
            # Removed or unreachable: only a venue never seen before needs a record
            if gold is None:
                leftover.append(venue_id)
            continue
        if gold is None or not gold.matches(snapshot.aggregate_hash):
            leftover.append(venue_id)
    return leftover


class ExtractStageNode(StageNode):
    """Run the extraction adapter over the pending work-set, memoized by content hash."""

    stage = Stage.EXTRACT

    def __init__(self, adapter: Optional[ExtractionAdapter] = None):
        super().__init__()
        self.adapter = adapter

    def _adapter(self, settings: Settings) -> ExtractionAdapter:
        if self.adapter is None:
            self.adapter = ExtractionAdapter(settings)
        return self.adapter

    async def run(self, state: PipelineState) -> Dict[str, Any]:
        settings = state.settings
        in_scope = set(state.scope_ids)
        pending = [v for v in state.store.read_ledger().pending() if v in in_scope]
        leftover = [v for v in unextracted_venues(state.store, state.gold_store, state.scope_ids)
                    if v not in pending]
        if leftover:
            logger.info(f"📥 {len(leftover)} venue(s) carried over from earlier runs without extraction")
        work_set = sorted(pending + leftover)
        state.work_set = work_set
        metrics: Dict[str, Any] = {"work_set": len(work_set), "carried_over": len(leftover)}

        if not work_set:
            logger.info("✅ Nothing to extract")
            return {**metrics, "extracted": 0, "memo_hits": 0}

        if not settings.enable_llm_extraction:
            raise StageSkipped("LLM extraction disabled (ENABLE_LLM_EXTRACTION=false)", metrics)
        if len(work_set) > settings.max_incremental_files:
            raise StageSkipped(
                f"work-set of {len(work_set)} exceeds MAX_INCREMENTAL_FILES={settings.max_incremental_files}",
                metrics,
            )
        if self.adapter is None and not settings.openai_api_key:
            raise StageSkipped("OPENAI_API_KEY not set", metrics)

        adapter = self._adapter(settings)
        names = {v.venue_id: v.name for v in state.venues}
        semaphore = asyncio.Semaphore(max(1, settings.extract_workers))
        loop = asyncio.get_running_loop()
        done: List[str] = []
        counters = {"extracted": 0, "memo_hits": 0, "found": 0, "failed": 0}

        async def _one(venue_id: str) -> None:
            snapshot = state.store.read_current(venue_id)
            pages = snapshot.pages if snapshot else []
            source_hash = snapshot.aggregate_hash if snapshot else None
            existing = state.gold_store.get(venue_id)

            if existing is not None and existing.matches(source_hash):
                logger.info(f"   ⏭️  {venue_id}: content unchanged since last extraction, reusing gold record")
                counters["memo_hits"] += 1
                done.append(venue_id)
                return

            async with semaphore:
                try:
                    result = await loop.run_in_executor(
                        None, adapter.extract, venue_id, pages, names.get(venue_id)
                    )
                except Exception as e:
                    counters["failed"] += 1
                    logger.error(f"   ❌ {venue_id}: extraction error {type(e).__name__}: {e}")
                    return

            record = GoldRecord(
                venue_id=venue_id,
                venue_name=names.get(venue_id),
                found=result.found,
                entries=result.entries,
                reason=result.reason,
                retryable=result.retryable,
                source_hash=source_hash,
                model=getattr(getattr(adapter, "client", None), "model", None),
            )

            if result.retryable:
                counters["failed"] += 1
                if existing is None:
                    state.gold_store.put(record)
                return

            if result.reason == "no_content" and existing is not None:
                logger.info(f"   ⏭️  {venue_id}: no content this run, keeping previous gold record")
            else:
                state.gold_store.put(record)
            counters["extracted"] += 1
            counters["found"] += int(result.found)
            done.append(venue_id)

        logger.info(f"🧠 Extracting {len(work_set)} venue(s) with {settings.extract_workers} worker(s)")
        await asyncio.gather(*[_one(v) for v in work_set])
        DeltaEngine(state.store).mark_extracted(done)
        return {**metrics, **counters}


class SpotsStageNode(StageNode):
    """Materialize every GoldRecord into Spots and advance streaks."""

    stage = Stage.SPOTS

    async def run(self, state: PipelineState) -> Dict[str, Any]:
        settings = state.settings
        spot_store = SpotStore(settings.spots_path)
        streak_store = StreakStore(settings.streaks_path)
        watchlist = Watchlist(settings.watchlist_path)

        materializer = Materializer(
            run_date=state.run_date,
            excluded_ids=watchlist.excluded_ids(),
            flagged_ids=watchlist.flagged_ids(),
            streaks=streak_store.load(),
        )
        spots = materializer.materialize(
            state.gold_store.all(),
            VenueDirectory(settings.venues_path).load(),
            spot_store.load(),
        )
        spot_store.save(spots)
        streak_store.save(materializer.streaks)

        report = materializer.report
        return {
            "spots": len(spots),
            "updated": len(report.updated),
            "preserved": len(report.preserved),
            "rejected": len(report.rejected),
            "flagged": len(report.flagged),
            "stale_overrides": len(report.stale_overrides),
        }


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class PipelineOrchestrator:
    """Runs the stage graph under an exclusive lock with a durable manifest."""

    def __init__(self, settings: Optional[Settings] = None, crawler: Optional[VenueCrawler] = None,
                 adapter: Optional[ExtractionAdapter] = None):
        self.settings = settings or Settings.from_env()
        self.nodes: Dict[str, StageNode] = {
            Stage.RAW.value: RawStageNode(crawler or VenueCrawler(self.settings)),
            Stage.MERGED.value: MergedStageNode(),
            Stage.TRIMMED.value: TrimmedStageNode(),
            Stage.EXTRACT.value: ExtractStageNode(adapter),
            Stage.SPOTS.value: SpotsStageNode(),
        }
        self.graph: Dict[str, List[str]] = {
            Stage.RAW.value: [Stage.MERGED.value],
            Stage.MERGED.value: [Stage.TRIMMED.value],
            Stage.TRIMMED.value: [Stage.EXTRACT.value],
            Stage.EXTRACT.value: [Stage.SPOTS.value],
            Stage.SPOTS.value: [],
        }
        self.manifests = ManifestStore(self.settings.runs_dir)
        self.config_store = ConfigStore(self.settings.config_path)
        self.lock = PipelineLock(self.settings.lock_path, self.settings.lock_stale_minutes)
        self.last_lock_result: Optional[LockResult] = None

    def recovery_stage(self, config: PipelineConfig) -> Optional[Stage]:
        """Stage to resume at if the previous run ended in failed_at_<stage>."""
        last_run = self.manifests.load(config.last_run_id) if config.last_run_id else None
        status = last_run.status.value if last_run is not None else config.last_run_status
        return failed_stage_from(status)

    def _persist(self, run: PipelineRun, config: PipelineConfig) -> None:
        self.manifests.save(run)
        self.config_store.save(config)

    async def run(self, run_date: Optional[str] = None, area: Optional[str] = None,
                  recrawl: bool = False) -> Optional[PipelineRun]:
        """
        Execute one pipeline pass.

        Args:
            run_date: Logical date (YYYYMMDD); defaults to today
            area: Optional area filter for the venue directory
            recrawl: Rebuild today's current generation from scratch

        Returns:
            The finalized PipelineRun, or None if another run holds the lock

        Raises:
            ValueError: if run_date is not a valid YYYYMMDD date
        """
        run_date = get_run_date(run_date)

        self.last_lock_result = self.lock.acquire(holder=f"spotwatch run {run_date}")
        if not self.last_lock_result.acquired:
            held = self.last_lock_result
            age = f"{held.age_seconds / 60:.0f} min" if held.age_seconds is not None else "unknown age"
            logger.warning(f"🔒 Pipeline already running ({held.holder}, pid {held.pid}, {age}); exiting")
            return None

        config = self.config_store.load()
        run = PipelineRun.new(run_date, area=area, recrawl=recrawl)
        logger.info(f"🚀 Starting pipeline run {run.run_id} (date {run_date}, area {area or 'all'})")

        try:
            try:
                store = SnapshotStore(self.settings.snapshots_dir)
                state = PipelineState(
                    settings=self.settings,
                    run=run,
                    config=config,
                    store=store,
                    venues=VenueDirectory(self.settings.venues_path).load(area),
                    gold_store=GoldStore(self.settings.gold_dir),
                    same_day=run_date in (config.last_raw_processed_date, store.current_generation_date()),
                )
                logger.info(f"📋 {len(state.venues)} venue(s) in scope")

                start = None if recrawl else self.recovery_stage(config)
                if start is not None:
                    if config.run_date and config.run_date != run_date:
                        logger.info(f"📅 Failed run was for {config.run_date}; resuming on its snapshots")
                    logger.info(f"🔁 Previous run failed at {start.value}; resuming there")
                    run.resumed_from = start
                    for stage in STAGE_ORDER[:STAGE_ORDER.index(start)]:
                        run.mark_skipped(stage, f"recovery: resuming at {start.value}")

                config.run_date = run_date
                config.last_run_id = run.run_id
                self._persist(run, config)

                current: Optional[str] = (start or Stage.RAW).value
                while current:
                    stage = Stage(current)
                    node = self.nodes[current]
                    run.mark_running(stage)
                    self.manifests.save(run)

                    result = await node.execute(state)
                    if result.status == StageStatus.FAILED:
                        run.mark_failed(stage, result.error or "unknown error")
                        break
                    if result.status == StageStatus.SKIPPED:
                        metrics = dict(result.metadata)
                        run.mark_skipped(stage, metrics.pop("reason", "skipped"), metrics)
                    else:
                        run.mark_completed(stage, result.metadata)
                        config.mark_stage_processed(stage.value, run_date)
                    self._persist(run, config)

                    next_nodes = self.graph[current]
                    current = next_nodes[0] if next_nodes else None

            except Exception as e:
                logger.error(f"❌ Error in pipeline execution: {e}", exc_info=True)
                run.error = f"{type(e).__name__}: {e}"
            finally:
                run.finalize()
                failed = run.status.failed_stage
                config.last_run_status = run.status.value
                config.last_failed_stage = failed.value if failed else None
                self._persist(run, config)
        finally:
            self.lock.release()

        if run.status.failed_stage is not None:
            logger.error(f"❌ Run {run.run_id} {run.status.value}: {run.error}")
        else:
            logger.info(f"🎉 Run {run.run_id} {run.status.value}")
        return run
