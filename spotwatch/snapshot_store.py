"""
Snapshot Store

Holds per-venue page captures in three generations:
- current/    the generation being built by today's run
- baseline/   the last completed generation, used for change detection
- archive/    dated (YYYYMMDD) copies of former baselines, pruned after a window

Within a generation each venue owns a directory:
    <venue_id>/raw/index.json, raw/<page_id>.html   fetched HTML (raw layer)
    <venue_id>/merged.json                          merged, filtered raw pages
    <venue_id>/pages/<page_id>.json                 normalized Pages
    <venue_id>/snapshot.json                        finalized Snapshot

Only the orchestrator calls rotate(); crawler workers write disjoint venue dirs.
"""

import hashlib
import logging
import shutil
from datetime import timedelta
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError

from .config import parse_run_date
from .delta import aggregate_hash, page_hash
from .models import DeltaLedger, Page, RawPage, RawSnapshot, Snapshot, utc_now
from .store import read_json, write_json_atomic

logger = logging.getLogger(__name__)

CURRENT = "current"
BASELINE = "baseline"
ARCHIVE = "archive"
GENERATION_FILE = "_generation.json"
LEDGER_FILE = "_delta_ledger.json"


def page_id_for(url: str) -> str:
    """Stable 12-char page id derived from the URL."""
    return hashlib.md5(url.encode("utf-8")).hexdigest()[:12]


class SnapshotStore:
    """Filesystem-backed snapshot generations for all venues."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.current_dir = self.root / CURRENT
        self.baseline_dir = self.root / BASELINE
        self.archive_dir = self.root / ARCHIVE
        self.current_dir.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Generation metadata
    # ------------------------------------------------------------------

    def _generation_date(self, generation_dir: Path) -> Optional[str]:
        meta = read_json(generation_dir / GENERATION_FILE, default={}) or {}
        return meta.get("run_date")

    def current_generation_date(self) -> Optional[str]:
        return self._generation_date(self.current_dir)

    def baseline_generation_date(self) -> Optional[str]:
        return self._generation_date(self.baseline_dir)

    def start_current_generation(self, run_date: str) -> None:
        self.current_dir.mkdir(parents=True, exist_ok=True)
        write_json_atomic(self.current_dir / GENERATION_FILE, {"run_date": run_date, "started_at": utc_now()})

    @staticmethod
    def _venue_ids(generation_dir: Path) -> List[str]:
        if not generation_dir.exists():
            return []
        return sorted(p.name for p in generation_dir.iterdir() if p.is_dir() and not p.name.startswith("_"))

    def current_venue_ids(self) -> List[str]:
        return self._venue_ids(self.current_dir)

    def baseline_venue_ids(self) -> List[str]:
        return self._venue_ids(self.baseline_dir)

    # ------------------------------------------------------------------
    # Raw layer
    # ------------------------------------------------------------------

    def has_raw(self, venue_id: str) -> bool:
        return (self.current_dir / venue_id / "raw" / "index.json").exists()

    def write_raw_snapshot(self, raw: RawSnapshot) -> None:
        """Persist everything fetched for one venue; replaces any earlier raw capture."""
        raw_dir = self.current_dir / raw.venue_id / "raw"
        if raw_dir.exists():
            shutil.rmtree(raw_dir)
        raw_dir.mkdir(parents=True)
        index = []
        for page in raw.pages:
            (raw_dir / f"{page.page_id}.html").write_text(page.html, encoding="utf-8")
            index.append(page.model_dump(exclude={"html"}))
        # index.json last: its presence marks the venue as captured
        write_json_atomic(raw_dir / "index.json", {
            "venue_id": raw.venue_id,
            "venue_name": raw.venue_name,
            "website": raw.website,
            "fetched_at": raw.fetched_at,
            "errors": raw.errors,
            "pages": index,
        })

    def read_raw_snapshot(self, venue_id: str) -> Optional[RawSnapshot]:
        raw_dir = self.current_dir / venue_id / "raw"
        index = read_json(raw_dir / "index.json")
        if index is None:
            return None
        pages = []
        for item in index.get("pages", []):
            html_path = raw_dir / f"{item['page_id']}.html"
            html = html_path.read_text(encoding="utf-8") if html_path.exists() else ""
            pages.append(RawPage(html=html, **item))
        return RawSnapshot(
            venue_id=venue_id,
            venue_name=index.get("venue_name"),
            website=index.get("website"),
            pages=pages,
            errors=index.get("errors", []),
            fetched_at=index.get("fetched_at") or utc_now(),
        )

    # ------------------------------------------------------------------
    # Merged layer
    # ------------------------------------------------------------------

    def write_merged(self, merged: RawSnapshot) -> None:
        write_json_atomic(self.current_dir / merged.venue_id / "merged.json", merged.model_dump())

    def read_merged(self, venue_id: str) -> Optional[RawSnapshot]:
        data = read_json(self.current_dir / venue_id / "merged.json")
        if data is None:
            return None
        try:
            return RawSnapshot.model_validate(data)
        except ValidationError as e:
            logger.warning(f"⚠️  Corrupt merged document for {venue_id}: {e.error_count()} error(s)")
            return None

    # ------------------------------------------------------------------
    # Pages & snapshots
    # ------------------------------------------------------------------

    def clear_pages(self, venue_id: str) -> None:
        pages_dir = self.current_dir / venue_id / "pages"
        if pages_dir.exists():
            shutil.rmtree(pages_dir)
        snapshot_path = self.current_dir / venue_id / "snapshot.json"
        if snapshot_path.exists():
            snapshot_path.unlink()

    def write_page(self, venue_id: str, url: str, text: str, fetched_at: Optional[str] = None,
                   title: Optional[str] = None) -> Page:
        """Write one normalized Page into the current generation and return it."""
        page = Page(
            page_id=page_id_for(url),
            venue_id=venue_id,
            url=url,
            title=title,
            text=text,
            content_hash=page_hash(url, text),
            fetched_at=fetched_at or utc_now(),
        )
        write_json_atomic(self.current_dir / venue_id / "pages" / f"{page.page_id}.json", page.model_dump())
        return page

    def finalize_snapshot(self, venue_id: str, run_date: Optional[str] = None,
                          venue_name: Optional[str] = None) -> Snapshot:
        """Assemble the venue's written Pages into a Snapshot with its aggregate hash."""
        pages_dir = self.current_dir / venue_id / "pages"
        pages: List[Page] = []
        if pages_dir.exists():
            for path in sorted(pages_dir.glob("*.json")):
                pages.append(Page.model_validate(read_json(path)))
        pages.sort(key=lambda p: p.url)
        snapshot = Snapshot(
            venue_id=venue_id,
            venue_name=venue_name,
            run_date=run_date,
            pages=pages,
            aggregate_hash=aggregate_hash(pages),
        )
        write_json_atomic(self.current_dir / venue_id / "snapshot.json", snapshot.model_dump())
        return snapshot

    def _read_snapshot(self, generation_dir: Path, venue_id: str) -> Optional[Snapshot]:
        data = read_json(generation_dir / venue_id / "snapshot.json")
        if data is None:
            return None
        try:
            return Snapshot.model_validate(data)
        except ValidationError as e:
            logger.warning(f"⚠️  Corrupt snapshot for {venue_id} in {generation_dir.name}/: "
                           f"{e.error_count()} error(s), treating as missing")
            return None

    def read_current(self, venue_id: str) -> Optional[Snapshot]:
        return self._read_snapshot(self.current_dir, venue_id)

    def read_baseline(self, venue_id: str) -> Optional[Snapshot]:
        """Baseline snapshot for a venue; corrupt or missing entries read as None."""
        return self._read_snapshot(self.baseline_dir, venue_id)

    # ------------------------------------------------------------------
    # Delta ledger (per run date, lives in current/)
    # ------------------------------------------------------------------

    def read_ledger(self) -> DeltaLedger:
        data = read_json(self.current_dir / LEDGER_FILE)
        if data is None:
            return DeltaLedger(run_date=self.current_generation_date())
        try:
            return DeltaLedger.model_validate(data)
        except ValidationError:
            logger.warning("⚠️  Delta ledger unreadable, starting a fresh one")
            return DeltaLedger(run_date=self.current_generation_date())

    def write_ledger(self, ledger: DeltaLedger) -> None:
        write_json_atomic(self.current_dir / LEDGER_FILE, ledger.model_dump(mode="json"))

    # ------------------------------------------------------------------
    # Rotation, archive, pruning
    # ------------------------------------------------------------------

    def archive(self, label: str, source: Optional[Path] = None) -> bool:
        """Copy a generation (baseline by default) to archive/<label>; never overwrites."""
        source = source or self.baseline_dir
        if not source.exists() or not any(source.iterdir()):
            return False
        target = self.archive_dir / label
        if target.exists():
            logger.info(f"   📦 Archive {label} already exists, skipping")
            return False
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        shutil.copytree(source, target)
        logger.info(f"   📦 Archived {source.name}/ to archive/{label}")
        return True

    def prune_archives(self, retention_days: int, today: str) -> List[str]:
        """Delete dated archives older than retention_days before today (YYYYMMDD)."""
        if not self.archive_dir.exists():
            return []
        cutoff = parse_run_date(today) - timedelta(days=retention_days)
        removed = []
        for path in sorted(self.archive_dir.iterdir()):
            if not path.is_dir() or not (len(path.name) == 8 and path.name.isdigit()):
                continue
            try:
                label_date = parse_run_date(path.name)
            except ValueError:
                continue
            if label_date < cutoff:
                shutil.rmtree(path)
                removed.append(path.name)
                logger.info(f"   🗑️  Cleaned old archive: {path.name}")
        return removed

    def promote_current_to_baseline(self) -> None:
        """Replace baseline with the current generation and start an empty current."""
        if self.baseline_dir.exists():
            shutil.rmtree(self.baseline_dir)
        if self.current_dir.exists():
            self.current_dir.rename(self.baseline_dir)
        self.current_dir.mkdir(parents=True, exist_ok=True)

    def reset_current(self) -> None:
        """Clear the current generation (and its ledger), keeping baseline."""
        if self.current_dir.exists():
            shutil.rmtree(self.current_dir)
        self.current_dir.mkdir(parents=True, exist_ok=True)

    def rotate(self, run_date: str, retention_days: int) -> bool:
        """
        Prepare generations for run_date.

        On a new date: prune old archives, archive the outgoing baseline under its
        own date label, promote current to baseline and start a fresh current.
        On the same date nothing moves, so diffs keep comparing against the
        start-of-day baseline.

        Returns:
            True if a rotation happened
        """
        current_date = self.current_generation_date()
        if current_date == run_date:
            logger.info(f"📅 Same run date ({run_date}), keeping current and baseline")
            return False

        self.prune_archives(retention_days, run_date)

        has_current = bool(self.current_venue_ids())
        if has_current:
            logger.info(f"📅 New day detected ({run_date}, previous: {current_date or 'unknown'})")
            baseline_label = self.baseline_generation_date()
            if baseline_label:
                self.archive(baseline_label)
            self.promote_current_to_baseline()
        else:
            # Nothing captured yet; keep whatever baseline exists
            self.reset_current()

        self.start_current_generation(run_date)
        return has_current

    def venue_generation_summary(self) -> Dict[str, int]:
        return {
            "current": len(self.current_venue_ids()),
            "baseline": len(self.baseline_venue_ids()),
            "archives": len([p for p in self.archive_dir.iterdir() if p.is_dir()]) if self.archive_dir.exists() else 0,
        }
