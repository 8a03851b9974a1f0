"""
Delta Engine

Hashes normalized content per page and per venue, compares the current
generation against the baseline and classifies each venue as
New / Changed / Unchanged / Removed.

Classifications for a run date are kept in a delta ledger inside the current
generation, so a same-day rerun only classifies venues it has not seen yet
(or whose content hash moved) and the work-set is exactly the New/Changed
venues that have not been extracted.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .models import ChangeKind, ChangeRecord, DeltaLedger, DeltaLedgerEntry, Page, Snapshot
from .normalizer import normalize_for_hash, normalize_url
from .store import write_json_atomic

logger = logging.getLogger(__name__)

REPORT_TEXT_CHARS = 1000


# ============================================================================
# HASHING
# ============================================================================

def page_hash(url: str, text: str) -> str:
    """sha256 over the normalized URL and the hash-normalized text."""
    payload = f"{normalize_url(url)}\n{normalize_for_hash(text)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def aggregate_hash(pages: Iterable[Page]) -> str:
    """sha256 over per-page hashes concatenated in normalized-URL order."""
    ordered = sorted(pages, key=lambda p: normalize_url(p.url))
    joined = "".join(p.content_hash for p in ordered)
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def _page_hashes(snapshot: Optional[Snapshot]) -> Dict[str, Page]:
    if snapshot is None:
        return {}
    return {normalize_url(p.url): p for p in snapshot.pages}


# ============================================================================
# CLASSIFICATION
# ============================================================================

def classify(current: Optional[Snapshot], baseline: Optional[Snapshot], run_date: str) -> ChangeRecord:
    """
    Classify one venue's current snapshot against its baseline.

    Rules, in order:
    - no baseline -> NEW
    - no current snapshot, or current has no pages but baseline had pages -> REMOVED
    - aggregate hashes differ -> CHANGED
    - otherwise -> UNCHANGED
    """
    venue_id = (current or baseline).venue_id
    current_pages = _page_hashes(current)
    baseline_pages = _page_hashes(baseline)

    changed_pages = sorted(
        (current_pages.get(url) or baseline_pages[url]).url
        for url in set(current_pages) | set(baseline_pages)
        if url not in current_pages
        or url not in baseline_pages
        or current_pages[url].content_hash != baseline_pages[url].content_hash
    )

    current_hash = current.aggregate_hash if current else None
    baseline_hash = baseline.aggregate_hash if baseline else None

    if baseline is None:
        kind = ChangeKind.NEW
    elif current is None or (not current_pages and baseline_pages):
        kind = ChangeKind.REMOVED
    elif current_hash != baseline_hash:
        kind = ChangeKind.CHANGED
    else:
        kind = ChangeKind.UNCHANGED

    return ChangeRecord(
        venue_id=venue_id,
        run_date=run_date,
        kind=kind,
        current_hash=current_hash,
        baseline_hash=baseline_hash,
        changed_pages=changed_pages if kind != ChangeKind.UNCHANGED else [],
        current_page_count=len(current_pages),
        baseline_page_count=len(baseline_pages),
    )


# ============================================================================
# DIFFERENCE REPORTS
# ============================================================================

def build_difference_report(current: Optional[Snapshot], baseline: Optional[Snapshot],
                            record: ChangeRecord) -> Dict:
    """Pages added, removed and changed between baseline and current for one venue."""
    current_pages = _page_hashes(current)
    baseline_pages = _page_hashes(baseline)

    added = [current_pages[u].url for u in sorted(set(current_pages) - set(baseline_pages))]
    removed = [baseline_pages[u].url for u in sorted(set(baseline_pages) - set(current_pages))]
    changed = []
    for url in sorted(set(current_pages) & set(baseline_pages)):
        new, old = current_pages[url], baseline_pages[url]
        if new.content_hash != old.content_hash:
            changed.append({
                "url": new.url,
                "old_text": old.text[:REPORT_TEXT_CHARS],
                "new_text": new.text[:REPORT_TEXT_CHARS],
            })

    return {
        "venue_id": record.venue_id,
        "run_date": record.run_date,
        "kind": record.kind.value,
        "current_hash": record.current_hash,
        "baseline_hash": record.baseline_hash,
        "pages_added": added,
        "pages_removed": removed,
        "pages_changed": changed,
    }


def write_difference_reports(store, records: List[ChangeRecord], report_dir: Path) -> int:
    """Write one report per New/Changed record. Failures are logged, never raised."""
    written = 0
    for record in records:
        if not record.needs_extraction:
            continue
        try:
            report = build_difference_report(
                store.read_current(record.venue_id), store.read_baseline(record.venue_id), record
            )
            write_json_atomic(report_dir / f"{record.venue_id}.json", report)
            written += 1
        except (OSError, ValueError) as e:
            logger.warning(f"⚠️  Could not write difference report for {record.venue_id}: {e}")
    return written


# ============================================================================
# ENGINE
# ============================================================================

@dataclass
class DeltaOutcome:
    """Result of one Delta Engine pass."""
    records: List[ChangeRecord] = field(default_factory=list)
    work_set: List[str] = field(default_factory=list)
    counts: Dict[str, int] = field(default_factory=dict)
    ledger: Optional[DeltaLedger] = None


class DeltaEngine:
    """Classifies venues in scope and maintains the per-date delta ledger."""

    def __init__(self, store):
        self.store = store

    def run(self, run_date: str, scope_ids: Iterable[str], report_dir: Optional[Path] = None) -> DeltaOutcome:
        """
        Classify every venue in scope that has a current or baseline snapshot.

        Venues already in today's ledger with the same aggregate hash keep
        their classification (and extraction flag).

        Args:
            run_date: Logical run date (YYYYMMDD)
            scope_ids: Venue ids in scope for this run (area filter applied)
            report_dir: Where to write difference reports, if given

        Returns:
            DeltaOutcome with the newly classified records and the pending work-set
        """
        scope = sorted(set(scope_ids))
        ledger = self.store.read_ledger()
        if ledger.run_date != run_date:
            ledger = DeltaLedger(run_date=run_date)

        records: List[ChangeRecord] = []
        for venue_id in scope:
            current = self.store.read_current(venue_id)
            baseline = self.store.read_baseline(venue_id)
            if current is None and baseline is None:
                continue

            existing = ledger.venues.get(venue_id)
            current_hash = current.aggregate_hash if current else None
            if existing is not None and existing.aggregate_hash == current_hash:
                continue

            record = classify(current, baseline, run_date)
            records.append(record)
            ledger.venues[venue_id] = DeltaLedgerEntry(kind=record.kind, aggregate_hash=current_hash)

            if record.kind == ChangeKind.REMOVED:
                logger.warning(f"   ⚠️  {venue_id}: no pages this run (baseline had "
                               f"{record.baseline_page_count}); keeping existing gold record")
            elif record.needs_extraction:
                logger.info(f"   🔄 {venue_id}: {record.kind.value} ({len(record.changed_pages)} page(s) differ)")

        self.store.write_ledger(ledger)

        counts = {kind.value: 0 for kind in ChangeKind}
        for venue_id in scope:
            entry = ledger.venues.get(venue_id)
            if entry is not None:
                counts[entry.kind.value] += 1

        in_scope = set(scope)
        work_set = [v for v in ledger.pending() if v in in_scope]

        if report_dir is not None and records:
            write_difference_reports(self.store, records, report_dir)

        logger.info(f"📊 Delta: {counts['new']} new, {counts['changed']} changed, "
                    f"{counts['unchanged']} unchanged, {counts['removed']} removed; "
                    f"work-set {len(work_set)}")
        return DeltaOutcome(records=records, work_set=work_set, counts=counts, ledger=ledger)

    def mark_extracted(self, venue_ids: Iterable[str]) -> None:
        """Flag ledger entries as extracted so same-day reruns skip them."""
        ledger = self.store.read_ledger()
        for venue_id in venue_ids:
            entry = ledger.venues.get(venue_id)
            if entry is not None:
                entry.extracted = True
        self.store.write_ledger(ledger)
