"""
Materializer: GoldRecords x Venues -> display Spots, plus streak tracking.

Automated spots are regenerated from scratch every run. Manual spots and
automated spots a human has edited (manual_override) are carried forward
untouched, keyed by venue + category, and block regeneration of that key.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .config import parse_run_date
from .confidence import Verdict, validate_entries
from .models import GoldRecord, PromotionEntry, Spot, StreakRecord, Venue, spot_key

logger = logging.getLogger(__name__)


def category_slug(category: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", category.lower()).strip("-")
    return slug or "promotion"


def spot_id(venue_id: str, category: str) -> str:
    return f"{venue_id}::{category_slug(category)}"


# ============================================================================
# SPOT FIELDS
# ============================================================================

def format_description(entry: PromotionEntry) -> Optional[str]:
    """Time/days on the first line, then one offer per line."""
    lines = []
    time_day = [part for part in (entry.time_window, entry.days) if part]
    if time_day:
        lines.append(" • ".join(time_day))
    lines.extend(offer for offer in entry.offers if offer)

    # A lone time with nothing else says nothing useful
    if len(lines) == 1 and entry.time_window and not entry.days and not entry.offers:
        return None
    if not lines and entry.source_url:
        lines.append(f"{entry.category} details available")
    return "\n".join(lines) if lines else None


def build_spot_fields(entries: List[PromotionEntry]) -> Tuple[Optional[str], List[str], Optional[str]]:
    """
    Merge one category's entries into display fields.

    Returns:
        (promotion_time, promotion_list, source_url)
    """
    if not entries:
        return None, [], None

    if len(entries) == 1:
        entry = entries[0]
        if entry.time_window:
            promotion_time = f"{entry.time_window} • {entry.days}" if entry.days else entry.time_window
        else:
            promotion_time = entry.days
        return promotion_time, list(entry.offers), entry.source_url

    time_parts: List[str] = []
    offers: List[str] = []
    sources: List[str] = []
    for entry in entries:
        if entry.time_window or entry.days:
            label = f"{entry.label}: " if entry.label else ""
            window = " • ".join(part for part in (entry.time_window, entry.days) if part)
            time_str = f"{label}{window}"
            if time_str not in time_parts:
                time_parts.append(time_str)
        prefix = f"[{entry.label}] " if entry.label else ""
        offers.extend(f"{prefix}{offer}" for offer in entry.offers)
        if entry.source_url and entry.source_url not in sources:
            sources.append(entry.source_url)

    return (", ".join(time_parts) or None), offers, (sources[0] if sources else None)


# ============================================================================
# STREAKS
# ============================================================================

def advance_streak(previous: Optional[StreakRecord], venue_id: str, category: str,
                   label: Optional[str], run_date: str) -> StreakRecord:
    """
    Record a content change on run_date.

    Consecutive-day changes increment the counter, a gap of more than one day
    resets it to 1, and a second change on the same day leaves it as is.
    """
    streak = 1
    if previous is not None and previous.last_date:
        try:
            gap = (parse_run_date(run_date) - parse_run_date(previous.last_date)).days
        except ValueError:
            gap = None
        if gap == 0:
            streak = previous.streak
        elif gap == 1:
            streak = previous.streak + 1
    return StreakRecord(venue_id=venue_id, category=category, label=label, last_date=run_date, streak=streak)


# ============================================================================
# MATERIALIZER
# ============================================================================

@dataclass
class MaterializeReport:
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    preserved: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    flagged: List[str] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)
    stale_overrides: List[str] = field(default_factory=list)


class Materializer:
    """Builds the Spot list for one run and advances streaks."""

    def __init__(self, run_date: str, excluded_ids: Iterable[str] = (), flagged_ids: Iterable[str] = (),
                 streaks: Optional[Dict[str, StreakRecord]] = None):
        self.run_date = run_date
        self.excluded_ids: Set[str] = set(excluded_ids)
        self.flagged_ids: Set[str] = set(flagged_ids)
        self.streaks: Dict[str, StreakRecord] = dict(streaks or {})
        self.report = MaterializeReport()

    def _spots_for_record(self, gold: GoldRecord, venue: Venue) -> List[Spot]:
        kept, rejected = validate_entries(gold.entries)
        for entry, verdict in rejected:
            self.report.rejected.append(f"{gold.venue_id}::{entry.category}")
            logger.info(f"  🚫 Rejected: {venue.name} [{entry.category}] confidence {verdict.confidence} "
                        f"({', '.join(verdict.flags)})")

        grouped: Dict[str, List[Tuple[PromotionEntry, Verdict]]] = {}
        for entry, verdict in kept:
            grouped.setdefault(entry.category, []).append((entry, verdict))

        spots = []
        for category in sorted(grouped):
            group = grouped[category]
            entries = [entry for entry, _ in group]
            verdicts = [verdict for _, verdict in group]

            promotion_time, promotion_list, source_url = build_spot_fields(entries)
            if not promotion_time and not promotion_list:
                continue

            descriptions = [d for d in (format_description(e) for e in entries) if d]
            flags = sorted({flag for v in verdicts for flag in v.flags})
            if any(v.action == "flag" for v in verdicts):
                self.report.flagged.append(spot_key(gold.venue_id, category))
                logger.info(f"  ⚠️  Flagged for review: {venue.name} [{category}] ({', '.join(flags)})")

            spots.append(Spot(
                id=spot_id(gold.venue_id, category),
                venue_id=gold.venue_id,
                title=gold.venue_name or venue.name,
                category=category,
                description="\n\n---\n\n".join(descriptions) or None,
                promotion_time=promotion_time,
                promotion_list=promotion_list,
                source_url=source_url or venue.website,
                area=venue.area or "Unknown",
                lat=venue.lat,
                lng=venue.lng,
                photo_url=venue.photo_url,
                source="automated",
                confidence=min(v.confidence for v in verdicts),
                confidence_flags=flags,
            ))
        return spots

    def _log_stale_overrides(self, overridden: List[Spot], gold_by_venue: Dict[str, GoldRecord]) -> None:
        for spot in overridden:
            if not spot.venue_id:
                continue
            gold = gold_by_venue.get(spot.venue_id)
            if gold is None:
                reason = "upstream gold record no longer exists"
            elif not gold.found:
                reason = "upstream venue no longer reports promotions"
            elif not any(e.category == spot.category for e in gold.entries):
                reason = f"upstream no longer has {spot.category} data"
            else:
                continue
            self.report.stale_overrides.append(spot.key)
            logger.warning(f"   📌 Override may be stale: {spot.title} [{spot.category}] ({reason})")

    def materialize(self, gold_records: Iterable[GoldRecord], venues: Iterable[Venue],
                    existing_spots: Iterable[Spot]) -> List[Spot]:
        """
        Regenerate automated spots and merge them with preserved ones.

        Args:
            gold_records: All GoldRecords
            venues: Venue directory records
            existing_spots: Spots from the previous run (including manual ones)

        Returns:
            Preserved spots (in their existing order) followed by generated
            spots ordered by id. self.streaks holds the advanced streaks.
        """
        existing = list(existing_spots)
        venue_by_id = {v.venue_id: v for v in venues}
        gold_by_venue = {g.venue_id: g for g in gold_records}

        manual = [s for s in existing if s.source == "manual"]
        overridden = [s for s in existing if s.source == "automated" and s.manual_override]
        previous_automated = {s.key: s for s in existing if s.source == "automated" and not s.manual_override}
        protected_keys = {s.key for s in manual} | {s.key for s in overridden}

        if manual:
            logger.info(f"📋 Found {len(manual)} manual spot(s), will be preserved")
        if overridden:
            logger.info(f"✏️  Found {len(overridden)} user-edited automated spot(s), will be preserved")

        generated: List[Spot] = []
        for venue_id in sorted(gold_by_venue):
            gold = gold_by_venue[venue_id]
            if not gold.found:
                continue
            if venue_id in self.excluded_ids:
                self.report.skipped.append(venue_id)
                logger.debug(f"  ⏭️  {venue_id}: excluded by watchlist")
                continue
            venue = venue_by_id.get(venue_id)
            if venue is None:
                self.report.skipped.append(venue_id)
                logger.warning(f"  ⚠️  Skipping: venue not found in directory: {venue_id}")
                continue
            if venue_id in self.flagged_ids:
                logger.info(f"  🚩 {venue.name} is on the watchlist (flagged)")

            for spot in self._spots_for_record(gold, venue):
                if spot.key in protected_keys:
                    self.report.skipped.append(spot.key)
                    logger.info(f"  ⏭️  Skipping {spot.title} [{spot.category}], user-edited override preserved")
                    continue
                if spot.lat is None or spot.lng is None:
                    self.report.skipped.append(spot.key)
                    logger.warning(f"  ⚠️  Skipping: missing coordinates for {spot.title} ({venue_id})")
                    continue
                self._apply_change_tracking(spot, previous_automated.get(spot.key))
                generated.append(spot)

        self._log_stale_overrides(overridden, gold_by_venue)

        preserved = manual + overridden
        preserved_ids = {id(s) for s in preserved}
        preserved_in_order = [s for s in existing if id(s) in preserved_ids]
        self.report.preserved = [s.key for s in preserved_in_order]

        generated.sort(key=lambda s: s.id)
        logger.info(f"📈 Spots: {len(generated)} automated ({len(self.report.updated)} changed), "
                    f"{len(preserved_in_order)} preserved, {len(self.report.rejected)} rejected")
        return preserved_in_order + generated

    def _apply_change_tracking(self, spot: Spot, previous: Optional[Spot]) -> None:
        changed = (
            previous is None
            or spot.promotion_time != previous.promotion_time
            or spot.promotion_list != previous.promotion_list
        )
        if not changed:
            spot.last_update_date = previous.last_update_date
            return

        spot.last_update_date = self.run_date
        key = spot.key
        self.streaks[key] = advance_streak(
            self.streaks.get(key), spot.venue_id, spot.category, f"{spot.title} [{spot.category}]", self.run_date
        )
        if previous is None:
            self.report.created.append(key)
        self.report.updated.append(key)
        logger.info(f"  🔄 Updated spot: {spot.title} [{spot.category}]")
