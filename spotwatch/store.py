"""
JSON file stores for pipeline state.

Provides helper functions for reading/writing JSON on the local filesystem
and thin stores for each persisted collection:
- VenueDirectory: venues.json (read-only input owned by the directory service)
- Watchlist: watchlist.json (excluded / flagged venues)
- GoldStore: gold/<venue_id>.json
- SpotStore: spots.json
- StreakStore: streaks.json
- ManifestStore: runs/<run_id>.json
- ConfigStore: pipeline_config.json
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from .config import PipelineConfig
from .models import GoldRecord, Spot, StreakRecord, Venue, WatchlistEntry, spot_key, utc_now

logger = logging.getLogger(__name__)


# ============================================================================
# JSON HELPERS
# ============================================================================

def read_json(path: Path, default: Any = None) -> Any:
    """Load JSON from path; missing or unreadable files return default."""
    if not path.exists():
        return default
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"⚠️  Could not read {path}: {e}")
        return default


def write_json_atomic(path: Path, data: Any) -> None:
    """Write JSON via a temp file + os.replace so readers never see a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=str(path.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
            f.write("\n")
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


# ============================================================================
# VENUE DIRECTORY & WATCHLIST
# ============================================================================

class VenueDirectory:
    """Read-only view over venues.json."""

    def __init__(self, path: Path):
        self.path = path

    def load(self, area: Optional[str] = None) -> List[Venue]:
        raw = read_json(self.path, default=[])
        venues: List[Venue] = []
        for item in raw or []:
            try:
                venues.append(Venue.model_validate(item))
            except ValidationError as e:
                logger.warning(f"⚠️  Skipping invalid venue record: {e.errors()[0].get('msg')}")
        if area:
            wanted = area.strip().lower()
            venues = [v for v in venues if (v.area or "").strip().lower() == wanted]
        return venues

    def by_id(self) -> Dict[str, Venue]:
        return {v.venue_id: v for v in self.load()}


class Watchlist:
    """Operator watchlist: 'excluded' venues never become Spots, 'flagged' are logged."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> List[WatchlistEntry]:
        return [WatchlistEntry.model_validate(item) for item in read_json(self.path, default=[]) or []]

    def excluded_ids(self) -> set:
        return {e.venue_id for e in self.load() if e.status == "excluded"}

    def flagged_ids(self) -> set:
        return {e.venue_id for e in self.load() if e.status == "flagged"}

    def add(self, venue_id: str, status: str, reason: Optional[str] = None) -> WatchlistEntry:
        entries = [e for e in self.load() if e.venue_id != venue_id]
        entry = WatchlistEntry(venue_id=venue_id, status=status, reason=reason)
        entries.append(entry)
        write_json_atomic(self.path, [e.model_dump() for e in entries])
        return entry

    def remove(self, venue_id: str) -> bool:
        entries = self.load()
        remaining = [e for e in entries if e.venue_id != venue_id]
        if len(remaining) == len(entries):
            return False
        write_json_atomic(self.path, [e.model_dump() for e in remaining])
        return True


# ============================================================================
# GOLD RECORDS
# ============================================================================

class GoldStore:
    """One GoldRecord per venue under gold/<venue_id>.json."""

    def __init__(self, root: Path):
        self.root = root

    def _path(self, venue_id: str) -> Path:
        return self.root / f"{venue_id}.json"

    def get(self, venue_id: str) -> Optional[GoldRecord]:
        data = read_json(self._path(venue_id))
        if data is None:
            return None
        try:
            return GoldRecord.model_validate(data)
        except ValidationError as e:
            logger.warning(f"⚠️  Ignoring corrupt gold record for {venue_id}: {e.error_count()} error(s)")
            return None

    def put(self, record: GoldRecord) -> None:
        write_json_atomic(self._path(record.venue_id), record.model_dump(mode="json"))

    def all(self) -> List[GoldRecord]:
        if not self.root.exists():
            return []
        records = []
        for path in sorted(self.root.glob("*.json")):
            record = self.get(path.stem)
            if record is not None:
                records.append(record)
        return records


# ============================================================================
# SPOTS & STREAKS
# ============================================================================

class SpotStore:
    """
    spots.json. Loaded spots keep their on-disk record so preserved ones are
    written back verbatim; records that fail validation are carried forward
    as they are, ahead of the rest.
    """

    def __init__(self, path: Path):
        self.path = path
        self.unreadable: List[Any] = []

    def load(self) -> List[Spot]:
        spots = []
        self.unreadable = []
        for position, item in enumerate(read_json(self.path, default=[]) or []):
            try:
                spots.append(Spot.from_stored(item))
            except ValidationError as e:
                logger.warning(f"⚠️  Spot #{position} is invalid ({e.error_count()} error(s)); "
                               f"carrying it forward untouched")
                self.unreadable.append(item)
        return spots

    def save(self, spots: Iterable[Spot]) -> None:
        write_json_atomic(self.path, self.unreadable + [s.to_stored() for s in spots])


class StreakStore:
    def __init__(self, path: Path):
        self.path = path

    def load(self) -> Dict[str, StreakRecord]:
        records = {}
        for item in read_json(self.path, default=[]) or []:
            record = StreakRecord.model_validate(item)
            records[spot_key(record.venue_id, record.category)] = record
        return records

    def save(self, records: Dict[str, StreakRecord]) -> None:
        ordered = [records[key] for key in sorted(records)]
        write_json_atomic(self.path, [r.model_dump() for r in ordered])


# ============================================================================
# RUN MANIFESTS & CONFIG RECORD
# ============================================================================

class ManifestStore:
    """PipelineRun manifests, one JSON file per run id."""

    def __init__(self, root: Path):
        self.root = root

    def save(self, run) -> None:
        write_json_atomic(self.root / f"{run.run_id}.json", run.model_dump(mode="json"))

    def load(self, run_id: str):
        from .pipeline.models import PipelineRun  # lazy: pipeline package imports this module

        data = read_json(self.root / f"{run_id}.json")
        if data is None:
            return None
        try:
            return PipelineRun.model_validate(data)
        except ValidationError as e:
            logger.warning(f"⚠️  Ignoring corrupt manifest {run_id}: {e.error_count()} error(s)")
            return None

    def list_ids(self) -> List[str]:
        if not self.root.exists():
            return []
        return sorted(p.stem for p in self.root.glob("*.json"))


class ConfigStore:
    """The single process-wide PipelineConfig record."""

    def __init__(self, path: Path):
        self.path = path

    def load(self) -> PipelineConfig:
        data = read_json(self.path, default={}) or {}
        try:
            return PipelineConfig.model_validate(data)
        except ValidationError as e:
            logger.warning(f"⚠️  Pipeline config invalid ({e.error_count()} error(s)); starting fresh")
            return PipelineConfig()

    def save(self, config: PipelineConfig) -> None:
        payload = config.model_dump()
        payload["updated_at"] = utc_now()
        write_json_atomic(self.path, payload)
