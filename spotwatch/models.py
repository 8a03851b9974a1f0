"""
Pydantic models for the venue pipeline.

Venue directory records, captured pages and snapshots, change records,
extraction results (GoldRecords), display Spots and streaks.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, PrivateAttr


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class Venue(BaseModel):
    """A tracked business with a website. Owned by the external directory."""
    venue_id: str = Field(..., description="Stable venue identifier")
    name: str = Field(..., description="Display name")
    website: Optional[str] = Field(None, description="Canonical website URL")
    area: Optional[str] = Field(None, description="Geographic area tag")
    lat: Optional[float] = Field(None, description="Latitude")
    lng: Optional[float] = Field(None, description="Longitude")
    place_id: Optional[str] = Field(None, description="Identifier from the geocoding provider")
    photo_url: Optional[str] = None


class RawPage(BaseModel):
    """One fetched page before normalization."""
    page_id: str
    url: str
    html: str = ""
    content_type: Optional[str] = None
    status_code: Optional[int] = None
    fetched_at: str = Field(default_factory=utc_now)
    is_homepage: bool = False


class RawSnapshot(BaseModel):
    """Everything the crawler fetched for one venue in one pass."""
    venue_id: str
    venue_name: Optional[str] = None
    website: Optional[str] = None
    pages: List[RawPage] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    fetched_at: str = Field(default_factory=utc_now)


class Page(BaseModel):
    """Normalized page. Immutable once written."""
    page_id: str
    venue_id: str
    url: str
    title: Optional[str] = None
    text: str = Field(..., description="Normalized visible text sent to extraction")
    content_hash: str = Field(..., description="Hash of normalized-for-hashing URL and text")
    fetched_at: str

    model_config = {"frozen": True}


class Snapshot(BaseModel):
    """All Pages for one venue in one generation."""
    venue_id: str
    venue_name: Optional[str] = None
    run_date: Optional[str] = None
    pages: List[Page] = Field(default_factory=list)
    aggregate_hash: str = Field(..., description="Hash of per-page hashes in URL order")
    created_at: str = Field(default_factory=utc_now)

    @property
    def is_empty(self) -> bool:
        return not self.pages


class ChangeKind(str, Enum):
    """Classification of one venue against its baseline."""
    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    REMOVED = "removed"


class ChangeRecord(BaseModel):
    venue_id: str
    run_date: str
    kind: ChangeKind
    current_hash: Optional[str] = None
    baseline_hash: Optional[str] = None
    changed_pages: List[str] = Field(default_factory=list, description="URLs whose page hash differs")
    current_page_count: int = 0
    baseline_page_count: int = 0

    @property
    def needs_extraction(self) -> bool:
        return self.kind in (ChangeKind.NEW, ChangeKind.CHANGED)


class PromotionEntry(BaseModel):
    """One time-boxed offer found on a venue's site."""
    category: str = Field("Happy Hour", description="Category tag, e.g. 'Happy Hour' or 'Brunch'")
    label: Optional[str] = Field(None, description="Venue's own name for the promotion")
    time_window: Optional[str] = Field(None, description="Time window, e.g. '4pm-7pm'")
    days: Optional[str] = Field(None, description="Day pattern, e.g. 'Monday-Friday'")
    offers: List[str] = Field(default_factory=list, description="Offer descriptions")
    source_url: Optional[str] = Field(None, description="Page the promotion was found on")
    confidence: int = Field(50, ge=0, le=100, description="Extractor confidence 0-100")
    low_confidence: bool = Field(False, description="Confidence below the low-confidence floor")
    rationale: Optional[str] = None

    @property
    def has_usable_field(self) -> bool:
        return bool(self.time_window or self.days or self.offers)


class ExtractionResult(BaseModel):
    """Tagged result of one extraction call: found entries, or a reason."""
    found: bool
    entries: List[PromotionEntry] = Field(default_factory=list)
    reason: Optional[str] = None
    retryable: bool = Field(False, description="Failure was transient (rate limit, connection)")

    @classmethod
    def not_found(cls, reason: str, retryable: bool = False) -> "ExtractionResult":
        return cls(found=False, reason=reason, retryable=retryable)


class GoldRecord(BaseModel):
    """Latest accepted extraction result for a venue, memoized by content hash."""
    venue_id: str
    venue_name: Optional[str] = None
    found: bool
    entries: List[PromotionEntry] = Field(default_factory=list)
    reason: Optional[str] = None
    retryable: bool = False
    source_hash: Optional[str] = Field(None, description="Aggregate hash of the snapshot it was derived from")
    processed_at: str = Field(default_factory=utc_now)
    model: Optional[str] = None

    def matches(self, aggregate_hash: Optional[str]) -> bool:
        """True when this record can be reused for a snapshot with aggregate_hash."""
        return not self.retryable and bool(aggregate_hash) and self.source_hash == aggregate_hash


class Spot(BaseModel):
    """Display-ready record derived from a GoldRecord, or created by hand."""
    id: Union[str, int]
    venue_id: Optional[str] = None
    title: str
    category: str = "Happy Hour"
    description: Optional[str] = None
    promotion_time: Optional[str] = None
    promotion_list: List[str] = Field(default_factory=list)
    source_url: Optional[str] = None
    area: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    photo_url: Optional[str] = None
    source: Literal["automated", "manual"] = "automated"
    manual_override: bool = False
    confidence: Optional[int] = None
    confidence_flags: List[str] = Field(default_factory=list)
    last_update_date: Optional[str] = None

    # Hand-edited spots may carry fields this pipeline does not know about
    model_config = {"extra": "allow"}

    # The record exactly as read from spots.json, if it came from there
    _stored: Optional[Dict[str, Any]] = PrivateAttr(default=None)

    @classmethod
    def from_stored(cls, item: Dict[str, Any]) -> "Spot":
        spot = cls.model_validate(item)
        spot._stored = item
        return spot

    def to_stored(self) -> Dict[str, Any]:
        """The loaded record verbatim, or a fresh dump for generated spots."""
        if self._stored is not None:
            return self._stored
        return self.model_dump(mode="json")

    @property
    def key(self) -> str:
        return spot_key(self.venue_id, self.category)


def spot_key(venue_id: Optional[str], category: str) -> str:
    return f"{venue_id}::{category}"


class StreakRecord(BaseModel):
    """Consecutive-day change counter for one venue + category."""
    venue_id: str
    category: str
    label: Optional[str] = None
    last_date: str = Field(..., description="Date (YYYYMMDD) the content last changed")
    streak: int = Field(1, ge=1)


class WatchlistEntry(BaseModel):
    venue_id: str
    status: Literal["excluded", "flagged"]
    reason: Optional[str] = None
    added_at: str = Field(default_factory=utc_now)


class DeltaLedgerEntry(BaseModel):
    """Per-run-date bookkeeping for one classified venue."""
    kind: ChangeKind
    aggregate_hash: Optional[str] = None
    extracted: bool = False
    classified_at: str = Field(default_factory=utc_now)


class DeltaLedger(BaseModel):
    run_date: Optional[str] = None
    venues: Dict[str, DeltaLedgerEntry] = Field(default_factory=dict)

    def pending(self) -> List[str]:
        """Venue ids classified New/Changed and not yet extracted, in id order."""
        return sorted(
            venue_id for venue_id, entry in self.venues.items()
            if entry.kind in (ChangeKind.NEW, ChangeKind.CHANGED) and not entry.extracted
        )
