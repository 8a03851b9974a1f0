"""
Post-extraction confidence heuristics.

The extractor's own confidence is adjusted by a few rules that catch common
false positives (breakfast hours read as happy hour, regular bar hours,
cafe menus). Pure functions; the materializer decides what to do with the
verdict.
"""

import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .models import PromotionEntry

ALCOHOL_KEYWORDS = re.compile(
    r"\b(beer|beers|wine|wines|cocktail|cocktails|drink|drinks|pint|pints|well|margarita|margaritas|mimosa|mimosas|"
    r"sangria|spritz|mule|martini|martinis|bourbon|whiskey|vodka|tequila|rum|gin|draft|drafts|tap|pour|pours|"
    r"seltzer|highball|negroni|aperol|bellini|prosecco|champagne|cider|ale|lager|ipa|stout|pilsner)\b",
    re.IGNORECASE,
)
NON_HH_LABEL_KEYWORDS = re.compile(
    r"\b(market|mercato|cafe|café|coffee|bakery|breakfast|pastry|pastries|deli|lunch combo|lunch special)\b",
    re.IGNORECASE,
)
BRUNCH_KEYWORDS = re.compile(r"brunch|\b(mimosa|bloody mary|bellini|benedict)", re.IGNORECASE)
VAGUE_OFFER = re.compile(r"^(weekly|daily|rotating)\s+(drink|food|menu)\s+special$", re.IGNORECASE)
PRICE = re.compile(r"\$\d")

EFFECTIVE_THRESHOLD = 50
FLAG_THRESHOLD = 70

_CLOCK = r"(\d{1,2})(?::(\d{2}))?\s*(am|pm)"


def _to_24h(hour: str, meridiem: str) -> int:
    h = int(hour)
    meridiem = meridiem.lower()
    if meridiem == "pm" and h < 12:
        h += 12
    if meridiem == "am" and h == 12:
        h = 0
    return h


def parse_start_hour(time_window: Optional[str]) -> Optional[int]:
    if not time_window:
        return None
    m = re.search(_CLOCK, time_window, re.IGNORECASE)
    if not m:
        return None
    return _to_24h(m.group(1), m.group(3))


def parse_end_hour(time_window: Optional[str]) -> Optional[int]:
    if not time_window:
        return None
    m = re.search(r"(?:-|–|—|\bto\b)\s*" + _CLOCK, time_window, re.IGNORECASE)
    if not m:
        return None
    return _to_24h(m.group(1), m.group(3))


def time_span_hours(time_window: Optional[str]) -> Optional[int]:
    start = parse_start_hour(time_window)
    end = parse_end_hour(time_window)
    if start is None or end is None:
        return None
    span = end - start
    if span < 0:
        span += 24
    return span


@dataclass
class Verdict:
    confidence: int
    flags: List[str] = field(default_factory=list)
    action: str = "keep"  # keep | flag | reject


def validate_entry(entry: PromotionEntry) -> Verdict:
    """Adjusted confidence, the rules that fired and a keep/flag/reject action."""
    flags: List[str] = []
    score = entry.confidence
    label = entry.label or ""
    offers_text = " ".join(entry.offers)

    if entry.category == "Happy Hour":
        start = parse_start_hour(entry.time_window)
        if start is not None and start < 11:
            flags.append(f"starts-before-11am ({entry.time_window})")
            score -= 40

        if not ALCOHOL_KEYWORDS.search(f"{label} {offers_text}"):
            flags.append("no-alcohol-keywords")
            score -= 20

        if NON_HH_LABEL_KEYWORDS.search(label):
            flags.append(f'non-hh-label: "{label}"')
            score -= 30

        span = time_span_hours(entry.time_window)
        if span is not None and span >= 8:
            flags.append(f"long-span: {span}h")
            score -= 15

        if entry.time_window and re.search(r"close", entry.time_window, re.IGNORECASE) and not entry.offers:
            flags.append("bar-hours-only (no specials)")
            score -= 25

        if entry.offers:
            has_price = any(PRICE.search(o) for o in entry.offers)
            all_vague = all(VAGUE_OFFER.match(o.strip()) for o in entry.offers)
            if all_vague and not has_price:
                flags.append("vague-specials-no-prices")
                score -= 15

    elif entry.category == "Brunch":
        if not BRUNCH_KEYWORDS.search(f"{label} {offers_text} {entry.days or ''}"):
            flags.append("no-brunch-keywords")
            score -= 10

    score = max(0, min(100, score))
    if score < EFFECTIVE_THRESHOLD:
        action = "reject"
    elif score < FLAG_THRESHOLD:
        action = "flag"
    else:
        action = "keep"
    return Verdict(confidence=score, flags=flags, action=action)


def validate_entries(entries: List[PromotionEntry]) -> Tuple[List[Tuple[PromotionEntry, Verdict]], List[Tuple[PromotionEntry, Verdict]]]:
    """
    Split entries into kept and rejected.

    Returns:
        (kept, rejected), each a list of (entry, verdict); flagged entries are kept
    """
    kept, rejected = [], []
    for entry in entries:
        verdict = validate_entry(entry)
        (rejected if verdict.action == "reject" else kept).append((entry, verdict))
    return kept, rejected
