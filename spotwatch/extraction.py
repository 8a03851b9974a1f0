"""
Extraction Adapter

Sends one venue's normalized pages to the extraction service and turns
whatever comes back into an ExtractionResult:

    {found: true, entries: [...]}   or   {found: false, reason}

Response handling is an ordered list of parse strategies (strict JSON,
fenced code block, brace scan), followed by a legacy-shape upgrader that
maps older payloads (happyHour wrappers, flat times/days/specials, bare
lists) onto the entries shape. Nothing in here raises for a bad response.
"""

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .config import Settings
from .models import ExtractionResult, PromotionEntry
from .services.llm_client import ExtractionServiceError, LLMClient

logger = logging.getLogger(__name__)

MAX_PROMPT_CHARS = 120000
PLACEHOLDER_VALUES = {"", "not specified", "unspecified", "unknown", "n/a", "na", "none", "null", "-", "tbd"}

CANONICAL_CATEGORIES = {
    "happy hour": "Happy Hour",
    "happy_hour": "Happy Hour",
    "happyhour": "Happy Hour",
    "brunch": "Brunch",
    "late night": "Late Night",
    "late-night": "Late Night",
    "daily special": "Daily Special",
    "daily specials": "Daily Special",
}

FIELD_SYNONYMS: Dict[str, Tuple[str, ...]] = {
    "category": ("category", "activityType", "activity_type", "type"),
    "label": ("label", "name", "title"),
    "time_window": ("time_window", "times", "time", "hours"),
    "days": ("days", "day", "day_pattern"),
    "offers": ("offers", "specials", "deals", "items"),
    "source_url": ("source_url", "source", "url"),
    "confidence": ("confidence", "confidence_score"),
    "rationale": ("rationale", "confidence_score_rationale"),
}

RESPONSE_WRAPPERS = ("happyHour", "happy_hour", "promotions", "result", "data")
FLAT_SHAPE_KEYS = ("times", "time_window", "days", "specials", "offers")


def load_system_prompt() -> str:
    """Load the system prompt from promotion_extraction.md"""
    prompt_path = Path(__file__).parent / "prompts" / "promotion_extraction.md"
    with open(prompt_path, "r", encoding="utf-8") as f:
        return f.read()


# ============================================================================
# PARSE STRATEGIES
# ============================================================================

@dataclass
class ParseOutcome:
    """Either a parsed JSON value or an error; never both."""
    value: Any = None
    error: Optional[str] = None
    strategy: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _structured(value: Any, strategy: str) -> ParseOutcome:
    if isinstance(value, (dict, list)):
        return ParseOutcome(value=value, strategy=strategy)
    return ParseOutcome(error=f"{strategy}: not an object or list", strategy=strategy)


def parse_strict(text: str) -> ParseOutcome:
    try:
        return _structured(json.loads(text), "strict")
    except ValueError as e:
        return ParseOutcome(error=f"strict: {e}", strategy="strict")


_FENCE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)```", re.DOTALL)


def parse_fenced(text: str) -> ParseOutcome:
    """Parse the first ``` fenced block that holds valid JSON."""
    for block in _FENCE.findall(text):
        try:
            return _structured(json.loads(block.strip()), "fenced")
        except ValueError:
            continue
    return ParseOutcome(error="fenced: no parseable fenced block", strategy="fenced")


def parse_brace_scan(text: str) -> ParseOutcome:
    """Decode the first JSON object/array found anywhere in the text."""
    decoder = json.JSONDecoder()
    for match in re.finditer(r"[\{\[]", text):
        try:
            value, _ = decoder.raw_decode(text, match.start())
        except ValueError:
            continue
        outcome = _structured(value, "brace_scan")
        if outcome.ok and value:
            return outcome
    return ParseOutcome(error="brace_scan: no JSON payload found", strategy="brace_scan")


PARSE_STRATEGIES: List[Callable[[str], ParseOutcome]] = [parse_strict, parse_fenced, parse_brace_scan]


def parse_response(text: Optional[str]) -> ParseOutcome:
    """Try each parse strategy in order; return the first success or the last error."""
    if not text or not text.strip():
        return ParseOutcome(error="empty response")
    outcome = ParseOutcome(error="no strategy matched")
    for strategy in PARSE_STRATEGIES:
        outcome = strategy(text.strip())
        if outcome.ok:
            return outcome
    return outcome


# ============================================================================
# SHAPE UPGRADE & ENTRY NORMALIZATION
# ============================================================================

def clean_text(value: Any) -> Optional[str]:
    """Strip strings and map placeholders such as 'Not specified' to None."""
    if value is None:
        return None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if not isinstance(value, str):
        return None
    value = " ".join(value.split())
    if value.lower() in PLACEHOLDER_VALUES:
        return None
    return value


def _first(raw: Dict[str, Any], field_name: str) -> Any:
    for key in FIELD_SYNONYMS[field_name]:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _parse_confidence(value: Any) -> int:
    if isinstance(value, bool):
        return 50
    if isinstance(value, (int, float)):
        score = value
    elif isinstance(value, str):
        match = re.search(r"-?\d+(?:\.\d+)?", value)
        if not match:
            return 50
        score = float(match.group())
    else:
        return 50
    # Some models answer on a 0-1 scale
    if 0 < score <= 1 and isinstance(score, float):
        score *= 100
    return int(max(0, min(100, round(score))))


def _parse_offers(value: Any) -> List[str]:
    if value is None:
        return []
    items = [value] if isinstance(value, str) else value if isinstance(value, list) else []
    offers: List[str] = []
    for item in items:
        text = clean_text(item)
        if text and text not in offers:
            offers.append(text)
    return offers


def canonical_category(value: Any) -> str:
    text = clean_text(value)
    if not text:
        return "Happy Hour"
    return CANONICAL_CATEGORIES.get(text.lower(), text)


def normalize_entry(raw: Any, low_confidence_floor: int = 70,
                    default_source: Optional[str] = None) -> Optional[PromotionEntry]:
    """
    Map one raw entry dict onto a PromotionEntry.

    Returns:
        The entry, or None when it has no time window, day pattern or offers
    """
    if not isinstance(raw, dict):
        return None

    confidence = _parse_confidence(_first(raw, "confidence"))
    entry = PromotionEntry(
        category=canonical_category(_first(raw, "category")),
        label=clean_text(_first(raw, "label")),
        time_window=clean_text(_first(raw, "time_window")),
        days=clean_text(_first(raw, "days")),
        offers=_parse_offers(_first(raw, "offers")),
        source_url=clean_text(_first(raw, "source_url")) or default_source,
        confidence=confidence,
        low_confidence=confidence < low_confidence_floor,
        rationale=clean_text(_first(raw, "rationale")),
    )
    if not entry.has_usable_field:
        return None
    return entry


def upgrade_legacy_shape(payload: Any) -> Optional[Dict[str, Any]]:
    """
    Bring any known response shape to {"found", "entries", "reason"}.

    Handles:
     - current shape: {"found": true, "entries": [...]}
     - wrapped: {"venueId": ..., "happyHour": {...}} (also promotions/result/data)
     - legacy flat: {"found": true, "times": ..., "days": ..., "specials": [...]}
     - a bare list of entries

    Returns:
        The upgraded dict, or None for shapes it cannot interpret
    """
    if isinstance(payload, list):
        return {"found": bool(payload), "entries": payload, "reason": None if payload else "empty list"}

    if not isinstance(payload, dict):
        return None

    for wrapper in RESPONSE_WRAPPERS:
        inner = payload.get(wrapper)
        if isinstance(inner, (dict, list)):
            return upgrade_legacy_shape(inner)

    reason = clean_text(payload.get("reason"))

    entries = payload.get("entries")
    if isinstance(entries, list):
        found = payload.get("found")
        return {"found": bool(entries) if found is None else bool(found), "entries": entries, "reason": reason}

    if any(key in payload for key in FLAT_SHAPE_KEYS):
        found = payload.get("found", True)
        return {"found": bool(found), "entries": [payload] if found else [], "reason": reason}

    if "found" in payload:
        return {"found": bool(payload["found"]), "entries": [], "reason": reason}

    return None


def interpret_response(text: Optional[str], low_confidence_floor: int = 70,
                       default_source: Optional[str] = None) -> ExtractionResult:
    """Raw service text -> ExtractionResult. Malformed output becomes found: false."""
    outcome = parse_response(text)
    if not outcome.ok:
        return ExtractionResult.not_found(f"malformed_response: {outcome.error}")

    shape = upgrade_legacy_shape(outcome.value)
    if shape is None:
        return ExtractionResult.not_found("malformed_response: unrecognized shape")

    if not shape["found"]:
        return ExtractionResult.not_found(shape.get("reason") or "no_promotion_found")

    entries = []
    for raw in shape["entries"]:
        entry = normalize_entry(raw, low_confidence_floor, default_source)
        if entry is not None:
            entries.append(entry)

    if not entries:
        return ExtractionResult.not_found("no_usable_entries")
    return ExtractionResult(found=True, entries=entries)


# ============================================================================
# ADAPTER
# ============================================================================

def _page_fields(page: Any) -> Tuple[str, str]:
    if isinstance(page, dict):
        return page.get("url", ""), page.get("text", "")
    return page.url, page.text


class ExtractionAdapter:
    """One extraction call per venue, failures folded into found: false."""

    def __init__(self, settings: Settings, client: Optional[LLMClient] = None):
        self.settings = settings
        self.client = client or LLMClient(settings)
        self._system_prompt: Optional[str] = None

    @property
    def system_prompt(self) -> str:
        if self._system_prompt is None:
            self._system_prompt = load_system_prompt()
        return self._system_prompt

    def build_user_prompt(self, venue_id: str, pages: Sequence[Any], venue_name: Optional[str] = None) -> str:
        parts = [f"Venue: {venue_name or venue_id} (id: {venue_id})", ""]
        for page in pages:
            url, text = _page_fields(page)
            parts.append(f"### Page: {url}\n{text}\n")
        prompt = "\n".join(parts)
        if len(prompt) > MAX_PROMPT_CHARS:
            prompt = prompt[:MAX_PROMPT_CHARS] + "\n[... content truncated ...]"
        return prompt

    def extract(self, venue_id: str, pages: Sequence[Any], venue_name: Optional[str] = None) -> ExtractionResult:
        """
        Extract promotions for one venue.

        Args:
            venue_id: Venue identifier
            pages: Pages (or {url, text} dicts) of the current snapshot
            venue_name: Display name for the prompt

        Returns:
            ExtractionResult; service failures are reported as found: false
        """
        usable = [p for p in pages if _page_fields(p)[1].strip()]
        if not usable:
            return ExtractionResult.not_found("no_content")

        default_source = _page_fields(usable[0])[0] or None
        user_prompt = self.build_user_prompt(venue_id, usable, venue_name)

        try:
            text = self.client.complete_json(self.system_prompt, user_prompt)
        except ExtractionServiceError as e:
            logger.warning(f"   ❌ Extraction failed for {venue_id}: {e}")
            return ExtractionResult.not_found(f"service_error: {e}", retryable=e.retryable)

        result = interpret_response(text, self.settings.low_confidence_floor, default_source)
        if result.found:
            low = sum(1 for e in result.entries if e.low_confidence)
            logger.info(f"   ✅ {venue_id}: {len(result.entries)} entr{'y' if len(result.entries) == 1 else 'ies'}"
                        + (f" ({low} low-confidence)" if low else ""))
        else:
            logger.info(f"   ⏭️  {venue_id}: nothing found ({result.reason})")
        return result
