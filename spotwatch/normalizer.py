"""
Content Normalizer

Reduces fetched HTML to canonical visible text in two passes:
- normalize(): visible text with block structure kept (what extraction sees)
- normalize_for_hash(): that text stripped of volatile noise (dates, tracking
  ids, boilerplate) and collapsed whitespace, used only for change detection

Any change to NOISE_PATTERNS shifts every content hash and will show up as a
one-off wave of Changed venues on the next run.
"""

import logging
import re
from typing import List, Optional, Pattern, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

import trafilatura
from bs4 import BeautifulSoup, Comment

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 50000
TRUNCATION_MARKER = "\n[... content truncated ...]"

# Elements whose content is never visible text
NON_VISIBLE_TAGS = [
    "script", "style", "head", "header", "footer", "nav", "noscript",
    "iframe", "svg", "template", "object", "embed", "canvas",
]

BLOCK_TAGS = {
    "p", "div", "li", "h1", "h2", "h3", "h4", "h5", "h6", "section", "article",
    "main", "aside", "blockquote", "pre", "ul", "ol", "dl", "dt", "dd", "table",
    "tr", "td", "th", "form", "figure", "figcaption", "address",
}

# Path fragments and extensions that never carry promotions
SKIP_PATH_PATTERNS = [
    "privacy", "terms-of-service", "terms-and-conditions", "/terms", "cookie-policy",
    "careers", "/jobs", "employment", "/blog", "/press", "/login", "/signin",
    "/account", "/cart", "/checkout", "/wp-admin", "/wp-json", "/feed",
]
BINARY_EXTENSIONS = (
    ".pdf", ".jpg", ".jpeg", ".png", ".gif", ".webp", ".svg", ".ico", ".zip",
    ".doc", ".docx", ".xls", ".xlsx", ".ppt", ".pptx", ".mp3", ".mp4", ".mov",
    ".avi", ".woff", ".woff2", ".ttf", ".css", ".js", ".json", ".xml",
)
TEXT_CONTENT_TYPES = ("text/html", "application/xhtml+xml", "text/plain")

TRACKING_PARAMS = {
    "fbclid", "gclid", "sid", "_ga", "_gid", "ref", "source", "tracking",
    "campaign", "matchtype", "gad_source", "gad_campaignid", "gbraid", "gclsrc",
    "dclid", "msclkid", "li_fat_id",
}
TRACKING_PARAM_PREFIXES = ("utm_", "mc_", "hsa_")


# ============================================================================
# SKIP-LIST & BINARY DETECTION
# ============================================================================

def is_skip_listed(url: str) -> bool:
    """True for URLs that never carry promotions (legal, careers, blog, binaries)."""
    if not url:
        return True
    path = urlparse(url).path.lower()
    if path.endswith(BINARY_EXTENSIONS):
        return True
    return any(pattern in path for pattern in SKIP_PATH_PATTERNS)


def is_text_content_type(content_type: Optional[str]) -> bool:
    if not content_type:
        return True
    return content_type.split(";")[0].strip().lower() in TEXT_CONTENT_TYPES


def looks_binary(content: str) -> bool:
    """Heuristic: NUL bytes, or more than 30% non-printable characters in >100 chars."""
    if not content:
        return False
    if "\x00" in content:
        return True
    if len(content) <= 100:
        return False
    sample = content[:5000]
    non_printable = sum(1 for ch in sample if not ch.isprintable() and ch not in "\n\r\t")
    return non_printable / len(sample) > 0.3


# ============================================================================
# VISIBLE TEXT EXTRACTION
# ============================================================================

def _drop(tags) -> None:
    for tag in tags:
        # nested matches may already be gone with their parent
        if not getattr(tag, "decomposed", False):
            tag.decompose()


def _is_hidden(tag) -> bool:
    if tag.has_attr("hidden") or tag.get("aria-hidden") == "true":
        return True
    style = (tag.get("style") or "").replace(" ", "").lower()
    return "display:none" in style or "visibility:hidden" in style


def _clean_whitespace(text: str) -> str:
    lines = [re.sub(r"[ \t\xa0]+", " ", line).strip() for line in text.splitlines()]
    text = "\n".join(lines)
    return re.sub(r"\n{3,}", "\n\n", text).strip()


def extract_visible_text(html: str) -> Tuple[str, Optional[str]]:
    """Return (visible text, page title) with block-level line breaks preserved."""
    soup = BeautifulSoup(html, "lxml")

    title = None
    if soup.title and soup.title.string:
        title = soup.title.string.strip() or None

    _drop(soup.find_all(NON_VISIBLE_TAGS))
    for comment in soup.find_all(string=lambda s: isinstance(s, Comment)):
        comment.extract()
    _drop(soup.find_all(_is_hidden))

    root = soup.body or soup
    for br in root.find_all("br"):
        br.replace_with("\n")
    for block in root.find_all(BLOCK_TAGS):
        block.insert_before("\n")
        block.insert_after("\n")

    return _clean_whitespace(root.get_text()), title


def normalize(raw_content: str, url: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """
    Reduce raw fetched content to canonical visible text.

    Args:
        raw_content: HTML (or plain text) as fetched
        url: Source URL, checked against the skip-list
        max_chars: Cap on returned text; longer text ends with TRUNCATION_MARKER

    Returns:
        Visible text, or "" for skip-listed, binary or empty pages
    """
    if not raw_content or is_skip_listed(url) or looks_binary(raw_content):
        return ""

    try:
        text, title = extract_visible_text(raw_content)
    except Exception as e:
        logger.warning(f"⚠️  HTML parse failed for {url}: {e}")
        text, title = "", None

    if not text:
        # Pages that render everything inside header/nav wrappers come back empty
        fallback = trafilatura.extract(raw_content, include_comments=False, include_tables=True)
        text = _clean_whitespace(fallback or "")

    if not text:
        return ""

    if title and not text.startswith(title):
        text = f"[Page Title: {title}]\n\n{text}"

    if len(text) > max_chars:
        text = text[:max_chars] + TRUNCATION_MARKER
    return text


# ============================================================================
# HASHING PASS
# ============================================================================

_MONTHS = (
    r"(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec|January|February|March|April|"
    r"June|July|August|September|October|November|December)"
)
_WEEKDAYS = r"(?:Monday|Tuesday|Wednesday|Thursday|Friday|Saturday|Sunday|Mon|Tue|Tues|Wed|Thu|Thur|Thurs|Fri|Sat|Sun)"

NOISE_PATTERNS: List[Tuple[Pattern, str]] = [
    # ISO-8601 dates and timestamps
    (re.compile(r"\d{4}-\d{2}-\d{2}(?:[T ]\d{2}:\d{2}(?::\d{2}(?:\.\d+)?)?(?:Z|[+-]\d{2}:?\d{2})?)?"), " "),
    # Weekday + month-day ("Friday, March 7th, 2025") then bare month-day
    (re.compile(rf"\b{_WEEKDAYS},?\s+{_MONTHS}\.?\s+\d{{1,2}}(?:st|nd|rd|th)?(?:,?\s+\d{{4}})?\b", re.I), " "),
    (re.compile(rf"\b{_MONTHS}\.?\s+\d{{1,2}}(?:st|nd|rd|th)?(?:,?\s+\d{{4}})?\b", re.I), " "),
    # Clock readings like "Updated 10:42:17 AM"
    (re.compile(r"\b(?:updated|last updated|as of)\s*:?\s*\d{1,2}:\d{2}(?::\d{2})?\s*(?:am|pm)?", re.I), " "),
    # Placeholder / loading chrome
    (re.compile(r"Loading\s+product\s+options\.\.\.|Loading\.\.\.", re.I), " "),
    # Analytics / tag-manager ids
    (re.compile(r"\bGTM-[A-Z0-9]+\b", re.I), " "),
    (re.compile(r"\bUA-\d+-\d+\b"), " "),
    (re.compile(r"\bG-[A-Z0-9]{6,}\b"), " "),
    # Tracking query parameters anywhere in the text
    (re.compile(
        r"[?&](?:sid|fbclid|gclid|_ga|_gid|ref|source|tracking|campaign|matchtype|gad_source|"
        r"gad_campaignid|gbraid|gclsrc|dclid|msclkid|li_fat_id|utm_[^=\s&]+|mc_[^=\s&]+|hsa_[^=\s&]+)"
        r"=[^\s&\"'\]]+", re.I), " "),
    # Session / token-like strings
    (re.compile(r"\b(?:session|sid|token|tracking|nonce|csrf)[-_]?[a-z0-9]{8,}\b", re.I), " "),
    (re.compile(r"\b[a-f0-9]{32,}\b", re.I), " "),
    # Store or location counts like "(5829)"
    (re.compile(r"\(\d{3,}\)"), " "),
    # Social CTAs
    (re.compile(r"\b(?:Facebook|Instagram|Twitter|TikTok|YouTube|Pinterest|LinkedIn|Yelp|Google)\s+(?:page|icon|link)\b", re.I), " "),
    (re.compile(r"\b(?:Follow|Find) us on\b[^.]{0,80}", re.I), " "),
    # Cookie, newsletter, captcha boilerplate
    (re.compile(r"This site is protected by reCAPTCHA and the Google[^.]*\.", re.I), " "),
    (re.compile(r"We use cookies[^.]*\.", re.I), " "),
    (re.compile(r"\bAccept\s+(?:All\s+)?Cookies\b", re.I), " "),
    (re.compile(r"\bCookie\s+(?:Policy|Settings|Preferences)\b", re.I), " "),
    (re.compile(r"\b(?:Sign up for|Subscribe to) our (?:newsletter|mailing list|email list)\b[^.]{0,80}", re.I), " "),
    (re.compile(r"Privacy\s+Policy\s*\|?\s*Terms\s+of\s+(?:Service|Use)", re.I), " "),
    # Navigation / UI chrome
    (re.compile(r"\b(?:Skip to (?:main )?content|Return to Nav|Back to top)\b", re.I), " "),
    (re.compile(r"\bOrder\s+(?:Now|Online)\b", re.I), " "),
    (re.compile(r"\bNo description added\.?", re.I), " "),
    # Copyright footers and standalone years
    (re.compile(r"(?:Copyright\s*)?©\s*\d{4}(?:\s*[-–]\s*\d{4})?[^.\n]{0,80}", re.I), " "),
    (re.compile(r"\bCopyright\s+\d{4}\b", re.I), " "),
    (re.compile(r"\bAll\s+rights\s+reserved\.?", re.I), " "),
    (re.compile(r"\bPowered\s+by\s+\S+", re.I), " "),
    (re.compile(r"\b20[2-3]\d\b"), " "),
]

_DAY_ORDER = {
    "mon": 0, "tue": 1, "tues": 1, "wed": 2, "thu": 3, "thur": 3, "thurs": 3,
    "fri": 4, "sat": 5, "sun": 6, "monday": 0, "tuesday": 1, "wednesday": 2,
    "thursday": 3, "friday": 4, "saturday": 5, "sunday": 6,
}
_HOURS_BLOCK = re.compile(
    rf"\b({_WEEKDAYS})[:\s]+\d{{1,2}}(?::\d{{2}})?\s*(?:am|pm)\s*(?:-|–|—|to)\s*\d{{1,2}}(?::\d{{2}})?\s*(?:am|pm)",
    re.I,
)


def canonicalize_hours_table(text: str) -> str:
    """Re-order day-of-week hour listings Mon→Sun so 'today first' tables hash stably."""
    matches = [m.group(0) for m in _HOURS_BLOCK.finditer(text)]
    if len(matches) < 3:
        return text
    ordered = iter(sorted(matches, key=lambda block: _DAY_ORDER.get(_HOURS_BLOCK.match(block).group(1).lower(), 99)))
    return _HOURS_BLOCK.sub(lambda _m: next(ordered), text)


def normalize_for_hash(text: str) -> str:
    """Strip volatile noise and collapse whitespace. Deterministic; used only for hashing."""
    if not text:
        return ""
    if looks_binary(text):
        return ""
    normalized = re.sub(r"\s+", " ", text)
    normalized = canonicalize_hours_table(normalized)
    for pattern, replacement in NOISE_PATTERNS:
        normalized = pattern.sub(replacement, normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def normalize_url(url: str) -> str:
    """Lower-case scheme/host, drop fragment, tracking params and trailing slash."""
    if not url:
        return ""
    parsed = urlparse(url.strip())
    query = [
        (k, v) for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if k.lower() not in TRACKING_PARAMS and not k.lower().startswith(TRACKING_PARAM_PREFIXES)
    ]
    path = parsed.path.rstrip("/") or "/"
    host = (parsed.hostname or "").lower()
    if parsed.port:
        host = f"{host}:{parsed.port}"
    return urlunparse((parsed.scheme.lower(), host, path, "", urlencode(sorted(query)), ""))
