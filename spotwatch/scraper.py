"""
Venue website crawler.

For each venue:
1. Fetch the homepage (timeout + bounded linear retry)
2. Discover likely-relevant subpages from homepage links (keyword match on
   URL path or anchor text, same host only, capped)
3. Fetch each subpage sequentially with a fixed delay between requests

Venues are processed concurrently by a bounded pool. A venue whose homepage
cannot be fetched yields a RawSnapshot with zero pages; the run continues.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, List, Optional, Set
from urllib.parse import urljoin, urlparse

import requests
from bs4 import BeautifulSoup

from .config import Settings
from .models import RawPage, RawSnapshot, Venue, utc_now
from .normalizer import is_skip_listed, is_text_content_type, normalize_url
from .snapshot_store import page_id_for

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"

IGNORED_SCHEMES = ("mailto:", "tel:", "javascript:", "sms:", "#")


class FetchError(Exception):
    """A URL could not be fetched after all retries."""


# ============================================================================
# URL HELPERS
# ============================================================================

def safe_urljoin(base: str, url: str) -> str:
    if not url:
        return url
    return urljoin(base, url)


def _host(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def is_same_domain(url: str, base_url: str) -> bool:
    """True when url resolves to the same host as base_url (www. ignored)."""
    if not url:
        return False
    parsed_target = urlparse(url)
    if not parsed_target.netloc:
        return True
    return _host(url) == _host(base_url)


def discover_subpages(homepage_html: str, base_url: str, keywords: List[str], max_subpages: int = 10) -> List[str]:
    """
    Find candidate subpage URLs on a homepage.

    A link qualifies if its path or anchor text contains any keyword and it
    resolves to the homepage's host. Skip-listed URLs, the homepage itself and
    duplicates (by normalized URL) are dropped. Document order is kept.

    Returns:
        At most max_subpages absolute URLs
    """
    if not homepage_html or max_subpages <= 0:
        return []

    soup = BeautifulSoup(homepage_html, "lxml")
    seen: Set[str] = {normalize_url(base_url)}
    found: List[str] = []

    for link in soup.find_all("a", href=True):
        href = link["href"].strip()
        if not href or href.lower().startswith(IGNORED_SCHEMES):
            continue

        full_url = safe_urljoin(base_url, href).split("#", 1)[0]
        if urlparse(full_url).scheme not in ("http", "https"):
            continue
        if not is_same_domain(full_url, base_url):
            continue
        if is_skip_listed(full_url):
            continue

        path = urlparse(full_url).path.lower()
        link_text = link.get_text(" ", strip=True).lower()
        if not any(k in path or k in link_text for k in keywords):
            continue

        key = normalize_url(full_url)
        if key in seen:
            continue
        seen.add(key)
        found.append(full_url)

        if len(found) >= max_subpages:
            break

    return found


# ============================================================================
# CRAWLER
# ============================================================================

class VenueCrawler:
    """Fetches a venue's homepage plus a bounded set of subpages."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None,
                 sleep: Callable[[float], None] = time.sleep):
        self.settings = settings
        self.session = session or requests.Session()
        self.sleep = sleep
        if session is None:
            self.session.headers.update({"User-Agent": USER_AGENT})

    def fetch_url(self, url: str) -> requests.Response:
        """
        GET a URL with timeout and linear-backoff retry.

        Raises:
            FetchError: if every attempt fails
        """
        attempts = self.settings.fetch_retries + 1
        last_error: Optional[Exception] = None

        for attempt in range(attempts):
            try:
                response = self.session.get(
                    url,
                    timeout=self.settings.request_timeout,
                    headers={"User-Agent": USER_AGENT},
                    allow_redirects=True,
                )
                response.raise_for_status()
                return response
            except requests.RequestException as e:
                last_error = e
                if attempt == attempts - 1:
                    break
                delay = self.settings.fetch_retry_delay * (attempt + 1)
                logger.debug(f"  ⚠️  Fetch failed for {url} (attempt {attempt + 1}/{attempts}): "
                             f"{type(e).__name__}. Retrying in {delay:.1f}s")
                self.sleep(delay)

        raise FetchError(f"{url}: {type(last_error).__name__}: {str(last_error)[:200]}")

    def _to_raw_page(self, url: str, response: requests.Response, is_homepage: bool) -> Optional[RawPage]:
        content_type = response.headers.get("Content-Type")
        if not is_text_content_type(content_type):
            logger.debug(f"  ⏭️  Skipping non-text content ({content_type}) at {url}")
            return None
        return RawPage(
            page_id=page_id_for(url),
            url=url,
            html=response.text or "",
            content_type=content_type,
            status_code=response.status_code,
            fetched_at=utc_now(),
            is_homepage=is_homepage,
        )

    def fetch_venue(self, venue: Venue) -> RawSnapshot:
        """Crawl one venue. Never raises for network problems."""
        snapshot = RawSnapshot(venue_id=venue.venue_id, venue_name=venue.name, website=venue.website)

        if not venue.website:
            snapshot.errors.append("no website")
            logger.info(f"  ⏭️  {venue.name}: no website")
            return snapshot

        homepage_url = venue.website.strip()
        if not urlparse(homepage_url).scheme:
            homepage_url = f"https://{homepage_url}"

        try:
            response = self.fetch_url(homepage_url)
        except FetchError as e:
            snapshot.errors.append(str(e))
            logger.warning(f"  ❌ {venue.name}: homepage unreachable ({str(e)[:120]})")
            return snapshot

        homepage = self._to_raw_page(homepage_url, response, is_homepage=True)
        if homepage is None:
            snapshot.errors.append(f"{homepage_url}: non-text homepage")
            return snapshot
        snapshot.pages.append(homepage)

        # Links resolve against the final URL after redirects
        base_url = getattr(response, "url", None) or homepage_url
        subpages = discover_subpages(
            homepage.html, base_url, self.settings.subpage_keywords, self.settings.max_subpages
        )
        logger.debug(f"  🔍 {venue.name}: {len(subpages)} candidate subpage(s)")

        for url in subpages:
            self.sleep(self.settings.subpage_delay)
            try:
                sub_response = self.fetch_url(url)
            except FetchError as e:
                snapshot.errors.append(str(e))
                logger.info(f"  ⚠️  {venue.name}: subpage skipped ({str(e)[:120]})")
                continue
            page = self._to_raw_page(url, sub_response, is_homepage=False)
            if page is not None:
                snapshot.pages.append(page)

        snapshot.fetched_at = utc_now()
        logger.info(f"  ✅ {venue.name}: {len(snapshot.pages)} page(s)")
        return snapshot

    async def crawl(self, venues: List[Venue],
                    on_result: Optional[Callable[[RawSnapshot], Optional[Awaitable[None]]]] = None) -> List[RawSnapshot]:
        """
        Crawl venues with at most crawl_workers in flight.

        Args:
            venues: Venues to crawl
            on_result: Called in the event loop as each venue finishes, e.g. to persist it

        Returns:
            RawSnapshots in the same order as venues
        """
        semaphore = asyncio.Semaphore(max(1, self.settings.crawl_workers))
        loop = asyncio.get_running_loop()

        async def _one(venue: Venue) -> RawSnapshot:
            async with semaphore:
                try:
                    result = await loop.run_in_executor(None, self.fetch_venue, venue)
                except Exception as e:
                    logger.error(f"  ❌ {venue.name}: crawl error {type(e).__name__}: {str(e)[:200]}")
                    result = RawSnapshot(venue_id=venue.venue_id, venue_name=venue.name,
                                         website=venue.website, errors=[f"crawl error: {e}"])
            if on_result is not None:
                maybe = on_result(result)
                if asyncio.iscoroutine(maybe):
                    await maybe
            return result

        logger.info(f"🕷️  Crawling {len(venues)} venue(s) with {self.settings.crawl_workers} worker(s)")
        return list(await asyncio.gather(*[_one(v) for v in venues]))
