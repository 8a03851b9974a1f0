"""
Shared fixtures: isolated settings, a canned HTTP session and a scripted
extraction client, so pipeline tests never touch the network.
"""

import json
from pathlib import Path
from typing import Dict, List
from unittest.mock import MagicMock

import pytest
import requests

from spotwatch.config import Settings


class FakeResponse:
    """Just enough of requests.Response for the crawler."""

    def __init__(self, url: str, text: str = "", status_code: int = 200,
                 content_type: str = "text/html; charset=utf-8"):
        self.url = url
        self.text = text
        self.status_code = status_code
        self.headers = {"Content-Type": content_type}

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error for url: {self.url}", response=self)


class FakeSession:
    """
    URL -> canned outcome.

    An outcome is an HTML string, a FakeResponse, an exception instance, or a
    list of those consumed one per call (the last one repeats). Unknown URLs
    raise ConnectionError.
    """

    def __init__(self, pages: Dict[str, object]):
        self.pages = dict(pages)
        self.calls: List[str] = []
        self.headers: Dict[str, str] = {}

    def get(self, url, **kwargs):
        self.calls.append(url)
        outcome = self.pages.get(url)
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if outcome is None:
            raise requests.ConnectionError(f"no route to {url}")
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, FakeResponse):
            return outcome
        return FakeResponse(url, outcome)


HOMEPAGE_HTML = """
<html>
<head><title>The Copper Tap</title></head>
<body>
  <nav><a href="/about">About</a></nav>
  <main>
    <h1>The Copper Tap</h1>
    <p>Neighborhood bar and kitchen. Open daily from 11am.</p>
    <a href="/happy-hour">Happy Hour</a>
    <a href="/privacy">Privacy</a>
  </main>
</body>
</html>
"""

HAPPY_HOUR_HTML = """
<html>
<head><title>Happy Hour | The Copper Tap</title></head>
<body>
  <main>
    <h2>Happy Hour</h2>
    <p>Monday-Friday 4pm-7pm</p>
    <ul><li>$5 beers</li><li>$7 house wine</li></ul>
  </main>
</body>
</html>
"""

HAPPY_HOUR_RESPONSE = json.dumps({
    "found": True,
    "entries": [{
        "category": "Happy Hour",
        "label": "Happy Hour",
        "days": "Monday-Friday",
        "time_window": "4pm-7pm",
        "offers": ["$5 beers", "$7 house wine"],
        "source_url": "https://www.coppertap.com/happy-hour",
        "confidence": 85,
        "rationale": "Dedicated happy hour page with times and prices",
    }],
})


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings rooted in a temp directory with no delays."""
    return Settings(
        data_dir=tmp_path / "data",
        openai_api_key=None,
        openai_model="test-model",
        crawl_workers=2,
        fetch_retries=2,
        fetch_retry_delay=0.0,
        subpage_delay=0.0,
        extract_workers=2,
        llm_base_delay=0.0,
    )


def write_venues(settings: Settings, venues: List[dict]) -> Path:
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    settings.venues_path.write_text(json.dumps(venues), encoding="utf-8")
    return settings.venues_path


@pytest.fixture
def copper_tap() -> dict:
    return {
        "venue_id": "copper-tap",
        "name": "The Copper Tap",
        "website": "https://www.coppertap.com/",
        "area": "Downtown",
        "lat": 32.7767,
        "lng": -96.797,
    }


@pytest.fixture
def site_pages() -> Dict[str, object]:
    return {
        "https://www.coppertap.com/": HOMEPAGE_HTML,
        "https://www.coppertap.com/happy-hour": HAPPY_HOUR_HTML,
    }


@pytest.fixture
def llm_client() -> MagicMock:
    """Stand-in for LLMClient that answers with one happy hour entry."""
    client = MagicMock()
    client.model = "test-model"
    client.complete_json.return_value = HAPPY_HOUR_RESPONSE
    return client
