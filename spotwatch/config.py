"""
Runtime configuration for the venue pipeline.

Two kinds of configuration live here:
- Settings: tunables read from the environment (optionally via a .env file)
- PipelineConfig: the process-wide record persisted between runs
  (last processed dates per stage, last run status)
"""

import json
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import dotenv
from pydantic import BaseModel, Field

dotenv.load_dotenv()

DATE_FORMAT = "%Y%m%d"

DEFAULT_SUBPAGE_KEYWORDS = [
    "menu", "special", "happy", "hour", "event", "drink", "bar", "food",
    "deal", "promo", "brunch", "offer", "cocktail", "wine", "beer", "late-night",
]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> List[str]:
    raw = os.getenv(name, "")
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


@dataclass
class Settings:
    """All tunables for one pipeline process."""
    data_dir: Path = Path("data")
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"
    enable_llm_extraction: bool = True

    # Cost control
    max_incremental_files: int = 15

    # Crawler
    max_subpages: int = 10
    crawl_workers: int = 15
    request_timeout: float = 15.0
    fetch_retries: int = 2
    fetch_retry_delay: float = 1.0
    subpage_delay: float = 0.5
    subpage_keywords: List[str] = field(default_factory=lambda: list(DEFAULT_SUBPAGE_KEYWORDS))

    # Normalizer
    max_page_chars: int = 50000

    # Snapshot store
    archive_retention_days: int = 14

    # Locking
    lock_stale_minutes: int = 30

    # Extraction
    extract_workers: int = 3
    low_confidence_floor: int = 70
    llm_max_retries: int = 3
    llm_base_delay: float = 2.0
    llm_max_delay: float = 60.0
    llm_max_tokens: int = 2000

    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables, falling back to defaults."""
        data_dir = Path(os.getenv("DATA_DIR", "data"))
        keywords = _env_list("SUBPAGE_KEYWORDS") or load_keyword_file(data_dir) or list(DEFAULT_SUBPAGE_KEYWORDS)
        return cls(
            data_dir=data_dir,
            openai_api_key=os.getenv("OPENAI_API_KEY"),
            openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
            enable_llm_extraction=_env_bool("ENABLE_LLM_EXTRACTION", "true"),
            max_incremental_files=int(os.getenv("MAX_INCREMENTAL_FILES", "15")),
            max_subpages=int(os.getenv("MAX_SUBPAGES", "10")),
            crawl_workers=int(os.getenv("CRAWL_WORKERS", "15")),
            request_timeout=float(os.getenv("REQUEST_TIMEOUT", "15")),
            fetch_retries=int(os.getenv("FETCH_RETRIES", "2")),
            fetch_retry_delay=float(os.getenv("FETCH_RETRY_DELAY", "1.0")),
            subpage_delay=float(os.getenv("SUBPAGE_DELAY", "0.5")),
            subpage_keywords=keywords,
            max_page_chars=int(os.getenv("MAX_PAGE_CHARS", "50000")),
            archive_retention_days=int(os.getenv("ARCHIVE_RETENTION_DAYS", "14")),
            lock_stale_minutes=int(os.getenv("LOCK_STALE_MINUTES", "30")),
            extract_workers=int(os.getenv("EXTRACT_WORKERS", "3")),
            low_confidence_floor=int(os.getenv("LOW_CONFIDENCE_FLOOR", "70")),
            llm_max_retries=int(os.getenv("LLM_MAX_RETRIES", "3")),
            llm_base_delay=float(os.getenv("LLM_BASE_DELAY", "2.0")),
            llm_max_delay=float(os.getenv("LLM_MAX_DELAY", "60.0")),
            llm_max_tokens=int(os.getenv("LLM_MAX_TOKENS", "2000")),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )

    # Derived paths
    @property
    def snapshots_dir(self) -> Path:
        return self.data_dir / "snapshots"

    @property
    def gold_dir(self) -> Path:
        return self.data_dir / "gold"

    @property
    def runs_dir(self) -> Path:
        return self.data_dir / "runs"

    @property
    def logs_dir(self) -> Path:
        return self.data_dir / "logs"

    @property
    def lock_path(self) -> Path:
        return self.data_dir / ".ops" / "pipeline.lock"

    @property
    def config_path(self) -> Path:
        return self.data_dir / "pipeline_config.json"

    @property
    def venues_path(self) -> Path:
        return self.data_dir / "venues.json"

    @property
    def watchlist_path(self) -> Path:
        return self.data_dir / "watchlist.json"

    @property
    def spots_path(self) -> Path:
        return self.data_dir / "spots.json"

    @property
    def streaks_path(self) -> Path:
        return self.data_dir / "streaks.json"


def load_keyword_file(data_dir: Path) -> List[str]:
    """Read config/submenu-keywords.json if present (a JSON list of strings)."""
    path = data_dir / "config" / "submenu-keywords.json"
    if not path.exists():
        return []
    try:
        keywords = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return []
    if not isinstance(keywords, list):
        return []
    return [str(k).strip().lower() for k in keywords if str(k).strip()]


class PipelineConfig(BaseModel):
    """Process-wide record carried between runs."""
    run_date: Optional[str] = Field(None, description="Run date (YYYYMMDD) of the most recent run")
    last_raw_processed_date: Optional[str] = Field(None, description="Last date the raw stage completed")
    last_merged_processed_date: Optional[str] = Field(None, description="Last date the merged stage completed")
    last_trimmed_processed_date: Optional[str] = Field(None, description="Last date the trimmed stage completed")
    last_extract_processed_date: Optional[str] = Field(None, description="Last date the extract stage completed")
    last_spots_processed_date: Optional[str] = Field(None, description="Last date the spots stage completed")
    last_run_status: Optional[str] = Field(None, description="Terminal status of the most recent run")
    last_run_id: Optional[str] = Field(None, description="Run id of the most recent run")
    last_failed_stage: Optional[str] = Field(None, description="Stage the most recent run failed at, if any")

    def mark_stage_processed(self, stage_value: str, run_date: str) -> None:
        """Record that a stage (e.g. 'running_raw') completed for run_date."""
        attr = f"last_{stage_value.replace('running_', '')}_processed_date"
        if hasattr(self, attr):
            setattr(self, attr, run_date)


def get_run_date(run_date: Optional[str] = None) -> str:
    """Validate an explicit YYYYMMDD run date or return today's date."""
    if run_date:
        if not re.fullmatch(r"\d{8}", run_date):
            raise ValueError(f"Invalid run date: {run_date}. Expected YYYYMMDD")
        datetime.strptime(run_date, DATE_FORMAT)
        return run_date
    return datetime.now().strftime(DATE_FORMAT)


def parse_run_date(run_date: str) -> datetime:
    return datetime.strptime(run_date, DATE_FORMAT)
