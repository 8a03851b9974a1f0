"""
File-based lock so only one pipeline run is active at a time.

The lock file records {pid, holder, timestamp}. Locks older than the stale
threshold are assumed to belong to a crashed process and are taken over.
"""

import json
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

logger = logging.getLogger(__name__)

STALE_MINUTES = 30


@dataclass
class LockResult:
    acquired: bool
    holder: Optional[str] = None
    pid: Optional[int] = None
    age_seconds: Optional[float] = None


class PipelineLock:
    """Advisory exclusive lock backed by a JSON file."""

    def __init__(self, path: Path, stale_minutes: int = STALE_MINUTES, clock: Callable[[], float] = time.time):
        self.path = Path(path)
        self.stale_seconds = stale_minutes * 60
        self.clock = clock
        self._held = False

    def read(self) -> Optional[dict]:
        """Current lock contents, or None if absent or unreadable."""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return data if isinstance(data, dict) else None

    def acquire(self, holder: str) -> LockResult:
        """
        Take the lock for holder unless a fresh lock exists.

        Returns:
            LockResult; acquired=False carries the current holder's identity
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)

        if self.path.exists():
            lock = self.read()
            if lock is None:
                logger.warning(f"⚠️  Lock file {self.path} is unreadable, overwriting")
            else:
                try:
                    age = self.clock() - float(lock.get("timestamp", 0))
                except (TypeError, ValueError):
                    age = self.stale_seconds
                if age < self.stale_seconds:
                    return LockResult(acquired=False, holder=lock.get("holder"), pid=lock.get("pid"), age_seconds=age)
                logger.warning(f"⚠️  Taking over stale lock held by {lock.get('holder')} "
                               f"(pid {lock.get('pid')}, {age / 60:.0f} min old)")

        self.path.write_text(json.dumps({
            "pid": os.getpid(),
            "holder": holder,
            "timestamp": self.clock(),
        }) + "\n", encoding="utf-8")
        self._held = True
        return LockResult(acquired=True, holder=holder, pid=os.getpid(), age_seconds=0.0)

    def release(self) -> None:
        """Remove the lock file if this instance holds it."""
        if not self._held:
            return
        try:
            if self.path.exists():
                self.path.unlink()
        except OSError as e:
            logger.warning(f"⚠️  Could not remove lock file {self.path}: {e}")
        self._held = False
