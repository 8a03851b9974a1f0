"""
Run manifest models.

A PipelineRun is the durable record of one orchestrator pass: its run date,
optional area filter, overall status and per-stage {status, started_at,
finished_at}. It is persisted at every stage boundary and read back to
decide where the next run resumes.
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models import utc_now


class Stage(str, Enum):
    """Pipeline stages, named after the run status while they execute."""
    RAW = "running_raw"
    MERGED = "running_merged"
    TRIMMED = "running_trimmed"
    EXTRACT = "running_extract"
    SPOTS = "running_spots"


STAGE_ORDER: List[Stage] = [Stage.RAW, Stage.MERGED, Stage.TRIMMED, Stage.EXTRACT, Stage.SPOTS]


class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class RunStatus(str, Enum):
    """Overall run state machine."""
    IDLE = "idle"
    RUNNING_RAW = "running_raw"
    RUNNING_MERGED = "running_merged"
    RUNNING_TRIMMED = "running_trimmed"
    RUNNING_EXTRACT = "running_extract"
    RUNNING_SPOTS = "running_spots"
    COMPLETED = "completed_successfully"
    FAILED_AT_RAW = "failed_at_running_raw"
    FAILED_AT_MERGED = "failed_at_running_merged"
    FAILED_AT_TRIMMED = "failed_at_running_trimmed"
    FAILED_AT_EXTRACT = "failed_at_running_extract"
    FAILED_AT_SPOTS = "failed_at_running_spots"

    @classmethod
    def running(cls, stage: Stage) -> "RunStatus":
        return cls(stage.value)

    @classmethod
    def failed_at(cls, stage: Stage) -> "RunStatus":
        return cls(f"failed_at_{stage.value}")

    @property
    def failed_stage(self) -> Optional[Stage]:
        if self.value.startswith("failed_at_"):
            return Stage(self.value[len("failed_at_"):])
        return None

    @property
    def is_terminal(self) -> bool:
        return self == RunStatus.COMPLETED or self.failed_stage is not None


def failed_stage_from(status: Optional[str]) -> Optional[Stage]:
    """Parse 'failed_at_<stage>' from a stored status string."""
    if not status:
        return None
    try:
        return RunStatus(status).failed_stage
    except ValueError:
        return None


class StageRecord(BaseModel):
    stage: Stage
    status: StageStatus = StageStatus.PENDING
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    reason: Optional[str] = Field(None, description="Why the stage was skipped")
    error: Optional[str] = None
    metrics: Dict[str, Any] = Field(default_factory=dict)


def new_run_id(run_date: str) -> str:
    return f"{run_date}-{datetime.now().strftime('%H%M%S')}-{uuid.uuid4().hex[:6]}"


class PipelineRun(BaseModel):
    """Durable manifest of one pipeline pass."""
    run_id: str
    run_date: str
    area: Optional[str] = None
    recrawl: bool = False
    status: RunStatus = RunStatus.IDLE
    stages: List[StageRecord] = Field(default_factory=lambda: [StageRecord(stage=s) for s in STAGE_ORDER])
    resumed_from: Optional[Stage] = Field(None, description="Stage recovered from a failed previous run")
    started_at: str = Field(default_factory=utc_now)
    finished_at: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def new(cls, run_date: str, area: Optional[str] = None, recrawl: bool = False) -> "PipelineRun":
        return cls(run_id=new_run_id(run_date), run_date=run_date, area=area, recrawl=recrawl)

    def stage(self, stage: Stage) -> StageRecord:
        for record in self.stages:
            if record.stage == stage:
                return record
        raise KeyError(stage)

    def mark_running(self, stage: Stage) -> None:
        record = self.stage(stage)
        record.status = StageStatus.RUNNING
        record.started_at = utc_now()
        self.status = RunStatus.running(stage)

    def mark_completed(self, stage: Stage, metrics: Optional[Dict[str, Any]] = None) -> None:
        record = self.stage(stage)
        record.status = StageStatus.COMPLETED
        record.finished_at = utc_now()
        record.metrics.update(metrics or {})

    def mark_skipped(self, stage: Stage, reason: str, metrics: Optional[Dict[str, Any]] = None) -> None:
        record = self.stage(stage)
        record.status = StageStatus.SKIPPED
        record.reason = reason
        record.started_at = record.started_at or utc_now()
        record.finished_at = utc_now()
        record.metrics.update(metrics or {})

    def mark_failed(self, stage: Stage, error: str) -> None:
        record = self.stage(stage)
        record.status = StageStatus.FAILED
        record.error = error
        record.finished_at = utc_now()
        self.status = RunStatus.failed_at(stage)
        self.error = error

    def finalize(self) -> None:
        """Close the manifest; a run that never reached a terminal state is failed at its current stage."""
        if not self.status.is_terminal:
            current = next((r.stage for r in self.stages if r.status == StageStatus.RUNNING), None)
            if current is not None:
                self.mark_failed(current, self.error or "run ended before stage finished")
            elif all(r.status in (StageStatus.COMPLETED, StageStatus.SKIPPED) for r in self.stages):
                self.status = RunStatus.COMPLETED
            else:
                pending = next(r.stage for r in self.stages if r.status == StageStatus.PENDING)
                self.mark_failed(pending, self.error or "run ended before stage started")
        self.finished_at = utc_now()
