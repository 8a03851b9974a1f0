"""
Pipeline orchestration: run manifest models and the stage workflow.
"""

from .models import STAGE_ORDER, PipelineRun, RunStatus, Stage, StageRecord, StageStatus
from .workflow import NodeResult, PipelineOrchestrator, PipelineState, StageNode

__all__ = [
    # Manifest
    "PipelineRun",
    "RunStatus",
    "Stage",
    "StageRecord",
    "StageStatus",
    "STAGE_ORDER",
    # Workflow
    "NodeResult",
    "PipelineOrchestrator",
    "PipelineState",
    "StageNode",
]
