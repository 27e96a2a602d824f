"""Orchestration - pipeline model, DAG, loader, run store, orchestrator"""

from .models import (
    OnBusy,
    PipelineDefinition,
    RetryPolicy,
    Run,
    RunStatus,
    StageDefinition,
    StageRecord,
    StageStatus,
)
from .actions import StageContext, Toolchain
from .loader import build_definition, load_pipeline
from .orchestrator import PipelineOrchestrator
from .store import RunStore

__all__ = [
    "OnBusy",
    "PipelineDefinition",
    "RetryPolicy",
    "Run",
    "RunStatus",
    "StageDefinition",
    "StageRecord",
    "StageStatus",
    "StageContext",
    "Toolchain",
    "build_definition",
    "load_pipeline",
    "PipelineOrchestrator",
    "RunStore",
]
