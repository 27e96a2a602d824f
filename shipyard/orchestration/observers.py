"""
Run observers

The orchestrator reports lifecycle events to observers; metrics and
notifications hook in here. Observer errors are logged and never affect a run.
"""

from typing import Optional

from shipyard.cicd.notifications import NotificationManager
from shipyard.core.logging import get_logger
from shipyard.monitoring.metrics import PipelineMetrics

from .models import Run, RunStatus, StageRecord, StageStatus

logger = get_logger(__name__)


class RunObserver:
    """No-op base; override what you need"""

    def run_started(self, run: Run) -> None:
        pass

    def stage_finished(self, run: Run, record: StageRecord) -> None:
        pass

    def run_finished(self, run: Run) -> None:
        pass


class MetricsObserver(RunObserver):
    def __init__(self, metrics: PipelineMetrics, textfile: Optional[str] = None):
        self.metrics = metrics
        self.textfile = textfile
        self._active = set()

    def run_started(self, run: Run) -> None:
        self._active.add(run.run_id)
        self.metrics.run_started(run.pipeline_id)

    def stage_finished(self, run: Run, record: StageRecord) -> None:
        self.metrics.stage_finished(
            run.pipeline_id,
            record.name,
            record.status.value,
            record.duration,
            record.attempts,
            record.error_kind if record.status == StageStatus.FAILED else None,
        )

    def run_finished(self, run: Run) -> None:
        was_active = run.run_id in self._active
        self._active.discard(run.run_id)
        self.metrics.run_finished(run.pipeline_id, run.status.value, run.duration, was_active)
        if self.textfile:
            self.metrics.export(self.textfile)


class NotificationObserver(RunObserver):
    def __init__(self, manager: NotificationManager):
        self.manager = manager

    def run_started(self, run: Run) -> None:
        self.manager.notify_run_started(run.pipeline_id, run.run_id)

    def stage_finished(self, run: Run, record: StageRecord) -> None:
        if record.status == StageStatus.FAILED and record.error_kind == "RolloutDegraded":
            self.manager.notify_rollout_degraded(
                run.pipeline_id,
                target=record.name,
                detail=(record.error or {}).get("detail", ""),
                run_id=run.run_id,
            )

    def run_finished(self, run: Run) -> None:
        if run.status == RunStatus.SUCCEEDED:
            self.manager.notify_run_succeeded(run.pipeline_id, run.run_id, run.duration)
        elif run.status == RunStatus.FAILED:
            failure = run.first_failure()
            self.manager.notify_run_failed(
                run.pipeline_id,
                run.run_id,
                stage=failure.name if failure else None,
                error_kind=failure.error_kind if failure else None,
                error=(failure.error or {}).get("message", "") if failure else "",
            )
        elif run.status == RunStatus.CANCELLED:
            self.manager.notify_run_cancelled(run.pipeline_id, run.run_id)
