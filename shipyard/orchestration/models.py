"""
Pipeline data model

- PipelineDefinition / StageDefinition: static definition, loaded once per run
- Run / StageRecord: execution state, owned by the orchestrator
- Legal status transitions; a terminal Run refuses further mutation
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shipyard.cicd.deployer import DeploymentTarget
from shipyard.cicd.provisioning import InfrastructureSpec
from shipyard.core.async_utils import Backoff
from shipyard.core.exceptions import RunStateError

PROVISION_STAGE = "provision"
RUN_SUBJECT = "@run"


# ============================================================
# Status
# ============================================================

class StageStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class OnBusy(str, Enum):
    """What a trigger does while the pipeline already has an active run"""
    REJECT = "reject"
    QUEUE = "queue"


STAGE_TRANSITIONS = {
    StageStatus.PENDING: {StageStatus.RUNNING, StageStatus.SKIPPED},
    StageStatus.RUNNING: {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED},
}

RUN_TRANSITIONS = {
    RunStatus.QUEUED: {RunStatus.RUNNING, RunStatus.CANCELLED},
    RunStatus.RUNNING: {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED},
}

TERMINAL_STAGE_STATUSES = {StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED}
TERMINAL_RUN_STATUSES = {RunStatus.SUCCEEDED, RunStatus.FAILED, RunStatus.CANCELLED}


# ============================================================
# Definition
# ============================================================

@dataclass
class RetryPolicy:
    """Retry policy for a stage. Terminal errors are never retried."""
    retries: int = 0
    delay: float = 1.0
    backoff: float = 2.0
    max_delay: Optional[float] = 60.0

    def wait_time(self, attempt: int) -> float:
        return Backoff(self.delay, self.backoff, self.max_delay).wait_time(attempt)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "retries": self.retries,
            "delay": self.delay,
            "backoff": self.backoff,
            "max_delay": self.max_delay,
        }


StageAction = Callable[[Any], Awaitable[Any]]


@dataclass
class StageDefinition:
    """Definition of a single pipeline stage."""
    name: str
    action: Optional[StageAction] = None
    dependencies: List[str] = field(default_factory=list)
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    timeout: Optional[float] = None
    enabled: bool = True
    kind: str = "call"
    description: str = ""
    params: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind,
            "description": self.description,
            "dependencies": self.dependencies,
            "retry_policy": self.retry_policy.to_dict(),
            "timeout": self.timeout,
            "enabled": self.enabled,
            "params": self.params,
        }


@dataclass
class PipelineDefinition:
    id: str
    stages: List[StageDefinition] = field(default_factory=list)
    parallelism: int = 1
    on_busy: OnBusy = OnBusy.REJECT
    abort_on_failure: bool = False
    infrastructure: Optional[InfrastructureSpec] = None
    infrastructure_timeout: Optional[float] = None
    infrastructure_dir: Optional[str] = None
    create_missing: bool = False
    targets: Dict[str, DeploymentTarget] = field(default_factory=dict)
    source: Optional[str] = None

    def stage(self, name: str) -> StageDefinition:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "parallelism": self.parallelism,
            "on_busy": self.on_busy.value,
            "abort_on_failure": self.abort_on_failure,
            "infrastructure": self.infrastructure.name if self.infrastructure else None,
            "targets": {name: target.to_dict() for name, target in self.targets.items()},
            "stages": [stage.to_dict() for stage in self.stages],
            "source": self.source,
        }


# ============================================================
# Run state
# ============================================================

def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


@dataclass
class StageRecord:
    name: str
    status: StageStatus = StageStatus.PENDING
    attempts: int = 0
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[Dict[str, Any]] = None
    output_tail: str = ""
    result: Optional[Dict[str, Any]] = None
    reason: str = ""

    @property
    def error_kind(self) -> Optional[str]:
        return self.error.get("kind") if self.error else None

    @property
    def duration(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "attempts": self.attempts,
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration": round(self.duration, 3),
            "error": self.error,
            "output_tail": self.output_tail,
            "result": self.result,
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StageRecord":
        return cls(
            name=data["name"],
            status=StageStatus(data["status"]),
            attempts=data.get("attempts", 0),
            started_at=_parse(data.get("started_at")),
            finished_at=_parse(data.get("finished_at")),
            error=data.get("error"),
            output_tail=data.get("output_tail", ""),
            result=data.get("result"),
            reason=data.get("reason", ""),
        )


@dataclass
class RunEvent:
    """One entry of the ordered transition log"""
    subject: str
    from_status: str
    to_status: str
    message: str = ""
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "subject": self.subject,
            "from": self.from_status,
            "to": self.to_status,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RunEvent":
        return cls(
            subject=data["subject"],
            from_status=data["from"],
            to_status=data["to"],
            message=data.get("message", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


@dataclass
class Run:
    """One execution instance of a pipeline

    Stage and run statuses only change through ``set_stage`` and
    ``set_status``; both refuse illegal transitions and any mutation once
    the run is terminal.
    """
    run_id: str
    pipeline_id: str
    status: RunStatus = RunStatus.QUEUED
    stages: Dict[str, StageRecord] = field(default_factory=dict)
    events: List[RunEvent] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    cancel_requested: bool = False
    drain: bool = False

    @classmethod
    def create(cls, pipeline_id: str, stage_names: List[str]) -> "Run":
        run_id = f"{pipeline_id}-{datetime.now().strftime('%Y%m%d%H%M%S')}-{uuid.uuid4().hex[:6]}"
        return cls(
            run_id=run_id,
            pipeline_id=pipeline_id,
            stages={name: StageRecord(name=name) for name in stage_names},
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_RUN_STATUSES

    @property
    def duration(self) -> float:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return 0.0

    def _check_mutable(self) -> None:
        if self.is_terminal:
            raise RunStateError(f"Run {self.run_id} is {self.status.value} and can no longer change")

    def set_stage(self, name: str, status: StageStatus, message: str = "", **fields: Any) -> StageRecord:
        self._check_mutable()
        record = self.stages[name]
        if status != record.status and status not in STAGE_TRANSITIONS.get(record.status, set()):
            raise RunStateError(
                f"Stage '{name}' cannot go from {record.status.value} to {status.value}"
            )

        for key, value in fields.items():
            if not hasattr(record, key):
                raise AttributeError(f"StageRecord has no field '{key}'")
            setattr(record, key, value)

        if status != record.status:
            now = datetime.now()
            if status == StageStatus.RUNNING:
                record.started_at = now
            elif status in TERMINAL_STAGE_STATUSES:
                record.finished_at = now
            self.events.append(RunEvent(name, record.status.value, status.value, message))
            record.status = status
            if message and status == StageStatus.SKIPPED:
                record.reason = message
        return record

    def set_status(self, status: RunStatus, message: str = "") -> None:
        self._check_mutable()
        if status == self.status:
            return
        if status not in RUN_TRANSITIONS.get(self.status, set()):
            raise RunStateError(f"Run cannot go from {self.status.value} to {status.value}")

        now = datetime.now()
        if status == RunStatus.RUNNING:
            self.started_at = now
        elif status in TERMINAL_RUN_STATUSES:
            self.finished_at = now
            self.started_at = self.started_at or now
        self.events.append(RunEvent(RUN_SUBJECT, self.status.value, status.value, message))
        self.status = status

    def request_cancel(self, drain: bool = False) -> None:
        self._check_mutable()
        if not self.cancel_requested:
            self.cancel_requested = True
            self.drain = drain
            self.events.append(
                RunEvent(RUN_SUBJECT, self.status.value, self.status.value, "cancel requested" + (" (drain)" if drain else ""))
            )

    def resolve_status(self) -> RunStatus:
        """Terminal status implied by the stage table"""
        if any(r.status == StageStatus.FAILED for r in self.stages.values()):
            return RunStatus.FAILED
        if self.cancel_requested:
            return RunStatus.CANCELLED
        return RunStatus.SUCCEEDED

    def first_failure(self) -> Optional[StageRecord]:
        """Earliest stage to reach Failed, by the transition log"""
        for event in self.events:
            if event.subject != RUN_SUBJECT and event.to_status == StageStatus.FAILED.value:
                return self.stages[event.subject]
        return None

    def count(self, status: StageStatus) -> int:
        return sum(1 for r in self.stages.values() if r.status == status)

    def to_dict(self) -> Dict[str, Any]:
        failure = self.first_failure()
        return {
            "run_id": self.run_id,
            "pipeline_id": self.pipeline_id,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "started_at": _iso(self.started_at),
            "finished_at": _iso(self.finished_at),
            "duration": round(self.duration, 3),
            "cancel_requested": self.cancel_requested,
            "drain": self.drain,
            "first_failure": failure.name if failure else None,
            "stages": [record.to_dict() for record in self.stages.values()],
            "events": [event.to_dict() for event in self.events],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Run":
        return cls(
            run_id=data["run_id"],
            pipeline_id=data["pipeline_id"],
            status=RunStatus(data["status"]),
            stages={s["name"]: StageRecord.from_dict(s) for s in data.get("stages", [])},
            events=[RunEvent.from_dict(e) for e in data.get("events", [])],
            created_at=_parse(data.get("created_at")) or datetime.now(),
            started_at=_parse(data.get("started_at")),
            finished_at=_parse(data.get("finished_at")),
            cancel_requested=data.get("cancel_requested", False),
            drain=data.get("drain", False),
        )
