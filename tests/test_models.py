"""Run state model tests"""

import pytest

from shipyard.core.exceptions import RunStateError
from shipyard.orchestration.models import (
    RUN_SUBJECT,
    RetryPolicy,
    Run,
    RunStatus,
    StageStatus,
)


class TestRun:
    def setup_method(self):
        self.run = Run.create("app", ["build", "deploy"])

    def test_create(self):
        assert self.run.run_id.startswith("app-")
        assert self.run.status == RunStatus.QUEUED
        assert list(self.run.stages) == ["build", "deploy"]
        assert self.run.count(StageStatus.PENDING) == 2

    def test_legal_stage_path(self):
        self.run.set_status(RunStatus.RUNNING)
        self.run.set_stage("build", StageStatus.RUNNING, attempts=1)
        self.run.set_stage("build", StageStatus.SUCCEEDED, result={"tag": "1"})

        record = self.run.stages["build"]
        assert record.attempts == 1
        assert record.result == {"tag": "1"}
        assert record.started_at <= record.finished_at

    def test_illegal_stage_transition(self):
        with pytest.raises(RunStateError):
            self.run.set_stage("build", StageStatus.SUCCEEDED)

    def test_finished_stage_cannot_restart(self):
        self.run.set_stage("build", StageStatus.SKIPPED, "disabled")
        assert self.run.stages["build"].reason == "disabled"
        with pytest.raises(RunStateError):
            self.run.set_stage("build", StageStatus.RUNNING)

    def test_same_status_updates_fields(self):
        self.run.set_stage("build", StageStatus.RUNNING, attempts=1)
        events = len(self.run.events)
        self.run.set_stage("build", StageStatus.RUNNING, attempts=2)
        assert self.run.stages["build"].attempts == 2
        assert len(self.run.events) == events

    def test_unknown_field(self):
        with pytest.raises(AttributeError):
            self.run.set_stage("build", StageStatus.RUNNING, colour="red")

    def test_illegal_run_transition(self):
        with pytest.raises(RunStateError):
            self.run.set_status(RunStatus.SUCCEEDED)

    def test_terminal_run_refuses_changes(self):
        self.run.set_status(RunStatus.CANCELLED)
        with pytest.raises(RunStateError):
            self.run.set_stage("build", StageStatus.SKIPPED)
        with pytest.raises(RunStateError):
            self.run.request_cancel()

    def test_resolve_status(self):
        self.run.set_status(RunStatus.RUNNING)
        assert self.run.resolve_status() == RunStatus.SUCCEEDED
        self.run.request_cancel()
        assert self.run.resolve_status() == RunStatus.CANCELLED
        self.run.set_stage("build", StageStatus.RUNNING)
        self.run.set_stage("build", StageStatus.FAILED)
        assert self.run.resolve_status() == RunStatus.FAILED

    def test_first_failure_follows_event_order(self):
        self.run.set_status(RunStatus.RUNNING)
        for name in ("deploy", "build"):
            self.run.set_stage(name, StageStatus.RUNNING)
        self.run.set_stage("deploy", StageStatus.FAILED, error={"kind": "RolloutDegraded"})
        self.run.set_stage("build", StageStatus.FAILED, error={"kind": "BuildFailure"})

        assert self.run.first_failure().name == "deploy"
        assert self.run.first_failure().error_kind == "RolloutDegraded"

    def test_event_log(self):
        self.run.set_status(RunStatus.RUNNING)
        self.run.set_stage("build", StageStatus.RUNNING)
        self.run.request_cancel(drain=True)

        subjects = [(e.subject, e.from_status, e.to_status) for e in self.run.events]
        assert subjects == [
            (RUN_SUBJECT, "queued", "running"),
            ("build", "pending", "running"),
            (RUN_SUBJECT, "running", "running"),
        ]
        assert self.run.events[-1].message == "cancel requested (drain)"
        assert self.run.drain

    def test_dict_round_trip_keeps_history(self):
        self.run.set_status(RunStatus.RUNNING)
        self.run.set_stage("build", StageStatus.RUNNING, attempts=1)
        self.run.set_stage("build", StageStatus.FAILED, error={"kind": "BuildFailure", "message": "x"},
                           output_tail="ERROR")
        self.run.set_stage("deploy", StageStatus.SKIPPED, "dependency 'build' failed")
        self.run.set_status(RunStatus.FAILED)

        restored = Run.from_dict(self.run.to_dict())

        assert restored.status == RunStatus.FAILED
        assert restored.is_terminal
        assert restored.first_failure().name == "build"
        assert restored.stages["deploy"].reason == "dependency 'build' failed"
        assert restored.stages["build"].output_tail == "ERROR"
        assert len(restored.events) == len(self.run.events)
        assert restored.to_dict()["first_failure"] == "build"


class TestRetryPolicy:
    def test_exponential_wait(self):
        policy = RetryPolicy(retries=3, delay=1.0, backoff=2.0, max_delay=3.0)
        assert [policy.wait_time(i) for i in range(3)] == [1.0, 2.0, 3.0]
