"""Metrics tests"""

import pytest

from shipyard.monitoring.metrics import PipelineMetrics
from shipyard.orchestration.models import PipelineDefinition, RunStatus, StageDefinition
from shipyard.orchestration.observers import MetricsObserver
from shipyard.orchestration.orchestrator import PipelineOrchestrator


class TestPipelineMetrics:
    def setup_method(self):
        self.metrics = PipelineMetrics()

    def test_private_registries(self):
        other = PipelineMetrics()
        self.metrics.run_started("web")
        assert other.value("shipyard_active_runs", pipeline="web") is None

    def test_run_lifecycle(self):
        self.metrics.run_started("web")
        assert self.metrics.value("shipyard_active_runs", pipeline="web") == 1

        self.metrics.run_finished("web", "succeeded", 42.0)

        assert self.metrics.value("shipyard_active_runs", pipeline="web") == 0
        assert self.metrics.value("shipyard_runs_total", pipeline="web", status="succeeded") == 1
        assert self.metrics.value("shipyard_run_duration_seconds_sum", pipeline="web") == 42.0

    def test_stage_counters(self):
        self.metrics.stage_finished("web", "publish", "failed", 3.0, attempts=3, error_kind="PublishFailure")

        assert self.metrics.value("shipyard_stage_attempts_total", pipeline="web", stage="publish") == 3
        assert self.metrics.value(
            "shipyard_stage_failures_total", pipeline="web", stage="publish", error_kind="PublishFailure"
        ) == 1
        assert self.metrics.value(
            "shipyard_stage_duration_seconds_count", pipeline="web", stage="publish", status="failed"
        ) == 1

    def test_textfile_export(self, tmp_path):
        self.metrics.run_finished("web", "failed", 1.0, was_active=False)

        path = tmp_path / "shipyard.prom"
        self.metrics.export(str(path))
        assert 'shipyard_runs_total{pipeline="web",status="failed"} 1.0' in path.read_text()


class TestMetricsObserver:
    @pytest.mark.asyncio
    async def test_records_runs_through_orchestrator(self, tmp_path):
        async def ok(ctx):
            return None

        metrics = PipelineMetrics()
        textfile = tmp_path / "shipyard.prom"
        orchestrator = PipelineOrchestrator(observers=[MetricsObserver(metrics, textfile=str(textfile))])

        run = await orchestrator.run(PipelineDefinition(id="web", stages=[
            StageDefinition(name="a", action=ok),
            StageDefinition(name="b", action=ok, dependencies=["a"], enabled=False),
        ]))

        assert run.status == RunStatus.SUCCEEDED
        assert metrics.value("shipyard_runs_total", pipeline="web", status="succeeded") == 1
        assert metrics.value("shipyard_active_runs", pipeline="web") == 0
        assert metrics.value("shipyard_stage_attempts_total", pipeline="web", stage="a") == 1
        assert metrics.value(
            "shipyard_stage_duration_seconds_count", pipeline="web", stage="b", status="skipped"
        ) == 1
        assert textfile.exists()
