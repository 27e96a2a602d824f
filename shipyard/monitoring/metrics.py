"""
Prometheus metrics
- Runs by terminal status
- Stage duration and attempts
- Active runs, rollout outcomes
"""

from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    write_to_textfile,
)

from shipyard.core.logging import get_logger

logger = get_logger(__name__)


class PipelineMetrics:
    """Prometheus collector for pipeline runs"""

    def __init__(self, namespace: str = "shipyard", registry: Optional[CollectorRegistry] = None):
        self.namespace = namespace
        self.registry = registry or CollectorRegistry()

        # Runs
        self.runs_total = Counter(
            f"{namespace}_runs_total",
            "Finished pipeline runs",
            ["pipeline", "status"],
            registry=self.registry,
        )

        self.active_runs = Gauge(
            f"{namespace}_active_runs",
            "Runs currently executing",
            ["pipeline"],
            registry=self.registry,
        )

        self.run_duration = Histogram(
            f"{namespace}_run_duration_seconds",
            "Wall-clock duration of finished runs",
            ["pipeline"],
            buckets=[10, 30, 60, 120, 300, 600, 1200, 1800, 3600],
            registry=self.registry,
        )

        # Stages
        self.stage_duration = Histogram(
            f"{namespace}_stage_duration_seconds",
            "Duration of finished stages",
            ["pipeline", "stage", "status"],
            buckets=[0.5, 1, 5, 15, 30, 60, 120, 300, 600, 1800],
            registry=self.registry,
        )

        self.stage_attempts = Counter(
            f"{namespace}_stage_attempts_total",
            "Stage attempts, retries included",
            ["pipeline", "stage"],
            registry=self.registry,
        )

        self.stage_failures = Counter(
            f"{namespace}_stage_failures_total",
            "Stages that ended Failed, by error kind",
            ["pipeline", "stage", "error_kind"],
            registry=self.registry,
        )

    def run_started(self, pipeline: str) -> None:
        self.active_runs.labels(pipeline=pipeline).inc()

    def run_finished(self, pipeline: str, status: str, duration_s: float, was_active: bool = True) -> None:
        if was_active:
            self.active_runs.labels(pipeline=pipeline).dec()
        self.runs_total.labels(pipeline=pipeline, status=status).inc()
        self.run_duration.labels(pipeline=pipeline).observe(duration_s)

    def stage_finished(
        self,
        pipeline: str,
        stage: str,
        status: str,
        duration_s: float,
        attempts: int,
        error_kind: Optional[str] = None,
    ) -> None:
        self.stage_duration.labels(pipeline=pipeline, stage=stage, status=status).observe(duration_s)
        if attempts:
            self.stage_attempts.labels(pipeline=pipeline, stage=stage).inc(attempts)
        if error_kind:
            self.stage_failures.labels(pipeline=pipeline, stage=stage, error_kind=error_kind).inc()

    def value(self, name: str, **labels: str) -> Optional[float]:
        """Current sample value, mainly for status output and tests"""
        return self.registry.get_sample_value(name, labels)

    def export(self, path: str) -> None:
        """Write the registry in textfile-collector format"""
        write_to_textfile(path, self.registry)
        logger.debug(f"Metrics written to {path}")
