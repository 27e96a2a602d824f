"""
shipyard command line

    shipyard run <pipeline.yaml>
    shipyard status <run_id>
    shipyard cancel <run_id> [--drain]
    shipyard rollback <target> [--to-revision N] [-f pipeline.yaml]
    shipyard validate <pipeline.yaml>

Exit codes are stable; see ExitCode.
"""

import argparse
import asyncio
import json
import sys
from enum import IntEnum
from typing import List, Optional

from shipyard.cicd.deployer import DeploymentDriver, DeploymentTarget, KubernetesClusterBackend, RolloutState
from shipyard.cicd.notifications import NotificationManager
from shipyard.core.config import Settings, get_settings
from shipyard.core.exceptions import PipelineDefinitionError, ShipyardException
from shipyard.core.logging import get_logger, setup_logging
from shipyard.executor.step import StepExecutor
from shipyard.monitoring.metrics import PipelineMetrics
from shipyard.orchestration.actions import Toolchain, with_provisioning
from shipyard.orchestration.dag import topological_order
from shipyard.orchestration.loader import load_pipeline
from shipyard.orchestration.models import Run, RunStatus
from shipyard.orchestration.observers import MetricsObserver, NotificationObserver
from shipyard.orchestration.orchestrator import PipelineOrchestrator
from shipyard.orchestration.store import RunStore

logger = get_logger(__name__)


class ExitCode(IntEnum):
    SUCCEEDED = 0
    FAILED = 1
    INVALID = 2
    TIMED_OUT = 3
    PROVISION_ERROR = 4
    BUILD_FAILURE = 5
    AUTH_FAILURE = 6
    PUBLISH_FAILURE = 7
    ROLLOUT_DEGRADED = 8
    CANCELLED = 9
    REJECTED = 10
    RUN_NOT_FOUND = 11


ERROR_EXIT_CODES = {
    "PipelineDefinitionError": ExitCode.INVALID,
    "CycleDetectedError": ExitCode.INVALID,
    "UnknownDependencyError": ExitCode.INVALID,
    "TimeoutExceeded": ExitCode.TIMED_OUT,
    "RolloutTimedOut": ExitCode.TIMED_OUT,
    "ProvisionTimeout": ExitCode.PROVISION_ERROR,
    "ProvisionError": ExitCode.PROVISION_ERROR,
    "BuildFailure": ExitCode.BUILD_FAILURE,
    "AuthFailure": ExitCode.AUTH_FAILURE,
    "PublishFailure": ExitCode.PUBLISH_FAILURE,
    "PublishRejected": ExitCode.PUBLISH_FAILURE,
    "RolloutDegraded": ExitCode.ROLLOUT_DEGRADED,
    "SingleFlightRejected": ExitCode.REJECTED,
    "RunNotFound": ExitCode.RUN_NOT_FOUND,
}


def exit_code_for_error(kind: Optional[str]) -> ExitCode:
    return ERROR_EXIT_CODES.get(kind or "", ExitCode.FAILED)


def exit_code_for_run(run: Run) -> ExitCode:
    if run.status == RunStatus.SUCCEEDED:
        return ExitCode.SUCCEEDED
    if run.status == RunStatus.CANCELLED:
        return ExitCode.CANCELLED
    if run.status == RunStatus.FAILED:
        failure = run.first_failure()
        return exit_code_for_error(failure.error_kind if failure else None)
    return ExitCode.SUCCEEDED


# ============================================================
# Output
# ============================================================

STATUS_MARKS = {
    "succeeded": "✓",
    "failed": "✗",
    "skipped": "-",
    "running": "…",
    "pending": " ",
}


def print_run(run: Run, as_json: bool = False) -> None:
    if as_json:
        print(json.dumps(run.to_dict(), indent=2, ensure_ascii=False))
        return

    print("=" * 50)
    print(f"Run {run.run_id} ({run.pipeline_id}): {run.status.value.upper()}")
    print("=" * 50)
    for record in run.stages.values():
        mark = STATUS_MARKS.get(record.status.value, "?")
        line = f"  [{mark}] {record.name:<20} {record.status.value:<10}"
        if record.attempts > 1:
            line += f" attempts={record.attempts}"
        if record.duration:
            line += f" {record.duration:.1f}s"
        if record.reason:
            line += f" ({record.reason})"
        print(line)

    failure = run.first_failure()
    if failure is not None:
        error = failure.error or {}
        print(f"\nFirst failure: {failure.name} [{error.get('kind')}] {error.get('message', '')}")
        if failure.output_tail:
            print("--- output tail ---")
            print(failure.output_tail)
    if run.duration:
        print(f"\nDuration: {run.duration:.1f}s")


def print_error(error: ShipyardException) -> None:
    print(f"error [{error.error_code.value}] {error.kind}: {error.message}", file=sys.stderr)
    if error.detail:
        print(error.detail, file=sys.stderr)


# ============================================================
# Commands
# ============================================================

def build_observers(settings: Settings, notify: bool = True) -> list:
    observers = [MetricsObserver(PipelineMetrics(), textfile=settings.metrics_textfile)]
    if notify and settings.channels:
        observers.append(NotificationObserver(NotificationManager.from_settings(settings)))
    return observers


async def cmd_run(args: argparse.Namespace, settings: Settings) -> int:
    pipeline = load_pipeline(args.pipeline)
    if args.parallelism:
        pipeline.parallelism = args.parallelism

    orchestrator = PipelineOrchestrator(
        toolchain=Toolchain.from_settings(settings, pipeline),
        store=RunStore(settings.state_dir),
        observers=build_observers(settings, notify=not args.no_notify),
        cancel_poll_interval=settings.cancel_poll_interval,
    )
    run = await orchestrator.trigger(pipeline)
    if not args.json:
        print(f"Started run {run.run_id}")
    run = await orchestrator.wait(run.run_id)
    print_run(run, as_json=args.json)
    return exit_code_for_run(run)


async def cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    store = RunStore(settings.state_dir)
    if args.run_id:
        print_run(store.load(args.run_id), as_json=args.json)
        return ExitCode.SUCCEEDED

    runs = store.list_runs(pipeline_id=args.pipeline, limit=args.limit)
    if args.json:
        print(json.dumps([run.to_dict() for run in runs], indent=2, ensure_ascii=False))
    else:
        for run in runs:
            print(f"{run.run_id:<45} {run.status.value:<10} {run.created_at:%Y-%m-%d %H:%M:%S}")
    return ExitCode.SUCCEEDED


async def cmd_cancel(args: argparse.Namespace, settings: Settings) -> int:
    store = RunStore(settings.state_dir)
    if store.request_cancel(args.run_id, drain=args.drain):
        print(f"Cancellation of {args.run_id} requested")
    else:
        print(f"Run {args.run_id} already {store.load(args.run_id).status.value}")
    return ExitCode.SUCCEEDED


async def cmd_rollback(args: argparse.Namespace, settings: Settings) -> int:
    if args.file:
        pipeline = load_pipeline(args.file)
        if args.target not in pipeline.targets:
            raise PipelineDefinitionError(f"Unknown target '{args.target}' in {args.file}")
        target = pipeline.targets[args.target]
        pipeline_id = pipeline.id
    else:
        target = DeploymentTarget(name=args.target, namespace=args.namespace)
        pipeline_id = "manual"

    driver = DeploymentDriver(
        KubernetesClusterBackend(context=settings.kube_context, in_cluster=settings.kube_in_cluster),
        executor=StepExecutor(default_timeout=settings.default_step_timeout),
        poll_interval=settings.rollout_poll_interval,
        timeout=settings.rollout_timeout,
    )
    result = await driver.rollback(target, to_revision=args.to_revision, timeout=args.timeout)

    if settings.channels:
        NotificationManager.from_settings(settings).notify_rollback(
            pipeline_id, target.name, result.revision, result.state.value
        )

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    else:
        print(f"Rollback of {target.name} to revision {result.revision}: {result.state.value} ({result.message})")

    if result.state == RolloutState.TIMED_OUT:
        return ExitCode.TIMED_OUT
    if result.state == RolloutState.DEGRADED:
        return ExitCode.ROLLOUT_DEGRADED
    return ExitCode.SUCCEEDED


async def cmd_validate(args: argparse.Namespace, settings: Settings) -> int:
    pipeline = load_pipeline(args.pipeline)
    order = topological_order(with_provisioning(pipeline))
    print(f"Pipeline '{pipeline.id}' is valid")
    print(f"  parallelism={pipeline.parallelism} on_busy={pipeline.on_busy.value} "
          f"abort_on_failure={pipeline.abort_on_failure}")
    print(f"  stage order: {' -> '.join(order)}")
    return ExitCode.SUCCEEDED


COMMANDS = {
    "run": cmd_run,
    "status": cmd_status,
    "cancel": cmd_cancel,
    "rollback": cmd_rollback,
    "validate": cmd_validate,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="shipyard", description="Deployment pipeline orchestrator")
    parser.add_argument("--log-level", default=None, help="Override SHIPYARD_LOG_LEVEL")
    parser.add_argument("--json-logs", action="store_true", default=None, help="Emit JSON log lines")
    parser.add_argument("--state-dir", default=None, help="Override SHIPYARD_STATE_DIR")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run a pipeline")
    run.add_argument("pipeline", help="Pipeline definition (YAML)")
    run.add_argument("--parallelism", type=int, default=None, help="Override the pipeline's parallelism")
    run.add_argument("--no-notify", action="store_true", help="Do not send notifications")
    run.add_argument("--json", action="store_true", help="Print the run record as JSON")

    status = sub.add_parser("status", help="Show a run, or recent runs")
    status.add_argument("run_id", nargs="?", help="Run id; omit to list recent runs")
    status.add_argument("--pipeline", default=None, help="Only list runs of this pipeline")
    status.add_argument("--limit", type=int, default=20)
    status.add_argument("--json", action="store_true")

    cancel = sub.add_parser("cancel", help="Cancel a run")
    cancel.add_argument("run_id")
    cancel.add_argument("--drain", action="store_true", help="Let running stages finish")

    rollback = sub.add_parser("rollback", help="Roll a deployment target back")
    rollback.add_argument("target", help="Target name (or deployment name without -f)")
    rollback.add_argument("--to-revision", type=int, default=None, help="Revision to restore (default: previous)")
    rollback.add_argument("-f", "--file", default=None, help="Pipeline definition declaring the target")
    rollback.add_argument("--namespace", default="default")
    rollback.add_argument("--timeout", type=float, default=None, help="Rollout timeout in seconds")
    rollback.add_argument("--json", action="store_true")

    validate = sub.add_parser("validate", help="Validate a pipeline definition")
    validate.add_argument("pipeline")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    try:
        args = parser.parse_args(argv)
    except SystemExit as e:
        return ExitCode.SUCCEEDED if e.code == 0 else ExitCode.INVALID

    settings = get_settings()
    if args.state_dir:
        settings = settings.model_copy(update={"state_dir": args.state_dir})
    setup_logging(level=args.log_level, json_format=args.json_logs)

    try:
        return int(asyncio.run(COMMANDS[args.command](args, settings)))
    except ShipyardException as e:
        print_error(e)
        return int(exit_code_for_error(e.kind))
    except KeyboardInterrupt:
        print("Interrupted", file=sys.stderr)
        return int(ExitCode.CANCELLED)


if __name__ == "__main__":
    sys.exit(main())
