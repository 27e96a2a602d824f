"""
Pipeline orchestrator

- Runs the stage graph with bounded parallelism (asyncio.Semaphore)
- Single-flight per pipeline id: a second trigger is rejected or queued
- Failure propagation: dependents of Failed/Skipped stages are Skipped,
  scheduling halts after a failure, abort_on_failure interrupts running stages
- Cancellation in-process or through the run store from another process
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from shipyard.core.exceptions import (
    ErrorCode,
    ShipyardException,
    SingleFlightRejected,
    TimeoutExceeded,
)
from shipyard.core.logging import get_logger, run_id_var

from .actions import StageContext, Toolchain, summarize, with_provisioning
from .dag import ancestors, topological_order
from .models import (
    OnBusy,
    PipelineDefinition,
    Run,
    RunStatus,
    StageDefinition,
    StageStatus,
)
from .observers import RunObserver
from .store import PipelineLock, RunStore

logger = get_logger(__name__)


def error_record(error: BaseException) -> Dict[str, Any]:
    if isinstance(error, ShipyardException):
        return error.to_dict()
    return {
        "kind": type(error).__name__,
        "code": ErrorCode.INTERNAL_ERROR.value,
        "message": str(error) or type(error).__name__,
    }


@dataclass
class _Execution:
    """Scheduler state of one active run"""
    pipeline: PipelineDefinition
    stages: Dict[str, StageDefinition]
    order: List[str]
    semaphore: asyncio.Semaphore
    wakeup: asyncio.Event = field(default_factory=asyncio.Event)
    outputs: Dict[str, Any] = field(default_factory=dict)
    lock: Optional[PipelineLock] = None
    halted: bool = False
    cancelling: bool = False


class PipelineOrchestrator:
    """Sequences stages and owns every Run it starts"""

    def __init__(
        self,
        toolchain: Optional[Toolchain] = None,
        store: Optional[RunStore] = None,
        observers: Optional[List[RunObserver]] = None,
        cancel_poll_interval: float = 1.0,
        default_stage_timeout: Optional[float] = None,
    ):
        self.toolchain = toolchain or Toolchain()
        self.store = store or RunStore()
        self.observers = list(observers or [])
        self.cancel_poll_interval = cancel_poll_interval
        self.default_stage_timeout = default_stage_timeout

        self._locks: Dict[str, asyncio.Lock] = {}
        self._claims: Dict[str, List[str]] = {}
        self._runs: Dict[str, Run] = {}
        self._drivers: Dict[str, asyncio.Task] = {}
        self._executions: Dict[str, _Execution] = {}
        self._events: Optional[asyncio.Queue] = None
        self._dispatcher: Optional[asyncio.Task] = None

    # ============================================================
    # Public API
    # ============================================================

    async def trigger(self, pipeline: PipelineDefinition) -> Run:
        """Start a run in the background and return it

        Raises:
            PipelineDefinitionError: the stage graph is invalid
            SingleFlightRejected: the pipeline is busy and on_busy is reject
        """
        stages = with_provisioning(pipeline)
        order = topological_order(stages)

        claims = self._claims.setdefault(pipeline.id, [])
        if claims and pipeline.on_busy == OnBusy.REJECT:
            logger.warning(f"Rejecting trigger of '{pipeline.id}': run {claims[0]} is active")
            raise SingleFlightRejected(pipeline.id, claims[0])

        run = Run.create(pipeline.id, order)
        pipeline_lock = None
        if not claims:
            # shared with other processes using the same state directory
            pipeline_lock = self.store.try_lock(pipeline.id, run.run_id)
            if pipeline_lock is None and pipeline.on_busy == OnBusy.REJECT:
                holder = self.store.lock_holder(pipeline.id) or "unknown"
                logger.warning(f"Rejecting trigger of '{pipeline.id}': run {holder} is active in another process")
                raise SingleFlightRejected(pipeline.id, holder)

        claims.append(run.run_id)
        self._runs[run.run_id] = run
        self.store.save(run)

        execution = _Execution(
            pipeline=pipeline,
            stages={stage.name: stage for stage in stages},
            order=order,
            semaphore=asyncio.Semaphore(max(1, pipeline.parallelism)),
            lock=pipeline_lock,
        )
        self._executions[run.run_id] = execution
        self._drivers[run.run_id] = asyncio.create_task(self._drive(run, execution))
        if len(claims) > 1:
            logger.info(f"Run {run.run_id} queued behind {claims[0]}")
        elif pipeline_lock is None:
            logger.info(f"Run {run.run_id} queued behind {self.store.lock_holder(pipeline.id)} in another process")
        return run

    async def run(self, pipeline: PipelineDefinition) -> Run:
        """Trigger a run and wait for its terminal status"""
        run = await self.trigger(pipeline)
        return await self.wait(run.run_id)

    async def wait(self, run_id: str) -> Run:
        """Wait for a run to finish and its observer events to be delivered"""
        task = self._drivers.get(run_id)
        if task is None:
            return self.status(run_id)
        try:
            run = await task
        except asyncio.CancelledError:
            run = self._runs[run_id]
            # a queued run cancelled before its driver ever started
            if not (task.cancelled() and run.status == RunStatus.CANCELLED):
                raise
        await self.drain_observers()
        return run

    async def drain_observers(self) -> None:
        if self._events is not None:
            await self._events.join()

    def status(self, run_id: str) -> Run:
        """Current state of a run, from memory or the store

        Raises:
            RunNotFound: unknown run id
        """
        if run_id in self._runs:
            return self._runs[run_id]
        return self.store.load(run_id)

    def cancel(self, run_id: str, drain: bool = False) -> Run:
        """Cancel a run: Pending stages are Skipped, Running stages interrupted

        With *drain*, Running stages are allowed to finish instead.
        A run owned by another process gets a cancellation request in the store.
        """
        run = self._runs.get(run_id)
        if run is None:
            self.store.request_cancel(run_id, drain)
            return self.store.load(run_id)
        if run.is_terminal:
            logger.info(f"Run {run_id} already {run.status.value}")
            return run
        self._request_cancel(run, drain)
        return run

    def active_runs(self, pipeline_id: Optional[str] = None) -> List[Run]:
        return [
            run for run in self._runs.values()
            if not run.is_terminal and (pipeline_id is None or run.pipeline_id == pipeline_id)
        ]

    # ============================================================
    # Transitions
    # ============================================================

    def _transition(
        self,
        run: Run,
        status: Any,
        stage: Optional[str] = None,
        message: str = "",
        **fields: Any,
    ) -> None:
        """The only place run and stage statuses change"""
        if stage is None:
            run.set_status(status, message)
            logger.info(f"Run {run.run_id}: {status.value}{f' ({message})' if message else ''}")
        else:
            record = run.stages[stage]
            previous = record.status
            run.set_stage(stage, status, message, **fields)
            if status != previous:
                log = logger.error if status == StageStatus.FAILED else logger.info
                log(f"Stage '{stage}': {previous.value} -> {status.value}{f' ({message})' if message else ''}")
        self.store.save(run)

        if stage is not None and status in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED):
            self._notify("stage_finished", run, run.stages[stage])
        elif stage is None and status == RunStatus.RUNNING:
            self._notify("run_started", run)
        elif stage is None and run.is_terminal:
            self._notify("run_finished", run)

    def _notify(self, event: str, run: Run, *args: Any) -> None:
        """Queue an event for the observers; delivery happens off the event loop"""
        if not self.observers:
            return
        if self._dispatcher is None or self._dispatcher.done():
            self._events = self._events or asyncio.Queue()
            self._dispatcher = asyncio.create_task(self._dispatch())
        self._events.put_nowait((event, run, args))

    async def _dispatch(self) -> None:
        """Deliver queued events in order, each observer call in a worker thread"""
        while not self._events.empty():
            event, run, args = await self._events.get()
            try:
                for observer in self.observers:
                    try:
                        await asyncio.to_thread(getattr(observer, event), run, *args)
                    except Exception as e:
                        logger.error(f"Observer {type(observer).__name__}.{event} failed: {e}")
            finally:
                self._events.task_done()

    def _request_cancel(self, run: Run, drain: bool) -> None:
        run.request_cancel(drain)
        self.store.save(run)
        logger.warning(f"Cancellation requested for {run.run_id}{' (drain)' if drain else ''}")

        if run.status == RunStatus.QUEUED:
            self._cancel_queued(run)
            task = self._drivers.get(run.run_id)
            if task is not None and not task.done():
                task.cancel()
            return

        execution = self._executions.get(run.run_id)
        if execution is not None:
            execution.wakeup.set()

    def _cancel_queued(self, run: Run) -> None:
        if not run.cancel_requested:
            run.request_cancel()
        self._skip_pending(run, "cancelled while queued")
        self._transition(run, RunStatus.CANCELLED, message="cancelled while queued")
        self._release_claim(run)
        execution = self._executions.pop(run.run_id, None)
        if execution is not None and execution.lock is not None:
            execution.lock.release()

    def _release_claim(self, run: Run) -> None:
        claims = self._claims.get(run.pipeline_id, [])
        if run.run_id in claims:
            claims.remove(run.run_id)

    # ============================================================
    # Run driver
    # ============================================================

    async def _drive(self, run: Run, execution: _Execution) -> Run:
        pipeline = execution.pipeline
        token = run_id_var.set(run.run_id)
        lock = self._locks.setdefault(pipeline.id, asyncio.Lock())
        try:
            try:
                await lock.acquire()
            except asyncio.CancelledError:
                if run.is_terminal:
                    return run
                self._cancel_queued(run)
                raise

            try:
                if execution.lock is None and not await self._await_pipeline_lock(run, execution):
                    return run
                request = self.store.cancel_request(run.run_id)
                if request and not run.cancel_requested:
                    run.request_cancel(bool(request.get("drain")))
                self._transition(run, RunStatus.RUNNING)
                await self._execute(run, execution)
            finally:
                if execution.lock is not None:
                    execution.lock.release()
                lock.release()
            return run
        finally:
            self._release_claim(run)
            self._executions.pop(run.run_id, None)
            self.store.clear_cancel(run.run_id)
            run_id_var.reset(token)

    async def _await_pipeline_lock(self, run: Run, execution: _Execution) -> bool:
        """Wait while a run of the same pipeline holds the lock in another process

        Returns False when the queued run was cancelled instead.
        """
        while True:
            execution.lock = self.store.try_lock(run.pipeline_id, run.run_id)
            if execution.lock is not None:
                return True
            if self.store.cancel_request(run.run_id):
                self._cancel_queued(run)
                return False
            try:
                await asyncio.sleep(self.cancel_poll_interval)
            except asyncio.CancelledError:
                if run.is_terminal:
                    return False
                self._cancel_queued(run)
                raise

    async def _execute(self, run: Run, execution: _Execution) -> None:
        running: Dict[asyncio.Task, str] = {}
        wakeup: Optional[asyncio.Task] = None
        watcher = asyncio.create_task(self._watch_store(run, execution)) if self.store.persistent else None
        try:
            while True:
                if run.cancel_requested and not execution.cancelling:
                    execution.cancelling = True
                    execution.halted = True
                    if not run.drain:
                        for task in running:
                            task.cancel()

                self._schedule(run, execution, running)
                if not running:
                    break

                wakeup = asyncio.create_task(execution.wakeup.wait())
                done, _ = await asyncio.wait(
                    list(running) + [wakeup], return_when=asyncio.FIRST_COMPLETED
                )
                wakeup.cancel()
                execution.wakeup.clear()

                for task in done:
                    if task is wakeup:
                        continue
                    name = running.pop(task)
                    if not task.cancelled():
                        task.result()
                    if run.stages[name].status == StageStatus.FAILED and execution.pipeline.abort_on_failure:
                        for other in running:
                            other.cancel()

        except asyncio.CancelledError:
            for task in running:
                task.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            if not run.is_terminal:
                run.request_cancel()
                self._finish(run, "interrupted")
            raise
        finally:
            if wakeup is not None:
                wakeup.cancel()
            if watcher is not None:
                watcher.cancel()

        self._finish(run)

    def _schedule(self, run: Run, execution: _Execution, running: Dict[asyncio.Task, str]) -> None:
        """Resolve Pending stages: skip the unreachable, launch the ready"""
        if execution.halted:
            reason = "cancelled" if run.cancel_requested else "run halted after failure"
            self._skip_pending(run, reason, exclude=set(running.values()))
            return

        launched = set(running.values())
        for name in execution.order:
            record = run.stages[name]
            if record.status != StageStatus.PENDING or name in launched:
                continue
            stage = execution.stages[name]

            blocked = next(
                (dep for dep in stage.dependencies
                 if run.stages[dep].status in (StageStatus.FAILED, StageStatus.SKIPPED)),
                None,
            )
            if blocked is not None:
                self._transition(
                    run, StageStatus.SKIPPED, stage=name,
                    message=f"dependency '{blocked}' {run.stages[blocked].status.value}",
                )
            elif not stage.enabled:
                self._transition(run, StageStatus.SKIPPED, stage=name, message="disabled")
            elif all(run.stages[dep].status == StageStatus.SUCCEEDED for dep in stage.dependencies):
                task = asyncio.create_task(self._run_stage(run, execution, stage))
                running[task] = name
                launched.add(name)

    def _skip_pending(self, run: Run, reason: str, exclude: Optional[set] = None) -> None:
        for name, record in run.stages.items():
            if record.status == StageStatus.PENDING and name not in (exclude or set()):
                self._transition(run, StageStatus.SKIPPED, stage=name, message=reason)

    def _finish(self, run: Run, reason: str = "") -> None:
        self._skip_pending(run, reason or ("cancelled" if run.cancel_requested else "not reached"))
        status = run.resolve_status()
        failure = run.first_failure()
        message = reason
        if failure is not None:
            message = f"first failure: {failure.name} ({failure.error_kind})"
        self._transition(run, status, message=message)

    # ============================================================
    # Stage execution
    # ============================================================

    async def _run_stage(self, run: Run, execution: _Execution, stage: StageDefinition) -> None:
        async with execution.semaphore:
            if execution.halted or run.cancel_requested:
                return

            policy = stage.retry_policy
            upstream = ancestors(execution.stages.values(), stage.name)
            attempt = 0
            try:
                while True:
                    attempt += 1
                    self._transition(run, StageStatus.RUNNING, stage=stage.name, attempts=attempt)
                    context = StageContext(
                        run_id=run.run_id,
                        pipeline=execution.pipeline,
                        stage=stage,
                        toolchain=self.toolchain,
                        outputs={
                            name: execution.outputs[name]
                            for name in execution.order
                            if name in execution.outputs and name in upstream
                        },
                        attempt=attempt,
                    )
                    try:
                        result = await self._invoke(stage, context)
                    except Exception as e:
                        terminal = getattr(e, "terminal", False)
                        if terminal or attempt > policy.retries or execution.halted:
                            record = error_record(e)
                            # set before the semaphore is released so no queued stage starts
                            if not execution.halted:
                                execution.halted = True
                                logger.error(f"Stage '{stage.name}' failed; no further stages will start")
                            self._transition(
                                run, StageStatus.FAILED, stage=stage.name,
                                message=record["message"],
                                error=record,
                                output_tail=record.get("detail") or "",
                            )
                            return
                        wait = policy.wait_time(attempt - 1)
                        logger.warning(
                            f"Stage '{stage.name}' attempt {attempt}/{policy.retries + 1} failed: {e}. "
                            f"Retrying in {wait:.1f}s"
                        )
                        await asyncio.sleep(wait)
                        continue

                    execution.outputs[stage.name] = result
                    summary, tail = summarize(result)
                    self._transition(
                        run, StageStatus.SUCCEEDED, stage=stage.name,
                        result=summary, output_tail=tail,
                    )
                    return
            except asyncio.CancelledError:
                if run.stages[stage.name].status == StageStatus.RUNNING:
                    self._transition(run, StageStatus.SKIPPED, stage=stage.name, message="interrupted")
                raise

    async def _invoke(self, stage: StageDefinition, context: StageContext) -> Any:
        if stage.action is None:
            return None
        timeout = stage.timeout if stage.timeout is not None else self.default_stage_timeout
        if timeout is None:
            return await stage.action(context)
        try:
            return await asyncio.wait_for(stage.action(context), timeout=timeout)
        except asyncio.TimeoutError:
            raise TimeoutExceeded(f"Stage '{stage.name}'", timeout)

    # ============================================================
    # Cross-process cancellation
    # ============================================================

    async def _watch_store(self, run: Run, execution: _Execution) -> None:
        while not run.is_terminal:
            await asyncio.sleep(self.cancel_poll_interval)
            request = self.store.cancel_request(run.run_id)
            if request and not run.cancel_requested and not run.is_terminal:
                logger.warning(f"Cancellation of {run.run_id} received through the run store")
                self._request_cancel(run, bool(request.get("drain")))
