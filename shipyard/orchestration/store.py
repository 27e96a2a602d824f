"""
Run store

JSON records under <state_dir>/runs so that `status` and `cancel` work from
another process. Without a state directory the store keeps runs in memory.
Cancellation requests live beside the records under <state_dir>/cancel, and
per-pipeline single-flight locks under <state_dir>/locks.
"""

import fcntl
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from shipyard.core.exceptions import RunNotFound
from shipyard.core.logging import get_logger

from .models import Run

logger = get_logger(__name__)


def _atomic_write(path: Path, data: Dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2, ensure_ascii=False, default=str)
    os.replace(tmp, path)


class RunStore:
    """Persists run records and cancellation requests"""

    def __init__(self, state_dir: Optional[str] = None):
        self.state_dir = Path(state_dir) if state_dir else None
        self._runs: Dict[str, Dict[str, Any]] = {}
        self._cancels: Dict[str, Dict[str, Any]] = {}

    @property
    def persistent(self) -> bool:
        return self.state_dir is not None

    def _run_path(self, run_id: str) -> Path:
        return self.state_dir / "runs" / f"{run_id}.json"

    def _cancel_path(self, run_id: str) -> Path:
        return self.state_dir / "cancel" / f"{run_id}.json"

    def save(self, run: Run) -> None:
        data = run.to_dict()
        if self.persistent:
            _atomic_write(self._run_path(run.run_id), data)
        else:
            self._runs[run.run_id] = data

    def load(self, run_id: str) -> Run:
        if not self.persistent:
            if run_id not in self._runs:
                raise RunNotFound(run_id)
            return Run.from_dict(self._runs[run_id])

        path = self._run_path(run_id)
        if not path.exists():
            raise RunNotFound(run_id)
        with open(path, "r", encoding="utf-8") as f:
            return Run.from_dict(json.load(f))

    def list_runs(self, pipeline_id: Optional[str] = None, limit: int = 20) -> List[Run]:
        """Most recent runs first"""
        if self.persistent:
            run_dir = self.state_dir / "runs"
            paths = sorted(run_dir.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True) if run_dir.exists() else []
            runs = []
            for path in paths:
                with open(path, "r", encoding="utf-8") as f:
                    runs.append(Run.from_dict(json.load(f)))
        else:
            runs = [Run.from_dict(data) for data in reversed(list(self._runs.values()))]

        if pipeline_id:
            runs = [run for run in runs if run.pipeline_id == pipeline_id]
        return runs[:limit]

    def request_cancel(self, run_id: str, drain: bool = False) -> bool:
        """Record a cancellation request for the process running *run_id*

        Returns False when the run has already finished.
        """
        run = self.load(run_id)
        if run.is_terminal:
            logger.info(f"Run {run_id} already {run.status.value}, nothing to cancel")
            return False

        request = {"run_id": run_id, "drain": drain, "requested_at": datetime.now().isoformat()}
        if self.persistent:
            _atomic_write(self._cancel_path(run_id), request)
        else:
            self._cancels[run_id] = request
        logger.info(f"Cancellation of {run_id} requested{' (drain)' if drain else ''}")
        return True

    def cancel_request(self, run_id: str) -> Optional[Dict[str, Any]]:
        if not self.persistent:
            return self._cancels.get(run_id)
        path = self._cancel_path(run_id)
        if not path.exists():
            return None
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def clear_cancel(self, run_id: str) -> None:
        if not self.persistent:
            self._cancels.pop(run_id, None)
            return
        try:
            self._cancel_path(run_id).unlink()
        except FileNotFoundError:
            pass

    # ============================================================
    # Single-flight locks
    # ============================================================

    def _lock_path(self, pipeline_id: str) -> Path:
        return self.state_dir / "locks" / f"{pipeline_id}.lock"

    def try_lock(self, pipeline_id: str, run_id: str) -> Optional["PipelineLock"]:
        """Take the pipeline's lock for *run_id*, or None while another holder has it

        The lock is an flock on <state_dir>/locks/<pipeline>.lock, so it also
        excludes runs started by other processes sharing the state directory.
        An in-memory store hands out a lock that excludes nothing.
        """
        if not self.persistent:
            return PipelineLock(pipeline_id)

        path = self._lock_path(pipeline_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            os.close(fd)
            return None

        os.ftruncate(fd, 0)
        os.write(fd, run_id.encode("utf-8"))
        return PipelineLock(pipeline_id, fd)

    def lock_holder(self, pipeline_id: str) -> Optional[str]:
        """Run id recorded by the last holder of the pipeline's lock"""
        if not self.persistent:
            return None
        try:
            return self._lock_path(pipeline_id).read_text(encoding="utf-8").strip() or None
        except FileNotFoundError:
            return None


class PipelineLock:
    """A held single-flight lock; released once the run finishes"""

    def __init__(self, pipeline_id: str, fd: Optional[int] = None):
        self.pipeline_id = pipeline_id
        self._fd = fd

    def release(self) -> None:
        if self._fd is None:
            return
        fd, self._fd = self._fd, None
        try:
            os.ftruncate(fd, 0)
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
