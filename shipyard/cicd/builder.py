"""
Artifact builder
- Container image build through the Docker Engine API
- Deterministic tagging: <image>:<build number> plus floating :latest
- Source digest over the build context
"""

import hashlib
import json
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol

import docker
from docker.errors import APIError, BuildError

from shipyard.core.exceptions import BuildFailure
from shipyard.core.logging import get_logger
from shipyard.executor.step import StepExecutor

logger = get_logger(__name__)

LATEST_TAG = "latest"
LOG_TAIL_LINES = 20


class TagStrategy(str, Enum):
    BUILD_NUMBER = "build_number"
    CONTENT = "content"


@dataclass
class Artifact:
    image_name: str
    tag: str
    source_digest: str
    image_id: str = ""
    build_number: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def reference(self) -> str:
        return f"{self.image_name}:{self.tag}"

    @property
    def latest_reference(self) -> str:
        return f"{self.image_name}:{LATEST_TAG}"

    @property
    def tags(self) -> List[str]:
        return [self.tag, LATEST_TAG]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "image_name": self.image_name,
            "tag": self.tag,
            "reference": self.reference,
            "source_digest": self.source_digest,
            "image_id": self.image_id,
            "build_number": self.build_number,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class BuildOutcome:
    """Response of the build collaborator"""
    success: bool
    log: str = ""
    image_id: str = ""
    reason: str = ""


class BuildBackend(Protocol):
    def build(self, source: str, image_name: str, tag: str) -> BuildOutcome: ...

    def tag(self, image_id: str, image_name: str, tag: str) -> None: ...

    def untag(self, reference: str) -> None: ...


def log_tail(log: str, lines: int = LOG_TAIL_LINES) -> str:
    return "\n".join(log.splitlines()[-lines:])


def compute_source_digest(source_ref: str) -> str:
    """SHA-256 over sorted relative paths and file bytes of the build context.

    Non-directory references (remote contexts) hash the reference itself.
    """
    root = Path(source_ref)
    digest = hashlib.sha256()
    if not root.is_dir():
        digest.update(source_ref.encode("utf-8"))
        return digest.hexdigest()

    files = []
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d != ".git")
        for name in filenames:
            files.append(Path(dirpath) / name)

    for path in sorted(files, key=lambda p: p.relative_to(root).as_posix()):
        digest.update(path.relative_to(root).as_posix().encode("utf-8"))
        digest.update(b"\0")
        with open(path, "rb") as f:
            for chunk in iter(lambda: f.read(65536), b""):
                digest.update(chunk)
        digest.update(b"\0")
    return digest.hexdigest()


class BuildCounter:
    """Per-image monotonically increasing build numbers

    Persisted under the state directory when one is given.
    """

    FILENAME = "build_counters.json"

    def __init__(self, state_dir: Optional[str] = None):
        self.path = Path(state_dir) / self.FILENAME if state_dir else None
        self._counters: Dict[str, int] = {}
        self._lock = threading.Lock()
        if self.path and self.path.exists():
            with open(self.path, "r", encoding="utf-8") as f:
                self._counters = json.load(f)

    def current(self, image_name: str) -> int:
        return self._counters.get(image_name, 0)

    def next(self, image_name: str) -> int:
        with self._lock:
            value = self._counters.get(image_name, 0) + 1
            self._counters[image_name] = value
            self._save()
            return value

    def _save(self) -> None:
        if not self.path:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(self._counters, f, indent=2)
        os.replace(tmp, self.path)


class DockerBuildBackend:
    """Build collaborator backed by the Docker Engine API"""

    def __init__(self, client: Optional[docker.DockerClient] = None, base_url: Optional[str] = None):
        self._client = client
        self.base_url = base_url

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.DockerClient(base_url=self.base_url) if self.base_url else docker.from_env()
        return self._client

    @staticmethod
    def _render_log(chunks: Iterable[Dict[str, Any]]) -> str:
        lines = []
        for chunk in chunks or []:
            if "stream" in chunk:
                lines.append(chunk["stream"].rstrip("\n"))
            elif "error" in chunk:
                lines.append(f"ERROR: {chunk['error']}")
            elif "status" in chunk:
                lines.append(chunk["status"])
        return "\n".join(line for line in lines if line)

    def build(self, source: str, image_name: str, tag: str) -> BuildOutcome:
        reference = f"{image_name}:{tag}"
        try:
            image, logs = self.client.images.build(path=source, tag=reference, rm=True)
        except BuildError as e:
            return BuildOutcome(success=False, log=self._render_log(e.build_log), reason=e.msg)
        except APIError as e:
            return BuildOutcome(success=False, log=str(e), reason="docker API error")
        return BuildOutcome(success=True, log=self._render_log(logs), image_id=image.id)

    def tag(self, image_id: str, image_name: str, tag: str) -> None:
        image = self.client.images.get(image_id)
        if not image.tag(image_name, tag=tag):
            raise RuntimeError(f"Docker refused to tag {image_id} as {image_name}:{tag}")

    def untag(self, reference: str) -> None:
        self.client.images.remove(reference, noprune=True)


class ArtifactBuilder:
    """Runs the container build and tags the result deterministically"""

    def __init__(
        self,
        backend: BuildBackend,
        executor: Optional[StepExecutor] = None,
        counter: Optional[BuildCounter] = None,
        tag_strategy: TagStrategy = TagStrategy.BUILD_NUMBER,
        timeout: Optional[float] = None,
    ):
        self.backend = backend
        self.executor = executor or StepExecutor()
        self.counter = counter or BuildCounter()
        self.tag_strategy = TagStrategy(tag_strategy)
        self.timeout = timeout

    def _resolve_tag(self, image_name: str, source_digest: str, build_number: Optional[int]) -> tuple:
        if self.tag_strategy == TagStrategy.CONTENT:
            return source_digest[:12], build_number
        if build_number is None:
            build_number = self.counter.next(image_name)
        return str(build_number), build_number

    async def build(
        self,
        source_ref: str,
        image_name: str,
        build_number: Optional[int] = None,
    ) -> Artifact:
        """Build *source_ref* into *image_name* and apply both tags.

        Raises:
            BuildFailure: the build tool failed, or the :latest alias could not
                be applied (the versioned tag is removed again in that case)
        """
        source_digest = await self.executor.call(
            compute_source_digest, source_ref, description="source digest"
        )
        tag, build_number = self._resolve_tag(image_name, source_digest, build_number)
        reference = f"{image_name}:{tag}"
        logger.info(f"Building {reference} from {source_ref}")

        outcome = await self.executor.call(
            self.backend.build, source_ref, image_name, tag,
            timeout=self.timeout, description=f"build {reference}",
        )
        if not outcome.success:
            logger.error(f"Build of {reference} failed: {outcome.reason}")
            raise BuildFailure(image_name, log_tail(outcome.log), outcome.reason or "build failed")

        try:
            await self.executor.call(
                self.backend.tag, outcome.image_id, image_name, LATEST_TAG,
                description=f"tag {image_name}:{LATEST_TAG}",
            )
        except Exception as e:
            logger.error(f"Could not alias {reference} as {LATEST_TAG}: {e}; removing {reference}")
            try:
                await self.executor.call(self.backend.untag, reference, description=f"untag {reference}")
            except Exception as cleanup_error:
                logger.warning(f"Cleanup of {reference} failed: {cleanup_error}")
            raise BuildFailure(image_name, log_tail(outcome.log), f"failed to apply :{LATEST_TAG} alias") from e

        artifact = Artifact(
            image_name=image_name,
            tag=tag,
            source_digest=source_digest,
            image_id=outcome.image_id,
            build_number=build_number,
        )
        logger.info(f"Built {artifact.reference} ({artifact.image_id}) and {artifact.latest_reference}")
        return artifact
