"""
Registry publisher
- Two explicit phases: authenticate, then push
- Bounded retry with exponential backoff on transient push failures only
- Idempotent: a tag whose remote digest already matches is a no-op
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Tuple

import docker
import requests
from docker.errors import APIError, ImageNotFound, NotFound

from shipyard.core.async_utils import Backoff, retry_async
from shipyard.core.exceptions import AuthFailure, PublishFailure, PublishRejected
from shipyard.core.logging import get_logger
from shipyard.executor.step import StepExecutor

from .builder import Artifact

logger = get_logger(__name__)

DEFAULT_REGISTRY = "docker.io"
REJECTION_MARKERS = ("unauthorized", "denied", "forbidden", "authentication required", "manifest invalid")


@dataclass(frozen=True)
class RegistryCredentials:
    """Scoped to one publish call; never stored in shared state"""
    registry: str
    username: str
    password: str = field(repr=False)

    def auth_config(self) -> Dict[str, str]:
        return {"username": self.username, "password": self.password}


@dataclass
class PublishResult:
    reference: str
    digest: str = ""
    pushed_tags: List[str] = field(default_factory=list)
    skipped_tags: List[str] = field(default_factory=list)
    attempts: int = 0

    @property
    def already_present(self) -> bool:
        return not self.pushed_tags and bool(self.skipped_tags)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "digest": self.digest,
            "pushed_tags": self.pushed_tags,
            "skipped_tags": self.skipped_tags,
            "attempts": self.attempts,
        }


class RegistryBackend(Protocol):
    def login(self, credentials: RegistryCredentials) -> None: ...

    def local_digest(self, reference: str) -> Optional[str]: ...

    def remote_digest(self, reference: str, credentials: RegistryCredentials) -> Optional[str]: ...

    def push(self, reference: str, credentials: RegistryCredentials) -> str: ...


def split_reference(reference: str) -> Tuple[str, str]:
    """'host:5000/app:7' -> ('host:5000/app', '7')"""
    repo, sep, tag = reference.rpartition(":")
    if not sep or "/" in tag:
        return reference, "latest"
    return repo, tag


def registry_host(image_name: str) -> str:
    """Registry host of an image name, docker.io when none is given"""
    first, sep, _ = image_name.partition("/")
    if sep and ("." in first or ":" in first or first == "localhost"):
        return first
    return DEFAULT_REGISTRY


def is_rejection(message: str) -> bool:
    lowered = (message or "").lower()
    return any(marker in lowered for marker in REJECTION_MARKERS)


class DockerRegistryBackend:
    """Registry collaborator backed by the Docker Engine API"""

    def __init__(self, client: Optional[docker.DockerClient] = None, base_url: Optional[str] = None):
        self._client = client
        self.base_url = base_url

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.DockerClient(base_url=self.base_url) if self.base_url else docker.from_env()
        return self._client

    def login(self, credentials: RegistryCredentials) -> None:
        try:
            self.client.login(
                username=credentials.username,
                password=credentials.password,
                registry=credentials.registry,
                reauth=True,
            )
        except APIError as e:
            raise AuthFailure(credentials.registry, e.explanation or str(e)) from e
        except requests.exceptions.RequestException as e:
            raise AuthFailure(credentials.registry, str(e)) from e

    def local_digest(self, reference: str) -> Optional[str]:
        repo, _ = split_reference(reference)
        try:
            image = self.client.images.get(reference)
        except ImageNotFound:
            return None
        for repo_digest in image.attrs.get("RepoDigests", []) or []:
            name, _, digest = repo_digest.partition("@")
            if name == repo:
                return digest
        return None

    def remote_digest(self, reference: str, credentials: RegistryCredentials) -> Optional[str]:
        try:
            data = self.client.images.get_registry_data(reference, auth_config=credentials.auth_config())
        except NotFound:
            return None
        except APIError as e:
            logger.debug(f"Registry lookup of {reference} failed, pushing anyway: {e}")
            return None
        return data.id

    def push(self, reference: str, credentials: RegistryCredentials) -> str:
        repo, tag = split_reference(reference)
        digest = ""
        try:
            stream = self.client.images.push(
                repo, tag=tag, stream=True, decode=True, auth_config=credentials.auth_config()
            )
            for line in stream:
                error = line.get("error") or (line.get("errorDetail") or {}).get("message")
                if error:
                    if is_rejection(error):
                        raise PublishRejected(reference, error)
                    raise PublishFailure(reference, error)
                aux = line.get("aux") or {}
                if aux.get("Digest"):
                    digest = aux["Digest"]
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as e:
            raise PublishFailure(reference, str(e)) from e
        except APIError as e:
            status = e.status_code or 0
            if status >= 500:
                raise PublishFailure(reference, e.explanation or str(e)) from e
            raise PublishRejected(reference, e.explanation or str(e)) from e
        return digest


class RegistryPublisher:
    """Authenticates and pushes a tagged artifact, idempotently"""

    def __init__(
        self,
        backend: RegistryBackend,
        executor: Optional[StepExecutor] = None,
        max_retries: int = 3,
        backoff: Optional[Backoff] = None,
        timeout: Optional[float] = None,
    ):
        self.backend = backend
        self.executor = executor or StepExecutor()
        self.max_retries = max_retries
        self.backoff = backoff or Backoff(delay=1.0, factor=2.0)
        self.timeout = timeout

    async def _push_once(self, reference: str, credentials: RegistryCredentials, result: PublishResult) -> str:
        result.attempts += 1
        return await self.executor.call(
            self.backend.push, reference, credentials,
            timeout=self.timeout, description=f"push {reference}",
        )

    async def publish(self, artifact: Artifact, credentials: RegistryCredentials) -> PublishResult:
        """Push the versioned tag and the :latest alias of *artifact*.

        Raises:
            AuthFailure: login failed; nothing was pushed
            PublishRejected: the registry refused the push (not retried)
            PublishFailure: transient failures outlasted the retry bound
        """
        # Phase 1: authenticate
        logger.info(f"Authenticating to {credentials.registry} as {credentials.username}")
        await self.executor.call(
            self.backend.login, credentials, timeout=self.timeout, description="registry login"
        )

        # Phase 2: push
        result = PublishResult(reference=artifact.reference)
        for tag in artifact.tags:
            reference = f"{artifact.image_name}:{tag}"
            local = await self.executor.call(self.backend.local_digest, reference, description="local digest")
            remote = await self.executor.call(
                self.backend.remote_digest, reference, credentials, description="remote digest"
            )
            if local and remote and local == remote:
                logger.info(f"{reference} already present in registry ({remote}), skipping push")
                result.skipped_tags.append(tag)
                result.digest = result.digest or remote
                continue

            digest = await retry_async(
                self._push_once,
                reference,
                credentials,
                result,
                max_retries=self.max_retries,
                backoff=self.backoff,
            )
            logger.info(f"Pushed {reference} ({digest or 'digest unknown'})")
            result.pushed_tags.append(tag)
            result.digest = result.digest or digest

        return result
