"""
Pytest fixtures

In-memory fakes for the build, registry, cluster and provisioning collaborators.
"""

import hashlib
from typing import Dict, List, Optional

import pytest

from shipyard.cicd.builder import ArtifactBuilder, BuildCounter, BuildOutcome
from shipyard.cicd.deployer import DeploymentDriver, DeploymentTarget, RolloutObservation
from shipyard.cicd.provisioning import ProvisioningGate, ResourceObservation
from shipyard.cicd.publisher import RegistryCredentials, RegistryPublisher
from shipyard.core.async_utils import Backoff
from shipyard.core.exceptions import AuthFailure, RevisionNotFound
from shipyard.executor.step import StepExecutor
from shipyard.orchestration.actions import Toolchain


class FakeBuildBackend:
    def __init__(self, fail: bool = False, fail_tag: bool = False):
        self.fail = fail
        self.fail_tag = fail_tag
        self.images: Dict[str, str] = {}
        self.builds: List[str] = []

    def build(self, source: str, image_name: str, tag: str) -> BuildOutcome:
        reference = f"{image_name}:{tag}"
        self.builds.append(reference)
        if self.fail:
            log = "\n".join(f"step {i}" for i in range(30)) + "\nERROR: compilation failed"
            return BuildOutcome(success=False, log=log, reason="compilation failed")
        image_id = "sha256:" + hashlib.sha256(f"{source}".encode()).hexdigest()
        self.images[reference] = image_id
        return BuildOutcome(success=True, log="Successfully built", image_id=image_id)

    def tag(self, image_id: str, image_name: str, tag: str) -> None:
        if self.fail_tag:
            raise RuntimeError("tag refused")
        self.images[f"{image_name}:{tag}"] = image_id

    def untag(self, reference: str) -> None:
        self.images.pop(reference, None)


class FakeRegistry:
    """Registry keyed by reference; push copies the local digest to the remote side"""

    def __init__(self, password: str = "secret", push_errors: Optional[list] = None):
        self.password = password
        self.push_errors = list(push_errors or [])
        self.local: Dict[str, str] = {}
        self.remote: Dict[str, str] = {}
        self.logins = 0
        self.pushes: List[str] = []

    def login(self, credentials: RegistryCredentials) -> None:
        self.logins += 1
        if credentials.password != self.password:
            raise AuthFailure(credentials.registry, "unauthorized: incorrect username or password")

    def local_digest(self, reference: str) -> Optional[str]:
        return self.local.setdefault(reference, "sha256:" + hashlib.sha256(reference.split(":")[0].encode()).hexdigest())

    def remote_digest(self, reference: str, credentials: RegistryCredentials) -> Optional[str]:
        return self.remote.get(reference)

    def push(self, reference: str, credentials: RegistryCredentials) -> str:
        self.pushes.append(reference)
        if self.push_errors:
            raise self.push_errors.pop(0)
        self.remote[reference] = self.local_digest(reference)
        return self.remote[reference]


class FakeCluster:
    """Cluster whose status answers come from a script; the last entry repeats"""

    def __init__(self, observations: Optional[List[RolloutObservation]] = None, revisions: Optional[Dict[int, str]] = None):
        self.observations = list(observations or [])
        self.revisions = dict(revisions or {})
        self.revision = max(self.revisions) if self.revisions else 0
        self.generation = 1
        self.applied: List[str] = []
        self.rollbacks: List[Optional[int]] = []
        self.reads = 0

    def script(self, *observations: RolloutObservation) -> None:
        self.observations = list(observations)

    def apply(self, target: DeploymentTarget, image: str) -> int:
        self.applied.append(image)
        self.generation += 1
        self.revision += 1
        self.revisions[self.revision] = image
        return self.generation

    def read_status(self, target: DeploymentTarget) -> RolloutObservation:
        self.reads += 1
        if len(self.observations) > 1:
            return self.observations.pop(0)
        return self.observations[0]

    def current_revision(self, target: DeploymentTarget) -> Optional[int]:
        return self.revision or None

    def rollback(self, target: DeploymentTarget, to_revision: Optional[int]):
        self.rollbacks.append(to_revision)
        if to_revision is None:
            older = [rev for rev in self.revisions if rev < self.revision]
            if not older:
                raise RevisionNotFound(target.name, None)
            to_revision = max(older)
        elif to_revision not in self.revisions:
            raise RevisionNotFound(target.name, to_revision)
        self.generation += 1
        return to_revision, self.revisions[to_revision], self.generation


class FakeProvisioner:
    def __init__(self, observations: Optional[List[Optional[ResourceObservation]]] = None, create_error: Optional[Exception] = None):
        self.observations = list(observations or [None])
        self.create_error = create_error
        self.creates = 0
        self.describes = 0

    async def describe(self, spec):
        self.describes += 1
        if len(self.observations) > 1:
            return self.observations.pop(0)
        return self.observations[0]

    async def create(self, spec, timeout=None):
        self.creates += 1
        if self.create_error:
            raise self.create_error


def healthy(desired: int = 2, generation: int = 2) -> RolloutObservation:
    return RolloutObservation(
        desired=desired, ready=desired, updated=desired, available=desired,
        replicas=desired, generation=generation, observed_generation=generation,
    )


def progressing(desired: int = 2, ready: int = 1, generation: int = 2) -> RolloutObservation:
    return RolloutObservation(
        desired=desired, ready=ready, updated=ready, available=ready,
        replicas=desired, generation=generation, observed_generation=generation,
    )


async def always_reachable(address: str, port: int) -> bool:
    return True


@pytest.fixture
def executor():
    return StepExecutor(default_timeout=10)


@pytest.fixture
def build_backend():
    return FakeBuildBackend()


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def cluster():
    return FakeCluster([healthy()], revisions={1: "app:1"})


@pytest.fixture
def credentials():
    return RegistryCredentials(registry="registry.example.com", username="ci", password="secret")


@pytest.fixture
def target():
    return DeploymentTarget(name="web", namespace="apps", replicas=2)


@pytest.fixture
def toolchain(executor, build_backend, registry, cluster, credentials):
    return Toolchain(
        executor=executor,
        builder=ArtifactBuilder(build_backend, executor=executor, counter=BuildCounter()),
        publisher=RegistryPublisher(registry, executor=executor, max_retries=3, backoff=Backoff(delay=0.01)),
        driver=DeploymentDriver(cluster, executor=executor, poll_interval=0.01, timeout=0.5),
        gate=ProvisioningGate(FakeProvisioner(), poll_interval=0.01, timeout=0.2, reachable=always_reachable),
        credentials=lambda registry_name: credentials,
    )
