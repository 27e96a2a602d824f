"""
Deployment driver
- Phase 1: apply the new image (replicas, rolling-update strategy) to the target
- Phase 2: poll rollout status until Healthy, TimedOut or Degraded
- Explicit rollback to a previous ReplicaSet revision, same polling state machine

Cluster state is never cached: every decision re-reads observed status.
"""

import copy
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Tuple, Union

import yaml
from kubernetes import client as k8s_client, config as k8s_config
from kubernetes.client.rest import ApiException

from shipyard.core.async_utils import Deadline
from shipyard.core.exceptions import RevisionNotFound, RolloutDegraded, RolloutTimedOut
from shipyard.core.logging import get_logger
from shipyard.executor.step import StepExecutor

from .builder import Artifact

logger = get_logger(__name__)

REVISION_ANNOTATION = "deployment.kubernetes.io/revision"
POD_TEMPLATE_HASH = "pod-template-hash"


class RolloutState(str, Enum):
    APPLYING = "applying"
    ROLLING_OUT = "rolling_out"
    HEALTHY = "healthy"
    TIMED_OUT = "timed_out"
    DEGRADED = "degraded"


def resolve_int_or_percent(value: Union[int, str], total: int, round_up: bool) -> int:
    """Kubernetes IntOrString semantics: '25%' of total, or an absolute count"""
    if isinstance(value, str) and value.endswith("%"):
        scaled = int(value[:-1]) * total / 100
        return int(-(-scaled // 1)) if round_up else int(scaled // 1)
    return int(value)


@dataclass
class DeploymentTarget:
    name: str
    namespace: str = "default"
    deployment: str = ""
    container: str = ""
    replicas: int = 1
    max_surge: Union[int, str] = 1
    max_unavailable: Union[int, str] = 0
    manifest: Optional[str] = None

    def __post_init__(self):
        self.deployment = self.deployment or self.name
        self.container = self.container or self.deployment

    def unavailable_allowance(self, desired: int) -> int:
        # maxUnavailable rounds down, as the deployment controller does
        return resolve_int_or_percent(self.max_unavailable, desired, round_up=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "namespace": self.namespace,
            "deployment": self.deployment,
            "container": self.container,
            "replicas": self.replicas,
            "max_surge": self.max_surge,
            "max_unavailable": self.max_unavailable,
            "manifest": self.manifest,
        }


@dataclass
class RolloutObservation:
    """Status query response of the cluster collaborator"""
    desired: int
    ready: int
    updated: int
    available: int = 0
    replicas: int = 0
    generation: int = 0
    observed_generation: int = 0

    def is_complete(self, generation: Optional[int]) -> bool:
        if generation is not None and self.observed_generation < generation:
            return False
        return (
            self.updated == self.desired
            and self.ready == self.desired
            and self.available == self.desired
            and self.replicas == self.desired
        )

    def to_dict(self) -> Dict[str, int]:
        return {
            "desired": self.desired,
            "ready": self.ready,
            "updated": self.updated,
            "available": self.available,
            "replicas": self.replicas,
            "generation": self.generation,
            "observed_generation": self.observed_generation,
        }


@dataclass
class RolloutResult:
    target: str
    image: str
    state: RolloutState
    operation: str = "deploy"
    revision: Optional[int] = None
    duration: float = 0.0
    message: str = ""
    observations: List[RolloutObservation] = field(default_factory=list)
    finished_at: datetime = field(default_factory=datetime.now)

    @property
    def healthy(self) -> bool:
        return self.state == RolloutState.HEALTHY

    @property
    def last_observation(self) -> Optional[RolloutObservation]:
        return self.observations[-1] if self.observations else None

    def raise_for_state(self) -> "RolloutResult":
        """Turn TimedOut / Degraded into the matching exception"""
        detail = self.message or None
        if self.state == RolloutState.TIMED_OUT:
            raise RolloutTimedOut(self.target, self.duration, detail)
        if self.state == RolloutState.DEGRADED:
            raise RolloutDegraded(self.target, detail)
        return self

    def to_dict(self) -> Dict[str, Any]:
        last = self.last_observation
        return {
            "target": self.target,
            "image": self.image,
            "state": self.state.value,
            "operation": self.operation,
            "revision": self.revision,
            "duration": round(self.duration, 3),
            "message": self.message,
            "last_observation": last.to_dict() if last else None,
            "polls": len(self.observations),
        }


class ClusterBackend(Protocol):
    def apply(self, target: DeploymentTarget, image: str) -> int: ...

    def read_status(self, target: DeploymentTarget) -> RolloutObservation: ...

    def current_revision(self, target: DeploymentTarget) -> Optional[int]: ...

    def rollback(self, target: DeploymentTarget, to_revision: Optional[int]) -> Tuple[int, str, int]: ...


def render_manifest(target: DeploymentTarget, image: str) -> Dict[str, Any]:
    """Load the target's Deployment manifest and stamp image, replicas and strategy"""
    with open(Path(target.manifest), "r", encoding="utf-8") as f:
        documents = [doc for doc in yaml.safe_load_all(f) if doc]

    deployment = next((doc for doc in documents if doc.get("kind") == "Deployment"), None)
    if deployment is None:
        raise ValueError(f"No Deployment found in manifest {target.manifest}")

    body = copy.deepcopy(deployment)
    body.setdefault("metadata", {})["name"] = target.deployment
    body["metadata"]["namespace"] = target.namespace
    spec = body.setdefault("spec", {})
    spec["replicas"] = target.replicas
    spec["strategy"] = _strategy(target)

    containers = spec.get("template", {}).get("spec", {}).get("containers", [])
    if not containers:
        raise ValueError(f"Deployment in {target.manifest} declares no containers")
    container = next((c for c in containers if c.get("name") == target.container), containers[0])
    container["image"] = image
    return body


def _strategy(target: DeploymentTarget) -> Dict[str, Any]:
    return {
        "type": "RollingUpdate",
        "rollingUpdate": {
            "maxSurge": target.max_surge,
            "maxUnavailable": target.max_unavailable,
        },
    }


class KubernetesClusterBackend:
    """Cluster collaborator backed by the Kubernetes API"""

    def __init__(
        self,
        apps_api: Optional[k8s_client.AppsV1Api] = None,
        context: Optional[str] = None,
        in_cluster: bool = False,
    ):
        self._apps = apps_api
        self.context = context
        self.in_cluster = in_cluster

    @property
    def apps(self) -> k8s_client.AppsV1Api:
        if self._apps is None:
            if self.in_cluster:
                k8s_config.load_incluster_config()
            else:
                k8s_config.load_kube_config(context=self.context)
            self._apps = k8s_client.AppsV1Api()
        return self._apps

    def apply(self, target: DeploymentTarget, image: str) -> int:
        body = {
            "spec": {
                "replicas": target.replicas,
                "strategy": _strategy(target),
                "template": {
                    "spec": {"containers": [{"name": target.container, "image": image}]}
                },
            }
        }
        try:
            deployment = self.apps.patch_namespaced_deployment(
                name=target.deployment, namespace=target.namespace, body=body
            )
        except ApiException as e:
            if e.status != 404 or not target.manifest:
                raise
            logger.info(f"Deployment {target.namespace}/{target.deployment} not found, creating from {target.manifest}")
            deployment = self.apps.create_namespaced_deployment(
                namespace=target.namespace, body=render_manifest(target, image)
            )
        return deployment.metadata.generation or 0

    def read_status(self, target: DeploymentTarget) -> RolloutObservation:
        deployment = self.apps.read_namespaced_deployment_status(
            name=target.deployment, namespace=target.namespace
        )
        status = deployment.status
        desired = deployment.spec.replicas if deployment.spec.replicas is not None else 1
        return RolloutObservation(
            desired=desired,
            ready=status.ready_replicas or 0,
            updated=status.updated_replicas or 0,
            available=status.available_replicas or 0,
            replicas=status.replicas or 0,
            generation=deployment.metadata.generation or 0,
            observed_generation=status.observed_generation or 0,
        )

    def current_revision(self, target: DeploymentTarget) -> Optional[int]:
        deployment = self.apps.read_namespaced_deployment(
            name=target.deployment, namespace=target.namespace
        )
        value = (deployment.metadata.annotations or {}).get(REVISION_ANNOTATION)
        return int(value) if value else None

    def _revisions(self, deployment) -> Dict[int, Any]:
        labels = deployment.spec.selector.match_labels or {}
        selector = ",".join(f"{k}={v}" for k, v in sorted(labels.items()))
        replica_sets = self.apps.list_namespaced_replica_set(
            namespace=deployment.metadata.namespace, label_selector=selector
        ).items

        revisions = {}
        for rs in replica_sets:
            owners = rs.metadata.owner_references or []
            if not any(ref.uid == deployment.metadata.uid for ref in owners):
                continue
            value = (rs.metadata.annotations or {}).get(REVISION_ANNOTATION)
            if value:
                revisions[int(value)] = rs
        return revisions

    def rollback(self, target: DeploymentTarget, to_revision: Optional[int]) -> Tuple[int, str, int]:
        """Re-apply the pod template of an older ReplicaSet (what `kubectl rollout undo` does)"""
        deployment = self.apps.read_namespaced_deployment(
            name=target.deployment, namespace=target.namespace
        )
        current = int((deployment.metadata.annotations or {}).get(REVISION_ANNOTATION, 0) or 0)
        revisions = self._revisions(deployment)

        if to_revision is None:
            older = [rev for rev in revisions if rev < current]
            if not older:
                raise RevisionNotFound(target.name, None)
            to_revision = max(older)
        elif to_revision not in revisions:
            raise RevisionNotFound(target.name, to_revision)

        template = self.apps.api_client.sanitize_for_serialization(revisions[to_revision].spec.template)
        template.get("metadata", {}).get("labels", {}).pop(POD_TEMPLATE_HASH, None)

        # a list body is sent as a JSON patch, replacing the template wholesale
        patched = self.apps.patch_namespaced_deployment(
            name=target.deployment,
            namespace=target.namespace,
            body=[{"op": "replace", "path": "/spec/template", "value": template}],
        )

        containers = template.get("spec", {}).get("containers", [])
        container = next((c for c in containers if c.get("name") == target.container), containers[0] if containers else {})
        return to_revision, container.get("image", ""), patched.metadata.generation or 0


class DeploymentDriver:
    """Applies desired state and supervises the rollout"""

    def __init__(
        self,
        cluster: ClusterBackend,
        executor: Optional[StepExecutor] = None,
        poll_interval: float = 5.0,
        timeout: float = 300.0,
    ):
        self.cluster = cluster
        self.executor = executor or StepExecutor()
        self.poll_interval = poll_interval
        self.timeout = timeout

    async def deploy(
        self,
        target: DeploymentTarget,
        artifact: Union[Artifact, str],
        timeout: Optional[float] = None,
    ) -> RolloutResult:
        image = artifact.reference if isinstance(artifact, Artifact) else str(artifact)
        logger.info(f"[{RolloutState.APPLYING.value}] {target.namespace}/{target.deployment} -> {image}")
        generation = await self.executor.call(
            self.cluster.apply, target, image, description=f"apply {target.name}"
        )
        result = await self._await_rollout(target, image, generation, "deploy", timeout)
        result.revision = await self.executor.call(
            self.cluster.current_revision, target, description="current revision"
        )
        return result

    async def rollback(
        self,
        target: DeploymentTarget,
        to_revision: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> RolloutResult:
        """Explicit rollback; never triggered automatically"""
        logger.info(
            f"[{RolloutState.APPLYING.value}] rollback of {target.namespace}/{target.deployment} "
            f"to {'revision ' + str(to_revision) if to_revision is not None else 'previous revision'}"
        )
        revision, image, generation = await self.executor.call(
            self.cluster.rollback, target, to_revision, description=f"rollback {target.name}"
        )
        result = await self._await_rollout(target, image, generation, "rollback", timeout)
        result.revision = revision
        return result

    async def _await_rollout(
        self,
        target: DeploymentTarget,
        image: str,
        generation: Optional[int],
        operation: str,
        timeout: Optional[float],
    ) -> RolloutResult:
        timeout = timeout if timeout is not None else self.timeout
        deadline = Deadline(timeout)
        started = time.monotonic()
        observations: List[RolloutObservation] = []
        threshold_met = False
        state = RolloutState.ROLLING_OUT
        message = ""

        logger.info(f"[{state.value}] waiting for {target.name} (timeout={timeout:g}s)")
        while True:
            observation = await self.executor.call(
                self.cluster.read_status, target, description=f"status {target.name}"
            )
            observations.append(observation)
            floor = max(observation.desired - target.unavailable_allowance(observation.desired), 0)
            progress = f"{observation.ready}/{observation.desired} ready, {observation.updated} updated"

            if observation.is_complete(generation):
                state = RolloutState.HEALTHY
                message = progress
                break

            if observation.ready >= floor:
                threshold_met = True
            elif threshold_met:
                state = RolloutState.DEGRADED
                message = f"{progress}; below minimum of {floor} ready"
                break

            if deadline.expired:
                state = RolloutState.TIMED_OUT
                message = progress
                break

            logger.debug(f"[{state.value}] {target.name}: {progress}")
            await deadline.sleep(self.poll_interval)

        result = RolloutResult(
            target=target.name,
            image=image,
            state=state,
            operation=operation,
            duration=time.monotonic() - started,
            message=message,
            observations=observations,
        )
        log = logger.info if result.healthy else logger.error
        log(f"[{state.value}] {operation} of {target.name}: {message} after {result.duration:.1f}s")
        return result
