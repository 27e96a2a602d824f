"""
Stage actions

- Toolchain: the components a run delegates to (executor, builder, publisher, driver, gate)
- StageContext: what one stage invocation sees (its params, upstream outputs)
- One coroutine per declarative stage kind: run, build, publish, deploy, rollback
"""

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, TypeVar

from shipyard.cicd.builder import Artifact, ArtifactBuilder, BuildCounter, DockerBuildBackend, TagStrategy
from shipyard.cicd.deployer import DeploymentDriver, DeploymentTarget, KubernetesClusterBackend
from shipyard.cicd.provisioning import ProvisioningGate, TerraformBackend
from shipyard.cicd.publisher import (
    DockerRegistryBackend,
    RegistryCredentials,
    RegistryPublisher,
    registry_host,
)
from shipyard.core.async_utils import Backoff
from shipyard.core.config import Settings
from shipyard.core.exceptions import AuthFailure, PipelineDefinitionError
from shipyard.core.logging import get_logger
from shipyard.executor.step import StepExecutor, StepOutput

from .models import PROVISION_STAGE, PipelineDefinition, StageDefinition

logger = get_logger(__name__)

T = TypeVar("T")

CredentialsProvider = Callable[[str], RegistryCredentials]


def settings_credentials(settings: Settings) -> CredentialsProvider:
    """Credentials provider reading SHIPYARD_REGISTRY_USERNAME / _PASSWORD"""

    def provide(registry: str) -> RegistryCredentials:
        if not settings.registry_username or settings.registry_password is None:
            raise AuthFailure(registry, "no registry credentials configured")
        return RegistryCredentials(
            registry=registry,
            username=settings.registry_username,
            password=settings.registry_password.get_secret_value(),
        )

    return provide


@dataclass
class Toolchain:
    executor: StepExecutor = field(default_factory=StepExecutor)
    builder: Optional[ArtifactBuilder] = None
    publisher: Optional[RegistryPublisher] = None
    driver: Optional[DeploymentDriver] = None
    gate: Optional[ProvisioningGate] = None
    credentials: Optional[CredentialsProvider] = None

    @classmethod
    def from_settings(
        cls, settings: Settings, pipeline: Optional[PipelineDefinition] = None
    ) -> "Toolchain":
        """Wire the Docker, Kubernetes and Terraform backed components"""
        executor = StepExecutor(default_timeout=settings.default_step_timeout)

        gate = None
        if pipeline is not None and pipeline.infrastructure is not None:
            gate = ProvisioningGate(
                TerraformBackend(
                    pipeline.infrastructure_dir or ".",
                    executor=executor,
                    binary=settings.terraform_binary,
                ),
                poll_interval=settings.provision_poll_interval,
                timeout=settings.provision_timeout,
            )

        return cls(
            executor=executor,
            builder=ArtifactBuilder(
                DockerBuildBackend(base_url=settings.docker_base_url),
                executor=executor,
                counter=BuildCounter(settings.state_dir),
                tag_strategy=TagStrategy(settings.tag_strategy),
            ),
            publisher=RegistryPublisher(
                DockerRegistryBackend(base_url=settings.docker_base_url),
                executor=executor,
                max_retries=settings.publish_max_retries,
                backoff=Backoff(settings.publish_backoff, settings.publish_backoff_factor),
            ),
            driver=DeploymentDriver(
                KubernetesClusterBackend(context=settings.kube_context, in_cluster=settings.kube_in_cluster),
                executor=executor,
                poll_interval=settings.rollout_poll_interval,
                timeout=settings.rollout_timeout,
            ),
            gate=gate,
            credentials=settings_credentials(settings),
        )

    def require(self, component: str) -> Any:
        value = getattr(self, component)
        if value is None:
            raise PipelineDefinitionError(f"No {component} is configured for this run")
        return value


@dataclass
class StageContext:
    run_id: str
    pipeline: PipelineDefinition
    stage: StageDefinition
    toolchain: Toolchain
    outputs: Dict[str, Any] = field(default_factory=dict)
    attempt: int = 1

    @property
    def params(self) -> Dict[str, Any]:
        return self.stage.params

    def find_output(self, kind: Type[T]) -> Optional[T]:
        """Most recent upstream output of type *kind*"""
        for value in reversed(list(self.outputs.values())):
            if isinstance(value, kind):
                return value
        return None

    def target(self, name: str) -> DeploymentTarget:
        try:
            return self.pipeline.targets[name]
        except KeyError:
            raise PipelineDefinitionError(
                f"Stage '{self.stage.name}' references unknown target '{name}'"
            ) from None


# ============================================================
# Actions
# ============================================================

async def run_command(ctx: StageContext) -> StepOutput:
    return await ctx.toolchain.executor.execute(
        ctx.params["command"],
        timeout=ctx.stage.timeout,
        env=ctx.params.get("env") or None,
        cwd=ctx.params.get("cwd"),
    )


async def build_image(ctx: StageContext) -> Artifact:
    builder: ArtifactBuilder = ctx.toolchain.require("builder")
    return await builder.build(
        ctx.params.get("context", "."),
        ctx.params["image"],
        build_number=ctx.params.get("build_number"),
    )


def _artifact_for(ctx: StageContext) -> Artifact:
    artifact = ctx.find_output(Artifact)
    if artifact is not None:
        return artifact
    if ctx.params.get("image") and ctx.params.get("tag"):
        return Artifact(image_name=ctx.params["image"], tag=str(ctx.params["tag"]), source_digest="")
    raise PipelineDefinitionError(
        f"Stage '{ctx.stage.name}' has no upstream build and no explicit image/tag"
    )


async def publish_artifact(ctx: StageContext):
    publisher: RegistryPublisher = ctx.toolchain.require("publisher")
    provide: CredentialsProvider = ctx.toolchain.require("credentials")
    artifact = _artifact_for(ctx)
    registry = ctx.params.get("registry") or registry_host(artifact.image_name)
    return await publisher.publish(artifact, provide(registry))


async def deploy_target(ctx: StageContext):
    driver: DeploymentDriver = ctx.toolchain.require("driver")
    target = ctx.target(ctx.params["target"])
    image = ctx.params.get("image") or _artifact_for(ctx).reference
    result = await driver.deploy(target, image, timeout=ctx.params.get("rollout_timeout"))
    return result.raise_for_state()


async def rollback_target(ctx: StageContext):
    driver: DeploymentDriver = ctx.toolchain.require("driver")
    target = ctx.target(ctx.params["target"])
    result = await driver.rollback(
        target, ctx.params.get("to_revision"), timeout=ctx.params.get("rollout_timeout")
    )
    return result.raise_for_state()


async def ensure_infrastructure(ctx: StageContext):
    gate: ProvisioningGate = ctx.toolchain.require("gate")
    return await gate.ensure_ready(
        ctx.pipeline.infrastructure,
        timeout=ctx.pipeline.infrastructure_timeout,
        create_missing=ctx.pipeline.create_missing,
    )


ACTIONS = {
    "run": run_command,
    "build": build_image,
    "publish": publish_artifact,
    "deploy": deploy_target,
    "rollback": rollback_target,
}


def with_provisioning(pipeline: PipelineDefinition) -> List[StageDefinition]:
    """Stages of *pipeline*, gated behind the provisioning check when it declares infrastructure"""
    if pipeline.infrastructure is None:
        return list(pipeline.stages)

    gate = StageDefinition(
        name=PROVISION_STAGE,
        action=ensure_infrastructure,
        kind="provision",
        description=f"ensure '{pipeline.infrastructure.name}' is ready",
    )
    return [gate] + [
        stage if stage.dependencies else replace(stage, dependencies=[PROVISION_STAGE])
        for stage in pipeline.stages
    ]


def summarize(result: Any) -> Tuple[Optional[Dict[str, Any]], str]:
    """Record-friendly form of a stage result: (result dict, output tail)"""
    if isinstance(result, StepOutput):
        return result.to_dict(), result.tail()
    if hasattr(result, "to_dict"):
        return result.to_dict(), ""
    if isinstance(result, dict):
        return result, ""
    return None, "" if result is None else str(result)[-2000:]
