"""
Pipeline definition loader

YAML document -> pydantic schema validation -> PipelineDefinition.
Every problem surfaces as PipelineDefinitionError before anything runs.
"""

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from shipyard.cicd.deployer import DeploymentTarget
from shipyard.cicd.provisioning import InfrastructureSpec
from shipyard.core.config import get_settings
from shipyard.core.exceptions import PipelineDefinitionError
from shipyard.core.logging import get_logger

from .actions import ACTIONS
from .dag import validate_graph
from .models import PROVISION_STAGE, OnBusy, PipelineDefinition, RetryPolicy, StageDefinition

logger = get_logger(__name__)

NAME_PATTERN = r"^[A-Za-z0-9][A-Za-z0-9_.-]*$"
REQUIRED_PARAMS = {
    "build": ("image",),
    "deploy": ("target",),
    "rollback": ("target",),
}


# ============================================================
# Document schema
# ============================================================

IntOrPercent = Union[int, str]


def _check_int_or_percent(value: IntOrPercent) -> IntOrPercent:
    if isinstance(value, str):
        number = value[:-1] if value.endswith("%") else ""
        if not number.isdigit():
            raise ValueError(f"expected an integer or a percentage like '25%', got '{value}'")
    elif value < 0:
        raise ValueError("must not be negative")
    return value


class RetrySchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    retries: int = Field(0, ge=0, le=20)
    delay: float = Field(1.0, ge=0)
    backoff: float = Field(2.0, ge=1)
    max_delay: Optional[float] = Field(60.0, ge=0)


class StageSchema(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: str = Field(..., pattern=NAME_PATTERN, description="Unique stage name")
    run: Optional[Union[str, List[str]]] = Field(None, description="Shell command or argv")
    uses: Optional[Literal["build", "publish", "deploy", "rollback"]] = Field(
        None, description="Component the stage delegates to"
    )
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    depends_on: List[str] = Field(default_factory=list)
    timeout: Optional[float] = Field(None, gt=0)
    retry: Union[int, RetrySchema] = 0
    enabled: bool = True
    env: Dict[str, str] = Field(default_factory=dict)
    description: str = ""

    @field_validator("depends_on", mode="before")
    @classmethod
    def _single_dependency(cls, value):
        return [value] if isinstance(value, str) else value

    @field_validator("retry")
    @classmethod
    def _non_negative_retry(cls, value):
        if isinstance(value, int) and value < 0:
            raise ValueError("retry must not be negative")
        return value

    @field_validator("env", mode="before")
    @classmethod
    def _stringify_env(cls, value):
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value

    @model_validator(mode="after")
    def _one_action(self):
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"stage '{self.name}' needs exactly one of 'run' or 'uses'")
        if self.run is not None and not self.run:
            raise ValueError(f"stage '{self.name}' has an empty command")
        for key in REQUIRED_PARAMS.get(self.uses or "", ()):
            if not self.with_.get(key):
                raise ValueError(f"stage '{self.name}' ({self.uses}) requires 'with.{key}'")
        return self

    @property
    def kind(self) -> str:
        return self.uses or "run"

    def retry_policy(self) -> RetryPolicy:
        if isinstance(self.retry, int):
            return RetryPolicy(retries=self.retry)
        return RetryPolicy(**self.retry.model_dump())


class TargetSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    namespace: str = "default"
    deployment: str = ""
    container: str = ""
    replicas: int = Field(1, ge=0)
    max_surge: IntOrPercent = 1
    max_unavailable: IntOrPercent = 0
    manifest: Optional[str] = None

    @field_validator("max_surge", "max_unavailable")
    @classmethod
    def _int_or_percent(cls, value):
        return _check_int_or_percent(value)


class InfrastructureSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., pattern=NAME_PATTERN)
    image_id: str = ""
    size_class: str = ""
    disk_gb: int = Field(10, gt=0)
    network_rules: List[Dict[str, Any]] = Field(default_factory=list)
    port: int = Field(22, gt=0, lt=65536)
    timeout: Optional[float] = Field(None, gt=0)
    create_missing: bool = False
    working_dir: str = "."


class PipelineSchema(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pipeline: str = Field(..., pattern=NAME_PATTERN)
    parallelism: Optional[int] = Field(None, ge=1)
    on_busy: OnBusy = OnBusy.REJECT
    abort_on_failure: bool = False
    infrastructure: Optional[InfrastructureSchema] = None
    targets: Dict[str, TargetSchema] = Field(default_factory=dict)
    stages: List[StageSchema] = Field(..., min_length=1)


# ============================================================
# Loading
# ============================================================

def _resolve(base_dir: Path, value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    path = Path(value).expanduser()
    return str(path if path.is_absolute() else (base_dir / path))


def _describe(error: ValidationError) -> str:
    lines = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        lines.append(f"{location or '<document>'}: {item['msg']}")
    return "\n".join(lines)


def build_definition(
    document: Dict[str, Any], base_dir: Union[str, Path] = ".", source: Optional[str] = None
) -> PipelineDefinition:
    """Validate a parsed document and turn it into a PipelineDefinition"""
    if not isinstance(document, dict):
        raise PipelineDefinitionError("Pipeline document must be a mapping")
    try:
        schema = PipelineSchema.model_validate(document)
    except ValidationError as e:
        raise PipelineDefinitionError(
            f"Invalid pipeline definition{f' in {source}' if source else ''}", _describe(e)
        ) from e

    base_dir = Path(base_dir)
    stages: List[StageDefinition] = []
    for stage in schema.stages:
        params = dict(stage.with_)
        if stage.kind == "run":
            params.update(command=stage.run, env=stage.env)
            params["cwd"] = _resolve(base_dir, params.get("cwd")) or str(base_dir)
        elif stage.kind == "build":
            params["context"] = _resolve(base_dir, params.get("context", "."))
        elif stage.kind in ("deploy", "rollback") and params["target"] not in schema.targets:
            raise PipelineDefinitionError(
                f"Stage '{stage.name}' references unknown target '{params['target']}'"
            )

        stages.append(
            StageDefinition(
                name=stage.name,
                action=ACTIONS[stage.kind],
                dependencies=list(dict.fromkeys(stage.depends_on)),
                retry_policy=stage.retry_policy(),
                timeout=stage.timeout,
                enabled=stage.enabled,
                kind=stage.kind,
                description=stage.description,
                params=params,
            )
        )

    targets = {
        name: DeploymentTarget(
            name=name,
            namespace=target.namespace,
            deployment=target.deployment,
            container=target.container,
            replicas=target.replicas,
            max_surge=target.max_surge,
            max_unavailable=target.max_unavailable,
            manifest=_resolve(base_dir, target.manifest),
        )
        for name, target in schema.targets.items()
    }

    infrastructure = None
    infra = schema.infrastructure
    if infra is not None:
        if any(stage.name == PROVISION_STAGE for stage in stages):
            raise PipelineDefinitionError(
                "Stage name 'provision' is reserved when 'infrastructure' is declared"
            )
        infrastructure = InfrastructureSpec(
            name=infra.name,
            image_id=infra.image_id,
            size_class=infra.size_class,
            disk_gb=infra.disk_gb,
            network_rules=infra.network_rules,
            port=infra.port,
        )

    validate_graph(stages)

    return PipelineDefinition(
        id=schema.pipeline,
        stages=stages,
        parallelism=schema.parallelism or get_settings().default_parallelism,
        on_busy=schema.on_busy,
        abort_on_failure=schema.abort_on_failure,
        infrastructure=infrastructure,
        infrastructure_timeout=infra.timeout if infra else None,
        infrastructure_dir=_resolve(base_dir, infra.working_dir) if infra else None,
        create_missing=infra.create_missing if infra else False,
        targets=targets,
        source=source,
    )


def load_pipeline(path: Union[str, Path]) -> PipelineDefinition:
    """Load and validate a pipeline definition file

    Raises:
        PipelineDefinitionError: unreadable file, bad YAML, schema or graph errors
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            document = yaml.safe_load(f)
    except OSError as e:
        raise PipelineDefinitionError(f"Cannot read pipeline definition {path}", str(e)) from e
    except yaml.YAMLError as e:
        raise PipelineDefinitionError(f"Malformed YAML in {path}", str(e)) from e

    pipeline = build_definition(document, base_dir=path.parent, source=str(path))
    logger.info(f"Loaded pipeline '{pipeline.id}' ({len(pipeline.stages)} stages) from {path}")
    return pipeline
