"""CI/CD components - build, publish, deploy, provisioning gate, notifications"""

from .builder import (
    Artifact,
    ArtifactBuilder,
    BuildCounter,
    DockerBuildBackend,
    TagStrategy,
)
from .publisher import (
    DockerRegistryBackend,
    PublishResult,
    RegistryCredentials,
    RegistryPublisher,
)
from .deployer import (
    DeploymentDriver,
    DeploymentTarget,
    KubernetesClusterBackend,
    RolloutResult,
    RolloutState,
)
from .provisioning import (
    Endpoint,
    InfrastructureSpec,
    ProvisioningGate,
    TerraformBackend,
)
from .notifications import (
    NotificationChannel,
    NotificationManager,
    RunNotification,
)

__all__ = [
    "Artifact",
    "ArtifactBuilder",
    "BuildCounter",
    "DockerBuildBackend",
    "TagStrategy",
    "DockerRegistryBackend",
    "PublishResult",
    "RegistryCredentials",
    "RegistryPublisher",
    "DeploymentDriver",
    "DeploymentTarget",
    "KubernetesClusterBackend",
    "RolloutResult",
    "RolloutState",
    "Endpoint",
    "InfrastructureSpec",
    "ProvisioningGate",
    "TerraformBackend",
    "NotificationChannel",
    "NotificationManager",
    "RunNotification",
]
