"""
Application settings

- Environment-driven configuration (SHIPYARD_* variables, optional .env file)
- Type validation through pydantic
- Defaults for timeouts, polling and retry bounds of every component
"""
from functools import lru_cache
from typing import Optional

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-based settings"""

    # Application
    app_env: str = "development"
    log_level: str = "INFO"
    log_json: bool = False
    state_dir: str = ".shipyard"

    # Orchestrator
    default_parallelism: int = 1
    default_step_timeout: float = 1800.0
    cancel_poll_interval: float = 1.0

    # Deployment driver
    rollout_timeout: float = 300.0
    rollout_poll_interval: float = 5.0

    # Artifact builder
    tag_strategy: str = "build_number"  # build_number | content

    # Registry publisher
    publish_max_retries: int = 3
    publish_backoff: float = 1.0
    publish_backoff_factor: float = 2.0

    # Provisioning gate
    provision_timeout: float = 600.0
    provision_poll_interval: float = 10.0

    # Collaborators
    docker_base_url: Optional[str] = None
    kube_context: Optional[str] = None
    kube_in_cluster: bool = False
    terraform_binary: str = "terraform"

    # Registry credentials (resolved per publish call, never persisted)
    registry_username: Optional[str] = None
    registry_password: Optional[SecretStr] = None

    # Notifications
    notification_channels: str = ""  # comma separated: slack,webhook,email
    slack_token: Optional[str] = None
    slack_channel: str = "#deployments"
    webhook_url: Optional[str] = None
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_password: Optional[SecretStr] = None
    email_sender: Optional[str] = None
    email_recipients: str = ""  # comma separated

    # Metrics
    metrics_textfile: Optional[str] = None

    model_config = SettingsConfigDict(
        env_prefix="SHIPYARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def channels(self) -> list[str]:
        return [c.strip() for c in self.notification_channels.split(",") if c.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return the process-wide settings instance"""
    return Settings()
