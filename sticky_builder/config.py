"""Configuration settings for sticky_builder.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

A handful of fields are also read from the variables the CI runner exports
(``GITHUB_REPOSITORY``, ``BLACKSMITH_VM_ID`` and friends).
"""

from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


def _env(name: str, *aliases: str) -> AliasChoices:
    """Accept the prefixed variable first, then the runner-provided aliases."""
    return AliasChoices(f"STICKY_BUILDER_{name.upper()}", *aliases)


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the STICKY_BUILDER_
    prefix. CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="STICKY_BUILDER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Identity
    repo_name: str = Field(
        default="",
        validation_alias=_env("repo_name", "GITHUB_REPO_NAME", "GITHUB_REPOSITORY"),
        description="Repository identity used as the sticky disk key",
    )
    region: str = Field(
        default="eu-central",
        validation_alias=_env("region", "BLACKSMITH_REGION"),
        description="Region the sticky disk is requested in",
    )
    installation_model_id: str = Field(
        default="",
        validation_alias=_env(
            "installation_model_id", "BLACKSMITH_INSTALLATION_MODEL_ID"
        ),
    )
    vm_id: str = Field(
        default="",
        validation_alias=_env("vm_id", "BLACKSMITH_VM_ID"),
    )
    sticky_disk_type: str = Field(
        default="dockerfile",
        description="Kind of sticky disk requested from the agent",
    )

    # Control plane
    agent_url: str = Field(
        default="http://192.168.127.1:5557",
        description="Base URL of the VM agent",
    )
    sticky_disk_token: str = Field(
        default="",
        validation_alias=_env("sticky_disk_token", "BLACKSMITH_STICKYDISK_TOKEN"),
    )
    builder_url: str | None = Field(
        default=None,
        validation_alias=_env("builder_url", "BUILDER_URL"),
        description="Base URL of the build task API",
    )
    builder_token: str = Field(
        default="",
        validation_alias=_env("builder_token", "BLACKSMITH_ANVIL_TOKEN"),
    )
    overlay_auth_key: str = Field(
        default="",
        validation_alias=_env("overlay_auth_key", "BLACKSMITH_TAILSCALE_TOKEN"),
        description="Auth key used to join the overlay network",
    )

    # Paths
    mount_point: Path = Field(
        default=Path("/var/lib/buildkit"),
        description="Where the sticky disk is mounted; also the daemon root",
    )
    default_device: str = Field(
        default="/dev/vdb",
        description="Device used when the agent does not report one",
    )
    daemon_config_path: Path = Field(default=Path("buildkitd.toml"))
    daemon_log_path: Path = Field(default=Path("/tmp/buildkitd.log"))
    tls_client_key_path: Path = Field(
        default=Path("/tmp/sticky_builder_client_key.pem")
    )
    tls_client_cert_path: Path = Field(
        default=Path("/tmp/sticky_builder_client_ca_certificate.pem")
    )
    tls_root_cert_path: Path = Field(
        default=Path("/tmp/sticky_builder_root_ca_certificate.pem")
    )
    state_file: Path = Field(
        default=Path("/tmp/sticky-builder-state.json"),
        description="Session state shared between the main and post phases",
    )
    build_record_dir: Path = Field(
        default=Path("/tmp/sticky-builder-records"),
        description="Directory build records are exported to",
    )

    # Daemon
    registry_mirror: str | None = Field(
        default="192.168.127.1:5000",
        description="Pull-through registry mirror for docker.io",
    )
    daemon_port: int = Field(default=1234, ge=1, le=65535)
    cache_keep_hours: int = Field(
        default=7 * 24,
        ge=1,
        description="Cache entries older than this are pruned",
    )

    # Operational modes
    use_sudo: bool = Field(
        default=True,
        description="Prefix privileged commands with sudo",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Timeouts and intervals (in seconds)
    acquire_timeout: float = Field(
        default=45.0,
        gt=0,
        description="Timeout for obtaining the sticky disk and builder agent",
    )
    task_poll_interval: float = Field(default=0.2, gt=0)
    daemon_start_timeout: float = Field(default=10.0, gt=0)
    workers_ready_timeout: float = Field(default=30.0, gt=0)
    daemon_shutdown_timeout: float = Field(default=10.0, gt=0)
    request_timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for a single control-plane request",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON, with secrets masked.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    masked = {
        field: "***"
        for field in ("sticky_disk_token", "builder_token", "overlay_auth_key")
        if getattr(settings, field)
    }
    return settings.model_copy(update=masked).model_dump_json(indent=2)


__all__ = ["Settings", "get_settings", "print_settings_json"]
