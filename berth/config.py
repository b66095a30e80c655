"""Berth configuration management.

Configuration sources (in priority order):
1. Environment variables (BERTH_ prefix, ``__`` for nesting)
2. Config file (berth.yaml)
3. Defaults
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RuntimeConfig(BaseModel):
    """Container engine connection."""

    socket: str = "unix:///var/run/docker.sock"

    # - "always": pull before every session (picks up re-tagged images)
    # - "if_not_present": only pull when the image is missing locally
    # - "never": fail if the image is missing locally
    image_pull_policy: Literal["always", "if_not_present", "never"] = "if_not_present"


class ResourceSpec(BaseModel):
    """Per-session resource caps."""

    cpus: int = 2
    memory: str = "4g"
    pids_limit: int = 100


class SandboxConfig(BaseModel):
    """Hardened defaults for the candidate sandbox container."""

    image: str = "candidate-sandbox:latest"
    container_name_prefix: str = "session-"

    user: str = "candidate"
    working_dir: str = "/workspace"
    home: str = "/home/candidate"
    command: list[str] = Field(
        default_factory=lambda: [
            "/usr/bin/supervisord",
            "-c",
            "/etc/supervisor/supervisord.conf",
        ]
    )

    resources: ResourceSpec = Field(default_factory=ResourceSpec)

    # Writable scratch space; the root filesystem itself is read-only
    tmpfs: dict[str, str] = Field(
        default_factory=lambda: {
            "/tmp": "rw,noexec,nosuid,size=100m",
            "/var/tmp": "rw,noexec,nosuid,size=50m",
        }
    )

    seccomp_profile: str | None = "/etc/docker/seccomp-default.json"
    apparmor_profile: str | None = "docker-default"
    # supervisord drops to the candidate user, which needs setuid transitions
    no_new_privileges: bool = False

    cap_drop: list[str] = Field(default_factory=lambda: ["ALL"])
    cap_add: list[str] = Field(
        default_factory=lambda: ["CHOWN", "SETGID", "SETUID", "DAC_OVERRIDE"]
    )

    vnc_port: int = 6080
    vnc_path: str = "/vnc.html"
    code_server_port: int = 8080


class SessionConfig(BaseModel):
    """Session workflow settings."""

    default_duration_minutes: int = 60
    network_prefix: str = "session-network-"
    label_prefix: str = "hr-screening"
    stop_timeout_seconds: int = 30
    archive_root: str = "/backups/sessions"

    # Best-effort removal of the network/container when create_session fails
    # part-way through.
    rollback_on_failure: bool = True


class Settings(BaseSettings):
    """Berth settings."""

    model_config = SettingsConfigDict(
        env_prefix="BERTH_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)
    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # File values arrive as init kwargs; environment must still win.
        return env_settings, init_settings, dotenv_settings, file_secret_settings


def _load_config_file() -> dict:
    """Load configuration from YAML file if one exists.

    Looks for config file in order:
    1. BERTH_CONFIG_FILE environment variable
    2. ./berth.yaml
    3. /etc/berth/config.yaml
    """
    config_paths = [
        os.environ.get("BERTH_CONFIG_FILE"),
        Path("berth.yaml"),
        Path("/etc/berth/config.yaml"),
    ]

    for path in config_paths:
        if path is None:
            continue
        path = Path(path)
        if path.exists():
            with open(path) as f:
                return yaml.safe_load(f) or {}

    return {}


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    file_config = _load_config_file()
    return Settings(**file_config)
