"""Container specification for a sandbox session.

ContainerSpec is engine-neutral; the driver translates it into its own
create payload.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class ResourceLimits(BaseModel):
    cpu_count: int
    memory_bytes: int
    pids_limit: int


class FilesystemPolicy(BaseModel):
    read_only_root: bool = True
    # mount path -> mount options (e.g. "rw,noexec,nosuid,size=100m")
    tmpfs: dict[str, str] = Field(default_factory=dict)


class SecurityOptions(BaseModel):
    seccomp_profile: str | None = None
    apparmor_profile: str | None = None
    no_new_privileges: bool = False

    def to_security_opt(self) -> list[str]:
        """Render as Docker ``SecurityOpt`` entries."""
        opts: list[str] = []
        if self.seccomp_profile:
            opts.append(f"seccomp={self.seccomp_profile}")
        if self.apparmor_profile:
            opts.append(f"apparmor={self.apparmor_profile}")
        if self.no_new_privileges:
            opts.append("no-new-privileges:true")
        return opts


class Capabilities(BaseModel):
    drop: list[str] = Field(default_factory=lambda: ["ALL"])
    add: list[str] = Field(default_factory=list)


class ContainerSpec(BaseModel):
    """Hardened container definition for one session."""

    image: str
    name: str
    user: str
    working_dir: str
    env: dict[str, str] = Field(default_factory=dict)
    command: list[str] = Field(default_factory=list)

    resources: ResourceLimits
    filesystem: FilesystemPolicy = Field(default_factory=FilesystemPolicy)
    security: SecurityOptions = Field(default_factory=SecurityOptions)
    capabilities: Capabilities = Field(default_factory=Capabilities)

    # Network name to attach to (the session network)
    network_mode: str = "bridge"

    # Ownership labels, already serialized with the configured prefix
    labels: dict[str, str] = Field(default_factory=dict)
