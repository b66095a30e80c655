"""Security/resource profile builder.

Produces the hardened ContainerSpec for a session: deny-by-default
capabilities, read-only root with noexec/nosuid scratch mounts, seccomp and
AppArmor profiles, and CPU/memory/pid caps. Static defaults come from
SandboxConfig; the session overlay adds identity env vars, ownership labels
and the session network.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from berth.errors import ValidationError
from berth.models.container import (
    Capabilities,
    ContainerSpec,
    FilesystemPolicy,
    ResourceLimits,
    SecurityOptions,
)

if TYPE_CHECKING:
    from berth.config import SandboxConfig
    from berth.models.labels import OwnershipLabels

_REQUIRED_TMPFS_FLAGS = ("noexec", "nosuid")


def parse_memory(memory_str: str) -> int:
    """Parse memory string (e.g., '4g', '512m') to bytes."""
    memory_str = memory_str.lower().strip()
    multipliers = {
        "k": 1024,
        "m": 1024 * 1024,
        "g": 1024 * 1024 * 1024,
    }
    try:
        if memory_str and memory_str[-1] in multipliers:
            return int(float(memory_str[:-1]) * multipliers[memory_str[-1]])
        return int(memory_str)
    except ValueError as e:
        raise ValidationError(
            message=f"Invalid memory limit: {memory_str!r}",
            details={"memory": memory_str},
        ) from e


def harden_tmpfs_options(options: str) -> str:
    """Ensure a tmpfs mount carries noexec and nosuid."""
    flags = [flag.strip() for flag in options.split(",") if flag.strip()]
    for required in _REQUIRED_TMPFS_FLAGS:
        if required not in flags:
            flags.append(required)
    return ",".join(flags)


def build_container_spec(
    sandbox: "SandboxConfig",
    owner: "OwnershipLabels",
    *,
    network_name: str,
    label_prefix: str,
) -> ContainerSpec:
    """Build the container spec for one session."""
    session_id = owner.session_id

    env = {
        "SESSION_ID": session_id,
        "HOME": sandbox.home,
        "APPLICATION_ID": owner.application_id,
        "CANDIDATE_ID": owner.candidate_id,
    }

    return ContainerSpec(
        image=sandbox.image,
        name=f"{sandbox.container_name_prefix}{session_id}",
        user=sandbox.user,
        working_dir=sandbox.working_dir,
        env=env,
        command=list(sandbox.command),
        resources=ResourceLimits(
            cpu_count=sandbox.resources.cpus,
            memory_bytes=parse_memory(sandbox.resources.memory),
            pids_limit=sandbox.resources.pids_limit,
        ),
        filesystem=FilesystemPolicy(
            read_only_root=True,
            tmpfs={path: harden_tmpfs_options(opts) for path, opts in sandbox.tmpfs.items()},
        ),
        security=SecurityOptions(
            seccomp_profile=sandbox.seccomp_profile,
            apparmor_profile=sandbox.apparmor_profile,
            no_new_privileges=sandbox.no_new_privileges,
        ),
        capabilities=Capabilities(
            drop=list(sandbox.cap_drop),
            add=list(sandbox.cap_add),
        ),
        network_mode=network_name,
        labels=owner.to_labels(label_prefix),
    )
