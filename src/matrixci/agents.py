# agents.py
from __future__ import annotations

from typing import Dict, Optional, Tuple

from .model import AgentDescriptor, Platform, StepRole, image_key, is_vm_backed
from .options import RunContext

# (role, os, arch) -> (instance type, cpu count)
# "*" matches any os / arch. Lookup order: exact, os wildcard, arch wildcard, both.
_INSTANCE_TABLE: Dict[Tuple[str, str, str], Tuple[str, int]] = {
    ("compile", "*", "aarch64"): ("c8g.16xlarge", 32),
    ("compile", "*", "x64"): ("c7i.16xlarge", 32),
    ("zig", "*", "*"): ("c7i.2xlarge", 4),
    ("test", "windows", "*"): ("c7i.2xlarge", 2),
    ("test", "*", "aarch64"): ("c8g.xlarge", 2),
    ("test", "*", "x64"): ("c7i.xlarge", 2),
}

# The zig toolchain cross-compiles, so it always runs on the same small linux box.
ZIG_HOST = Platform(os="linux", arch="x64", abi="musl", distro="alpine", release="3.21")


def _role_class(role: StepRole) -> str:
    if role is StepRole.ZIG:
        return "zig"
    if role is StepRole.TEST:
        return "test"
    return "compile"


def instance_for(role: StepRole, os_name: str, arch: str) -> Tuple[str, int]:
    """Look up (instance type, cpu count) for an elastic step."""
    cls = _role_class(role)
    for key in ((cls, os_name, arch), (cls, "*", arch), (cls, os_name, "*"), (cls, "*", "*")):
        if key in _INSTANCE_TABLE:
            return _INSTANCE_TABLE[key]
    raise KeyError(f"no instance type for {cls} on {os_name}/{arch}")


def host_platform(role: StepRole, platform: Platform) -> Platform:
    """The platform whose machine image actually runs this role."""
    if role is StepRole.ZIG and not is_vm_backed(platform.os):
        return ZIG_HOST
    return platform


def image_name(platform: Platform, ctx: RunContext) -> str:
    name = image_key(platform)
    if ctx.options.build_images and not ctx.options.publish_images:
        return f"{name}-build-{ctx.settings.build_number}"
    return f"{name}-v{ctx.settings.bootstrap_version}"


def vm_agent(platform: Platform, ctx: RunContext) -> AgentDescriptor:
    return AgentDescriptor(
        queue=ctx.settings.vm_queue,
        tags=(("os", platform.os), ("arch", platform.arch), ("tart", True)),
    )


def elastic_agent(
    platform: Platform,
    ctx: RunContext,
    *,
    instance_type: str,
    cpu_count: int,
    threads_per_core: Optional[int] = None,
) -> AgentDescriptor:
    tags = (
        ("os", platform.os),
        ("arch", platform.arch),
        ("abi", platform.abi),
        ("distro", platform.distro),
        ("release", platform.release),
        ("image-name", image_name(platform, ctx)),
        ("instance-type", instance_type),
        ("cpu-count", cpu_count),
        ("threads-per-core", threads_per_core),
        ("preemptible", False),
    )
    return AgentDescriptor(queue=ctx.settings.elastic_queue, tags=tags)


def agent_for(role: StepRole, platform: Platform, ctx: RunContext) -> AgentDescriptor:
    """
    Map a step role on a platform to where it runs.

    VM-backed operating systems run every role on the local ephemeral-VM queue.
    Everything else gets an elastic instance sized for the role; the zig role
    always lands on the shared linux cross-compile host.
    """
    if is_vm_backed(platform.os):
        return vm_agent(platform, ctx)

    host = host_platform(role, platform)
    instance_type, cpus = instance_for(role, host.os, host.arch)
    return elastic_agent(host, ctx, instance_type=instance_type, cpu_count=cpus, threads_per_core=1)
