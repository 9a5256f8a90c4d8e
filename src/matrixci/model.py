# model.py
from __future__ import annotations

import re
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from .errors import ConfigurationError

OS_VALUES = ("darwin", "linux", "windows")
ARCH_VALUES = ("aarch64", "x64")
ABI_VALUES = ("musl",)
PROFILE_VALUES = ("release", "assert", "debug", "asan")
DISTRO_VALUES = ("debian", "ubuntu", "alpine", "amazonlinux")
TIER_VALUES = ("latest", "previous", "oldest", "eol")

DEFAULT_PROFILE = "release"

# Image feature names end up in step keys and machine image commands.
FEATURE_PATTERN = re.compile(r"[a-z0-9][a-z0-9_.-]*")

# Operating systems whose steps run inside an ephemeral VM on a local host.
VM_BACKED_OS = frozenset({"darwin"})


def _check(field_name: str, value: Optional[str], allowed: Tuple[str, ...], *, optional: bool = True) -> None:
    if value is None and optional:
        return
    if value not in allowed:
        raise ConfigurationError(
            f"invalid {field_name}: {value!r}",
            allowed=", ".join(allowed),
        )


# ---------------------------------------------------------------------
# Targets and platforms
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Target:
    """What gets compiled: os/arch plus ABI, baseline CPU flag and profile."""
    os: str
    arch: str
    abi: Optional[str] = None
    baseline: bool = False
    profile: Optional[str] = None

    def __post_init__(self) -> None:
        _check("os", self.os, OS_VALUES, optional=False)
        _check("arch", self.arch, ARCH_VALUES, optional=False)
        _check("abi", self.abi, ABI_VALUES)
        _check("profile", self.profile, PROFILE_VALUES)

    @property
    def effective_profile(self) -> str:
        return self.profile or DEFAULT_PROFILE

    @property
    def vm_backed(self) -> bool:
        return is_vm_backed(self.os)


@dataclass(frozen=True)
class Platform(Target):
    """A Target plus the operating system release it is built or tested on."""
    distro: Optional[str] = None
    release: str = ""
    tier: Optional[str] = None
    features: Tuple[str, ...] = ()

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.release:
            raise ConfigurationError("platform release is required", os=self.os, arch=self.arch)
        _check("distro", self.distro, DISTRO_VALUES)
        _check("tier", self.tier, TIER_VALUES)
        if not isinstance(self.features, tuple):
            object.__setattr__(self, "features", tuple(self.features))
        for feature in self.features:
            if not isinstance(feature, str) or not FEATURE_PATTERN.fullmatch(feature):
                raise ConfigurationError(f"invalid feature: {feature!r}", allowed="lowercase letters, digits, '.', '_', '-'")

    def with_profile(self, profile: Optional[str]) -> "Platform":
        return replace(self, profile=profile)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Platform":
        known = {"os", "arch", "abi", "baseline", "profile", "distro", "release", "tier", "features"}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError(f"unknown platform fields: {unknown}")
        try:
            return cls(
                os=data["os"],
                arch=data["arch"],
                abi=data.get("abi"),
                baseline=bool(data.get("baseline", False)),
                profile=data.get("profile"),
                distro=data.get("distro"),
                release=str(data["release"]),
                tier=data.get("tier"),
                features=tuple(data.get("features") or ()),
            )
        except KeyError as e:
            raise ConfigurationError(f"platform is missing required field {e.args[0]!r}") from e


def is_vm_backed(os_name: str) -> bool:
    return os_name in VM_BACKED_OS


# ---------------------------------------------------------------------
# Keys and labels (pure functions, fixed suffix ordering)
# ---------------------------------------------------------------------

def _suffix(target: Target, *, with_profile: bool = True) -> str:
    out = ""
    if target.abi:
        out += f"-{target.abi}"
    if target.baseline:
        out += "-baseline"
    if with_profile and target.profile and target.profile != DEFAULT_PROFILE:
        out += f"-{target.profile}"
    return out


def target_key(target: Target) -> str:
    return f"{target.os}-{target.arch}{_suffix(target)}"


def target_label(target: Target) -> str:
    return f"{target.os} {target.arch}{_suffix(target)}"


def toolchain_key(target: Target) -> str:
    """Like target_key but the toolchain never depends on the optimization profile."""
    return f"{target.os}-{target.arch}{_suffix(target, with_profile=False)}"


def group_key(target: Target) -> str:
    """Partition key for cache/job compatibility: os, arch and baseline only."""
    key = f"{target.os}-{target.arch}"
    if target.baseline:
        key += "-baseline"
    return key


def _version(release: str) -> str:
    return release.replace(".", "")


def platform_key(platform: Platform) -> str:
    key = target_key(platform)
    if platform.distro:
        return f"{key}-{platform.distro}-{_version(platform.release)}"
    return f"{key}-{_version(platform.release)}"


def platform_label(platform: Platform) -> str:
    label = f"{platform.distro or platform.os} {platform.release} {platform.arch}"
    if platform.baseline:
        label += "-baseline"
    if platform.profile and platform.profile != DEFAULT_PROFILE:
        label += f"-{platform.profile}"
    return label


def image_key(platform: Platform) -> str:
    key = f"{platform.os}-{platform.arch}-{_version(platform.release)}"
    if platform.distro:
        key += f"-{platform.distro}"
    if platform.features:
        key += "-with-" + "-".join(platform.features)
    if platform.abi:
        key += f"-{platform.abi}"
    return key


def image_label(platform: Platform) -> str:
    return f"{platform.distro or platform.os} {platform.release} {platform.arch}"


# ---------------------------------------------------------------------
# Step roles
# ---------------------------------------------------------------------

class StepRole(str, Enum):
    VENDOR = "build-vendor"
    CPP = "build-cpp"
    ZIG = "build-zig"
    LINK = "build-bun"
    TEST = "test-bun"

    def __str__(self) -> str:
        return self.value


def step_key(target: Target, role: StepRole) -> str:
    if role is StepRole.TEST:
        raise ValueError("test steps are keyed by platform, use platform_test_key()")
    return f"{target_key(target)}-{role.value}"


def platform_test_key(platform: Platform) -> str:
    return f"{platform_key(platform)}-{StepRole.TEST.value}"


# ---------------------------------------------------------------------
# Emitted step descriptors
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class AutomaticRetry:
    limit: int
    exit_status: Optional[int] = None
    signal_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {}
        if self.exit_status is not None:
            d["exit_status"] = self.exit_status
        if self.signal_reason is not None:
            d["signal_reason"] = self.signal_reason
        d["limit"] = self.limit
        return d


@dataclass(frozen=True)
class RetryPolicy:
    automatic: Tuple[AutomaticRetry, ...] = ()
    permit_manual_on_passed: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "manual": {"permit_on_passed": self.permit_manual_on_passed},
            "automatic": [r.to_dict() for r in self.automatic],
        }


def default_retry(limit: int = 0) -> RetryPolicy:
    """Workload failures (exit 1) retry `limit` times; lost agents and infra failures once."""
    return RetryPolicy(
        automatic=(
            AutomaticRetry(exit_status=1, limit=limit),
            AutomaticRetry(exit_status=-1, limit=1),
            AutomaticRetry(exit_status=255, limit=1),
            AutomaticRetry(signal_reason="cancel", limit=1),
            AutomaticRetry(signal_reason="agent_stop", limit=1),
        )
    )


@dataclass(frozen=True)
class AgentDescriptor:
    queue: Optional[str]
    tags: Tuple[Tuple[str, Any], ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {}
        if self.queue:
            d["queue"] = self.queue
        for k, v in self.tags:
            if v is not None:
                d[k] = v
        return d


Command = Union[str, Tuple[str, ...]]


@dataclass(frozen=True)
class CommandStep:
    """A single command step in the emitted graph."""
    key: str
    label: str
    command: Command
    agents: Optional[AgentDescriptor] = None
    depends_on: Tuple[str, ...] = ()
    retry: Optional[RetryPolicy] = None
    env: Tuple[Tuple[str, str], ...] = ()
    timeout_in_minutes: Optional[int] = None
    parallelism: Optional[int] = None
    cancel_on_build_failing: Optional[bool] = None

    @property
    def env_dict(self) -> Dict[str, str]:
        return dict(self.env)

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"key": self.key, "label": self.label}
        if self.agents is not None:
            d["agents"] = self.agents.to_dict()
        d["command"] = self.command if isinstance(self.command, str) else list(self.command)
        if self.depends_on:
            d["depends_on"] = list(self.depends_on)
        if self.retry is not None:
            d["retry"] = self.retry.to_dict()
        if self.env:
            d["env"] = dict(self.env)
        if self.timeout_in_minutes is not None:
            d["timeout_in_minutes"] = self.timeout_in_minutes
        if self.parallelism is not None:
            d["parallelism"] = self.parallelism
        if self.cancel_on_build_failing is not None:
            d["cancel_on_build_failing"] = self.cancel_on_build_failing
        return d


@dataclass(frozen=True)
class BlockStep:
    """An operator input step; the graph pauses here until answered."""
    key: str
    block: str
    fields: Tuple[Dict[str, Any], ...] = ()
    blocked_state: str = "running"
    depends_on: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "key": self.key,
            "block": self.block,
            "blocked_state": self.blocked_state,
            "fields": [dict(f) for f in self.fields],
        }
        if self.depends_on:
            d["depends_on"] = list(self.depends_on)
        return d


@dataclass(frozen=True)
class GroupStep:
    """A collapsible group of command steps. Jobs inside report the group key as their group identifier."""
    key: str
    group: str
    steps: Tuple[CommandStep, ...] = ()

    @property
    def depends_on(self) -> Tuple[str, ...]:
        return ()

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "group": self.group, "steps": [s.to_dict() for s in self.steps]}


Step = Union[CommandStep, BlockStep, GroupStep]


def flatten_steps(steps: Iterable[Step]) -> List[Step]:
    """Top-level steps with group members spliced in after their group."""
    out: List[Step] = []
    for s in steps:
        out.append(s)
        if isinstance(s, GroupStep):
            out.extend(s.steps)
    return out


@dataclass(frozen=True)
class Pipeline:
    """The emitted graph: ordered steps plus a build priority."""
    steps: Tuple[Step, ...]
    priority: int = 0

    @property
    def keys(self) -> List[str]:
        return [s.key for s in flatten_steps(self.steps)]

    def get(self, key: str) -> Step:
        for s in flatten_steps(self.steps):
            if s.key == key:
                return s
        raise KeyError(key)

    def to_dict(self) -> Dict[str, Any]:
        return {"priority": self.priority, "steps": [s.to_dict() for s in self.steps]}
