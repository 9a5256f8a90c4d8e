# runner.py
from __future__ import annotations

import os
import shlex
import subprocess
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Sequence

from .cache import CacheManager, RestoreReport, SaveReport, artifacts_for
from .config import Settings
from .errors import ConfigurationError, StepFailure
from .model import StepRole, Target, group_key, target_key
from .ui.console import get_console
from .vm.lifecycle import VMLifecycle

# `matrixci step run` wraps every build and test workload emitted by the
# pipeline compiler:
#
#   restore caches (host) -> workload (host or fresh VM) -> save caches (host)
#
# The build directory lives in the mounted workspace, so caches restored on the
# host are visible inside the guest and vice versa.


TOOL_HINTS = {
    "bun": "Install bun or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "tart": "Install tart (brew install cirruslabs/cli/tart).",
    "buildkite-agent": "Run inside a Buildkite agent or install buildkite-agent.",
}

# Step env the compiler sets that the workload needs; forwarded into the guest.
FORWARDED_ENV = (
    "ENABLE_BASELINE",
    "ENABLE_CANARY",
    "CANARY_REVISION",
    "ABI",
    "CMAKE_VERBOSE_MAKEFILE",
    "CMAKE_TLS_VERIFY",
    "BUN_CPP_ONLY",
    "BUN_LINK_ONLY",
    "CANARY",
    "CI",
)
FORWARDED_PREFIXES = ("BUILDKITE_",)
NEVER_FORWARDED = frozenset({"BUILDKITE_AGENT_ACCESS_TOKEN", "BUILDKITE_API_TOKEN"})

EXIT_COMMAND_NOT_FOUND = 127


def forwarded_env(environ: Mapping[str, str]) -> Dict[str, str]:
    """The subset of the step's environment passed into a VM guest."""
    out: Dict[str, str] = {}
    for k, v in environ.items():
        if k in NEVER_FORWARDED:
            continue
        if k in FORWARDED_ENV or k.startswith(FORWARDED_PREFIXES):
            out[k] = v
    return out


@dataclass
class StepResult:
    role: StepRole
    target: str
    exit_code: int
    restore: Optional[RestoreReport] = None
    save: Optional[SaveReport] = None
    vm_name: Optional[str] = None


def run_on_host(argv: Sequence[str], *, cwd: str | Path | None = None, environ: Optional[Mapping[str, str]] = None) -> int:
    """Run the workload directly, streaming its output. Returns its exit code."""
    env = dict(os.environ if environ is None else environ)
    try:
        proc = subprocess.run(list(argv), cwd=str(cwd) if cwd else None, env=env, check=False)
    except FileNotFoundError:
        tool = argv[0] if argv else "?"
        get_console().print_failure(
            shlex.join(argv),
            f"command not found: {tool}",
            exit_code=EXIT_COMMAND_NOT_FOUND,
            hint=TOOL_HINTS.get(Path(tool).name),
        )
        return EXIT_COMMAND_NOT_FOUND
    return proc.returncode


def run_step(
    settings: Settings,
    role: StepRole,
    target: Target,
    argv: Sequence[str],
    *,
    vm: bool = False,
    cache: bool = True,
    workdir: str | Path | None = None,
    environ: Optional[Mapping[str, str]] = None,
    cache_factory: Optional[Callable[[Settings, StepRole], CacheManager]] = None,
    lifecycle_factory: Optional[Callable[[Settings, StepRole], VMLifecycle]] = None,
    host_runner: Callable[..., int] = run_on_host,
) -> StepResult:
    """
    Run one step: restore caches, run the workload, save caches.

    Caches are saved whenever the workload ran, pass or fail.

    Raises:
      StepFailure: the workload exited non-zero (after caches were saved)
      VMError / HealthCheckTimeout: the VM never ran the workload
      StepCancelled: SIGTERM/SIGINT during a VM step
    """
    if not argv:
        raise ValueError("step run needs a workload command")

    console = get_console()
    env = os.environ if environ is None else environ
    if settings.group_key is None:
        settings = replace(settings, group_key=group_key(target))

    result = StepResult(role=role, target=target_key(target), exit_code=0)
    console.print_step_start(role.value, result.target)

    manager: Optional[CacheManager] = None
    if cache and artifacts_for(role):
        manager = cache_factory(settings, role) if cache_factory else CacheManager(settings, role)
        result.restore = manager.restore()

    if vm:
        lifecycle = lifecycle_factory(settings, role) if lifecycle_factory else VMLifecycle(settings, role, workdir=workdir)
        try:
            result.exit_code = lifecycle.run(argv, forwarded_env(env))
        finally:
            if lifecycle.session is not None:
                result.vm_name = lifecycle.session.name
    else:
        console.print_group(f"Running {shlex.join(argv)}")
        result.exit_code = host_runner(argv, cwd=workdir, environ=env)

    if manager is not None:
        result.save = manager.save()

    if result.exit_code != 0:
        raise StepFailure(role=role.value, cmd=shlex.join(argv), exit_code=result.exit_code)
    console.print_success(f"{result.target} - {role.value}")
    return result


def parse_role(value: str) -> StepRole:
    try:
        return StepRole(value)
    except ValueError:
        allowed: List[str] = [r.value for r in StepRole]
        raise ConfigurationError(f"unknown step role: {value!r}", allowed=", ".join(allowed)) from None
