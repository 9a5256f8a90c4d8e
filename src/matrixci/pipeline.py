"""
Step graph compiler.

Turns (build platforms, test platforms, options) into the ordered step list the
CI engine runs. Every function here takes the RunContext explicitly; nothing
reads the environment.

Per build platform:

    {target}-build-vendor ─┐
    {target}-build-cpp ────┼─> {target}-build-bun ─> {platform}-test-bun
    {target}-build-zig ────┘                      └─> release / benchmark

VM-backed steps also depend on the one shared `build-base-image` step.
"""

from __future__ import annotations

import shlex
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import yaml

from .agents import agent_for, host_platform
from .config import Settings
from .dag import validate_steps
from .dsl import step
from .engine.agent_cli import AgentCli
from .errors import AgentCommandError, ConfigurationError
from .model import (
    AgentDescriptor,
    CommandStep,
    GroupStep,
    Pipeline,
    Platform,
    Step,
    StepRole,
    Target,
    default_retry,
    flatten_steps,
    group_key,
    image_key,
    image_label,
    is_vm_backed,
    platform_label,
    platform_test_key,
    step_key,
    target_key,
    target_label,
    toolchain_key,
)
from .options import RunContext, options_apply_step, options_block_step
from .ui.console import get_console

STEP_RUNNER = "matrixci"
BASE_IMAGE_STEP_KEY = "build-base-image"
RELEASE_STEP_KEY = "release"
BENCHMARK_STEP_KEY = "benchmark"

ZIG_TIMEOUT_MINUTES = 35
IMAGE_TIMEOUT_MINUTES = 3 * 60
BASE_IMAGE_TIMEOUT_MINUTES = 30


# ---------------------------------------------------------------------
# Small pure helpers
# ---------------------------------------------------------------------

def priority_for(settings: Settings) -> int:
    if settings.is_fork:
        return -1
    if settings.is_main_branch:
        return 2
    if settings.is_merge_queue:
        return 1
    return 0


def build_env(target: Target, ctx: RunContext) -> Dict[str, Optional[str]]:
    revision = ctx.options.canary_revision
    return {
        "ENABLE_BASELINE": "ON" if target.baseline else "OFF",
        "ENABLE_CANARY": "ON" if revision > 0 else "OFF",
        "CANARY_REVISION": str(revision),
        "ABI": "musl" if target.abi == "musl" else None,
        "CMAKE_VERBOSE_MAKEFILE": "ON",
        "CMAKE_TLS_VERIFY": "0",
    }


def build_command(target: Target) -> List[str]:
    return ["bun", "run", f"build:{target.effective_profile}"]


def step_run_command(role: StepRole, target: Target, workload: Sequence[str]) -> str:
    """
    Wrap a workload in `matrixci step run`, which owns the VM and cache protocol.

    Each token is shell-quoted so the CI engine's shell sees the exact argv.
    """
    argv = [STEP_RUNNER, "step", "run", "--role", role.value, "--os", target.os, "--arch", target.arch]
    if target.abi:
        argv += ["--abi", target.abi]
    if target.baseline:
        argv.append("--baseline")
    if target.profile:
        argv += ["--profile", target.profile]
    if is_vm_backed(target.os):
        argv.append("--vm")
    argv.append("--")
    argv.extend(workload)
    return shlex.join(argv)


def _generator_agent(settings: Settings) -> Optional[AgentDescriptor]:
    if not settings.agent_queue:
        return None
    return AgentDescriptor(queue=settings.agent_queue)


def image_step_key(platform: Platform) -> str:
    return f"{image_key(platform)}-build-image"


def _upstream(role: StepRole, platform: Platform, ctx: RunContext) -> List[str]:
    """Image-preparation steps a role's step must wait for."""
    if is_vm_backed(platform.os):
        return [BASE_IMAGE_STEP_KEY]
    if ctx.options.build_images:
        return [image_step_key(host_platform(role, platform))]
    return []


# ---------------------------------------------------------------------
# Build steps
# ---------------------------------------------------------------------

def _build_step(
    platform: Platform,
    ctx: RunContext,
    role: StepRole,
    workload: Sequence[str],
    *,
    env: Optional[Dict[str, str]] = None,
    depends_on: Sequence[str] = (),
    timeout: Optional[int] = None,
) -> CommandStep:
    return (
        step(step_key(platform, role), f"{target_label(platform)} - {role.value}")
        .on(agent_for(role, platform, ctx))
        .depends_on(*_upstream(role, platform, ctx), *depends_on)
        .with_retry(default_retry())
        .cancel_on_build_failing(ctx.settings.is_merge_queue)
        .with_env(build_env(platform, ctx))
        .with_env(env)
        .timeout(timeout)
        .run(step_run_command(role, platform, workload))
        .build()
    )


def build_vendor_step(platform: Platform, ctx: RunContext) -> CommandStep:
    return _build_step(
        platform, ctx, StepRole.VENDOR,
        [*build_command(platform), "--target", "dependencies"],
    )


def build_cpp_step(platform: Platform, ctx: RunContext) -> CommandStep:
    return _build_step(
        platform, ctx, StepRole.CPP,
        build_command(platform),
        env={"BUN_CPP_ONLY": "ON"},
    )


def build_zig_step(platform: Platform, ctx: RunContext) -> CommandStep:
    return _build_step(
        platform, ctx, StepRole.ZIG,
        [*build_command(platform), "--target", "bun-zig", "--toolchain", toolchain_key(platform)],
        timeout=ZIG_TIMEOUT_MINUTES,
    )


def link_step(platform: Platform, ctx: RunContext) -> CommandStep:
    return _build_step(
        platform, ctx, StepRole.LINK,
        [*build_command(platform), "--target", "bun"],
        env={"BUN_LINK_ONLY": "ON"},
        depends_on=[step_key(platform, StepRole.CPP), step_key(platform, StepRole.ZIG)],
    )


def unified_build_step(platform: Platform, ctx: RunContext) -> CommandStep:
    """One step that builds everything; keyed like the link step so tests still find it."""
    return _build_step(platform, ctx, StepRole.LINK, build_command(platform))


def build_steps(platform: Platform, ctx: RunContext) -> List[CommandStep]:
    if ctx.options.unified_builds:
        return [unified_build_step(platform, ctx)]
    return [
        build_vendor_step(platform, ctx),
        build_cpp_step(platform, ctx),
        build_zig_step(platform, ctx),
        link_step(platform, ctx),
    ]


# ---------------------------------------------------------------------
# Test steps
# ---------------------------------------------------------------------

def runner_args(platform: Platform, ctx: RunContext) -> List[str]:
    args = [f"--step={step_key(platform, StepRole.LINK)}"]
    if ctx.options.build_id:
        args.append(f"--build-id={ctx.options.build_id}")
    args.extend(f"--include={f}" for f in ctx.options.test_files)
    return args


def runner_workload(platform: Platform, ctx: RunContext) -> List[str]:
    if platform.os == "windows":
        return ["node", "scripts/runner.node.mjs", *runner_args(platform, ctx)]
    return ["./scripts/runner.node.mjs", *runner_args(platform, ctx)]


def platform_test_step(platform: Platform, ctx: RunContext) -> CommandStep:
    opts = ctx.options
    if opts.unified_tests:
        parallelism = None
    else:
        parallelism = 2 if is_vm_backed(platform.os) else 10

    b = (
        step(platform_test_key(platform), f"{platform_label(platform)} - {StepRole.TEST.value}")
        .on(agent_for(StepRole.TEST, platform, ctx))
        .depends_on(*_upstream(StepRole.TEST, platform, ctx))
        .with_retry(default_retry())
        .cancel_on_build_failing(ctx.settings.is_merge_queue)
        .parallelism(parallelism)
        .timeout(90 if platform.profile == "asan" else 30)
        .run(step_run_command(StepRole.TEST, platform, runner_workload(platform, ctx)))
    )
    if not opts.detached:
        b.depends_on(step_key(platform, StepRole.LINK))
    return b.build()


# ---------------------------------------------------------------------
# Image, release and benchmark steps
# ---------------------------------------------------------------------

def base_image_step(ctx: RunContext) -> CommandStep:
    command = [STEP_RUNNER, "image", "ensure"]
    if ctx.options.publish_images:
        command.append("--publish")
    return (
        step(BASE_IMAGE_STEP_KEY, "Build Base Image")
        .on(AgentDescriptor(queue=ctx.settings.vm_queue, tags=(("tart", True),)))
        .with_retry(default_retry(limit=2))
        .timeout(BASE_IMAGE_TIMEOUT_MINUTES)
        .run(shlex.join(command))
        .build()
    )


def image_step(platform: Platform, ctx: RunContext) -> CommandStep:
    """Bake (or bake and publish) the elastic machine image a platform's steps boot from."""
    action = "publish-image" if ctx.options.publish_images else "create-image"
    command = [
        "node", "./scripts/machine.mjs", action,
        f"--os={platform.os}",
        f"--arch={platform.arch}",
        f"--release={platform.release}",
        *([f"--distro={platform.distro}"] if platform.distro else []),
        "--cloud=aws",
        "--ci",
        f"--authorized-org={ctx.settings.organization_slug}",
    ]
    command.extend(f"--feature={f}" for f in platform.features)
    return (
        step(image_step_key(platform), f"{image_label(platform)} - build-image")
        .on(_generator_agent(ctx.settings))
        .with_env(DEBUG="1")
        .with_retry(default_retry())
        .cancel_on_build_failing(ctx.settings.is_merge_queue)
        .timeout(IMAGE_TIMEOUT_MINUTES)
        .run(shlex.join(command))
        .build()
    )


def release_step(build_platforms: Iterable[Platform], ctx: RunContext) -> CommandStep:
    return (
        step(RELEASE_STEP_KEY, "release")
        .on(_generator_agent(ctx.settings))
        .depends_on(*(step_key(p, StepRole.LINK) for p in build_platforms))
        .with_env(CANARY=ctx.options.canary_revision)
        .run(".buildkite/scripts/upload-release.sh")
        .build()
    )


def representative_build(build_platforms: Sequence[Platform]) -> Optional[Platform]:
    """linux x64 release if the matrix has it, else the first build platform."""
    for p in build_platforms:
        if p.os == "linux" and p.arch == "x64" and not p.abi and not p.baseline and p.effective_profile == "release":
            return p
    return build_platforms[0] if build_platforms else None


def benchmark_step(platform: Platform, ctx: RunContext) -> CommandStep:
    return (
        step(BENCHMARK_STEP_KEY, "benchmark")
        .on(_generator_agent(ctx.settings))
        .depends_on(step_key(platform, StepRole.LINK))
        .run("node .buildkite/scripts/upload-benchmark.mjs")
        .build()
    )


# ---------------------------------------------------------------------
# Whole graph
# ---------------------------------------------------------------------

def build_groups(builds: Sequence[Platform], ctx: RunContext) -> List[GroupStep]:
    """
    Build steps grouped by group key (os, arch, baseline).

    The group key is what the cache protocol matches jobs on, so every
    build step must sit inside the group for its partition.
    """
    grouped: Dict[str, List[CommandStep]] = {}
    labels: Dict[str, str] = {}
    for platform in builds:
        key = group_key(platform)
        grouped.setdefault(key, []).extend(build_steps(platform, ctx))
        labels.setdefault(key, key.replace("-", " ", 2))
    return [GroupStep(key=k, group=labels[k], steps=tuple(v)) for k, v in grouped.items()]


def _image_platforms(
    builds: Sequence[Platform],
    tests: Sequence[Platform],
) -> List[Platform]:
    """Distinct elastic images the graph boots, in first-seen order."""
    seen: Dict[str, Platform] = {}
    for p in builds:
        if is_vm_backed(p.os):
            continue
        for role in (StepRole.VENDOR, StepRole.CPP, StepRole.ZIG, StepRole.LINK):
            host = host_platform(role, p)
            seen.setdefault(image_key(host), host)
    for p in tests:
        if not is_vm_backed(p.os):
            seen.setdefault(image_key(p), p)
    return list(seen.values())


def _check_test_targets(builds: Sequence[Platform], tests: Sequence[Platform]) -> None:
    built = {target_key(p) for p in builds}
    missing = sorted({target_key(p) for p in tests if target_key(p) not in built})
    if missing:
        raise ConfigurationError(
            f"test platforms have no matching build: {missing}",
            hint="Select the matching build platforms or pass a build id to test against.",
        )


def generate_pipeline(ctx: RunContext) -> Pipeline:
    """
    Compile the run context into a validated step graph.

    Raises:
      ConfigurationError: a test platform has no matching build, or the graph
      has duplicate keys, a dangling dependency or a cycle.
    """
    opts = ctx.options
    priority = priority_for(ctx.settings)

    if opts.skip_everything:
        return Pipeline(steps=(), priority=priority)

    builds: Tuple[Platform, ...] = ctx.build_platforms if opts.builds_enabled else ()
    tests: Tuple[Platform, ...] = ctx.test_platforms if opts.tests_enabled else ()

    if tests and not opts.detached:
        if not builds:
            raise ConfigurationError("tests are enabled without builds and without a build id to test against")
        _check_test_targets(builds, tests)

    body: List[Step] = list(build_groups(builds, ctx))
    for platform in tests:
        body.append(platform_test_step(platform, ctx))

    if builds:
        body.append(release_step(builds, ctx))
        rep = representative_build(builds)
        if rep is not None:
            body.append(benchmark_step(rep, ctx))

    head: List[Step] = []
    if any(BASE_IMAGE_STEP_KEY in s.depends_on for s in flatten_steps(body)):
        head.append(base_image_step(ctx))
    if opts.build_images:
        head.extend(image_step(p, ctx) for p in _image_platforms(builds, tests))

    steps = tuple(head + body)
    validate_steps(steps)
    return Pipeline(steps=steps, priority=priority)


def interactive_pipeline(
    settings: Settings,
    build_platforms: Iterable[Platform],
    test_platforms: Iterable[Platform],
) -> Pipeline:
    """The options block step plus the step that re-runs the generator with the answers."""
    steps: Tuple[Step, ...] = (
        options_block_step(build_platforms, test_platforms),
        options_apply_step(settings),
    )
    validate_steps(steps)
    return Pipeline(steps=steps, priority=priority_for(settings))


# ---------------------------------------------------------------------
# Serialization + upload
# ---------------------------------------------------------------------

def to_yaml(pipeline: Pipeline) -> str:
    return yaml.safe_dump(pipeline.to_dict(), sort_keys=False, default_flow_style=False, width=1 << 16)


def write_pipeline(pipeline: Pipeline, path: str | Path) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    content = to_yaml(pipeline)
    p.write_text(content, encoding="utf-8")
    get_console().print_pipeline_written(str(p), len(content.encode("utf-8")), len(pipeline.steps))
    return p


def upload_pipeline(path: str | Path, agent: AgentCli) -> None:
    """Upload the graph to the CI engine; the document is kept as an artifact either way."""
    console = get_console()
    console.print_group("Uploading pipeline...")
    try:
        agent.pipeline_upload(path)
    finally:
        try:
            agent.artifact_upload(path)
        except AgentCommandError as e:
            console.print_warning(f"could not upload {path} as an artifact: {e.message}")
