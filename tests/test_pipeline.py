from __future__ import annotations

import itertools
import shlex

import pytest
import yaml

from matrixci.config import Settings
from matrixci.dag import validate_steps
from matrixci.dsl import step
from matrixci.errors import AgentCommandError, ConfigurationError
from matrixci.model import BlockStep, CommandStep, GroupStep, Platform, StepRole, flatten_steps
from matrixci.options import PipelineOptions, RunContext
from matrixci.pipeline import (
    BASE_IMAGE_STEP_KEY,
    BENCHMARK_STEP_KEY,
    RELEASE_STEP_KEY,
    generate_pipeline,
    image_step_key,
    interactive_pipeline,
    priority_for,
    step_run_command,
    to_yaml,
    upload_pipeline,
    write_pipeline,
)

from conftest import DARWIN_ARM_14, DARWIN_ARM_14_TEST, LINUX_ARM_MUSL, LINUX_X64_DEBIAN, FakeAgent


def _ctx(builds, tests, settings=None, **opts) -> RunContext:
    options = PipelineOptions(build_platforms=tuple(builds), test_platforms=tuple(tests), **opts)
    return RunContext(settings=settings or Settings(), options=options)


# ---------------------------------------------------------------------
# End to end: one VM-backed platform
# ---------------------------------------------------------------------

def test_vm_backed_platform_graph():
    pipeline = generate_pipeline(_ctx([DARWIN_ARM_14], [DARWIN_ARM_14_TEST]))

    vendor = pipeline.get("darwin-aarch64-build-vendor")
    cpp = pipeline.get("darwin-aarch64-build-cpp")
    zig = pipeline.get("darwin-aarch64-build-zig")
    link = pipeline.get("darwin-aarch64-build-bun")
    test = pipeline.get("darwin-aarch64-14-test-bun")
    release = pipeline.get(RELEASE_STEP_KEY)

    assert set(link.depends_on) >= {cpp.key, zig.key}
    assert release.depends_on == (link.key,)
    assert test.depends_on == (BASE_IMAGE_STEP_KEY, link.key)
    for s in (vendor, cpp, zig, link, test):
        assert BASE_IMAGE_STEP_KEY in s.depends_on
        assert "--vm" in shlex.split(s.command)

    base = [s for s in pipeline.steps if s.key == BASE_IMAGE_STEP_KEY]
    assert len(base) == 1
    assert pipeline.steps[0].key == BASE_IMAGE_STEP_KEY

    group = pipeline.get("darwin-aarch64")
    assert isinstance(group, GroupStep)
    assert [s.key for s in group.steps] == [vendor.key, cpp.key, zig.key, link.key]


def test_build_step_commands_and_env():
    pipeline = generate_pipeline(_ctx([DARWIN_ARM_14], [], skip_tests=True))
    cpp = pipeline.get("darwin-aarch64-build-cpp")
    zig = pipeline.get("darwin-aarch64-build-zig")
    link = pipeline.get("darwin-aarch64-build-bun")

    argv = shlex.split(cpp.command)
    assert argv[:3] == ["matrixci", "step", "run"]
    assert argv[argv.index("--") + 1:] == ["bun", "run", "build:release"]
    assert cpp.env_dict["BUN_CPP_ONLY"] == "ON"
    assert cpp.env_dict["ENABLE_CANARY"] == "ON"
    assert "ABI" not in cpp.env_dict
    assert link.env_dict["BUN_LINK_ONLY"] == "ON"
    assert zig.timeout_in_minutes == 35
    assert shlex.split(zig.command)[-2:] == ["--toolchain", "darwin-aarch64"]
    assert zig.retry.to_dict()["automatic"][2] == {"exit_status": 255, "limit": 1}


def test_step_run_command_quotes_each_token():
    target = Platform(os="linux", arch="x64", abi="musl", baseline=True, profile="debug", release="3.21")
    cmd = step_run_command(StepRole.TEST, target, ["./run", "a b", "$(rm -rf /)"])
    argv = shlex.split(cmd)
    assert argv[argv.index("--") + 1:] == ["./run", "a b", "$(rm -rf /)"]
    assert "--vm" not in argv
    assert ["--abi", "musl"] == argv[argv.index("--abi"):argv.index("--abi") + 2]
    assert "--baseline" in argv


# ---------------------------------------------------------------------
# Elastic platforms and options
# ---------------------------------------------------------------------

def test_linux_platform_has_no_base_image_step():
    pipeline = generate_pipeline(_ctx([LINUX_X64_DEBIAN], [LINUX_X64_DEBIAN]))
    assert BASE_IMAGE_STEP_KEY not in pipeline.keys
    test = pipeline.get("linux-x64-debian-12-test-bun")
    assert test.parallelism == 10
    assert test.timeout_in_minutes == 30
    assert pipeline.get(BENCHMARK_STEP_KEY).depends_on == ("linux-x64-build-bun",)


def test_build_images_adds_image_steps():
    pipeline = generate_pipeline(_ctx([LINUX_X64_DEBIAN], [LINUX_X64_DEBIAN], build_images=True))
    assert "linux-x64-12-debian-build-image" in pipeline.keys
    assert "linux-x64-321-alpine-musl-build-image" in pipeline.keys
    zig = pipeline.get("linux-x64-build-zig")
    assert zig.depends_on[0] == "linux-x64-321-alpine-musl-build-image"
    image = pipeline.get("linux-x64-12-debian-build-image")
    assert "create-image" in image.command


def test_image_step_command_is_shell_quoted():
    platform = Platform(os="linux", arch="x64", distro="debian", release="12", features=("docker", "nodejs"))
    ctx = _ctx([platform], [], settings=Settings(organization_slug="acme corp;rm -rf /"), build_images=True)
    image = generate_pipeline(ctx).get(image_step_key(platform))
    argv = shlex.split(image.command)
    assert argv[:3] == ["node", "./scripts/machine.mjs", "create-image"]
    assert "--authorized-org=acme corp;rm -rf /" in argv
    assert argv[-2:] == ["--feature=docker", "--feature=nodejs"]


def test_unified_builds_and_tests():
    pipeline = generate_pipeline(_ctx([LINUX_X64_DEBIAN], [LINUX_X64_DEBIAN], unified_builds=True, unified_tests=True))
    group = pipeline.get("linux-x64")
    assert [s.key for s in group.steps] == ["linux-x64-build-bun"]
    assert pipeline.get("linux-x64-build-bun").depends_on == ()
    assert pipeline.get("linux-x64-debian-12-test-bun").parallelism is None


def test_detached_tests_drop_build_edge():
    pipeline = generate_pipeline(_ctx([DARWIN_ARM_14], [DARWIN_ARM_14_TEST], skip_builds=True, build_id="b-9"))
    test = pipeline.get("darwin-aarch64-14-test-bun")
    assert test.depends_on == (BASE_IMAGE_STEP_KEY,)
    assert "--build-id=b-9" in shlex.split(test.command)
    assert RELEASE_STEP_KEY not in pipeline.keys
    assert BENCHMARK_STEP_KEY not in pipeline.keys


def test_tests_without_builds_or_build_id_abort():
    with pytest.raises(ConfigurationError):
        generate_pipeline(_ctx([DARWIN_ARM_14], [DARWIN_ARM_14_TEST], skip_builds=True))


def test_test_platform_without_matching_build_aborts():
    with pytest.raises(ConfigurationError, match="no matching build"):
        generate_pipeline(_ctx([DARWIN_ARM_14], [LINUX_X64_DEBIAN]))


def test_skip_everything_emits_nothing():
    assert generate_pipeline(_ctx([DARWIN_ARM_14], [DARWIN_ARM_14_TEST], skip_everything=True)).steps == ()


def test_merge_queue_steps_cancel_on_failing_build():
    settings = Settings(branch="gh-readonly-queue/main/pr-1")
    pipeline = generate_pipeline(_ctx([LINUX_X64_DEBIAN], [LINUX_X64_DEBIAN], settings=settings))
    assert pipeline.get("linux-x64-build-cpp").cancel_on_build_failing is True
    assert pipeline.priority == 1


@pytest.mark.parametrize(
    "skip_builds,skip_tests,unified_builds,unified_tests,build_images,publish_images",
    list(itertools.product((False, True), repeat=6)),
)
def test_every_option_combination_is_a_dag(skip_builds, skip_tests, unified_builds, unified_tests, build_images, publish_images):
    builds = [DARWIN_ARM_14, LINUX_X64_DEBIAN, LINUX_ARM_MUSL, LINUX_ARM_MUSL.with_profile("asan")]
    tests = [DARWIN_ARM_14_TEST, LINUX_X64_DEBIAN, LINUX_ARM_MUSL]
    ctx = _ctx(
        builds,
        tests,
        skip_builds=skip_builds,
        skip_tests=skip_tests,
        unified_builds=unified_builds,
        unified_tests=unified_tests,
        build_images=build_images,
        publish_images=publish_images,
        build_id="prev" if skip_builds else None,
    )
    pipeline = generate_pipeline(ctx)
    keys = pipeline.keys
    assert len(keys) == len(set(keys))
    for s in flatten_steps(pipeline.steps):
        for dep in s.depends_on:
            assert dep in keys
    validate_steps(pipeline.steps)


# ---------------------------------------------------------------------
# Priority, interactive graph, serialization
# ---------------------------------------------------------------------

@pytest.mark.parametrize(
    "settings,expected",
    [
        (Settings(repo="git@github.com:oven-sh/bun.git", pull_request_repo="https://github.com/me/bun"), -1),
        (Settings(branch="main"), 2),
        (Settings(branch="gh-readonly-queue/main/pr-2"), 1),
        (Settings(branch="feature"), 0),
    ],
)
def test_priority(settings, expected):
    assert priority_for(settings) == expected


def test_interactive_pipeline():
    pipeline = interactive_pipeline(Settings(), [DARWIN_ARM_14], [DARWIN_ARM_14_TEST])
    assert pipeline.keys == ["options", "options-apply"]
    assert isinstance(pipeline.steps[0], BlockStep)
    assert isinstance(pipeline.steps[1], CommandStep)


def test_yaml_document(tmp_path):
    pipeline = generate_pipeline(_ctx([DARWIN_ARM_14], [DARWIN_ARM_14_TEST]))
    doc = yaml.safe_load(to_yaml(pipeline))
    assert doc["priority"] == 0
    group = next(s for s in doc["steps"] if "group" in s)
    assert group["key"] == "darwin-aarch64"
    cpp = next(s for s in group["steps"] if s["key"] == "darwin-aarch64-build-cpp")
    assert cpp["agents"] == {"queue": "darwin", "os": "darwin", "arch": "aarch64", "tart": True}
    assert cpp["retry"]["manual"] == {"permit_on_passed": True}
    assert "parallelism" not in cpp

    path = write_pipeline(pipeline, tmp_path / ".buildkite" / "ci.yml")
    assert yaml.safe_load(path.read_text()) == doc


def test_upload_pipeline_keeps_artifact_when_upload_fails(tmp_path):
    path = tmp_path / "ci.yml"
    path.write_text("steps: []\n")
    agent = FakeAgent()
    agent.fail_pipeline = True
    with pytest.raises(AgentCommandError):
        upload_pipeline(path, agent)
    assert agent.uploads == [(str(path), None)]


def test_upload_pipeline(tmp_path):
    path = tmp_path / "ci.yml"
    path.write_text("steps: []\n")
    agent = FakeAgent()
    agent.fail_uploads = 1
    upload_pipeline(path, agent)
    assert agent.pipelines == [str(path)]


def test_step_builder_drops_unset_values():
    s = (
        step("k", "label")
        .run(["a", "b"])
        .depends_on("x", None, "x")
        .with_env({"A": 1, "B": None}, C="c")
        .cancel_on_build_failing(False)
        .build()
    )
    assert s.depends_on == ("x",)
    assert s.env == (("A", "1"), ("C", "c"))
    assert s.cancel_on_build_failing is None
    assert s.to_dict()["command"] == ["a", "b"]
