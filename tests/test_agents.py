from __future__ import annotations

import pytest

from matrixci.agents import ZIG_HOST, agent_for, image_name, instance_for
from matrixci.config import Settings
from matrixci.model import Platform, StepRole
from matrixci.options import PipelineOptions, RunContext

from conftest import DARWIN_ARM_14, LINUX_ARM_MUSL, LINUX_X64_DEBIAN


def _ctx(**opts) -> RunContext:
    return RunContext(settings=Settings(build_number="77", bootstrap_version="3"), options=PipelineOptions(**opts))


@pytest.mark.parametrize("role", list(StepRole))
def test_vm_backed_os_always_goes_to_vm_queue(role):
    d = agent_for(role, DARWIN_ARM_14, _ctx()).to_dict()
    assert d == {"queue": "darwin", "os": "darwin", "arch": "aarch64", "tart": True}


def test_compile_roles_get_large_instances():
    d = agent_for(StepRole.CPP, LINUX_ARM_MUSL, _ctx()).to_dict()
    assert d["queue"] == "elastic"
    assert d["instance-type"] == "c8g.16xlarge"
    assert d["cpu-count"] == 32
    assert d["threads-per-core"] == 1
    assert d["preemptible"] is False
    assert d["abi"] == "musl"

    x = agent_for(StepRole.LINK, LINUX_X64_DEBIAN, _ctx()).to_dict()
    assert x["instance-type"] == "c7i.16xlarge"
    assert "abi" not in x


def test_zig_runs_on_linux_cross_compile_host_regardless_of_target():
    for target in (LINUX_ARM_MUSL, LINUX_X64_DEBIAN, Platform(os="windows", arch="x64", release="2019")):
        d = agent_for(StepRole.ZIG, target, _ctx()).to_dict()
        assert (d["os"], d["arch"], d["abi"], d["distro"]) == ("linux", "x64", "musl", "alpine")
        assert d["instance-type"] == "c7i.2xlarge"
        assert d["cpu-count"] == 4


def test_test_role_instances():
    assert instance_for(StepRole.TEST, "windows", "x64") == ("c7i.2xlarge", 2)
    assert instance_for(StepRole.TEST, "linux", "aarch64") == ("c8g.xlarge", 2)
    assert instance_for(StepRole.TEST, "linux", "x64") == ("c7i.xlarge", 2)


def test_image_name_versions():
    assert image_name(LINUX_X64_DEBIAN, _ctx()) == "linux-x64-12-debian-v3"
    assert image_name(LINUX_X64_DEBIAN, _ctx(build_images=True)) == "linux-x64-12-debian-build-77"
    assert image_name(ZIG_HOST, _ctx(build_images=True, publish_images=True)) == "linux-x64-321-alpine-musl-v3"
