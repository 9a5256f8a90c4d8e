"""Shared test fixtures: in-memory stand-ins for tart, buildkite-agent and the engine API."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Tuple

import pytest

from matrixci.config import Settings
from matrixci.engine.models import ArtifactRecord, BuildRecord
from matrixci.errors import AgentCommandError, APIError, VMError
from matrixci.model import Platform
from matrixci.ui.console import Console, set_console
from matrixci.vm.tart import TartInstance


@pytest.fixture(autouse=True)
def quiet_console():
    console = Console(debug=True)
    set_console(console)
    yield console


# ---------------------------------------------------------------------
# tart
# ---------------------------------------------------------------------

class FakeProc:
    def __init__(self) -> None:
        self.terminated = False

    def terminate(self) -> None:
        self.terminated = True

    def wait(self, timeout=None) -> int:
        return 0

    def kill(self) -> None:
        self.terminated = True


class FakeTart:
    def __init__(self, *, ip: Optional[str] = None, exit_code: int = 0, probe_ok: bool = True):
        self.instances: Dict[str, TartInstance] = {}
        self.calls: List[Tuple] = []
        self.ip_value = ip
        self.exit_code = exit_code
        self.probe_ok = probe_ok
        self.exec_error: Optional[BaseException] = None
        self.ip_calls = 0
        self.deleted: List[str] = []
        self.pulled: List[str] = []
        self.pushed: List[Tuple[str, str]] = []
        self.pull_failures = 0
        self.procs: List[FakeProc] = []

    def add(self, name: str, *, source: str = "local", state: str = "stopped") -> None:
        self.instances[name] = TartInstance(name=name, source=source, state=state)

    def list(self) -> List[TartInstance]:
        return list(self.instances.values())

    def exists(self, name: str) -> bool:
        return name in self.instances

    def clone(self, source: str, name: str) -> None:
        self.calls.append(("clone", source, name))
        self.add(name)

    def run_headless(self, name: str, mounts: Dict[str, str]) -> FakeProc:
        self.calls.append(("run", name, dict(mounts)))
        self.add(name, state="running")
        proc = FakeProc()
        self.procs.append(proc)
        return proc

    def ip(self, name: str, wait: int = 0) -> Optional[str]:
        self.ip_calls += 1
        return self.ip_value

    def probe(self, name: str, timeout: float = 30.0) -> bool:
        return self.probe_ok

    def exec(self, name: str, argv, *, stream: bool = True, timeout=None) -> int:
        self.calls.append(("exec", name, list(argv)))
        if self.exec_error is not None:
            raise self.exec_error
        return self.exit_code

    def copy_out(self, name: str, guest_path: str, host_path) -> bool:
        return False

    def stop(self, name: str, timeout: int = 30) -> None:
        self.calls.append(("stop", name))

    def delete(self, name: str) -> None:
        self.calls.append(("delete", name))
        self.deleted.append(name)
        self.instances.pop(name, None)

    def pull(self, image: str) -> None:
        if self.pull_failures > 0:
            self.pull_failures -= 1
            raise VMError("tart pull failed")
        self.pulled.append(image)
        self.add(image, source="oci")

    def push(self, local: str, remote: str) -> None:
        self.pushed.append((local, remote))


class FakeDiagnostics:
    def __init__(self, path: Path):
        self.path = path
        self.started = False
        self.stopped = False

    def start(self) -> bool:
        self.started = True
        return True

    def stop(self) -> None:
        self.stopped = True


# ---------------------------------------------------------------------
# buildkite-agent
# ---------------------------------------------------------------------

class FakeAgent:
    def __init__(self, metadata: Optional[Dict[str, str]] = None):
        self.metadata = dict(metadata or {})
        self.uploads: List[Tuple[str, Optional[str]]] = []
        self.uploaded_existed: List[bool] = []
        self.downloads: List[Tuple] = []
        self.pipelines: List[str] = []
        self.fail_uploads = 0
        self.fail_pipeline = False

    def available(self) -> bool:
        return True

    def artifact_upload(self, path, *, cwd=None) -> None:
        if self.fail_uploads > 0:
            self.fail_uploads -= 1
            raise AgentCommandError("artifact upload failed", exit_code=1)
        self.uploads.append((str(path), cwd))
        self.uploaded_existed.append((Path(cwd) / str(path)).exists() if cwd else Path(str(path)).exists())

    def artifact_download(self, path, dest, *, build=None, step=None) -> None:
        self.downloads.append((path, str(dest), build, step))

    def pipeline_upload(self, path) -> None:
        if self.fail_pipeline:
            raise AgentCommandError("pipeline upload failed", exit_code=1)
        self.pipelines.append(str(path))

    def meta_data_get(self, key: str) -> Optional[str]:
        return self.metadata.get(key)


# ---------------------------------------------------------------------
# engine API
# ---------------------------------------------------------------------

class FakeEngineClient:
    def __init__(self) -> None:
        self.builds: Dict[str, BuildRecord] = {}
        self.last_passed: Dict[Optional[str], List[BuildRecord]] = {}
        self.artifacts: Dict[Tuple[str, str], object] = {}
        self.files: Dict[str, Path] = {}
        self.requested_branches: List[Optional[str]] = []

    def add_build(self, data: dict, *, branch: Optional[str] = None) -> BuildRecord:
        build = BuildRecord.model_validate(data)
        self.builds[build.id] = build
        self.last_passed.setdefault(branch, []).append(build)
        return build

    def last_successful_build(self, branch, exclude_build_id=None):
        self.requested_branches.append(branch)
        for build in self.last_passed.get(branch, []):
            if build.id != exclude_build_id:
                return build
        return None

    def get_build(self, build_id: str) -> BuildRecord:
        if build_id not in self.builds:
            raise APIError("API request failed: 404 Not Found")
        return self.builds[build_id]

    def get_job_artifacts(self, build_uuid: str, job_id: str) -> List[ArtifactRecord]:
        value = self.artifacts.get((build_uuid, job_id), [])
        if isinstance(value, BaseException):
            raise value
        return [ArtifactRecord.model_validate(a) for a in value]

    def download_artifact(self, build_uuid: str, job_id: str, artifact: ArtifactRecord, dest: Path) -> Path:
        dest = Path(dest)
        dest.mkdir(parents=True, exist_ok=True)
        out = dest / Path(artifact.path).name
        out.write_bytes(self.files[artifact.path].read_bytes())
        return out


# ---------------------------------------------------------------------
# Misc
# ---------------------------------------------------------------------

class SleepRecorder:
    def __init__(self) -> None:
        self.calls: List[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def sleep() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def fake_tart() -> FakeTart:
    return FakeTart()


@pytest.fixture
def fake_agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def fake_client() -> FakeEngineClient:
    return FakeEngineClient()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        branch="feature",
        build_id="build-current",
        group_key="darwin-aarch64",
        boot_grace=0,
        health_attempts=5,
        health_interval=10.0,
    )


DARWIN_ARM_14 = Platform(os="darwin", arch="aarch64", release="14")
DARWIN_ARM_14_TEST = Platform(os="darwin", arch="aarch64", release="14", tier="latest")
LINUX_X64_DEBIAN = Platform(os="linux", arch="x64", distro="debian", release="12")
LINUX_ARM_MUSL = Platform(os="linux", arch="aarch64", abi="musl", distro="alpine", release="3.21")
