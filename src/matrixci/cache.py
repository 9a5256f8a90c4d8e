# cache.py
from __future__ import annotations

import shutil
import tarfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from .config import Settings
from .engine.agent_cli import AgentCli
from .engine.client import EngineClient
from .engine.models import ArtifactRecord, BuildRecord, JobRecord
from .errors import AgentCommandError, APIError
from .model import StepRole
from .ui.console import get_console

# ---------------------------------------------------------------------
# Core idea
# ---------------------------------------------------------------------
# Compiler caches travel between builds as CI artifacts:
#
#   restore (step start):
#     reference build = override | last passed build on this branch (never the
#                       running build) | last passed build on the default branch
#     for each job of the reference build:
#       failed           -> skip
#       other group      -> skip (group key = os/arch/baseline partition)
#       artifacts 404    -> skip
#       no artifacts     -> skip
#       matched          -> download known cache archives, extract
#
#   save (step end):
#     tar.gz each cache directory this role produces, upload, delete local tar.
#     Roles that produce nothing have an empty upload list.
#
# Restore never raises. A cold cache is always an acceptable outcome.
# ---------------------------------------------------------------------

DEFAULT_TRANSFER_ATTEMPTS = 3
DEFAULT_TRANSFER_DELAY = 5.0
DOWNLOAD_DIR = "cache-download"


@dataclass(frozen=True)
class CacheArtifact:
    name: str
    directory: str  # relative to the build path
    archive: str

    def local_dir(self, build_path: Path) -> Path:
        return build_path / self.directory


CCACHE = CacheArtifact("ccache", "cache-ephemeral/ccache", "ccache-cache.tar.gz")
ZIG_LOCAL = CacheArtifact("zig-local", "cache-ephemeral/zig/local", "zig-local-cache.tar.gz")
ZIG_GLOBAL = CacheArtifact("zig-global", "cache-ephemeral/zig/global", "zig-global-cache.tar.gz")

CACHE_ARTIFACTS: Tuple[CacheArtifact, ...] = (CCACHE, ZIG_LOCAL, ZIG_GLOBAL)

# Exactly one role produces (and may upload) each cache type.
PRODUCERS: Dict[StepRole, Tuple[CacheArtifact, ...]] = {
    StepRole.CPP: (CCACHE,),
    StepRole.ZIG: (ZIG_LOCAL, ZIG_GLOBAL),
}


def artifacts_for(role: StepRole) -> Tuple[CacheArtifact, ...]:
    return PRODUCERS.get(role, ())


def producer_of(artifact: CacheArtifact) -> StepRole:
    for role, produced in PRODUCERS.items():
        if artifact in produced:
            return role
    raise KeyError(artifact.name)


# ---------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------

@dataclass
class JobBuckets:
    failed: List[str] = field(default_factory=list)
    no_group_match: List[str] = field(default_factory=list)
    not_found: List[str] = field(default_factory=list)
    no_artifacts: List[str] = field(default_factory=list)
    matched: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, List[str]]:
        return {
            "failed": self.failed,
            "no_group_match": self.no_group_match,
            "not_found": self.not_found,
            "no_artifacts": self.no_artifacts,
            "matched": self.matched,
        }


@dataclass
class RestoreReport:
    role: str
    reference_build: Optional[str] = None
    restored: List[str] = field(default_factory=list)
    buckets: JobBuckets = field(default_factory=JobBuckets)
    reason: Optional[str] = None

    @property
    def hit(self) -> bool:
        return bool(self.restored)


@dataclass
class SaveReport:
    role: str
    uploaded: List[str] = field(default_factory=list)
    empty: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    @property
    def noop(self) -> bool:
        return not (self.uploaded or self.empty or self.failed)


# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------

T = TypeVar("T")


def with_retry(
    fn: Callable[[], T],
    *,
    attempts: int = DEFAULT_TRANSFER_ATTEMPTS,
    delay: float = DEFAULT_TRANSFER_DELAY,
    sleep: Callable[[float], None] = time.sleep,
    retry_on: Tuple[type, ...] = (APIError, AgentCommandError, OSError),
) -> T:
    """Run an idempotent transfer up to `attempts` times with a fixed delay."""
    last: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except retry_on as e:
            last = e
            get_console().print_debug(f"attempt {attempt}/{attempts} failed: {e}")
            if attempt < attempts:
                sleep(delay)
    assert last is not None
    raise last


def _reset_dir(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path, ignore_errors=True)
    path.mkdir(parents=True, exist_ok=True)


def _is_empty_dir(path: Path) -> bool:
    return not path.is_dir() or not any(path.iterdir())


def extract_archive(archive: Path, target_dir: Path) -> bool:
    """
    Extract a cache archive next to `target_dir`.

    Archives hold a single top-level directory named like `target_dir`, so
    they are unpacked into its parent. A failed or empty extraction leaves an
    empty `target_dir` behind. Returns True if anything was restored.
    """
    target_dir.parent.mkdir(parents=True, exist_ok=True)
    try:
        with tarfile.open(str(archive), mode="r:gz") as tar:
            tar.extractall(path=str(target_dir.parent), filter="data")
    except (tarfile.TarError, OSError, EOFError) as e:
        get_console().print_debug(f"extract {archive.name} failed: {e}")
        _reset_dir(target_dir)
        return False

    if _is_empty_dir(target_dir):
        _reset_dir(target_dir)
        return False
    return True


def create_archive(source_dir: Path, archive: Path) -> Path:
    """tar.gz `source_dir` under its own name; written to a temp file then renamed."""
    archive.parent.mkdir(parents=True, exist_ok=True)
    tmp = archive.with_name(archive.name + ".tmp")
    try:
        with tarfile.open(str(tmp), mode="w:gz") as tar:
            tar.add(str(source_dir), arcname=source_dir.name)
        tmp.replace(archive)
    finally:
        if tmp.exists():
            tmp.unlink(missing_ok=True)
    return archive


def resolve_reference_build(settings: Settings, client: EngineClient) -> Optional[str]:
    """
    Pick the build whose caches this step restores.

    The running build is always excluded: it has not published anything yet.
    """
    if settings.build_id_override:
        return settings.build_id_override

    build = client.last_successful_build(settings.branch, exclude_build_id=settings.build_id)
    if build is None and settings.branch != settings.default_branch:
        build = client.last_successful_build(settings.default_branch, exclude_build_id=settings.build_id)
    return build.id if build is not None else None


def classify_jobs(
    jobs: Iterable[JobRecord],
    *,
    group_id: Optional[str],
    group_key: Optional[str],
    fetch_artifacts: Callable[[JobRecord], List[ArtifactRecord]],
) -> Tuple[JobBuckets, Dict[str, List[ArtifactRecord]]]:
    """Sort a reference build's jobs into buckets; returns artifacts of matched jobs by job id."""
    buckets = JobBuckets()
    matched: Dict[str, List[ArtifactRecord]] = {}

    for job in jobs:
        name = job.display_name
        if not job.passed:
            buckets.failed.append(name)
            continue
        if not job.in_group(group_id, group_key):
            buckets.no_group_match.append(name)
            continue
        try:
            artifacts = fetch_artifacts(job)
        except APIError:
            buckets.not_found.append(name)
            continue
        if not artifacts:
            buckets.no_artifacts.append(name)
            continue
        buckets.matched.append(name)
        matched[job.id] = artifacts

    return buckets, matched


# ---------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------

class CacheManager:
    """
    Restore/save compiler caches for one step role.

      build_path/
        cache-ephemeral/ccache
        cache-ephemeral/zig/{local,global}
        cache-download/           (transient)
    """

    def __init__(
        self,
        settings: Settings,
        role: StepRole,
        *,
        client: Optional[EngineClient] = None,
        agent: Optional[AgentCli] = None,
        build_path: str | Path | None = None,
        attempts: int = DEFAULT_TRANSFER_ATTEMPTS,
        delay: float = DEFAULT_TRANSFER_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.role = role
        self.client = client if client is not None else EngineClient.from_settings(settings)
        self.agent = agent if agent is not None else AgentCli()
        self.build_path = Path(build_path if build_path is not None else settings.build_path).resolve()
        self.attempts = attempts
        self.delay = delay
        self._sleep = sleep

    @property
    def artifacts(self) -> Tuple[CacheArtifact, ...]:
        return artifacts_for(self.role)

    def _retry(self, fn: Callable[[], T]) -> T:
        return with_retry(fn, attempts=self.attempts, delay=self.delay, sleep=self._sleep)

    # ---- restore ----

    def restore(self) -> RestoreReport:
        """Restore this role's caches from the reference build. Never raises."""
        console = get_console()
        report = RestoreReport(role=self.role.value)

        if not self.artifacts:
            report.reason = "role has no caches"
            return report

        console.print_group(f"Restoring caches ({self.role.value})")
        try:
            self._restore(report)
        except Exception as e:  # restore never raises
            report.restored.clear()
            report.reason = f"restore failed: {e}"

        if report.hit:
            for name in report.restored:
                console.print_cache_hit(name, f"build {report.reference_build}")
        else:
            console.print_cache_miss(report.reason or "nothing restored")
        console.print_debug(f"job buckets: {report.buckets.as_dict()}")
        return report

    def _restore(self, report: RestoreReport) -> None:
        build_id = resolve_reference_build(self.settings, self.client)
        if not build_id:
            report.reason = "no previous successful build"
            return
        report.reference_build = build_id

        build: BuildRecord = self.client.get_build(build_id)
        if not build.jobs:
            report.reason = f"build {build_id} has no jobs"
            return

        buckets, matched = classify_jobs(
            build.jobs,
            group_id=self.settings.group_id,
            group_key=self.settings.group_key,
            fetch_artifacts=lambda job: self.client.get_job_artifacts(build.id, job.id),
        )
        report.buckets = buckets

        wanted = {a.archive: a for a in self.artifacts}
        staging = self.build_path / DOWNLOAD_DIR
        for job_id, artifacts in matched.items():
            for record in artifacts:
                cache = wanted.get(Path(record.path).name)
                if cache is None or cache.name in report.restored:
                    continue
                try:
                    archive = self._retry(lambda: self._download(build.id, job_id, record, staging))
                except (APIError, AgentCommandError, OSError) as e:
                    get_console().print_debug(f"download {record.path} failed: {e}")
                    continue
                try:
                    if extract_archive(archive, cache.local_dir(self.build_path)):
                        report.restored.append(cache.name)
                finally:
                    archive.unlink(missing_ok=True)

        if not report.restored and report.reason is None:
            report.reason = "no matching cache artifacts"

    def _download(self, build_uuid: str, job_id: str, record: ArtifactRecord, staging: Path) -> Path:
        staging.mkdir(parents=True, exist_ok=True)
        if self.settings.is_buildkite:
            self.agent.artifact_download(record.path, staging, build=build_uuid, step=job_id)
            return staging / record.path
        return self.client.download_artifact(build_uuid, job_id, record, staging)

    # ---- save ----

    def save(self) -> SaveReport:
        """Upload the caches this role produced. A no-op for roles that produce none."""
        console = get_console()
        report = SaveReport(role=self.role.value)
        if not self.artifacts:
            return report

        console.print_group(f"Saving caches ({self.role.value})")
        for cache in self.artifacts:
            source = cache.local_dir(self.build_path)
            if _is_empty_dir(source):
                report.empty.append(cache.name)
                continue

            archive = self.build_path / cache.archive
            try:
                create_archive(source, archive)
                self._retry(lambda: self.agent.artifact_upload(cache.archive, cwd=str(self.build_path)))
                report.uploaded.append(cache.name)
                console.print_cache_saved(cache.name, cache.archive)
            except (AgentCommandError, OSError, tarfile.TarError) as e:
                report.failed.append(cache.name)
                console.print_warning(f"could not save {cache.name}: {e}")
            finally:
                archive.unlink(missing_ok=True)
        return report
