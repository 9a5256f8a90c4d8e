"""Run configuration read from the CI engine's environment."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .errors import ConfigurationError

DEFAULT_API_URL = "https://buildkite.com"
DEFAULT_VM_QUEUE = "darwin"
DEFAULT_ELASTIC_QUEUE = "elastic"
DEFAULT_GOLDEN_IMAGE = "ghcr.io/cirruslabs/macos-sequoia-base:latest"
DEFAULT_VM_PREFIX = "matrixci"
DEFAULT_BUILD_PATH = "build"

MERGE_QUEUE_PREFIX = "gh-readonly-queue/"


def parse_boolean(value: Optional[str]) -> bool:
    """Parse the loose booleans the CI engine hands us ("true", "1", "on", "yes")."""
    if value is None:
        return False
    return value.strip().lower() in ("1", "true", "on", "yes", "y")


@dataclass(frozen=True)
class Settings:
    """Immutable snapshot of everything the generator and step runner read from env."""

    is_buildkite: bool = False
    build_id: Optional[str] = None
    build_number: Optional[str] = None
    branch: Optional[str] = None
    default_branch: str = "main"
    commit_message: Optional[str] = None
    source: Optional[str] = None
    repo: Optional[str] = None
    pull_request_repo: Optional[str] = None
    organization_slug: str = "bun"
    pipeline_slug: str = "bun"
    group_id: Optional[str] = None
    group_key: Optional[str] = None
    build_id_override: Optional[str] = None
    command: Optional[str] = None
    agent_queue: Optional[str] = None
    api_token: Optional[str] = None
    release: bool = False

    api_url: str = DEFAULT_API_URL
    vm_queue: str = DEFAULT_VM_QUEUE
    elastic_queue: str = DEFAULT_ELASTIC_QUEUE
    golden_image: str = DEFAULT_GOLDEN_IMAGE
    publish_image: Optional[str] = None
    vm_prefix: str = DEFAULT_VM_PREFIX
    bootstrap_version: str = "1"
    build_path: str = DEFAULT_BUILD_PATH
    health_attempts: int = 5
    health_interval: float = 10.0
    boot_grace: float = 30.0
    canary_revision: int = 1

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if environ is None else environ

        def get(name: str) -> Optional[str]:
            value = env.get(name)
            return value if value else None

        try:
            health_attempts = int(env.get("MATRIXCI_HEALTH_ATTEMPTS", "5"))
            health_interval = float(env.get("MATRIXCI_HEALTH_INTERVAL", "10"))
            boot_grace = float(env.get("MATRIXCI_BOOT_GRACE", "30"))
            canary_revision = int(env.get("MATRIXCI_CANARY_REVISION", "1"))
        except ValueError as e:
            raise ConfigurationError(f"invalid numeric setting: {e}") from e

        if health_attempts < 1:
            raise ConfigurationError("MATRIXCI_HEALTH_ATTEMPTS must be >= 1", value=health_attempts)

        return cls(
            is_buildkite=parse_boolean(env.get("BUILDKITE")),
            build_id=get("BUILDKITE_BUILD_ID"),
            build_number=get("BUILDKITE_BUILD_NUMBER"),
            branch=get("BUILDKITE_BRANCH"),
            default_branch=get("BUILDKITE_PIPELINE_DEFAULT_BRANCH") or "main",
            commit_message=get("BUILDKITE_MESSAGE"),
            source=get("BUILDKITE_SOURCE"),
            repo=get("BUILDKITE_REPO"),
            pull_request_repo=get("BUILDKITE_PULL_REQUEST_REPO"),
            organization_slug=get("BUILDKITE_ORGANIZATION_SLUG") or "bun",
            pipeline_slug=get("BUILDKITE_PIPELINE_SLUG") or "bun",
            group_id=get("BUILDKITE_GROUP_ID"),
            group_key=get("BUILDKITE_GROUP_KEY"),
            build_id_override=get("BUILDKITE_BUILD_ID_OVERRIDE"),
            command=get("BUILDKITE_COMMAND"),
            agent_queue=get("BUILDKITE_AGENT_META_DATA_QUEUE"),
            api_token=get("BUILDKITE_API_TOKEN"),
            release=parse_boolean(env.get("RELEASE")),
            api_url=get("MATRIXCI_API_URL") or DEFAULT_API_URL,
            vm_queue=get("MATRIXCI_VM_QUEUE") or DEFAULT_VM_QUEUE,
            elastic_queue=get("MATRIXCI_ELASTIC_QUEUE") or DEFAULT_ELASTIC_QUEUE,
            golden_image=get("MATRIXCI_GOLDEN_IMAGE") or DEFAULT_GOLDEN_IMAGE,
            publish_image=get("MATRIXCI_PUBLISH_IMAGE"),
            vm_prefix=get("MATRIXCI_VM_PREFIX") or DEFAULT_VM_PREFIX,
            bootstrap_version=get("MATRIXCI_BOOTSTRAP_VERSION") or "1",
            build_path=get("MATRIXCI_BUILD_PATH") or DEFAULT_BUILD_PATH,
            health_attempts=health_attempts,
            health_interval=health_interval,
            boot_grace=boot_grace,
            canary_revision=canary_revision,
        )

    # ---- derived facts ----

    @property
    def is_manual(self) -> bool:
        return self.source == "ui"

    @property
    def is_main_branch(self) -> bool:
        return self.branch is not None and self.branch == self.default_branch

    @property
    def is_merge_queue(self) -> bool:
        return bool(self.branch and self.branch.startswith(MERGE_QUEUE_PREFIX))

    @property
    def is_fork(self) -> bool:
        if not self.pull_request_repo or not self.repo:
            return False
        return _normalize_repo(self.pull_request_repo) != _normalize_repo(self.repo)

    def require_api_token(self) -> str:
        if not self.api_token:
            raise ConfigurationError(
                "BUILDKITE_API_TOKEN is required for this operation",
                hint="Export an API token with read_builds and read_artifacts scopes.",
            )
        return self.api_token


def _normalize_repo(url: str) -> str:
    url = url.strip().rstrip("/")
    if url.endswith(".git"):
        url = url[:-4]
    for sep in ("github.com:", "github.com/"):
        if sep in url:
            return url.split(sep, 1)[1].lower()
    return url.lower()
