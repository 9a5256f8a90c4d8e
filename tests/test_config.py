from __future__ import annotations

import pytest

from matrixci.config import Settings, parse_boolean
from matrixci.errors import ConfigurationError


@pytest.mark.parametrize("value,expected", [("true", True), ("1", True), ("ON", True), ("false", False), ("", False), (None, False)])
def test_parse_boolean(value, expected):
    assert parse_boolean(value) is expected


def test_from_env_reads_engine_variables():
    s = Settings.from_env({
        "BUILDKITE": "true",
        "BUILDKITE_BUILD_ID": "b-1",
        "BUILDKITE_BRANCH": "main",
        "BUILDKITE_SOURCE": "ui",
        "BUILDKITE_GROUP_KEY": "darwin-aarch64",
        "BUILDKITE_MESSAGE": "",
        "MATRIXCI_HEALTH_ATTEMPTS": "7",
        "MATRIXCI_PUBLISH_IMAGE": "ghcr.io/acme/base:latest",
    })
    assert s.is_buildkite
    assert s.build_id == "b-1"
    assert s.is_main_branch
    assert s.is_manual
    assert s.group_key == "darwin-aarch64"
    assert s.commit_message is None
    assert s.health_attempts == 7
    assert s.publish_image == "ghcr.io/acme/base:latest"


def test_from_env_defaults():
    s = Settings.from_env({})
    assert not s.is_buildkite
    assert s.default_branch == "main"
    assert s.health_attempts == 5
    assert s.health_interval == 10.0


@pytest.mark.parametrize("env", [{"MATRIXCI_HEALTH_ATTEMPTS": "many"}, {"MATRIXCI_HEALTH_ATTEMPTS": "0"}])
def test_from_env_rejects_bad_numbers(env):
    with pytest.raises(ConfigurationError):
        Settings.from_env(env)


def test_fork_and_merge_queue_detection():
    fork = Settings(repo="git@github.com:oven-sh/bun.git", pull_request_repo="https://github.com/someone/bun")
    same = Settings(repo="git@github.com:oven-sh/bun.git", pull_request_repo="https://github.com/oven-sh/bun.git")
    assert fork.is_fork
    assert not same.is_fork
    assert Settings(branch="gh-readonly-queue/main/pr-1").is_merge_queue


def test_require_api_token():
    with pytest.raises(ConfigurationError):
        Settings().require_api_token()
    assert Settings(api_token="t").require_api_token() == "t"
