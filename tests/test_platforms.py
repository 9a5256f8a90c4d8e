from __future__ import annotations

import pytest

from matrixci.errors import ConfigurationError
from matrixci.model import target_key
from matrixci.platforms import BUILD_PLATFORMS, TEST_PLATFORMS, load_matrix


def test_default_matrices_are_macos():
    assert {target_key(p) for p in BUILD_PLATFORMS} == {"darwin-aarch64", "darwin-x64"}
    assert {(p.arch, p.release, p.tier) for p in TEST_PLATFORMS} == {
        ("aarch64", "14", "latest"),
        ("aarch64", "13", "previous"),
        ("x64", "14", "latest"),
        ("x64", "13", "previous"),
    }


def test_load_matrix(tmp_path):
    path = tmp_path / "matrix.yml"
    path.write_text(
        "build:\n"
        "  - {os: linux, arch: x64, distro: debian, release: '12'}\n"
        "  - {os: darwin, arch: aarch64, release: '14'}\n"
        "test:\n"
        "  - {os: linux, arch: x64, distro: debian, release: '12', tier: latest}\n"
    )
    builds, tests = load_matrix(path)
    assert [target_key(p) for p in builds] == ["linux-x64", "darwin-aarch64"]
    assert len(tests) == 1 and tests[0].tier == "latest"


@pytest.mark.parametrize(
    "content,match",
    [
        ("build: 3\n", "must be a list"),
        ("- a\n- b\n", "must be a mapping"),
        ("build: []\nextra: []\n", "unknown matrix sections"),
        ("build:\n  - {os: linux, arch: sparc, release: '1'}\n", "invalid arch"),
        ("build: [\n", "not valid YAML"),
    ],
)
def test_load_matrix_rejects_bad_files(tmp_path, content, match):
    path = tmp_path / "matrix.yml"
    path.write_text(content)
    with pytest.raises(ConfigurationError, match=match):
        load_matrix(path)


def test_load_matrix_missing_file(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        load_matrix(tmp_path / "nope.yml")
