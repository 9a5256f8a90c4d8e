"""Default build/test matrices and the YAML matrix loader."""

from __future__ import annotations

from pathlib import Path
from typing import List, Tuple

import yaml

from .errors import ConfigurationError
from .model import Platform

BUILD_PLATFORMS: Tuple[Platform, ...] = (
    Platform(os="darwin", arch="aarch64", release="14"),
    Platform(os="darwin", arch="x64", release="14"),
)

TEST_PLATFORMS: Tuple[Platform, ...] = (
    Platform(os="darwin", arch="aarch64", release="14", tier="latest"),
    Platform(os="darwin", arch="aarch64", release="13", tier="previous"),
    Platform(os="darwin", arch="x64", release="14", tier="latest"),
    Platform(os="darwin", arch="x64", release="13", tier="previous"),
)


def _parse_list(raw, section: str, path: Path) -> List[Platform]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ConfigurationError(f"'{section}' must be a list of platforms", path=str(path))
    out: List[Platform] = []
    for i, entry in enumerate(raw):
        if not isinstance(entry, dict):
            raise ConfigurationError(f"'{section}[{i}]' must be a mapping", path=str(path))
        out.append(Platform.from_dict(entry))
    return out


def load_matrix(path: str | Path) -> Tuple[Tuple[Platform, ...], Tuple[Platform, ...]]:
    """
    Load a declarative platform matrix.

    The file is YAML with two lists:

        build:
          - {os: darwin, arch: aarch64, release: "14"}
        test:
          - {os: darwin, arch: aarch64, release: "14", tier: latest}

    Returns:
      (build_platforms, test_platforms)
    """
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigurationError(f"platform matrix not found: {p}")

    try:
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"platform matrix is not valid YAML: {e}", path=str(p)) from e

    if not isinstance(data, dict):
        raise ConfigurationError("platform matrix must be a mapping with 'build' and 'test'", path=str(p))

    unknown = sorted(set(data) - {"build", "test"})
    if unknown:
        raise ConfigurationError(f"unknown matrix sections: {unknown}", path=str(p))

    build = _parse_list(data.get("build"), "build", p)
    test = _parse_list(data.get("test"), "test", p)
    return tuple(build), tuple(test)
