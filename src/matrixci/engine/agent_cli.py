# engine/agent_cli.py
# Thin wrapper around the `buildkite-agent` binary.
# Every call is an argument array; nothing here builds a shell string.

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path
from typing import Callable, List, Optional

from ..errors import AgentCommandError

AGENT_BINARY = "buildkite-agent"


class AgentCli:
    def __init__(self, binary: str = AGENT_BINARY, run: Optional[Callable[..., subprocess.CompletedProcess]] = None):
        self.binary = binary
        self._run_fn = run or subprocess.run

    def available(self) -> bool:
        return shutil.which(self.binary) is not None

    def _run(self, args: List[str], *, cwd: Optional[str] = None, capture: bool = False) -> subprocess.CompletedProcess:
        argv = [self.binary, *args]
        try:
            completed = self._run_fn(
                argv,
                cwd=cwd,
                text=True,
                capture_output=capture,
                check=False,
            )
        except FileNotFoundError as e:
            raise AgentCommandError(f"{self.binary} not found", argv=" ".join(argv)) from e

        if completed.returncode != 0:
            stderr = (completed.stderr or "").strip() if capture else ""
            raise AgentCommandError(
                f"{args[0]} {args[1] if len(args) > 1 else ''} failed".strip(),
                exit_code=completed.returncode,
                stderr=stderr,
            )
        return completed

    # ---- artifacts ----

    def artifact_upload(self, path: str | Path, *, cwd: Optional[str] = None) -> None:
        self._run(["artifact", "upload", str(path)], cwd=cwd)

    def artifact_download(
        self,
        path: str,
        dest: str | Path,
        *,
        build: Optional[str] = None,
        step: Optional[str] = None,
    ) -> None:
        args = ["artifact", "download", path, str(dest)]
        if build:
            args += ["--build", build]
        if step:
            args += ["--step", step]
        self._run(args)

    # ---- pipeline ----

    def pipeline_upload(self, path: str | Path) -> None:
        self._run(["pipeline", "upload", str(path)])

    # ---- meta-data ----

    def meta_data_get(self, key: str) -> Optional[str]:
        """Return a build meta-data value, or None when the key was never set."""
        try:
            completed = self._run(["meta-data", "get", key], capture=True)
        except AgentCommandError:
            return None
        value = (completed.stdout or "").strip()
        return value or None
