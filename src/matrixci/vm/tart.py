# vm/tart.py
# Small, focused wrapper around the tart CLI.
# This module centralizes every virtualization call so the lifecycle code
# never needs to call subprocess("tart ...") directly.

from __future__ import annotations

import json
import shutil
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Callable, Dict, List, Optional, Sequence

from ..cache import with_retry
from ..errors import VMError
from ..ui.console import get_console

TART_BINARY = "tart"

# macOS guests see `--dir=NAME:PATH` mounts under this directory.
GUEST_MOUNT_ROOT = "/Volumes/My Shared Files"

# Upper bounds (seconds) for short tart calls; a hung call must not block teardown.
LIST_TIMEOUT = 60
STOP_GRACE_SECONDS = 15
DELETE_TIMEOUT = 60
COPY_OUT_TIMEOUT = 60

DIAGNOSTIC_PREDICATE = 'process == "tart" OR process CONTAINS "Virtualization"'


@dataclass(frozen=True)
class TartInstance:
    name: str
    source: str
    state: str

    @property
    def local(self) -> bool:
        return self.source.lower() == "local"

    @property
    def stopped(self) -> bool:
        return self.state.lower() == "stopped"


class TartCli:
    def __init__(
        self,
        binary: str = TART_BINARY,
        run: Optional[Callable[..., subprocess.CompletedProcess]] = None,
        popen: Optional[Callable[..., subprocess.Popen]] = None,
    ):
        self.binary = binary
        self._run_fn = run or subprocess.run
        self._popen_fn = popen or subprocess.Popen

    def _run(
        self,
        args: Sequence[str],
        *,
        capture: bool = True,
        check: bool = True,
        timeout: Optional[float] = None,
        text: bool = True,
    ) -> subprocess.CompletedProcess:
        """
        Execute a tart subcommand.

        Raises:
            VMError: tart is missing, timed out, or (with check) exited non-zero
        """
        argv = [self.binary, *args]
        try:
            completed = self._run_fn(argv, capture_output=capture, text=text, check=False, timeout=timeout)
        except FileNotFoundError as e:
            raise VMError(f"{self.binary} not found", argv=" ".join(argv)) from e
        except subprocess.TimeoutExpired as e:
            raise VMError(f"{self.binary} {args[0]} timed out", timeout=timeout) from e

        if check and completed.returncode != 0:
            stderr = completed.stderr if capture and text else ""
            raise VMError(
                f"{self.binary} {args[0]} failed",
                exit_code=completed.returncode,
                stderr=(stderr or "").strip(),
            )
        return completed

    def version(self) -> str:
        return (self._run(["--version"]).stdout or "").strip()

    # ---- instances ----

    def list(self) -> List[TartInstance]:
        out = self._run(["list", "--format", "json"], timeout=LIST_TIMEOUT).stdout or "[]"
        try:
            entries = json.loads(out)
        except json.JSONDecodeError as e:
            raise VMError(f"unparseable `tart list` output: {e}") from e
        instances: List[TartInstance] = []
        for e in entries if isinstance(entries, list) else []:
            if not isinstance(e, dict) or not e.get("Name"):
                continue
            state = e.get("State")
            if state is None:
                state = "running" if e.get("Running") else "stopped"
            instances.append(TartInstance(name=e["Name"], source=str(e.get("Source", "")), state=str(state)))
        return instances

    def exists(self, name: str) -> bool:
        return any(i.name == name for i in self.list())

    def clone(self, source: str, name: str) -> None:
        self._run(["clone", source, name])

    def stop(self, name: str, timeout: int = 30) -> None:
        self._run(["stop", name, "--timeout", str(timeout)], timeout=timeout + STOP_GRACE_SECONDS)

    def delete(self, name: str) -> None:
        self._run(["delete", name], timeout=DELETE_TIMEOUT)

    def pull(self, image: str) -> None:
        self._run(["pull", image], capture=False)

    def push(self, local: str, remote: str) -> None:
        self._run(["push", local, remote], capture=False)

    def run_headless(self, name: str, mounts: Dict[str, str]) -> subprocess.Popen:
        """Start the VM without graphics; returns the `tart run` process (it lives as long as the VM)."""
        argv = [self.binary, "run", name, "--no-graphics"]
        for mount_name, host_path in mounts.items():
            argv.append(f"--dir={mount_name}:{host_path}")
        try:
            return self._popen_fn(argv, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
        except FileNotFoundError as e:
            raise VMError(f"{self.binary} not found", argv=" ".join(argv)) from e

    def ip(self, name: str, wait: int = 0) -> Optional[str]:
        args = ["ip", name]
        if wait:
            args += ["--wait", str(wait)]
        completed = self._run(args, check=False)
        if completed.returncode != 0:
            return None
        value = (completed.stdout or "").strip()
        return value or None

    # ---- guest execution ----

    def exec(self, name: str, argv: Sequence[str], *, stream: bool = True, timeout: Optional[float] = None) -> int:
        """Run argv inside the guest; output goes to our stdout when streaming. Returns the exit code."""
        completed = self._run(["exec", name, "--", *argv], capture=not stream, check=False, timeout=timeout)
        return completed.returncode

    def probe(self, name: str, timeout: float = 30.0) -> bool:
        """True if the guest can run a trivial command."""
        try:
            return self.exec(name, ["true"], stream=False, timeout=timeout) == 0
        except VMError:
            return False

    def copy_out(self, name: str, guest_path: str, host_path: str | Path) -> bool:
        """Copy one guest file to the host. Returns False if the guest file is missing."""
        completed = self._run(["exec", name, "--", "cat", guest_path], check=False, text=False, timeout=COPY_OUT_TIMEOUT)
        if completed.returncode != 0:
            return False
        Path(host_path).write_bytes(completed.stdout or b"")
        return True


# ---------------------------------------------------------------------
# Background diagnostics
# ---------------------------------------------------------------------

class DiagnosticLog:
    """`log stream` of virtualization events into a file, for post-mortems."""

    def __init__(self, path: str | Path, popen: Optional[Callable[..., subprocess.Popen]] = None):
        self.path = Path(path)
        self._popen_fn = popen or subprocess.Popen
        self._proc: Optional[subprocess.Popen] = None
        self._fh: Optional[IO[bytes]] = None

    def start(self) -> bool:
        if shutil.which("log") is None:
            get_console().print_debug("`log` not available; skipping virtualization diagnostics")
            return False
        self._fh = self.path.open("wb")
        try:
            self._proc = self._popen_fn(
                ["log", "stream", "--predicate", DIAGNOSTIC_PREDICATE],
                stdout=self._fh,
                stderr=subprocess.STDOUT,
            )
        except OSError as e:
            self._fh.close()
            self._fh = None
            get_console().print_warning(f"could not start diagnostics: {e}")
            return False
        return True

    def stop(self) -> None:
        proc, self._proc = self._proc, None
        try:
            if proc is not None:
                proc.terminate()
                try:
                    proc.wait(timeout=5)
                except subprocess.TimeoutExpired:
                    proc.kill()
                    proc.wait(timeout=5)
        finally:
            if self._fh is not None:
                self._fh.close()
                self._fh = None


# ---------------------------------------------------------------------
# Golden image
# ---------------------------------------------------------------------

def ensure_golden_image(
    tart: TartCli,
    image: str,
    *,
    publish_to: Optional[str] = None,
    attempts: int = 3,
    delay: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """
    Make sure the golden image is present on this host; optionally push it.

    Pulls and pushes are idempotent and retried with a fixed delay.
    Returns True if the image had to be pulled.
    """
    console = get_console()
    pulled = False
    if not any(i.name == image for i in tart.list()):
        console.print_group(f"Pulling {image}")
        with_retry(lambda: tart.pull(image), attempts=attempts, delay=delay, sleep=sleep, retry_on=(VMError,))
        pulled = True
    else:
        console.print_info(f"{image} already present")

    if publish_to:
        console.print_group(f"Publishing {image} to {publish_to}")
        with_retry(lambda: tart.push(image, publish_to), attempts=attempts, delay=delay, sleep=sleep, retry_on=(VMError,))
    return pulled
