"""
Ephemeral VM lifecycle for VM-backed steps.

    IDLE -> CLONED -> BOOTING -> HEALTH_CHECKING -> READY -> EXECUTING
         -> {SUCCEEDED | FAILED} -> TORN_DOWN

One workload per cloned instance; instances are never reused. Teardown runs in
`finally`, and SIGTERM/SIGINT are turned into StepCancelled so an external
cancel still reaches it.
"""

from __future__ import annotations

import shlex
import signal
import socket
import subprocess
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Mapping, Optional, Sequence

from ..config import Settings
from ..engine.agent_cli import AgentCli
from ..errors import AgentCommandError, HealthCheckTimeout, StepCancelled, VMError
from ..ui.console import get_console
from .tart import GUEST_MOUNT_ROOT, DiagnosticLog, TartCli

SSH_PORT = 22
WORKSPACE_MOUNT = "workspace"
GUEST_LOG = "/tmp/matrixci-workload.log"
DIAGNOSTIC_LOG_NAME = "tart.log"
WORKLOAD_LOG_NAME = "workload.log"


class VMState(str, Enum):
    IDLE = "idle"
    CLONED = "cloned"
    BOOTING = "booting"
    HEALTH_CHECKING = "health-checking"
    READY = "ready"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TORN_DOWN = "torn-down"

    def __str__(self) -> str:
        return self.value


_TRANSITIONS: Dict[VMState, frozenset] = {
    VMState.IDLE: frozenset({VMState.CLONED, VMState.FAILED}),
    VMState.CLONED: frozenset({VMState.BOOTING, VMState.FAILED}),
    VMState.BOOTING: frozenset({VMState.HEALTH_CHECKING, VMState.FAILED}),
    VMState.HEALTH_CHECKING: frozenset({VMState.READY, VMState.FAILED}),
    VMState.READY: frozenset({VMState.EXECUTING, VMState.FAILED}),
    VMState.EXECUTING: frozenset({VMState.SUCCEEDED, VMState.FAILED}),
    VMState.SUCCEEDED: frozenset({VMState.TORN_DOWN}),
    VMState.FAILED: frozenset({VMState.TORN_DOWN}),
    VMState.TORN_DOWN: frozenset(),
}


# ---------------------------------------------------------------------
# Names
# ---------------------------------------------------------------------

def role_prefix(prefix: str, role: str) -> str:
    """Names of one role's instances all start with this; the sweep only touches those."""
    return f"{prefix}-{role}-"


def vm_name(prefix: str, role: str, *, now_ms: Optional[int] = None, token: Optional[str] = None) -> str:
    """`{prefix}-{role}-{ms timestamp}-{random hex}`; unique across concurrent steps on one host."""
    ts = now_ms if now_ms is not None else time.time_ns() // 1_000_000
    tok = token if token is not None else uuid.uuid4().hex
    return f"{role_prefix(prefix, role)}{ts}-{tok}"


# ---------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------

@dataclass
class VMSession:
    name: str
    source_image: str
    state: VMState = VMState.IDLE
    history: List[VMState] = field(default_factory=lambda: [VMState.IDLE])
    health_attempts: int = 0
    exit_code: Optional[int] = None
    teardown_errors: List[str] = field(default_factory=list)

    def transition(self, new: VMState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise VMError(f"illegal VM transition {self.state} -> {new}", vm=self.name)
        self.state = new
        self.history.append(new)
        get_console().print_vm_state(self.name, new.value)


def _port_open(host: str, port: int, timeout: float = 5.0) -> bool:
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False


@contextmanager
def cancellation_signals() -> Iterator[None]:
    """Turn SIGTERM/SIGINT into StepCancelled for the duration of the block."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _raise(signum, _frame):
        raise StepCancelled(signum)

    previous = {sig: signal.signal(sig, _raise) for sig in (signal.SIGTERM, signal.SIGINT)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


GUEST_WORKDIR = f"{GUEST_MOUNT_ROOT}/{WORKSPACE_MOUNT}"


def guest_command(workdir: str, argv: Sequence[str], env: Mapping[str, str]) -> List[str]:
    """
    Argument vector run via `tart exec`.

    Every token is quoted individually; output is tee'd to a guest log that
    teardown copies back out.
    """
    inner = ["env", *(f"{k}={v}" for k, v in sorted(env.items())), *argv]
    script = f"cd {shlex.quote(workdir)} && {shlex.join(inner)} 2>&1 | tee {shlex.quote(GUEST_LOG)}"
    return ["/bin/bash", "-o", "pipefail", "-c", script]


# ---------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------

class VMLifecycle:
    def __init__(
        self,
        settings: Settings,
        role: str,
        *,
        tart: Optional[TartCli] = None,
        agent: Optional[AgentCli] = None,
        workdir: str | Path | None = None,
        sleep: Callable[[float], None] = time.sleep,
        port_check: Callable[[str, int], bool] = _port_open,
        diagnostics: Optional[DiagnosticLog] = None,
    ):
        self.settings = settings
        self.role = role
        self.tart = tart if tart is not None else TartCli()
        self.agent = agent if agent is not None else AgentCli()
        self.workdir = Path(workdir if workdir is not None else Path.cwd()).resolve()
        self._sleep = sleep
        self._port_check = port_check
        self.diagnostics = diagnostics if diagnostics is not None else DiagnosticLog(self.workdir / DIAGNOSTIC_LOG_NAME)
        self._run_proc: Optional[subprocess.Popen] = None
        self.session: Optional[VMSession] = None

    @property
    def prefix(self) -> str:
        return role_prefix(self.settings.vm_prefix, self.role)

    # ---- sweep ----

    def sweep(self) -> List[str]:
        """Delete stopped local leftovers of this role from earlier, possibly crashed, steps."""
        removed: List[str] = []
        try:
            instances = self.tart.list()
        except VMError as e:
            get_console().print_warning(f"could not list VMs for sweep: {e.message}")
            return removed
        for inst in instances:
            if not (inst.local and inst.stopped and inst.name.startswith(self.prefix)):
                continue
            try:
                self.tart.delete(inst.name)
                removed.append(inst.name)
            except VMError as e:
                get_console().print_warning(f"could not delete stale VM {inst.name}: {e.message}")
        if removed:
            get_console().print_info(f"Swept {len(removed)} stale VM(s): {', '.join(removed)}")
        return removed

    # ---- the state machine ----

    def run(self, argv: Sequence[str], env: Optional[Mapping[str, str]] = None) -> int:
        """
        Run one workload in a fresh VM and return its exit code.

        Raises:
          HealthCheckTimeout: the guest never became reachable
          VMError: clone/boot failed
          StepCancelled: SIGTERM/SIGINT arrived
        Teardown has run by the time any of these propagate.
        """
        session = VMSession(name=vm_name(self.settings.vm_prefix, self.role), source_image=self.settings.golden_image)
        self.session = session
        console = get_console()

        with cancellation_signals():
            try:
                console.print_group(f"Preparing VM {session.name}")
                self.sweep()
                self._clone(session)
                self._boot(session)
                self._health_check(session)
                return self._execute(session, argv, env or {})
            except BaseException:
                if session.state not in (VMState.SUCCEEDED, VMState.FAILED, VMState.TORN_DOWN):
                    session.transition(VMState.FAILED)
                raise
            finally:
                self._teardown(session)

    def _clone(self, session: VMSession) -> None:
        self.tart.clone(session.source_image, session.name)
        session.transition(VMState.CLONED)

    def _boot(self, session: VMSession) -> None:
        self.diagnostics.start()
        self._run_proc = self.tart.run_headless(session.name, {WORKSPACE_MOUNT: str(self.workdir)})
        session.transition(VMState.BOOTING)
        if self.settings.boot_grace > 0:
            self._sleep(self.settings.boot_grace)

    def _health_check(self, session: VMSession) -> None:
        session.transition(VMState.HEALTH_CHECKING)
        attempts = self.settings.health_attempts
        for attempt in range(1, attempts + 1):
            session.health_attempts = attempt
            ip = self.tart.ip(session.name)
            if ip and self._port_check(ip, SSH_PORT) and self.tart.probe(session.name):
                get_console().print_info(f"VM is healthy (attempt {attempt}/{attempts}, ip {ip})")
                session.transition(VMState.READY)
                return
            get_console().print_info(f"VM not ready (attempt {attempt}/{attempts})")
            if attempt < attempts:
                self._sleep(self.settings.health_interval)
        raise HealthCheckTimeout(session.name, attempts)

    def _execute(self, session: VMSession, argv: Sequence[str], env: Mapping[str, str]) -> int:
        session.transition(VMState.EXECUTING)
        get_console().print_group(f"Running {shlex.join(argv)}")
        code = self.tart.exec(session.name, guest_command(GUEST_WORKDIR, argv, env))
        session.exit_code = code
        session.transition(VMState.SUCCEEDED if code == 0 else VMState.FAILED)
        return code

    # ---- teardown ----

    def _record(self, session: VMSession, what: str, err: BaseException) -> None:
        msg = f"{what}: {getattr(err, 'message', None) or err}"
        session.teardown_errors.append(msg)
        get_console().print_warning(f"teardown: {msg}")

    def _teardown(self, session: VMSession) -> None:
        """Best-effort cleanup. Failures are recorded on the session, never raised."""
        get_console().print_group(f"Tearing down VM {session.name}")

        # A second cancel during teardown must not skip the delete.
        with _ignoring_signals():
            try:
                self.diagnostics.stop()
            except OSError as e:
                self._record(session, "stop diagnostics", e)

            if session.state in (VMState.SUCCEEDED, VMState.FAILED) and session.exit_code is not None:
                host_log = self.workdir / WORKLOAD_LOG_NAME
                try:
                    if self.tart.copy_out(session.name, GUEST_LOG, host_log):
                        self._upload(session, host_log)
                except (VMError, OSError) as e:
                    self._record(session, "copy workload log", e)

            if self.diagnostics.path.exists():
                self._upload(session, self.diagnostics.path)

            # When listing fails, assume the instance is still there and delete by name.
            try:
                present = self.tart.exists(session.name)
            except VMError as e:
                self._record(session, "list", e)
                present = True
            if present:
                try:
                    self.tart.stop(session.name)
                except VMError as e:
                    self._record(session, "stop", e)
                try:
                    self.tart.delete(session.name)
                except VMError as e:
                    self._record(session, "delete", e)

            if self._run_proc is not None:
                try:
                    self._run_proc.terminate()
                    self._run_proc.wait(timeout=10)
                except (OSError, subprocess.TimeoutExpired) as e:
                    self._record(session, "stop tart run", e)
                self._run_proc = None

            if session.state is not VMState.FAILED and session.state is not VMState.SUCCEEDED:
                session.transition(VMState.FAILED)
            session.transition(VMState.TORN_DOWN)

    def _upload(self, session: VMSession, path: Path) -> None:
        if not self.settings.is_buildkite:
            return
        try:
            self.agent.artifact_upload(path.name, cwd=str(path.parent))
        except AgentCommandError as e:
            self._record(session, f"upload {path.name}", e)


@contextmanager
def _ignoring_signals() -> Iterator[None]:
    if threading.current_thread() is not threading.main_thread():
        yield
        return
    previous = {sig: signal.signal(sig, signal.SIG_IGN) for sig in (signal.SIGTERM, signal.SIGINT)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
