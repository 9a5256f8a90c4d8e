# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


# ----------------------------------------------------------------------
# Exit codes used by `matrixci step run`
# ----------------------------------------------------------------------

EXIT_CONFIGURATION = 1
EXIT_INFRASTRUCTURE = 255  # matches the automatic retry rule on exit 255
EXIT_CANCELLED = 130


@dataclass
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - step annotations in the CI engine
      - debugging without full tracebacks
    """
    kind: str
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)

    @property
    def exit_code(self) -> int:
        return EXIT_INFRASTRUCTURE


class ConfigurationError(CIError):
    """Fatal: abort pipeline generation before any step is emitted."""

    def __init__(self, message: str, **details) -> None:
        super().__init__(kind="configuration", message=message, details=details)

    @property
    def exit_code(self) -> int:
        return EXIT_CONFIGURATION


class VMError(CIError):
    """A virtualization operation failed (clone, boot, exec)."""

    def __init__(self, message: str, **details) -> None:
        super().__init__(kind="vm", message=message, details=details)


class AgentCommandError(CIError):
    """A `buildkite-agent` subcommand exited non-zero."""

    def __init__(self, message: str, **details) -> None:
        super().__init__(kind="agent", message=message, details=details)


class HealthCheckTimeout(VMError):
    def __init__(self, vm_name: str, attempts: int) -> None:
        super().__init__(
            f"VM did not become healthy after {attempts} attempts",
            vm=vm_name,
            attempts=attempts,
        )
        self.attempts = attempts


class StepCancelled(CIError):
    """Raised from a signal handler so that teardown still runs."""

    def __init__(self, signum: int) -> None:
        super().__init__(kind="cancelled", message=f"received signal {signum}", details={"signal": signum})
        self.signum = signum

    @property
    def exit_code(self) -> int:
        return EXIT_CANCELLED


@dataclass
class StepFailure(Exception):
    role: str
    cmd: str
    exit_code: int

    def __str__(self) -> str:
        return f"[{self.role}] workload failed (exit={self.exit_code}): {self.cmd}"


class APIError(Exception):
    """Raised when CI engine API requests fail."""
    pass
