"""Console output formatting utilities for matrixci."""

from __future__ import annotations

import sys
from typing import Mapping, Optional, TextIO


class Console:
    """Centralized console output formatting.

    Everything a step prints goes through here so the CI engine log reads the
    same for the generator, the step runner and the cache commands.
    """

    def __init__(self, debug: bool = False, stream: Optional[TextIO] = None):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            stream: Where normal output goes (defaults to stdout at print time)
        """
        self.debug = debug
        self._stream = stream

    def _out(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stdout

    def _err(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stderr

    def print_group(self, title: str) -> None:
        """Start a collapsible log group in the CI engine."""
        print(f"--- {title}", file=self._out(), flush=True)

    def print_pipeline_written(self, path: str, size: int, step_count: int) -> None:
        """Print where the generated graph went."""
        print("Generated pipeline:", file=self._out())
        print(f" - Path: {path}", file=self._out())
        print(f" - Size: {size / 1024:.0f} KB", file=self._out())
        print(f" - Steps: {step_count}", file=self._out())

    def print_options(self, options: Mapping[str, object]) -> None:
        """Print resolved run options, one per line."""
        print("Generated options:", file=self._out())
        for k, v in options.items():
            print(f"  {k}: {v}", file=self._out())

    def print_step_start(self, role: str, target: str) -> None:
        """Print step start message."""
        print(f"\nSTEP STARTED: {target} - {role}", file=self._out())

    def print_vm_state(self, name: str, state: str) -> None:
        print(f"VM {name}: {state}", file=self._out())

    def print_success(self, name: str) -> None:
        """Print success message."""
        print(f"STATUS: success ({name})", file=self._out())

    def print_failure(
        self,
        name: str,
        reason: str,
        exit_code: Optional[int] = None,
        hint: Optional[str] = None,
    ) -> None:
        """
        Print failure message.

        Args:
            name: Step or operation name
            reason: Failure reason/error message
            exit_code: Optional exit code
            hint: Optional hint for user
        """
        print(f"STEP FAILED: {name}", file=self._err())
        if exit_code is not None:
            print(f"Exit code: {exit_code}", file=self._err())
        if hint:
            print(f"Hint: {hint}", file=self._err())
        if self.debug:
            print(f"Error details: {reason}", file=self._err())
        else:
            # Show first line of error for non-debug mode
            error_line = reason.split("\n")[0] if reason else "Unknown error"
            print(f"Error: {error_line}", file=self._err())

    def print_cache_hit(self, name: str, source: str) -> None:
        """Print cache hit message."""
        print(f"CACHE: hit {name} ({source})", file=self._out())

    def print_cache_miss(self, reason: str) -> None:
        """Print cache miss message."""
        print(f"CACHE: miss ({reason})", file=self._out())

    def print_cache_saved(self, name: str, archive: str) -> None:
        """Print cache save message."""
        print(f"CACHE: saved {name} ({archive})", file=self._out())

    def print_results(self, results: Mapping[str, object]) -> None:
        """Print a results summary."""
        print("\n" + "=" * 40, file=self._out())
        print("RESULTS", file=self._out())
        print("=" * 40, file=self._out())
        for name, status in results.items():
            print(f"  {name}: {status}", file=self._out())

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        """
        Print structured error message.

        Args:
            title: Error title
            message: Main error message
            details: Optional list of detail lines
            suggestion: Optional suggestion for user
        """
        print(f"\nERROR: {title}", file=self._err())
        print(f"{message}", file=self._err())
        if details:
            for detail in details:
                print(f"  {detail}", file=self._err())
        if suggestion:
            print(f"\n{suggestion}", file=self._err())

    def print_exception(self, exc: BaseException) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback
            traceback.print_exception(type(exc), exc, exc.__traceback__, file=self._err())
        else:
            print(f"Error: {exc}", file=self._err())

    def print_warning(self, message: str) -> None:
        print(f"WARNING: {message}", file=self._err())

    def print_info(self, message: str) -> None:
        """Print informational message."""
        print(message, file=self._out())

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            print(f"[DEBUG] {message}", file=self._err())


# Global console instance (will be initialized by CLI)
_console: Optional[Console] = None


def get_console() -> Console:
    """Get the global console instance."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    """Set the global console instance."""
    global _console
    _console = console
