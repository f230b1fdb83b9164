"""Console output formatting utilities for helixflow."""

from __future__ import annotations

import sys
import threading
from typing import Optional


class Console:
    """Centralized console output formatting. Safe to call from worker threads."""

    def __init__(self, debug: bool = False, quiet: bool = False):
        """
        Initialize console formatter.

        Args:
            debug: If True, show detailed output including stack traces
            quiet: If True, only errors and the final results are printed
        """
        self.debug = debug
        self.quiet = quiet
        self._lock = threading.Lock()

    def _out(self, *lines: str) -> None:
        if self.quiet:
            return
        with self._lock:
            for line in lines:
                print(line)

    def _err(self, *lines: str) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr)

    def print_header(self, title: str) -> None:
        """Print a section header."""
        self._out(f"\n{title}", "-" * len(title))

    def print_run_started(self, workflow: str, run_dir: str, inputs: int) -> None:
        """Print run start information."""
        self._out(
            "\nRUN STARTED",
            f"Workflow: {workflow}",
            f"Work dir: {run_dir}",
            f"Inputs: {inputs}",
            "",
        )

    def print_task_start(self, node: str, task: str) -> None:
        self._out(f"TASK STARTED: {node} ({task})")

    def print_task_success(self, node: str, cached: bool = False) -> None:
        suffix = " (cached)" if cached else ""
        self._out(f"TASK SUCCEEDED: {node}{suffix}")

    def print_task_retry(self, node: str, attempt: int, attempts: int, reason: str) -> None:
        """Print retry notice before attempt N of M."""
        self._out(f"TASK RETRY: {node} attempt {attempt}/{attempts}")
        if self.debug and reason:
            self._out(f"  previous attempt: {reason}")

    def print_task_failure(
        self,
        node: str,
        reason: str,
        exit_code: Optional[int] = None,
        stderr: str = "",
    ) -> None:
        """
        Print failure message.

        Args:
            node: Node id of the failed task instance
            reason: Failure reason/error message
            exit_code: Optional exit code
            stderr: Tail of the process stderr
        """
        lines = [f"TASK FAILED: {node}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if self.debug:
            lines.append(f"Error details: {reason}")
        else:
            # first line only outside debug mode
            lines.append(f"Error: {reason.splitlines()[0] if reason else 'Unknown error'}")
        if stderr:
            tail = stderr.rstrip().splitlines()[-5:]
            lines.append("stderr (tail):")
            lines.extend(f"  {line}" for line in tail)
        self._err(*lines)

    def print_task_skipped(self, node: str, reason: str) -> None:
        self._out(f"TASK SKIPPED: {node} ({reason})")

    def print_cache_hit(self, node: str, key: str) -> None:
        """Print cache hit message."""
        self._out(f"CACHE: hit {node} ({key[:12]}...)")

    def print_cache_miss(self, node: str) -> None:
        """Print cache miss message."""
        if self.debug:
            self._out(f"CACHE: miss {node}")

    def print_cache_saved(self, node: str, key: str) -> None:
        """Print cache save message."""
        short_key = key[:12] + "..." if len(key) > 12 else key
        self._out(f"CACHE: saved {node} ({short_key})")

    def print_results(self, status: str, tasks: dict[str, str]) -> None:
        """Print final results summary."""
        lines = ["", "=" * 40, "RESULTS", "=" * 40]
        for node, state in tasks.items():
            lines.append(f"  {node}: {state.upper()}")
        lines.append(f"STATUS: {status}")
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr)

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
        lines = [f"\nERROR: {title}", message]
        if details:
            lines.extend(f"  {detail}" for detail in details)
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._err(*lines)

    def print_exception(self, exc: Exception) -> None:
        """Print exception, with full traceback only in debug mode."""
        if self.debug:
            import traceback

            with self._lock:
                traceback.print_exception(type(exc), exc, exc.__traceback__)
        else:
            self._err(f"Error: {exc}")

    def print_info(self, message: str) -> None:
        """Print informational message."""
        self._out(message)

    def print_warning(self, message: str) -> None:
        self._err(f"WARNING: {message}")

    def print_debug(self, message: str) -> None:
        """Print debug message (only if debug mode enabled)."""
        if self.debug:
            self._err(f"[DEBUG] {message}")


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
