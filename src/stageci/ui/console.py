"""Human-facing run output. Diagnostics go through `logging`; this is what the user reads."""

from __future__ import annotations

import sys
import threading
import traceback
from typing import TYPE_CHECKING, Iterable, List, Optional

if TYPE_CHECKING:
    from stageci.model import RunOutcome

RULE = "=" * 40


def _last_line(text: Optional[str]) -> str:
    lines = (text or "").strip().splitlines()
    return lines[-1] if lines else "Unknown error"


class Console:
    """
    Prints run progress to stdout and errors to stderr.

    `quiet` drops the per-job progress lines but keeps the plan, failures and
    the final results. `debug` shows full job logs and tracebacks.
    """

    def __init__(self, debug: bool = False, quiet: bool = False):
        self.debug = debug
        self.quiet = quiet
        # workers report from their own threads
        self._lock = threading.Lock()

    def _out(self, *lines: str) -> None:
        with self._lock:
            for line in lines:
                print(line)

    def _err(self, *lines: str) -> None:
        with self._lock:
            for line in lines:
                print(line, file=sys.stderr)

    def _progress(self, line: str) -> None:
        if not self.quiet:
            self._out(line)

    # -- run ------------------------------------------------------------

    def print_run_started(
        self,
        ref: str,
        ref_kind: str,
        run_id: str,
        job_count: int,
        excluded: Iterable[str] = (),
    ) -> None:
        excluded = list(excluded)
        lines = [f"\nRUN {run_id[:12]} on {ref} ({ref_kind}): {job_count} job(s)"]
        if excluded:
            lines.append(f"Not admitted: {', '.join(excluded)}")
        self._out(*lines, "")

    def print_plan(self, levels: List[List[str]], excluded: Iterable[str] = ()) -> None:
        """One numbered line per wave of jobs that may run side by side."""
        self._out("\nPLAN", "----")
        for idx, level in enumerate(levels, start=1):
            self._out(f"  {idx}. {', '.join(level)}")
        for name in excluded:
            self._out(f"  {name} (skipped: excluded by rules)")

    def print_results(self, outcome: "RunOutcome") -> None:
        lines = ["", RULE, f"RESULTS: {outcome.status.value.upper()}", RULE]
        for name, r in outcome.jobs.items():
            line = f"  {name}: {r.state.value.upper()} (attempts: {r.attempts})"
            if r.failure and r.state.value != "succeeded":
                line += f" [{r.failure}]"
            if r.artifacts:
                line += f" artifacts: {', '.join(b[:12] for b in r.artifacts)}"
            lines.append(line)
        lines.extend(f"  {name}: EXCLUDED" for name in outcome.excluded)
        self._out(*lines)

    # -- jobs -----------------------------------------------------------

    def print_job_start(self, name: str, attempt: int = 1) -> None:
        again = f" (attempt {attempt})" if attempt > 1 else ""
        self._progress(f"JOB STARTED: {name}{again}")

    def print_job_finished(self, name: str, state: str, attempts: int) -> None:
        self._progress(f"JOB {state.upper()}: {name} (attempts: {attempts})")

    def print_job_retry(self, name: str, attempt: int, max_attempts: int, failure: Optional[str]) -> None:
        self._progress(f"JOB RETRYING: {name} ({failure}; attempt {attempt}/{max_attempts} failed)")

    def print_job_skipped(self, name: str, reason: str) -> None:
        self._progress(f"JOB CANCELED: {name} ({reason})")

    def print_failure(self, name: str, log: Optional[str], exit_code: Optional[int] = None) -> None:
        """Failures are always shown, even in quiet mode."""
        lines = [f"JOB FAILED: {name}"]
        if exit_code is not None:
            lines.append(f"Exit code: {exit_code}")
        if self.debug and log:
            lines.append("Log:")
            lines.extend(f"  {line}" for line in log.rstrip().splitlines())
        else:
            lines.append(f"Error: {_last_line(log)}")
        self._out(*lines)

    def print_cache(self, job: str, reason: str) -> None:
        self._progress(f"[{job}] CACHE: {reason}")

    def print_cache_saved(self, job: str, version: str) -> None:
        short = version if len(version) <= 12 else version[:12] + "..."
        self._progress(f"[{job}] CACHE: saved ({short})")

    # -- errors & misc --------------------------------------------------

    def print_error(
        self,
        title: str,
        message: str,
        details: Optional[list[str]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        lines = [f"\nERROR: {title}", message]
        lines.extend(f"  {d}" for d in details or ())
        if suggestion:
            lines.append(f"\n{suggestion}")
        self._err(*lines)

    def print_exception(self, exc: Exception) -> None:
        if self.debug:
            self._err(traceback.format_exc().rstrip())
        else:
            self._err(f"Error: {exc}")

    def print_info(self, message: str) -> None:
        self._out(message)

    def print_debug(self, message: str) -> None:
        if self.debug:
            self._err(f"[DEBUG] {message}")


_console: Optional[Console] = None


def get_console() -> Console:
    """The process-wide console; the CLI replaces it with a configured one."""
    global _console
    if _console is None:
        _console = Console()
    return _console


def set_console(console: Console) -> None:
    global _console
    _console = console
