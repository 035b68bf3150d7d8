# executor.py
from __future__ import annotations

import logging
import os
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .model import Job
from .retry import FailureClass

logger = logging.getLogger(__name__)

SUCCESS = "success"
FAILED = "failed"
CANCELED = "canceled"

LOG_TAIL = 4000


@dataclass(frozen=True)
class ExecutionRequest:
    """Everything an executor needs to run one attempt of one job."""
    job: Job
    run_id: str
    attempt: int
    variables: Dict[str, str]
    workspace: Path
    artifacts_dir: Optional[Path] = None
    cache_dir: Optional[Path] = None

    @property
    def timeout(self) -> Optional[timedelta]:
        return self.job.timeout


@dataclass
class ExecutionResult:
    """
    Outcome of one attempt.

    outputs maps each captured declared path (relative, as written in the
    manifest) to where its content lives locally.
    """
    status: str  # "success" | "failed" | "canceled"
    failure: Optional[FailureClass] = None
    exit_code: Optional[int] = None
    outputs: Dict[str, Path] = field(default_factory=dict)
    log: str = ""

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "failure": self.failure.value if self.failure else None,
            "exit_code": self.exit_code,
            "outputs": {k: str(v) for k, v in self.outputs.items()},
            "log": self.log,
        }


class Executor(Protocol):
    """
    The compute side. Given a request it eventually reports success/failure
    plus the declared output paths. Interruptible jobs receive the run's
    cancel event; others receive one that is never set.
    """

    def execute(self, request: ExecutionRequest, cancel: threading.Event) -> ExecutionResult:
        ...


# ----------------------------------------------------------------------
# Local shell executor
# ----------------------------------------------------------------------

def collect_outputs(workspace: Path, patterns: Sequence[str]) -> Dict[str, Path]:
    """Resolve declared artifact paths (files, dirs or globs) under workspace."""
    out: Dict[str, Path] = {}
    for pat in patterns:
        pat = pat.strip()
        if not pat:
            continue
        p = workspace / pat
        if p.exists():
            out[pat.rstrip("/")] = p
            continue
        for m in sorted(workspace.glob(pat)):
            out[str(m.relative_to(workspace)).replace("\\", "/")] = m
    return out


class LocalShellExecutor:
    """
    Runs a job's commands through the shell, in the workspace directory.

    before_script + script run in order and stop at the first non-zero exit;
    after_script always runs afterwards (its failures are logged, not fatal)
    unless the attempt was canceled.
    """

    def __init__(self, poll_interval: float = 0.1, shell: Optional[str] = None):
        self.poll_interval = poll_interval
        self.shell = shell

    def execute(self, request: ExecutionRequest, cancel: threading.Event) -> ExecutionResult:
        job = request.job
        cwd = request.workspace.resolve()
        if not cwd.is_dir():
            return ExecutionResult(
                status=FAILED,
                failure=FailureClass.RUNNER_SYSTEM_FAILURE,
                log=f"[{job.name}] workspace not found: {cwd}",
            )

        env = os.environ.copy()
        env.update(request.variables)
        if request.artifacts_dir is not None:
            env["CI_ARTIFACTS_DIR"] = str(request.artifacts_dir)
        if request.cache_dir is not None:
            env["CI_CACHE_DIR"] = str(request.cache_dir)

        deadline = None
        if request.timeout is not None:
            deadline = time.monotonic() + request.timeout.total_seconds()

        logs: List[str] = []
        result = ExecutionResult(status=SUCCESS)
        for cmd in (*job.before_script, *job.script):
            logs.append(f"$ {cmd}")
            status, code, text = self._run(cmd, cwd, env, cancel, deadline)
            logs.append(text)
            if status == SUCCESS:
                continue
            result = self._failed(status, code, job, cmd)
            break

        if result.status != CANCELED:
            for cmd in job.after_script:
                logs.append(f"$ {cmd}")
                status, code, text = self._run(cmd, cwd, env, threading.Event(), None)
                logs.append(text)
                if status != SUCCESS:
                    logger.warning("[%s] after_script failed (exit=%s): %s", job.name, code, cmd)

        if job.artifacts is not None and result.status != CANCELED:
            result.outputs = collect_outputs(cwd, job.artifacts.paths)
        result.log = "\n".join(x for x in logs if x)[-LOG_TAIL:]
        return result

    def _failed(self, status: str, code: Optional[int], job: Job, cmd: str) -> ExecutionResult:
        if status == CANCELED:
            return ExecutionResult(status=CANCELED, exit_code=code)
        if status == "timeout":
            return ExecutionResult(status=FAILED, failure=FailureClass.JOB_EXECUTION_TIMEOUT, exit_code=code)
        if status == "error":
            return ExecutionResult(status=FAILED, failure=FailureClass.RUNNER_SYSTEM_FAILURE, exit_code=code)
        logger.info("[%s] command failed (exit=%s): %s", job.name, code, cmd)
        return ExecutionResult(status=FAILED, failure=FailureClass.SCRIPT_FAILURE, exit_code=code)

    def _run(self, cmd, cwd, env, cancel, deadline):
        """Returns (status, exit_code, output) with status in success/failed/canceled/timeout/error."""
        with tempfile.TemporaryFile(mode="w+", encoding="utf-8", errors="replace") as out:
            try:
                proc = subprocess.Popen(
                    cmd,
                    shell=True,
                    executable=self.shell,
                    cwd=str(cwd),
                    env=env,
                    stdout=out,
                    stderr=subprocess.STDOUT,
                    text=True,
                )
            except OSError as e:
                return "error", None, f"cannot start shell: {e}"

            status = None
            while True:
                try:
                    code = proc.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    pass
                if cancel.is_set():
                    status = CANCELED
                elif deadline is not None and time.monotonic() >= deadline:
                    status = "timeout"
                if status is not None:
                    proc.terminate()
                    try:
                        code = proc.wait(timeout=5)
                    except subprocess.TimeoutExpired:
                        proc.kill()
                        code = proc.wait()
                    break

            out.seek(0)
            text = out.read()[-LOG_TAIL:]

        if status is None:
            status = SUCCESS if code == 0 else FAILED
        return status, code, text
