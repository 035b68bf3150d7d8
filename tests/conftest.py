"""
Shared pytest fixtures for stageci tests.

- engine_config: EngineConfig rooted in a temporary workspace
- quiet_console: Console that prints nothing but failures
- FakeExecutor: scripted executor standing in for real job execution
"""

import logging
import threading
import time
from pathlib import Path

import pytest

from stageci.config import EngineConfig
from stageci.executor import CANCELED, FAILED, SUCCESS, ExecutionResult
from stageci.retry import FailureClass
from stageci.ui.console import Console


class FakeExecutor:
    """
    Scripted executor.

    outcomes: job name -> list of per-attempt outcomes. Each outcome is
      "ok", a FailureClass, or an exception instance to raise. Once the
      list is exhausted every further attempt succeeds.
    outputs: job name -> {relative path: file content} produced by the job.
    gates: job name -> Event the job blocks on (until set, or until the
      cancel event it was handed fires).
    """

    def __init__(self, outcomes=None, outputs=None, gates=None, delay=0.0):
        self.outcomes = {k: list(v) for k, v in (outcomes or {}).items()}
        self.outputs = outputs or {}
        self.gates = gates or {}
        self.delay = delay

        self.calls = []
        self.requests = {}
        self.seen_artifacts = {}
        self.seen_cache = {}
        self.started = {}
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def started_event(self, name):
        with self._lock:
            return self.started.setdefault(name, threading.Event())

    def attempts(self, name):
        return [a for n, a in self.calls if n == name]

    def execute(self, request, cancel):
        name = request.job.name
        with self._lock:
            self.calls.append((name, request.attempt))
            self.requests[name] = request
            self.active += 1
            self.peak = max(self.peak, self.active)
        self.started_event(name).set()
        try:
            self.seen_artifacts[name] = _read_tree(request.artifacts_dir)
            self.seen_cache[name] = _read_tree(request.cache_dir)

            gate = self.gates.get(name)
            if gate is not None:
                while not gate.wait(0.01):
                    if cancel.is_set():
                        return ExecutionResult(status=CANCELED)
            if self.delay:
                time.sleep(self.delay)

            with self._lock:
                queue = self.outcomes.get(name, [])
                outcome = queue.pop(0) if queue else "ok"
            if isinstance(outcome, Exception):
                raise outcome

            if request.cache_dir is not None:
                counter = request.cache_dir / "counter"
                n = int(counter.read_text()) if counter.exists() else 0
                counter.write_text(str(n + 1))

            outputs = self._write_outputs(request)
            if outcome == "ok":
                return ExecutionResult(status=SUCCESS, outputs=outputs)
            return ExecutionResult(status=FAILED, failure=FailureClass(outcome), outputs=outputs, log="boom")
        finally:
            with self._lock:
                self.active -= 1

    def _write_outputs(self, request):
        files = self.outputs.get(request.job.name, {})
        base = request.workspace / "out" / request.job.name
        out = {}
        for rel, content in files.items():
            p = base / rel
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_text(content)
            out[rel] = p
        return out


def _read_tree(root):
    if root is None or not Path(root).exists():
        return None
    root = Path(root)
    return {
        str(p.relative_to(root)).replace("\\", "/"): p.read_text()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture
def engine_config(workspace: Path, tmp_path: Path) -> EngineConfig:
    return EngineConfig(workspace=workspace, state_dir=tmp_path / "state", concurrency=4)


@pytest.fixture
def quiet_console() -> Console:
    return Console(quiet=True)


@pytest.fixture(autouse=True)
def _reset_stageci_logger():
    yield
    logger = logging.getLogger("stageci")
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def make_executor():
    """Factory for FakeExecutor (test modules cannot import conftest)."""
    return FakeExecutor
