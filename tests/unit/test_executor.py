"""
Unit tests for the local shell executor.

These run real /bin/sh commands inside a temporary workspace.
"""

import threading
from datetime import timedelta

import pytest

from stageci.executor import CANCELED, FAILED, SUCCESS, ExecutionRequest, ExecutionResult, LocalShellExecutor, collect_outputs
from stageci.model import ArtifactSpec, Job
from stageci.retry import FailureClass


def request(workspace, *script, **job_kw):
    job = Job(name=job_kw.pop("name", "job"), stage="test", script=tuple(script), **job_kw)
    return ExecutionRequest(job=job, run_id="run1", attempt=1, variables={"GREETING": "hello"}, workspace=workspace)


@pytest.fixture
def executor():
    return LocalShellExecutor(poll_interval=0.02)


class TestLocalShellExecutor:
    def test_success_collects_outputs(self, executor, workspace):
        req = request(
            workspace,
            "mkdir -p dist",
            'echo "$GREETING" > dist/app.txt',
            artifacts=ArtifactSpec(paths=("dist/",)),
        )
        result = executor.execute(req, threading.Event())

        assert result.status == SUCCESS
        assert result.ok
        assert set(result.outputs) == {"dist"}
        assert (result.outputs["dist"] / "app.txt").read_text().strip() == "hello"

    def test_script_failure_stops_at_first_error(self, executor, workspace):
        req = request(workspace, "exit 3", "touch should-not-exist")
        result = executor.execute(req, threading.Event())

        assert result.status == FAILED
        assert result.failure is FailureClass.SCRIPT_FAILURE
        assert result.exit_code == 3
        assert not (workspace / "should-not-exist").exists()

    def test_before_and_after_script(self, executor, workspace):
        req = request(
            workspace,
            "echo main >> order.txt",
            before_script=("echo before >> order.txt",),
            after_script=("echo after >> order.txt",),
        )
        executor.execute(req, threading.Event())

        assert (workspace / "order.txt").read_text().split() == ["before", "main", "after"]

    def test_after_script_runs_on_failure_and_is_not_fatal(self, executor, workspace):
        req = request(workspace, "false", after_script=("touch cleaned", "exit 9"))
        result = executor.execute(req, threading.Event())

        assert result.failure is FailureClass.SCRIPT_FAILURE
        assert result.exit_code == 1
        assert (workspace / "cleaned").exists()

    def test_timeout(self, executor, workspace):
        req = request(workspace, "sleep 5", timeout=timedelta(seconds=0.3))
        result = executor.execute(req, threading.Event())

        assert result.status == FAILED
        assert result.failure is FailureClass.JOB_EXECUTION_TIMEOUT

    def test_cancel(self, executor, workspace):
        cancel = threading.Event()
        cancel.set()
        req = request(workspace, "sleep 5", after_script=("touch after-ran",))
        result = executor.execute(req, cancel)

        assert result.status == CANCELED
        assert not (workspace / "after-ran").exists()

    def test_missing_workspace_is_infrastructure(self, executor, tmp_path):
        result = executor.execute(request(tmp_path / "missing", "true"), threading.Event())

        assert result.failure is FailureClass.RUNNER_SYSTEM_FAILURE
        assert result.failure.infrastructure

    def test_ci_dirs_are_exported(self, executor, workspace, tmp_path):
        job = Job(name="job", stage="test", script=('echo "$CI_ARTIFACTS_DIR|$CI_CACHE_DIR" > dirs.txt',))
        req = ExecutionRequest(
            job=job, run_id="r", attempt=1, variables={}, workspace=workspace,
            artifacts_dir=tmp_path / "a", cache_dir=tmp_path / "c",
        )
        executor.execute(req, threading.Event())

        assert (workspace / "dirs.txt").read_text().strip() == f"{tmp_path / 'a'}|{tmp_path / 'c'}"

    def test_log_contains_commands_and_output(self, executor, workspace):
        result = executor.execute(request(workspace, "echo $GREETING"), threading.Event())

        assert "$ echo $GREETING" in result.log
        assert "hello" in result.log


class TestCollectOutputs:
    def test_files_dirs_and_globs(self, workspace):
        (workspace / "dist").mkdir()
        (workspace / "a.log").write_text("a")
        (workspace / "b.log").write_text("b")

        outs = collect_outputs(workspace, ["dist/", "*.log", "missing.txt", " "])

        assert set(outs) == {"dist", "a.log", "b.log"}


class TestExecutionResult:
    def test_to_dict(self, tmp_path):
        result = ExecutionResult(status=FAILED, failure=FailureClass.API_FAILURE, outputs={"d": tmp_path})

        assert result.to_dict()["failure"] == "api_failure"
        assert result.to_dict()["outputs"] == {"d": str(tmp_path)}
        assert not result.ok
