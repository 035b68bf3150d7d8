# runner.py
from __future__ import annotations

import logging
import shutil
import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .artifacts import ArtifactStore, Bundle, release
from .cache import CacheKey, CacheStore
from .config import EngineConfig
from .dag import JobGraph, build
from .errors import ArtifactError, CacheUnavailable, InfrastructureFailure, JobFailure
from .executor import CANCELED, FAILED, SUCCESS, ExecutionRequest, ExecutionResult, Executor
from .model import Job, JobResult, JobState, PipelineModel, RunContext, RunOutcome, RunStatus
from .retry import FailureClass, Verdict, classify
from .triggers import admitted_jobs
from .ui.console import Console, get_console
from .variables import job_environment

logger = logging.getLogger(__name__)

Listener = Callable[[str, JobState], None]

# how often the dispatch loop wakes up to notice cancellation
_TICK = 0.1


class Scheduler:
    """
    Walks a JobGraph and drives every job through

        pending -> blocked -> ready -> running -> succeeded | failed | canceled
                                        ^   |
                                        retrying

    Jobs are dispatched to the executor from a ready queue, at most
    `config.concurrency` at a time. Only the dispatch loop mutates job state.
    """

    def __init__(
        self,
        graph: JobGraph,
        ctx: RunContext,
        executor: Executor,
        *,
        config: Optional[EngineConfig] = None,
        variables: Optional[Mapping[str, str]] = None,
        artifacts: Optional[ArtifactStore] = None,
        cache: Optional[CacheStore] = None,
        listener: Optional[Listener] = None,
        console: Optional[Console] = None,
    ):
        self.graph = graph
        self.ctx = ctx
        self.executor = executor
        self.config = config or EngineConfig()
        self.variables = dict(variables or {})
        self.artifacts = artifacts
        self.cache = cache
        self.listener = listener
        self.console = console or get_console()

        self.results: Dict[str, JobResult] = {n: JobResult(name=n) for n in graph.order}
        self._bundles: Dict[str, List[Bundle]] = {}
        self._cancel = threading.Event()
        self._cancel_reason = ""

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, reason: str = "canceled") -> None:
        """
        Request cancellation. Safe to call from any thread. Waiting jobs are
        canceled, interruptible running jobs are signalled, non-interruptible
        ones run to completion.
        """
        if not self._cancel.is_set():
            self._cancel_reason = reason
            logger.info("run %s: cancel requested (%s)", self.ctx.run_id, reason)
            self._cancel.set()

    @property
    def canceled(self) -> bool:
        return self._cancel.is_set()

    # ------------------------------------------------------------------
    # State bookkeeping
    # ------------------------------------------------------------------

    def _transition(self, name: str, state: JobState) -> None:
        r = self.results[name]
        r.state = state
        r.history.append(state)
        logger.debug("[%s] -> %s", name, state.value)
        if self.listener is not None:
            self.listener(name, state)

    def _cancel_dependents(self, name: str) -> None:
        for dep in sorted(self.graph.transitive_dependents(name)):
            if self.results[dep].state in (JobState.PENDING, JobState.BLOCKED, JobState.READY):
                self._transition(dep, JobState.CANCELED)
                self.console.print_job_skipped(dep, f"upstream {name} did not succeed")

    def _cancel_waiting(self, ready: List[str]) -> None:
        ready.clear()
        for name, r in self.results.items():
            if r.state in (JobState.PENDING, JobState.BLOCKED, JobState.READY, JobState.RETRYING):
                self._transition(name, JobState.CANCELED)

    # ------------------------------------------------------------------
    # One attempt (worker thread)
    # ------------------------------------------------------------------

    def _work_dir(self, job: Job) -> Path:
        return self.config.work_root / self.ctx.run_id / job.name

    def _artifact_sources(self, job: Job) -> List[Bundle]:
        sources = self.graph.transitive_needs(job.name)
        for d in job.dependencies or ():
            if d in self.graph.jobs and d not in sources:
                sources.append(d)
        return [b for s in sources for b in self._bundles.get(s, [])]

    def _mount_cache(self, job: Job, dest: Path) -> Optional[CacheKey]:
        key = CacheKey(self.config.workspace_identity, self.ctx.ref_name, job.name)
        try:
            hit = self.cache.mount(key, dest)
            self.console.print_cache(job.name, hit.reason)
        except CacheUnavailable as e:
            logger.warning("[%s] cache unavailable, running cold: %s", job.name, e.message)
            dest.mkdir(parents=True, exist_ok=True)
        return key

    def _attempt(self, job: Job, attempt: int, env: Dict[str, str]) -> ExecutionResult:
        work = self._work_dir(job)
        try:
            return self._attempt_in(work, job, attempt, env)
        finally:
            # the cache mount was persisted or is stale; either way it goes
            shutil.rmtree(work, ignore_errors=True)

    def _attempt_in(self, work: Path, job: Job, attempt: int, env: Dict[str, str]) -> ExecutionResult:
        artifacts_dir: Optional[Path] = None
        cache_dir: Optional[Path] = None
        cache_key: Optional[CacheKey] = None

        try:
            sources = self._artifact_sources(job)
            if sources and self.artifacts is not None:
                artifacts_dir = self.artifacts.materialize(sources, work / "artifacts")
        except ArtifactError as e:
            logger.error("[%s] could not prepare artifacts: %s", job.name, e.message)
            return ExecutionResult(status=FAILED, failure=FailureClass.RUNNER_SYSTEM_FAILURE, log=str(e))

        if job.cache is not None and self.cache is not None:
            cache_dir = work / "cache"
            cache_key = self._mount_cache(job, cache_dir)

        request = ExecutionRequest(
            job=job,
            run_id=self.ctx.run_id,
            attempt=attempt,
            variables=env,
            workspace=self.config.workspace,
            artifacts_dir=artifacts_dir,
            cache_dir=cache_dir,
        )
        # non-interruptible jobs never see the run's cancel signal
        cancel = self._cancel if job.interruptible else threading.Event()

        try:
            result = self.executor.execute(request, cancel)
        except JobFailure as e:
            result = ExecutionResult(status=FAILED, failure=FailureClass(e.failure), exit_code=e.exit_code, log=e.message)
        except InfrastructureFailure as e:
            result = ExecutionResult(status=FAILED, failure=FailureClass(e.failure), log=e.message)
        except Exception as e:
            logger.exception("[%s] executor crashed", job.name)
            result = ExecutionResult(status=FAILED, failure=FailureClass.UNKNOWN_FAILURE, log=str(e))
        finally:
            if artifacts_dir is not None:
                release(artifacts_dir)

        if result.ok and cache_key is not None:
            try:
                version = self.cache.persist(cache_key, cache_dir)
                self.console.print_cache_saved(job.name, version)
            except CacheUnavailable as e:
                logger.warning("[%s] cache not saved: %s", job.name, e.message)
        return result

    # ------------------------------------------------------------------
    # Settling results (dispatch thread)
    # ------------------------------------------------------------------

    def _capture(self, job: Job, result: ExecutionResult, succeeded: bool, env: Mapping[str, str]) -> None:
        if job.artifacts is None or self.artifacts is None:
            return
        try:
            bundle = self.artifacts.capture(
                self.ctx.run_id, job.name, job.artifacts, result.outputs, succeeded=succeeded, env=env,
            )
        except ArtifactError as e:
            logger.error("[%s] %s", job.name, e.message)
            return
        if bundle is not None:
            self._bundles.setdefault(job.name, []).append(bundle)
            self.results[job.name].artifacts.append(bundle.id)

    def _settle(
        self,
        name: str,
        result: ExecutionResult,
        ready: List[str],
        remaining: Dict[str, int],
        env: Mapping[str, str],
    ) -> None:
        job = self.graph.jobs[name]
        r = self.results[name]

        if result.status == SUCCESS:
            r.failure = None
            self._transition(name, JobState.SUCCEEDED)
            self.console.print_job_finished(name, JobState.SUCCEEDED.value, r.attempts)
            self._capture(job, result, True, env)
            if self.canceled:
                # superseded run: record, but unblock nothing
                return
            for nxt in sorted(self.graph.succs[name]):
                remaining[nxt] -= 1
                if remaining[nxt] == 0 and self.results[nxt].state is JobState.BLOCKED:
                    self._transition(nxt, JobState.READY)
                    ready.append(nxt)
            return

        if result.status == CANCELED:
            self._transition(name, JobState.CANCELED)
            self.console.print_job_finished(name, JobState.CANCELED.value, r.attempts)
            self._cancel_dependents(name)
            return

        failure = result.failure or FailureClass.UNKNOWN_FAILURE
        r.failure = FailureClass(failure).value
        verdict = classify(failure, job.retry, r.attempts)
        if verdict is Verdict.RETRY and not self.canceled:
            self._transition(name, JobState.RETRYING)
            self.console.print_job_retry(name, r.attempts, job.retry.max_attempts, r.failure)
            # retries jump the queue
            ready.insert(0, name)
            return

        self._transition(name, JobState.FAILED)
        self.console.print_failure(name, result.log or r.failure, exit_code=result.exit_code)
        self._capture(job, result, False, env)
        self._cancel_dependents(name)

    # ------------------------------------------------------------------
    # Dispatch loop
    # ------------------------------------------------------------------

    def run(self) -> RunOutcome:
        remaining = {n: len(self.graph.preds[n]) for n in self.graph.order}
        ready: List[str] = []
        for name in self.graph.order:
            self._transition(name, JobState.PENDING)
            if remaining[name] == 0:
                self._transition(name, JobState.READY)
                ready.append(name)
            else:
                self._transition(name, JobState.BLOCKED)

        envs = {
            name: job_environment(job, self.ctx, self.variables, project_dir=str(self.config.workspace.resolve()))
            for name, job in self.graph.jobs.items()
        }
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.config.concurrency) as pool:
            while True:
                if self.canceled:
                    self._cancel_waiting(ready)

                # schedule currently ready jobs, up to the concurrency bound
                while ready and len(in_flight) < self.config.concurrency:
                    name = ready.pop(0)
                    r = self.results[name]
                    r.attempts += 1
                    self._transition(name, JobState.RUNNING)
                    self.console.print_job_start(name, r.attempts)
                    fut = pool.submit(self._attempt, self.graph.jobs[name], r.attempts, envs[name])
                    in_flight[fut] = name

                if not in_flight:
                    break

                done, _ = wait(list(in_flight), timeout=_TICK, return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    try:
                        result = fut.result()
                    except Exception as e:
                        # _attempt converts executor errors; this is a bug in stageci itself
                        logger.exception("[%s] attempt crashed", name)
                        result = ExecutionResult(status=FAILED, failure=FailureClass.UNKNOWN_FAILURE, log=str(e))
                    self._settle(name, result, ready, remaining, envs[name])

        shutil.rmtree(self.config.work_root / self.ctx.run_id, ignore_errors=True)
        return self._outcome()

    def _outcome(self) -> RunOutcome:
        if all(r.state is JobState.SUCCEEDED for r in self.results.values()):
            status = RunStatus.SUCCEEDED
        elif self.canceled:
            status = RunStatus.CANCELED
        else:
            status = RunStatus.FAILED
        return RunOutcome(run_id=self.ctx.run_id, status=status, jobs=dict(self.results))


class RunRegistry:
    """
    Tracks the active run per ref. Starting a newer run for the same ref
    supersedes (cancels) the older one.
    """

    def __init__(self):
        self._active: Dict[str, Scheduler] = {}
        self._lock = threading.Lock()

    def start(self, scheduler: Scheduler) -> Optional[Scheduler]:
        ref = scheduler.ctx.ref_name
        with self._lock:
            previous = self._active.get(ref)
            self._active[ref] = scheduler
        if previous is not None and previous is not scheduler:
            previous.cancel(reason=f"superseded by run {scheduler.ctx.run_id}")
            return previous
        return None

    def finish(self, scheduler: Scheduler) -> None:
        with self._lock:
            if self._active.get(scheduler.ctx.ref_name) is scheduler:
                del self._active[scheduler.ctx.ref_name]

    def active(self, ref: str) -> Optional[Scheduler]:
        with self._lock:
            return self._active.get(ref)


# ----------------------------------------------------------------------
# Public API
# ----------------------------------------------------------------------

def plan_run(model: PipelineModel, ctx: RunContext) -> Tuple[JobGraph, List[str]]:
    """Trigger evaluation + graph build, without executing anything."""
    admitted, excluded = admitted_jobs(model, ctx)
    return build(admitted, model.stages), excluded


def run_pipeline(
    model: PipelineModel,
    ctx: RunContext,
    executor: Executor,
    config: Optional[EngineConfig] = None,
    *,
    registry: Optional[RunRegistry] = None,
    listener: Optional[Listener] = None,
    artifacts: Optional[ArtifactStore] = None,
    cache: Optional[CacheStore] = None,
    console: Optional[Console] = None,
    on_start: Optional[Callable[[Scheduler], None]] = None,
) -> RunOutcome:
    """
    Admit jobs for `ctx`, build the DAG (raising CycleError before anything
    runs) and execute it.
    """
    config = config or EngineConfig()
    graph, excluded = plan_run(model, ctx)
    if artifacts is None:
        artifacts = ArtifactStore(config.artifacts_root)
    expired = artifacts.prune()
    if expired:
        logger.info("pruned %d expired artifact bundle(s)", len(expired))
    if cache is None:
        cache = CacheStore(config.cache_root, keep=config.cache_keep)

    scheduler = Scheduler(
        graph,
        ctx,
        executor,
        config=config,
        variables=model.variables,
        artifacts=artifacts,
        cache=cache,
        listener=listener,
        console=console,
    )
    if registry is not None:
        registry.start(scheduler)
    if on_start is not None:
        on_start(scheduler)
    try:
        outcome = scheduler.run()
    finally:
        if registry is not None:
            registry.finish(scheduler)

    outcome.excluded = excluded
    logger.info("run %s finished: %s", ctx.run_id, outcome.status.value)
    return outcome
