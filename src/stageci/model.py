# model.py
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class RefKind(str, Enum):
    BRANCH = "branch"
    TAG = "tag"
    SCHEDULE = "schedule"
    MANUAL = "manual"


class JobState(str, Enum):
    PENDING = "pending"
    BLOCKED = "blocked"
    READY = "ready"
    RUNNING = "running"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def terminal(self) -> bool:
        return self in (JobState.SUCCEEDED, JobState.FAILED, JobState.CANCELED)


class RunStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"


class ArtifactWhen(str, Enum):
    ON_SUCCESS = "on_success"
    ON_FAILURE = "on_failure"
    ALWAYS = "always"

    def keeps(self, succeeded: bool) -> bool:
        if self is ArtifactWhen.ALWAYS:
            return True
        return succeeded if self is ArtifactWhen.ON_SUCCESS else not succeeded


_DEFAULT_SOURCES = {
    RefKind.BRANCH: "push",
    RefKind.TAG: "push",
    RefKind.SCHEDULE: "schedule",
    RefKind.MANUAL: "web",
}


@dataclass(frozen=True)
class RunContext:
    """Trigger metadata of a run: what ref, what kind, who started it."""
    ref_name: str
    ref_kind: RefKind = RefKind.BRANCH
    commit: str = ""
    source: Optional[str] = None
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    project: str = "workspace"

    def __post_init__(self) -> None:
        # frozen: normalise through object.__setattr__
        object.__setattr__(self, "ref_kind", RefKind(self.ref_kind))
        if self.source is None:
            object.__setattr__(self, "source", _DEFAULT_SOURCES[self.ref_kind])


@dataclass(frozen=True)
class Rule:
    """
    One trigger predicate. Every predicate that is set must hold for the rule
    to match; a rule with no predicates matches any context.
    """
    include: bool = True
    ref: Optional[str] = None          # exact name or /regex/
    ref_kind: Optional[RefKind] = None
    source: Optional[str] = None


@dataclass(frozen=True)
class ArtifactSpec:
    paths: Tuple[str, ...]
    name: str = "${CI_JOB_NAME}"
    when: ArtifactWhen = ArtifactWhen.ON_SUCCESS
    expire_in: Optional[timedelta] = timedelta(days=30)  # None = never expires


@dataclass(frozen=True)
class RetryPolicy:
    max: int = 0
    when: frozenset = frozenset()

    @property
    def max_attempts(self) -> int:
        return self.max + 1


@dataclass(frozen=True)
class CacheSpec:
    paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Job:
    """
    A flattened, validated job record.

    `needs` is None when the job declares no explicit edges (stage barrier
    applies); an empty tuple means "start immediately".
    """
    name: str
    stage: str
    script: Tuple[str, ...]
    before_script: Tuple[str, ...] = ()
    after_script: Tuple[str, ...] = ()
    rules: Tuple[Rule, ...] = ()
    needs: Optional[Tuple[str, ...]] = None
    dependencies: Optional[Tuple[str, ...]] = None
    artifacts: Optional[ArtifactSpec] = None
    retry: RetryPolicy = RetryPolicy()
    interruptible: bool = False
    variables: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    image: Optional[str] = None
    tags: Tuple[str, ...] = ()
    cache: Optional[CacheSpec] = None
    timeout: Optional[timedelta] = None


@dataclass(frozen=True)
class PipelineModel:
    stages: Tuple[str, ...]
    jobs: Tuple[Job, ...]
    variables: Dict[str, str] = field(default_factory=dict, hash=False, compare=False)

    def job(self, name: str) -> Job:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)

    @property
    def job_names(self) -> List[str]:
        return [j.name for j in self.jobs]

    def stage_index(self, stage: str) -> int:
        return self.stages.index(stage)


# ----------------------------------------------------------------------
# Run results
# ----------------------------------------------------------------------

@dataclass
class JobResult:
    name: str
    state: JobState = JobState.PENDING
    attempts: int = 0
    failure: Optional[str] = None
    artifacts: List[str] = field(default_factory=list)
    history: List[JobState] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "attempts": self.attempts,
            "failure": self.failure,
            "artifacts": list(self.artifacts),
        }


@dataclass
class RunOutcome:
    run_id: str
    status: RunStatus
    jobs: Dict[str, JobResult]
    excluded: List[str] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status is RunStatus.SUCCEEDED

    @property
    def problems(self) -> List[JobResult]:
        """Every admitted job that did not succeed."""
        return [r for r in self.jobs.values() if r.state is not JobState.SUCCEEDED]

    @property
    def artifacts(self) -> List[str]:
        return [b for r in self.jobs.values() for b in r.artifacts]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "jobs": {name: r.to_dict() for name, r in self.jobs.items()},
            "excluded": list(self.excluded),
        }
