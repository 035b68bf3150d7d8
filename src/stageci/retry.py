# retry.py
from __future__ import annotations

from enum import Enum
from typing import FrozenSet, Iterable, Optional

from .model import RetryPolicy


class FailureClass(str, Enum):
    # infrastructure: the environment let the job down
    RUNNER_SYSTEM_FAILURE = "runner_system_failure"   # execution environment unavailable
    UNKNOWN_FAILURE = "unknown_failure"               # executor-internal error
    API_FAILURE = "api_failure"                       # transient API error
    SCHEDULER_FAILURE = "scheduler_failure"

    # job: the job itself is broken
    SCRIPT_FAILURE = "script_failure"
    JOB_EXECUTION_TIMEOUT = "job_execution_timeout"
    STUCK_OR_TIMEOUT_FAILURE = "stuck_or_timeout_failure"
    VALIDATION_FAILURE = "validation_failure"

    @property
    def infrastructure(self) -> bool:
        return self in INFRASTRUCTURE_FAILURES


INFRASTRUCTURE_FAILURES: FrozenSet[FailureClass] = frozenset({
    FailureClass.RUNNER_SYSTEM_FAILURE,
    FailureClass.UNKNOWN_FAILURE,
    FailureClass.API_FAILURE,
    FailureClass.SCHEDULER_FAILURE,
})

JOB_FAILURES: FrozenSet[FailureClass] = frozenset(set(FailureClass) - INFRASTRUCTURE_FAILURES)

# retry.when aliases that stand for every infrastructure class
_ALIASES = {"always", "infrastructure"}


class Verdict(str, Enum):
    RETRY = "retry"
    TERMINAL = "terminal"


def parse_retry_when(values: Iterable[str]) -> FrozenSet[FailureClass]:
    """
    Resolve manifest `retry.when` entries to failure classes.

    Job-class names are accepted (they appear in real manifests) but they
    never make a failure retryable; see classify().
    """
    out = set()
    for v in values:
        if v in _ALIASES:
            out.update(INFRASTRUCTURE_FAILURES)
            continue
        try:
            out.add(FailureClass(v))
        except ValueError:
            raise ValueError(
                f"Unknown retry.when value {v!r}. "
                f"Known: {sorted(_ALIASES | {f.value for f in FailureClass})}"
            ) from None
    return frozenset(out)


def classify(signal: Optional[FailureClass], policy: RetryPolicy, attempt: int) -> Verdict:
    """
    Decide whether attempt number `attempt` (1-based) that failed with
    `signal` should be retried.

    Only infrastructure failures listed in the policy are retried, and only
    while attempt < policy.max_attempts. Job-class failures are terminal
    whatever the policy says.
    """
    if signal is None:
        signal = FailureClass.UNKNOWN_FAILURE
    signal = FailureClass(signal)

    if not signal.infrastructure:
        return Verdict.TERMINAL
    if signal not in policy.when:
        return Verdict.TERMINAL
    if attempt >= policy.max_attempts:
        return Verdict.TERMINAL
    return Verdict.RETRY
