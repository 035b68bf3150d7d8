"""
Unit tests for failure classification.
"""

import pytest

from stageci.model import RetryPolicy
from stageci.retry import (
    INFRASTRUCTURE_FAILURES,
    JOB_FAILURES,
    FailureClass,
    Verdict,
    classify,
    parse_retry_when,
)


def policy(max_, *when):
    return RetryPolicy(max=max_, when=parse_retry_when(when or ["always"]))


class TestParseRetryWhen:
    def test_aliases_expand_to_infrastructure(self):
        assert parse_retry_when(["always"]) == INFRASTRUCTURE_FAILURES
        assert parse_retry_when(["infrastructure"]) == INFRASTRUCTURE_FAILURES

    def test_explicit_classes(self):
        assert parse_retry_when(["api_failure"]) == {FailureClass.API_FAILURE}

    def test_unknown_value(self):
        with pytest.raises(ValueError, match="Unknown retry.when"):
            parse_retry_when(["sometimes"])

    def test_classes_are_partitioned(self):
        assert INFRASTRUCTURE_FAILURES.isdisjoint(JOB_FAILURES)
        assert INFRASTRUCTURE_FAILURES | JOB_FAILURES == set(FailureClass)


class TestClassify:
    def test_infrastructure_failure_is_retried(self):
        assert classify(FailureClass.RUNNER_SYSTEM_FAILURE, policy(2), 1) is Verdict.RETRY
        assert classify(FailureClass.RUNNER_SYSTEM_FAILURE, policy(2), 2) is Verdict.RETRY

    def test_attempts_are_bounded(self):
        assert classify(FailureClass.RUNNER_SYSTEM_FAILURE, policy(2), 3) is Verdict.TERMINAL

    def test_no_retry_policy(self):
        assert classify(FailureClass.API_FAILURE, RetryPolicy(), 1) is Verdict.TERMINAL

    @pytest.mark.parametrize("failure", sorted(JOB_FAILURES))
    def test_job_failures_are_never_retried(self, failure):
        # even when the manifest lists them
        p = RetryPolicy(max=5, when=frozenset(FailureClass))

        assert classify(failure, p, 1) is Verdict.TERMINAL

    def test_class_not_in_policy(self):
        p = policy(2, "api_failure")

        assert classify(FailureClass.RUNNER_SYSTEM_FAILURE, p, 1) is Verdict.TERMINAL
        assert classify(FailureClass.API_FAILURE, p, 1) is Verdict.RETRY

    def test_missing_signal_counts_as_unknown(self):
        assert classify(None, policy(1, "unknown_failure"), 1) is Verdict.RETRY

    def test_string_signal(self):
        assert classify("api_failure", policy(1), 1) is Verdict.RETRY
