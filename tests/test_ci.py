"""Tests for the CI view and one-shot analysis tools."""

from __future__ import annotations

import pytest
from helpers.builders import check, comment, thread

from prloop.checks import CheckStatus, InMemoryChecksFetcher
from prloop.circleci import CircleCiClient, InMemoryCiJobFetcher, JobDetails, JobStep, StepAction, StepOutput
from prloop.gh import GhError
from prloop.models import FixCiFailures, PrContext, PrReady, RespondToComments, WaitResult
from prloop.threads import InMemoryThreadsFetcher
from prloop.tools.analyze import analyze
from prloop.tools.ci import collect_failure_logs, get_checks, open_ci_fetcher

PR = PrContext(owner="acme", repo="widgets", pr_number=7)
JOB_URL = "https://circleci.com/gh/acme/widgets/42"


def _ci_fetcher() -> InMemoryCiJobFetcher:
    return InMemoryCiJobFetcher(
        jobs={42: JobDetails(job_name="test", steps=[JobStep(name="pytest", actions=[StepAction(index=0, step=9, failed=True)])])},
        outputs={(42, 0, 9): StepOutput(output="1 failed")},
    )


class TestOpenCiFetcher:
    def test_no_token(self):
        with open_ci_fetcher(None) as fetcher:
            assert fetcher is None

    def test_token_opens_client(self):
        with open_ci_fetcher("tok") as fetcher:
            assert isinstance(fetcher, CircleCiClient)


class TestCollectFailureLogs:
    def test_without_fetcher(self):
        assert collect_failure_logs([check("test", CheckStatus.FAIL, JOB_URL)], None) == []

    def test_without_failures(self):
        assert collect_failure_logs([check("test", url=JOB_URL)], _ci_fetcher()) == []

    def test_failed_circleci_check(self):
        logs = collect_failure_logs([check("test", CheckStatus.FAIL, JOB_URL)], _ci_fetcher())
        assert [(log.job_name, log.step_name, log.output) for log in logs] == [("test", "pytest", "1 failed")]


class TestGetChecks:
    def test_filters_and_attaches_logs(self):
        fetcher = InMemoryChecksFetcher([
            check("test", CheckStatus.FAIL, JOB_URL),
            check("optional/docs", CheckStatus.FAIL),
            check("build"),
        ])

        result = get_checks(PR, fetcher, _ci_fetcher(), exclude_patterns=["optional/*"])

        assert [c.name for c in result.checks] == ["test", "build"]
        assert len(result.failure_logs) == 1
        assert result.error is None

    def test_fetch_error_propagates(self):
        fetcher = InMemoryChecksFetcher(error=GhError("boom"))
        with pytest.raises(GhError, match="boom"):
            get_checks(PR, fetcher)


class TestAnalyze:
    def test_respond_takes_priority_and_skips_logs(self):
        checks = InMemoryChecksFetcher([check("test", CheckStatus.FAIL, JOB_URL)])
        threads = InMemoryThreadsFetcher([thread("T1", comment("c1"))])

        result = analyze(PR, checks, threads, _ci_fetcher())

        assert isinstance(result.action, RespondToComments)
        assert result.action.also_has_ci_failures is True
        assert result.failure_logs == []

    def test_fix_ci_collects_logs(self):
        checks = InMemoryChecksFetcher([check("test", CheckStatus.FAIL, JOB_URL)])

        result = analyze(PR, checks, InMemoryThreadsFetcher(), _ci_fetcher(), wait_result=WaitResult.ACTIONABLE)

        assert result.action == FixCiFailures(failed_check_names=["test"])
        assert result.failure_logs[0].output == "1 failed"
        assert result.wait_result == WaitResult.ACTIONABLE
        assert result.pr == PR

    def test_fetch_failures_degrade_to_empty(self, caplog):
        checks = InMemoryChecksFetcher(error=GhError("checks down"))
        threads = InMemoryThreadsFetcher(error=GhError("threads down"))

        result = analyze(PR, checks, threads)

        assert isinstance(result.action, PrReady)
        assert result.checks == []
        assert "Failed to fetch checks: checks down" in caplog.text
        assert "Failed to fetch review threads: threads down" in caplog.text
