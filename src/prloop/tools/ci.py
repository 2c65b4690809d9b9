"""CI views: filtered check listings with CircleCI failure logs."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import TYPE_CHECKING

from prloop.checks import CheckStatus, get_checks_summary
from prloop.circleci import CircleCiClient, correlate_failure_logs
from prloop.models import ChecksResult

if TYPE_CHECKING:
    from collections.abc import Iterator

    from prloop.checks import Check, ChecksFetcher
    from prloop.circleci import CiJobFetcher, FailedStepLog
    from prloop.models import PrContext

logger = logging.getLogger(__name__)


@contextmanager
def open_ci_fetcher(token: str | None) -> Iterator[CiJobFetcher | None]:
    """Yield a CircleCI client for the duration of a command, or None without a token."""
    if not token:
        logger.debug("No CircleCI token configured, CI logs will be skipped")
        yield None
        return
    with CircleCiClient(token) as client:
        yield client


def collect_failure_logs(checks: list[Check], ci_fetcher: CiJobFetcher | None) -> list[FailedStepLog]:
    """CircleCI logs for the failed checks, or nothing without a CI fetcher."""
    if ci_fetcher is None or not any(c.status == CheckStatus.FAIL for c in checks):
        return []
    return correlate_failure_logs(ci_fetcher, checks)


def get_checks(
    pr: PrContext,
    checks_fetcher: ChecksFetcher,
    ci_fetcher: CiJobFetcher | None = None,
    include_patterns: list[str] | None = None,
    exclude_patterns: list[str] | None = None,
) -> ChecksResult:
    """Fetch and filter a PR's checks and attach failure logs where possible.

    Raises:
        FetchError: If the checks cannot be fetched.
        InvalidGlobError: If a filter pattern is invalid.
    """
    summary = get_checks_summary(checks_fetcher, pr.owner, pr.repo, pr.pr_number, include_patterns, exclude_patterns)
    return ChecksResult(
        checks=summary.checks,
        failure_logs=collect_failure_logs(summary.checks, ci_fetcher),
    )
