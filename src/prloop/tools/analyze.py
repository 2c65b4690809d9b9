"""One-shot PR analysis: fetch state, decide the next action, attach CI logs."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from prloop.analysis import analyze_pr
from prloop.checks import ChecksSummary, get_checks_summary
from prloop.errors import FetchError
from prloop.models import AnalysisResult, FixCiFailures
from prloop.tools.ci import collect_failure_logs

if TYPE_CHECKING:
    from prloop.checks import ChecksFetcher
    from prloop.circleci import CiJobFetcher
    from prloop.models import PrContext, WaitResult
    from prloop.threads import ReviewThread, ThreadsFetcher

logger = logging.getLogger(__name__)


def analyze(  # noqa: PLR0913
    pr: PrContext,
    checks_fetcher: ChecksFetcher,
    threads_fetcher: ThreadsFetcher,
    ci_fetcher: CiJobFetcher | None = None,
    include_patterns: list[str] | None = None,
    exclude_patterns: list[str] | None = None,
    wait_result: WaitResult | None = None,
) -> AnalysisResult:
    """Recommend the next action for a PR.

    Fetch failures degrade to empty checks or threads; invalid filter
    patterns are raised. CircleCI logs are only fetched when the
    recommendation is to fix CI failures.
    """
    try:
        summary = get_checks_summary(
            checks_fetcher, pr.owner, pr.repo, pr.pr_number, include_patterns, exclude_patterns
        )
    except FetchError as exc:
        logger.warning("Failed to fetch checks: %s", exc)
        summary = ChecksSummary()

    try:
        threads: list[ReviewThread] = threads_fetcher.fetch_threads(pr.owner, pr.repo, pr.pr_number)
    except FetchError as exc:
        logger.warning("Failed to fetch review threads: %s", exc)
        threads = []

    action = analyze_pr(summary, threads)
    logs = collect_failure_logs(summary.checks, ci_fetcher) if isinstance(action, FixCiFailures) else []

    return AnalysisResult(
        pr=pr,
        action=action,
        checks=summary.checks,
        failure_logs=logs,
        wait_result=wait_result,
    )
