"""Snapshot capture and the blocking wait loops built on it."""

from __future__ import annotations

import logging
import time
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from prloop.checks import CheckStatus, filter_checks
from prloop.errors import FetchError
from prloop.models import PrSnapshot, WaitResult

if TYPE_CHECKING:
    from prloop.checks import Check, ChecksFetcher
    from prloop.git import GitFetcher
    from prloop.threads import ReviewThread, ThreadsFetcher

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=UTC)


def capture_snapshot(  # noqa: PLR0913, PLR0917
    checks_fetcher: ChecksFetcher,
    threads_fetcher: ThreadsFetcher,
    owner: str,
    repo: str,
    pr_number: int,
    include_patterns: list[str] | None = None,
    exclude_patterns: list[str] | None = None,
) -> PrSnapshot:
    """Capture the current actionable/unresolved/failed/pending sets of a PR.

    A failed fetch counts as an empty result so a long wait keeps polling;
    an invalid glob pattern is raised.
    """
    try:
        checks: list[Check] = checks_fetcher.fetch_checks(owner, repo, pr_number)
    except FetchError as exc:
        logger.warning("Failed to fetch checks for %s/%s#%d: %s", owner, repo, pr_number, exc)
        checks = []
    checks = filter_checks(checks, include_patterns, exclude_patterns)

    try:
        threads: list[ReviewThread] = threads_fetcher.fetch_threads(owner, repo, pr_number)
    except FetchError as exc:
        logger.warning("Failed to fetch review threads for %s/%s#%d: %s", owner, repo, pr_number, exc)
        threads = []
    threads = [t for t in threads if not t.has_flag()]

    snapshot = PrSnapshot(
        actionable_thread_ids=frozenset(t.id for t in threads if t.needs_response()),
        unresolved_thread_ids=frozenset(t.id for t in threads if not t.is_resolved),
        failed_check_names=frozenset(c.name for c in checks if c.status == CheckStatus.FAIL),
        pending_check_names=frozenset(c.name for c in checks if c.status == CheckStatus.PENDING),
    )
    logger.debug(
        "Snapshot %s/%s#%d: %d actionable, %d unresolved, %d failed, %d pending",
        owner,
        repo,
        pr_number,
        len(snapshot.actionable_thread_ids),
        len(snapshot.unresolved_thread_ids),
        len(snapshot.failed_check_names),
        len(snapshot.pending_check_names),
    )
    return snapshot


def _validate_wait_args(timeout: int, poll_interval: int) -> None:
    if poll_interval <= 0:
        msg = f"poll_interval must be positive, got {poll_interval}"
        raise ValueError(msg)
    if timeout < 0:
        msg = f"timeout must be non-negative, got {timeout}"
        raise ValueError(msg)


def wait_until_actionable(  # noqa: PLR0913, PLR0917
    checks_fetcher: ChecksFetcher,
    threads_fetcher: ThreadsFetcher,
    owner: str,
    repo: str,
    pr_number: int,
    include_patterns: list[str] | None = None,
    exclude_patterns: list[str] | None = None,
    timeout: int = 1800,
    poll_interval: int = 5,
) -> WaitResult:
    """Block until the PR has a thread to answer or a failed check.

    Checks once before sleeping; never returns ``HAPPY``.

    Args:
        checks_fetcher: Source of CI checks.
        threads_fetcher: Source of review threads.
        owner: Repository owner.
        repo: Repository name.
        pr_number: PR to monitor.
        include_patterns: Check-name globs to include.
        exclude_patterns: Check-name globs to exclude.
        timeout: Maximum seconds to wait.
        poll_interval: Seconds between polls.

    Returns:
        ``ACTIONABLE`` or ``TIMEOUT``.
    """
    _validate_wait_args(timeout, poll_interval)
    start = time.monotonic()

    snapshot = capture_snapshot(
        checks_fetcher, threads_fetcher, owner, repo, pr_number, include_patterns, exclude_patterns
    )
    if snapshot.is_actionable():
        return WaitResult.ACTIONABLE

    logger.info(
        "Waiting for PR to become actionable (timeout: %ds, polling every %ds)...",
        timeout,
        poll_interval,
    )

    while True:
        if time.monotonic() - start >= timeout:
            return WaitResult.TIMEOUT

        time.sleep(poll_interval)

        snapshot = capture_snapshot(
            checks_fetcher, threads_fetcher, owner, repo, pr_number, include_patterns, exclude_patterns
        )
        if snapshot.is_actionable():
            return WaitResult.ACTIONABLE


def wait_until_actionable_or_happy(  # noqa: PLR0913, PLR0917
    checks_fetcher: ChecksFetcher,
    threads_fetcher: ThreadsFetcher,
    git_fetcher: GitFetcher,
    owner: str,
    repo: str,
    pr_number: int,
    include_patterns: list[str] | None = None,
    exclude_patterns: list[str] | None = None,
    timeout: int = 1800,
    poll_interval: int = 5,
    min_wait_after_push: int = 30,
) -> WaitResult:
    """Block until the PR is actionable, or happy for long enough after the last push.

    A happy snapshot only counts once ``min_wait_after_push`` seconds have
    passed since the last commit, because CI starts asynchronously after a
    push. Actionable always wins over happy.

    Raises:
        GitError: If the last commit time cannot be read.
    """
    _validate_wait_args(timeout, poll_interval)
    start = time.monotonic()

    logger.info(
        "Waiting for PR to become actionable or happy (timeout: %ds, polling every %ds)...",
        timeout,
        poll_interval,
    )

    while True:
        if time.monotonic() - start >= timeout:
            return WaitResult.TIMEOUT

        snapshot = capture_snapshot(
            checks_fetcher, threads_fetcher, owner, repo, pr_number, include_patterns, exclude_patterns
        )
        if snapshot.is_actionable():
            return WaitResult.ACTIONABLE

        if snapshot.is_happy():
            last_commit = git_fetcher.get_last_commit_time()
            since_commit = max((_now() - last_commit).total_seconds(), 0.0)
            if since_commit >= min_wait_after_push:
                return WaitResult.HAPPY
            logger.info(
                "PR looks happy but waiting %ds more to ensure CI has triggered...",
                int(min_wait_after_push - since_commit),
            )

        time.sleep(poll_interval)
