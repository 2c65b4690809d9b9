"""Mark a draft PR ready for human review once it is fully settled."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from prloop.errors import FetchError
from prloop.models import ReadyResult
from prloop.pr import has_status_block, remove_status_block
from prloop.tools.comments import DEFAULT_MAX_CONCURRENT, clean_threads
from prloop.tools.wait import capture_snapshot

if TYPE_CHECKING:
    from prloop.checks import ChecksFetcher
    from prloop.models import PrContext
    from prloop.pr import PrClient
    from prloop.threads import ThreadsFetcher
    from prloop.tools.comments import CommentClient

logger = logging.getLogger(__name__)

SQUASH_INSTRUCTIONS = """\
First, fetch the latest from origin:
  git fetch origin

To squash commits interactively:
  git rebase -i origin/main

Or to squash all commits on this branch:
  git reset --soft $(git merge-base HEAD origin/main) && git commit

When writing the squashed commit message:
  - Describe the full change as a single cohesive commit
  - Summarize what the PR accomplishes, not the individual commits
  - After squashing, update the PR description to match (keep any status blocks
    and follow any PR template in the repo)

After squashing and force-pushing, wait for CI to pass by running:
  pr-loop --wait-until-actionable-or-happy --maintain-status

NOTE: You MUST use --wait-until-actionable-or-happy (not --wait-until-actionable)
so that the command exits successfully when CI passes. Then run `pr-loop ready` again."""


def _names(names: frozenset[str]) -> str:
    return ", ".join(sorted(names))


def mark_pr_ready(  # noqa: PLR0913, PLR0911
    pr: PrContext,
    pr_client: PrClient,
    checks_fetcher: ChecksFetcher,
    threads_fetcher: ThreadsFetcher,
    comment_client: CommentClient,
    *,
    include_patterns: list[str] | None = None,
    exclude_patterns: list[str] | None = None,
    preserve_assistant_threads: bool = False,
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> ReadyResult:
    """Validate, clean up and mark a draft PR ready for review.

    Stops at the first failed precondition: draft status, a single commit,
    no unresolved threads, no failed or pending checks. Cleanup and status
    block removal problems are logged but do not block readiness.
    """
    result = ReadyResult()
    owner, repo, number = pr.owner, pr.repo, pr.pr_number

    try:
        is_draft = pr_client.is_draft(owner, repo, number)
    except FetchError as exc:
        result.error = f"Failed to check PR draft status: {exc}"
        return result
    if not is_draft:
        result.error = "PR is not in draft mode. The 'ready' command is for marking draft PRs as ready."
        return result
    result.steps.append("PR is in draft mode")

    try:
        commit_count = pr_client.get_commit_count(owner, repo, number)
    except FetchError as exc:
        result.error = f"Failed to check PR commit count: {exc}"
        return result
    if commit_count != 1:
        result.error = (
            f"PR has {commit_count} commits. Please squash to a single commit before marking ready.\n\n"
            f"{SQUASH_INSTRUCTIONS}"
        )
        return result
    result.steps.append("PR has a single commit")

    snapshot = capture_snapshot(checks_fetcher, threads_fetcher, owner, repo, number, include_patterns, exclude_patterns)
    if snapshot.unresolved_thread_ids:
        result.error = (
            f"PR has {len(snapshot.unresolved_thread_ids)} unresolved review thread(s). "
            "All threads must be resolved before marking ready."
        )
        return result
    if snapshot.failed_check_names:
        result.error = (
            f"PR has {len(snapshot.failed_check_names)} failing CI check(s): {_names(snapshot.failed_check_names)}"
        )
        return result
    if snapshot.pending_check_names:
        result.error = (
            f"PR has {len(snapshot.pending_check_names)} pending CI check(s): "
            f"{_names(snapshot.pending_check_names)}\nWait for CI to complete before marking ready."
        )
        return result
    result.steps.extend(["All threads resolved", "All CI checks passed"])

    try:
        threads = threads_fetcher.fetch_threads(owner, repo, number)
    except FetchError as exc:
        logger.warning("Failed to fetch threads for cleanup: %s", exc)
    else:
        result.cleanup = clean_threads(
            comment_client,
            threads,
            delete_pure_assistant=not preserve_assistant_threads,
            max_concurrent=max_concurrent,
        )
        result.steps.append("Cleaned up review threads")

    try:
        body = pr_client.get_body(owner, repo, number)
        if has_status_block(body):
            pr_client.set_body(owner, repo, number, remove_status_block(body))
            result.steps.append("Status block removed")
    except FetchError as exc:
        logger.warning("Failed to remove status block: %s", exc)

    try:
        pr_client.mark_ready(owner, repo, number)
    except FetchError as exc:
        result.error = f"Failed to mark PR as ready: {exc}"
        return result
    result.steps.append("PR marked as ready for review")
    result.ready = True
    return result
