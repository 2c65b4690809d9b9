"""FastMCP server for pr-loop.

Exposes the PR triage loop as tools for agent clients. Authentication is
handled by the `gh` CLI; CircleCI logs need ``CIRCLECI_TOKEN``.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Annotated, Literal

from fastmcp import FastMCP
from fastmcp.server.lifespan import lifespan
from fastmcp.server.middleware.error_handling import ErrorHandlingMiddleware
from fastmcp.server.middleware.logging import LoggingMiddleware
from fastmcp.server.middleware.ping import PingMiddleware
from fastmcp.server.middleware.timing import TimingMiddleware
from fastmcp.utilities.async_utils import call_sync_fn_in_threadpool
from pydantic import Field

from prloop import gh
from prloop.checks import GhChecksFetcher, InvalidGlobError
from prloop.circleci import CircleCiError
from prloop.config import get_config, load_config, set_config
from prloop.git import GitError, SubprocessGitFetcher
from prloop.models import (
    AnalysisResult,
    ChecksResult,
    CleanupResult,
    PrContext,
    ReadyResult,
    ReplyResult,
)
from prloop.pr import GhPrClient
from prloop.threads import GhThreadsFetcher, ThreadNotFoundError
from prloop.tools import analyze, ci, comments, ready, wait

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


@lifespan
async def check_gh_cli(server: FastMCP) -> AsyncIterator[dict[str, object] | None]:  # noqa: ARG001, RUF029
    """Verify gh CLI is installed and authenticated, and load config on startup."""
    check_prerequisites()
    config, _ = load_config()
    set_config(config)
    yield {}


mcp = FastMCP(
    "pr-loop",
    lifespan=check_gh_cli,
    instructions="""\
PR iteration loop: triage one pull request and get a single recommended next action.

## Loop

1. `analyze_pr` returns exactly one action, in strict priority order:
   respond to review comments > fix CI failures > wait for CI > PR ready.
2. Respond: for every listed thread, fix the code if needed, then call
   `reply_to_comment` with the ID of the thread's LAST comment. Replies are
   prefixed with the assistant marker automatically.
3. Fix CI: read `failure_logs` (CircleCI step logs when a token is configured),
   push a fix.
4. After pushing, call `wait_for_pr` with `until="actionable_or_happy"` so the
   loop ends when CI passes and no comment needs an answer.
5. When the PR is happy, call `mark_ready`. It refuses unless the PR is a draft
   with a single commit, no unresolved threads and green CI.

Threads containing the :paperclip: marker are reserved for the human reviewer
and never show up as actionable.
""",
)


def _recovery_error(
    exc: Exception,
    *,
    tool_name: str,
    pr_number: int | None = None,
    repo: str | None = None,
) -> str:
    """Build an actionable error message with recovery hints."""
    msg = str(exc)

    if isinstance(exc, gh.GhNotFoundError):
        return f"{tool_name} failed: gh CLI not found. Install it from https://cli.github.com/ then run: gh auth login"
    if isinstance(exc, gh.GhNotAuthenticatedError):
        return f"{tool_name} failed: gh CLI not authenticated. Run: gh auth login"
    if isinstance(exc, InvalidGlobError):
        return f"{tool_name} failed: {msg}. Fix the include/exclude check pattern; do not retry unchanged."
    if isinstance(exc, ThreadNotFoundError):
        return (
            f"{tool_name} failed: {msg}. Call analyze_pr to get current comment IDs "
            "and reply to the last comment of the thread."
        )
    if isinstance(exc, CircleCiError) and exc.status_code == 429:  # noqa: PLR2004
        return f"{tool_name} failed: CircleCI API rate limit hit. Wait 60 seconds and retry."
    if isinstance(exc, GitError):
        return f"{tool_name} failed: {msg}. Make sure the server runs inside the PR's git checkout."
    if "rate limit" in msg.lower():
        return f"{tool_name} failed: GitHub API rate limit hit. Wait 60 seconds and retry."

    parts = [f"{tool_name} failed: {msg}."]
    if pr_number:
        parts.append(f"Verify PR #{pr_number} exists.")
    if not repo:
        parts.append("Try passing repo='owner/repo' explicitly.")
    return " ".join(parts)


mcp.add_middleware(ErrorHandlingMiddleware(include_traceback=True, transform_errors=True))
mcp.add_middleware(TimingMiddleware())
mcp.add_middleware(LoggingMiddleware(include_payloads=True, max_payload_length=500))
# wait_for_pr can block for a long time; keep the client connection alive.
mcp.add_middleware(PingMiddleware(interval_ms=30_000))


def _resolve_pr(repo: str | None, pr_number: int | None) -> PrContext:
    owner, name = gh.parse_repo(repo) if repo else gh.get_repo_info()
    number = pr_number if pr_number is not None else gh.get_current_pr_number()
    return PrContext(owner=owner, repo=name, pr_number=number)


def _patterns(explicit: list[str] | None, configured: list[str]) -> list[str]:
    return configured if explicit is None else explicit


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool(tags={"query"})
async def analyze_pr(
    pr_number: int | None = None,
    repo: str | None = None,
    include_checks: list[str] | None = None,
    exclude_checks: list[str] | None = None,
) -> AnalysisResult:
    """Recommend the single next action for a PR.

    Args:
        pr_number: PR number. Auto-detected from the current branch if omitted.
        repo: Repository in "owner/repo" format. Auto-detected if omitted.
        include_checks: Check-name globs to include (default: configured, else all).
        exclude_checks: Check-name globs to exclude.
    """
    config = get_config()

    def _run() -> AnalysisResult:
        pr = _resolve_pr(repo, pr_number)
        with ci.open_ci_fetcher(config.circleci.token) as ci_fetcher:
            return analyze.analyze(
                pr,
                GhChecksFetcher(),
                GhThreadsFetcher(),
                ci_fetcher,
                _patterns(include_checks, config.checks.include),
                _patterns(exclude_checks, config.checks.exclude),
            )

    try:
        return await call_sync_fn_in_threadpool(_run)
    except Exception as exc:
        logger.exception("analyze_pr failed for PR #%s", pr_number)
        return AnalysisResult(error=_recovery_error(exc, tool_name="analyze_pr", pr_number=pr_number, repo=repo))


@mcp.tool(tags={"query"})
async def get_checks(
    pr_number: int | None = None,
    repo: str | None = None,
    include_checks: list[str] | None = None,
    exclude_checks: list[str] | None = None,
) -> ChecksResult:
    """List a PR's CI checks, with CircleCI logs for failed steps when a token is configured.

    Args:
        pr_number: PR number. Auto-detected from the current branch if omitted.
        repo: Repository in "owner/repo" format. Auto-detected if omitted.
        include_checks: Check-name globs to include (default: configured, else all).
        exclude_checks: Check-name globs to exclude.
    """
    config = get_config()

    def _run() -> ChecksResult:
        pr = _resolve_pr(repo, pr_number)
        with ci.open_ci_fetcher(config.circleci.token) as ci_fetcher:
            return ci.get_checks(
                pr,
                GhChecksFetcher(),
                ci_fetcher,
                _patterns(include_checks, config.checks.include),
                _patterns(exclude_checks, config.checks.exclude),
            )

    try:
        return await call_sync_fn_in_threadpool(_run)
    except Exception as exc:
        logger.exception("get_checks failed for PR #%s", pr_number)
        return ChecksResult(error=_recovery_error(exc, tool_name="get_checks", pr_number=pr_number, repo=repo))


@mcp.tool(tags={"query"})
async def wait_for_pr(  # noqa: PLR0913
    until: Literal["actionable", "actionable_or_happy"] = "actionable_or_happy",
    pr_number: int | None = None,
    repo: str | None = None,
    timeout: Annotated[int | None, Field(ge=0)] = None,
    poll_interval: Annotated[int | None, Field(gt=0)] = None,
    include_checks: list[str] | None = None,
    exclude_checks: list[str] | None = None,
) -> AnalysisResult:
    """Block until the PR needs attention (or is happy), then analyze it.

    ``actionable`` returns once a comment needs an answer or a check fails.
    ``actionable_or_happy`` also returns once CI passes with nothing to answer,
    but only after ``min_wait_after_push`` seconds since the last commit.

    Args:
        until: Exit condition, "actionable" or "actionable_or_happy".
        pr_number: PR number. Auto-detected from the current branch if omitted.
        repo: Repository in "owner/repo" format. Auto-detected if omitted.
        timeout: Maximum seconds to wait (default: configured).
        poll_interval: Seconds between polls (default: configured).
        include_checks: Check-name globs to include (default: configured, else all).
        exclude_checks: Check-name globs to exclude.
    """
    config = get_config()
    wait_timeout = config.wait.timeout if timeout is None else timeout
    interval = config.wait.poll_interval if poll_interval is None else poll_interval

    def _run() -> AnalysisResult:
        pr = _resolve_pr(repo, pr_number)
        include = _patterns(include_checks, config.checks.include)
        exclude = _patterns(exclude_checks, config.checks.exclude)
        checks_fetcher = GhChecksFetcher()
        threads_fetcher = GhThreadsFetcher()
        if until == "actionable":
            result = wait.wait_until_actionable(
                checks_fetcher, threads_fetcher, pr.owner, pr.repo, pr.pr_number, include, exclude, wait_timeout, interval
            )
        else:
            result = wait.wait_until_actionable_or_happy(
                checks_fetcher,
                threads_fetcher,
                SubprocessGitFetcher(),
                pr.owner,
                pr.repo,
                pr.pr_number,
                include,
                exclude,
                wait_timeout,
                interval,
                config.wait.min_wait_after_push,
            )
        with ci.open_ci_fetcher(config.circleci.token) as ci_fetcher:
            return analyze.analyze(pr, checks_fetcher, threads_fetcher, ci_fetcher, include, exclude, result)

    try:
        return await call_sync_fn_in_threadpool(_run)
    except Exception as exc:
        logger.exception("wait_for_pr failed for PR #%s", pr_number)
        return AnalysisResult(error=_recovery_error(exc, tool_name="wait_for_pr", pr_number=pr_number, repo=repo))


@mcp.tool(tags={"command"})
async def reply_to_comment(
    comment_id: str,
    message: str,
    resolve: bool = False,  # noqa: FBT001, FBT002
) -> ReplyResult:
    """Reply in the thread containing a review comment.

    The reply is prefixed with the assistant marker. If humans commented after
    ``comment_id``, the reply acknowledges it and their comments are returned
    in ``newer_comments``; address them too.

    Args:
        comment_id: ID of the comment to reply to (the last comment of the thread).
        message: Reply text, without the marker.
        resolve: Resolve the thread after replying.
    """
    try:
        return await call_sync_fn_in_threadpool(
            comments.reply_to_comment,
            GhThreadsFetcher(),
            comments.GhCommentClient(),
            comment_id,
            message,
            resolve=resolve,
        )
    except Exception as exc:
        logger.exception("reply_to_comment failed for %s", comment_id)
        return ReplyResult(error=_recovery_error(exc, tool_name="reply_to_comment"))


@mcp.tool(tags={"command"})
async def clean_threads(
    pr_number: int | None = None,
    repo: str | None = None,
) -> CleanupResult:
    """Delete resolved pure-assistant threads and strip flag markers from flagged threads.

    Args:
        pr_number: PR number. Auto-detected from the current branch if omitted.
        repo: Repository in "owner/repo" format. Auto-detected if omitted.
    """
    config = get_config()

    def _run() -> CleanupResult:
        pr = _resolve_pr(repo, pr_number)
        threads = GhThreadsFetcher().fetch_threads(pr.owner, pr.repo, pr.pr_number)
        return comments.clean_threads(
            comments.GhCommentClient(), threads, max_concurrent=config.cleanup.max_concurrent
        )

    try:
        return await call_sync_fn_in_threadpool(_run)
    except Exception as exc:
        logger.exception("clean_threads failed for PR #%s", pr_number)
        return CleanupResult(error=_recovery_error(exc, tool_name="clean_threads", pr_number=pr_number, repo=repo))


@mcp.tool(tags={"command"})
async def mark_ready(
    pr_number: int | None = None,
    repo: str | None = None,
    preserve_assistant_threads: bool = False,  # noqa: FBT001, FBT002
) -> ReadyResult:
    """Clean up and mark a settled draft PR ready for human review.

    Args:
        pr_number: PR number. Auto-detected from the current branch if omitted.
        repo: Repository in "owner/repo" format. Auto-detected if omitted.
        preserve_assistant_threads: Keep resolved threads that only contain assistant comments.
    """
    config = get_config()

    def _run() -> ReadyResult:
        pr = _resolve_pr(repo, pr_number)
        return ready.mark_pr_ready(
            pr,
            GhPrClient(),
            GhChecksFetcher(),
            GhThreadsFetcher(),
            comments.GhCommentClient(),
            include_patterns=config.checks.include,
            exclude_patterns=config.checks.exclude,
            preserve_assistant_threads=preserve_assistant_threads,
            max_concurrent=config.cleanup.max_concurrent,
        )

    try:
        return await call_sync_fn_in_threadpool(_run)
    except Exception as exc:
        logger.exception("mark_ready failed for PR #%s", pr_number)
        return ReadyResult(error=_recovery_error(exc, tool_name="mark_ready", pr_number=pr_number, repo=repo))


def check_prerequisites() -> None:
    """Verify that gh CLI is installed and authenticated."""
    try:
        username = gh.check_auth()
        logger.info("Authenticated as %s", username)
    except gh.GhNotFoundError:
        logger.exception("gh CLI not found. Install: https://cli.github.com/")
        raise
    except gh.GhNotAuthenticatedError:
        logger.exception("gh CLI not authenticated. Run: gh auth login")
        raise
