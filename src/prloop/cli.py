"""CLI for pr-loop, built on cyclopts.

The default command analyzes the current PR and prints the recommended next
action as Markdown. Exit codes: 0 success, 1 error, 2 wait timeout.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import TYPE_CHECKING, Annotated, NoReturn

import cyclopts

from prloop import gh
from prloop.checks import GhChecksFetcher
from prloop.config import ENV_CIRCLECI_TOKEN, ENV_EXCLUDE_CHECKS, ENV_INCLUDE_CHECKS, load_config, set_config
from prloop.errors import FetchError
from prloop.git import SubprocessGitFetcher
from prloop.models import PrContext, WaitResult
from prloop.pr import GhPrClient, update_pr_status
from prloop.report import render_analysis, render_checks, render_cleanup, render_ready, render_reply
from prloop.threads import GhThreadsFetcher, ThreadNotFoundError
from prloop.tools.analyze import analyze
from prloop.tools.ci import get_checks, open_ci_fetcher
from prloop.tools.comments import GhCommentClient, clean_threads, reply_to_comment
from prloop.tools.ready import mark_pr_ready
from prloop.tools.wait import wait_until_actionable, wait_until_actionable_or_happy

if TYPE_CHECKING:
    from prloop.config import Config
    from prloop.pr import PrClient

logger = logging.getLogger(__name__)

app = cyclopts.App(
    name="pr-loop",
    help="pr-loop: triage a pull request and recommend the next action for an iterating agent.",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _setup_logging(*, verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        stream=sys.stderr,
    )


def _fail(message: str, code: int = 1) -> NoReturn:
    print(f"Error: {message}", file=sys.stderr)
    sys.exit(code)


def _load_config() -> Config:
    try:
        config, _ = load_config()
    except ValueError as exc:
        _fail(str(exc))
    set_config(config)
    return config


def _split_patterns(values: list[str] | None, default: list[str]) -> list[str]:
    """CLI patterns override the configured ones; each value may be comma-delimited."""
    if values is None:
        return default
    return [p.strip() for value in values for p in value.split(",") if p.strip()]


def resolve_pr_context(repo: str | None = None, pr: int | None = None) -> PrContext:
    """Resolve the target PR from explicit arguments, falling back to ``gh`` auto-detection.

    Raises:
        ValueError: If *repo* is not in ``owner/repo`` format.
        GhError: If auto-detection fails.
    """
    owner, name = gh.parse_repo(repo) if repo else gh.get_repo_info()
    number = pr if pr is not None else gh.get_current_pr_number()
    return PrContext(owner=owner, repo=name, pr_number=number)


def _maintain_status(pr_client: PrClient, pr: PrContext, status_message: str | None) -> None:
    try:
        is_draft = pr_client.is_draft(pr.owner, pr.repo, pr.pr_number)
    except FetchError as exc:
        _fail(f"Failed to check PR draft status: {exc}")
    if not is_draft:
        _fail(
            "--maintain-status requires the PR to be in draft mode.\n"
            "It's not polite to iterate with an AI on a non-draft PR!"
        )
    try:
        update_pr_status(pr_client, pr.owner, pr.repo, pr.pr_number, status_message)
    except FetchError as exc:
        logger.warning("Failed to update PR status: %s", exc)


def _prepare(
    repo: str | None,
    pr: int | None,
    *,
    verbose: bool,
    maintain_status: bool = False,
    status_message: str | None = None,
) -> tuple[Config, PrContext]:
    """Set up logging and config, resolve the PR and refresh its status block if asked."""
    _setup_logging(verbose=verbose)
    config = _load_config()
    try:
        context = resolve_pr_context(repo, pr)
    except (FetchError, ValueError) as exc:
        _fail(str(exc))
    if maintain_status:
        _maintain_status(GhPrClient(), context, status_message)
    return config, context


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.default
def main(  # noqa: PLR0913, PLR0917
    *,
    repo: str | None = None,
    pr: int | None = None,
    include_checks: list[str] | None = None,
    exclude_checks: list[str] | None = None,
    wait_until_actionable_flag: Annotated[bool, cyclopts.Parameter(name="--wait-until-actionable")] = False,
    wait_until_actionable_or_happy_flag: Annotated[
        bool, cyclopts.Parameter(name="--wait-until-actionable-or-happy")
    ] = False,
    timeout: int | None = None,
    poll_interval: int | None = None,
    min_wait_after_push: int | None = None,
    maintain_status: bool = False,
    status_message: str | None = None,
    verbose: bool = False,
) -> None:
    """Analyze the PR and print the recommended next action.

    Args:
        repo: Repository in "owner/repo" format. Auto-detected if omitted.
        pr: PR number. Auto-detected from the current branch if omitted.
        include_checks: Globs of checks to include (repeatable or comma-separated).
        exclude_checks: Globs of checks to exclude (repeatable or comma-separated).
        wait_until_actionable_flag: Block until there is a comment to answer or a failed check.
        wait_until_actionable_or_happy_flag: Also return once CI passes with nothing to answer.
        timeout: Seconds to wait before giving up (exit code 2).
        poll_interval: Seconds between polls.
        min_wait_after_push: Seconds after the last commit before a quiet PR counts as happy.
        maintain_status: Keep an iteration status block in the description of a draft PR.
        status_message: Message for the status block.
        verbose: Enable debug logging.
    """
    if wait_until_actionable_flag and wait_until_actionable_or_happy_flag:
        _fail("--wait-until-actionable and --wait-until-actionable-or-happy are mutually exclusive")

    config, context = _prepare(
        repo, pr, verbose=verbose, maintain_status=maintain_status, status_message=status_message
    )
    include = _split_patterns(include_checks, config.checks.include)
    exclude = _split_patterns(exclude_checks, config.checks.exclude)
    timeout = config.wait.timeout if timeout is None else timeout
    poll_interval = config.wait.poll_interval if poll_interval is None else poll_interval
    min_wait = config.wait.min_wait_after_push if min_wait_after_push is None else min_wait_after_push

    checks_fetcher = GhChecksFetcher()
    threads_fetcher = GhThreadsFetcher()
    owner, name, number = context.owner, context.repo, context.pr_number

    wait_result: WaitResult | None = None
    try:
        if wait_until_actionable_flag:
            wait_result = wait_until_actionable(
                checks_fetcher, threads_fetcher, owner, name, number, include, exclude, timeout, poll_interval
            )
        elif wait_until_actionable_or_happy_flag:
            wait_result = wait_until_actionable_or_happy(
                checks_fetcher,
                threads_fetcher,
                SubprocessGitFetcher(),
                owner,
                name,
                number,
                include,
                exclude,
                timeout,
                poll_interval,
                min_wait,
            )
    except (FetchError, ValueError) as exc:
        _fail(f"Error while waiting: {exc}")

    if wait_result == WaitResult.TIMEOUT:
        print("Timeout reached without PR becoming actionable.", file=sys.stderr)
        sys.exit(2)
    if wait_result == WaitResult.HAPPY:
        print("PR is happy (CI passing, no comments).", file=sys.stderr)
        sys.exit(0)
    if wait_result == WaitResult.ACTIONABLE:
        print("PR is now actionable.", file=sys.stderr)

    with open_ci_fetcher(config.circleci.token) as ci_fetcher:
        try:
            result = analyze(context, checks_fetcher, threads_fetcher, ci_fetcher, include, exclude, wait_result)
        except ValueError as exc:
            _fail(str(exc))
    print(render_analysis(result))


@app.command(name="reply")
def reply(  # noqa: PLR0913
    *,
    in_reply_to: str,
    message: str,
    resolve: bool = False,
    repo: str | None = None,
    pr: int | None = None,
    maintain_status: bool = False,
    status_message: str | None = None,
    verbose: bool = False,
) -> None:
    """Reply to a review comment, prefixed with the assistant marker.

    Args:
        in_reply_to: ID of the comment to reply to (the last comment of the thread).
        message: Reply text.
        resolve: Resolve the thread after replying.
        repo: Repository in "owner/repo" format. Auto-detected if omitted.
        pr: PR number. Auto-detected from the current branch if omitted.
        maintain_status: Keep an iteration status block in the description of a draft PR.
        status_message: Message for the status block.
        verbose: Enable debug logging.
    """
    _, context = _prepare(repo, pr, verbose=verbose, maintain_status=maintain_status, status_message=status_message)
    try:
        result = reply_to_comment(GhThreadsFetcher(), GhCommentClient(), in_reply_to, message, resolve=resolve)
    except ThreadNotFoundError as exc:
        _fail(str(exc))
    except FetchError as exc:
        _fail(f"Failed to reply to comment {in_reply_to}: {exc}")
    print(render_reply(context, result))


@app.command(name="ready")
def ready(
    *,
    preserve_assistant_threads: bool = False,
    include_checks: list[str] | None = None,
    exclude_checks: list[str] | None = None,
    repo: str | None = None,
    pr: int | None = None,
    verbose: bool = False,
) -> None:
    """Clean up and mark a settled draft PR ready for human review.

    Args:
        preserve_assistant_threads: Keep resolved threads that only contain assistant comments.
        include_checks: Globs of checks to include (repeatable or comma-separated).
        exclude_checks: Globs of checks to exclude (repeatable or comma-separated).
        repo: Repository in "owner/repo" format. Auto-detected if omitted.
        pr: PR number. Auto-detected from the current branch if omitted.
        verbose: Enable debug logging.
    """
    config, context = _prepare(repo, pr, verbose=verbose)
    try:
        result = mark_pr_ready(
            context,
            GhPrClient(),
            GhChecksFetcher(),
            GhThreadsFetcher(),
            GhCommentClient(),
            include_patterns=_split_patterns(include_checks, config.checks.include),
            exclude_patterns=_split_patterns(exclude_checks, config.checks.exclude),
            preserve_assistant_threads=preserve_assistant_threads,
            max_concurrent=config.cleanup.max_concurrent,
        )
    except ValueError as exc:
        _fail(str(exc))
    print(render_ready(result))
    if result.error:
        _fail(result.error)


@app.command(name="clean-threads")
def clean_threads_command(*, repo: str | None = None, pr: int | None = None, verbose: bool = False) -> None:
    """Delete resolved pure-assistant threads and strip flag markers.

    Args:
        repo: Repository in "owner/repo" format. Auto-detected if omitted.
        pr: PR number. Auto-detected from the current branch if omitted.
        verbose: Enable debug logging.
    """
    config, context = _prepare(repo, pr, verbose=verbose)
    print("Deleting resolved pure-assistant threads...")
    try:
        threads = GhThreadsFetcher().fetch_threads(context.owner, context.repo, context.pr_number)
    except FetchError as exc:
        _fail(f"Failed to fetch threads: {exc}")
    result = clean_threads(GhCommentClient(), threads, max_concurrent=config.cleanup.max_concurrent)
    print(render_cleanup(result))


@app.command(name="checks")
def checks(
    *,
    include_checks: list[str] | None = None,
    exclude_checks: list[str] | None = None,
    repo: str | None = None,
    pr: int | None = None,
    verbose: bool = False,
) -> None:
    """Show CI check status, with CircleCI logs for failed steps when a token is set.

    Args:
        include_checks: Globs of checks to include (repeatable or comma-separated).
        exclude_checks: Globs of checks to exclude (repeatable or comma-separated).
        repo: Repository in "owner/repo" format. Auto-detected if omitted.
        pr: PR number. Auto-detected from the current branch if omitted.
        verbose: Enable debug logging.
    """
    config, context = _prepare(repo, pr, verbose=verbose)
    with open_ci_fetcher(config.circleci.token) as ci_fetcher:
        try:
            result = get_checks(
                context,
                GhChecksFetcher(),
                ci_fetcher,
                _split_patterns(include_checks, config.checks.include),
                _split_patterns(exclude_checks, config.checks.exclude),
            )
        except (FetchError, ValueError) as exc:
            _fail(f"Failed to fetch checks: {exc}")
    print(render_checks(context, result))


@app.command(name="serve")
def serve() -> None:
    """Run the pr-loop MCP server."""
    from prloop.server import mcp  # noqa: PLC0415

    mcp.run()


@app.command(name="check-env")
def check_env() -> None:
    """Validate PR_LOOP_* environment variables and print a diagnostic summary.

    Lists the recognized variables and their values (masking secrets), warns
    about unrecognized PR_LOOP_* variables (typo detection), then loads the
    configuration and checks that the gh CLI is authenticated.
    """
    print("pr-loop check-env")
    print("=" * 40)

    env_vars = {k: v for k, v in sorted(os.environ.items()) if k.startswith("PR_LOOP_") or k == ENV_CIRCLECI_TOKEN}
    if not env_vars:
        print("\nNo PR_LOOP_* environment variables set.")
        print("Using file settings and defaults.")
    else:
        print(f"\nFound {len(env_vars)} variable(s):\n")
        for key, value in env_vars.items():
            marker = "" if key in _KNOWN_ENV_VARS else "  ⚠️  UNRECOGNIZED"
            print(f"  {key} = {_mask_value(key, value)}{marker}")

    unknown = [k for k in env_vars if k not in _KNOWN_ENV_VARS]
    if unknown:
        print(f"\n⚠️  {len(unknown)} unrecognized variable(s) (possible typos):")
        for key in unknown:
            print(f"  - {key}")

    print("\n" + "-" * 40)
    print("Validating configuration...\n")
    try:
        config, config_path = load_config()
    except ValueError as exc:
        print(f"❌ Configuration error: {exc}")
        sys.exit(1)

    print(f"  Config file: {config_path or '(none, using defaults)'}")
    _print_config_summary(config)

    print("-" * 40)
    print("Checking gh CLI...\n")
    try:
        username = gh.check_auth()
        print(f"  ✅ gh CLI authenticated as: {username}")
    except gh.GhError as exc:
        print(f"  ❌ gh CLI error: {exc}")

    print()


_MASK_MIN_LENGTH = 4
_TRUNCATE_LENGTH = 80

_KNOWN_ENV_VARS = frozenset({ENV_INCLUDE_CHECKS, ENV_EXCLUDE_CHECKS, ENV_CIRCLECI_TOKEN})


def _mask_value(key: str, value: str) -> str:
    """Mask sensitive values."""
    if "TOKEN" in key.upper():
        if len(value) > _MASK_MIN_LENGTH:
            return value[:2] + "*" * (len(value) - _MASK_MIN_LENGTH) + value[-2:]
        return "****"
    if len(value) > _TRUNCATE_LENGTH:
        return value[: _TRUNCATE_LENGTH - 3] + "..."
    return value


def _print_config_summary(config: Config) -> None:
    include = ", ".join(config.checks.include) or "all"
    exclude = ", ".join(config.checks.exclude) or "none"
    print(f"  Checks: include [{include}], exclude [{exclude}]")
    wait = config.wait
    print(
        f"  Wait: timeout {wait.timeout}s, poll every {wait.poll_interval}s, "
        f"min wait after push {wait.min_wait_after_push}s"
    )
    print(f"  Cleanup: {config.cleanup.max_concurrent} concurrent mutation(s)")
    token = config.circleci.token
    print(f"  CircleCI token: {_mask_value('TOKEN', token) if token else 'not set (CI logs unavailable)'}")
    print()
