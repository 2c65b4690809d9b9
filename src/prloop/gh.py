"""GitHub CLI (gh) wrapper for pr-loop.

All GitHub API calls go through the `gh` CLI, which handles authentication
transparently. Nothing is cached: the wait loop needs fresh state on every poll.
"""

from __future__ import annotations

import json
import logging
import subprocess  # noqa: S404
import time
from typing import Any

from prloop.errors import FetchError

logger = logging.getLogger(__name__)

# Upper bound on a single gh invocation, in seconds.
GH_TIMEOUT_SECONDS = 60


class GhError(FetchError):
    """Raised when a gh CLI command fails."""

    def __init__(self, message: str, stderr: str = "", returncode: int = 1) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class GhNotFoundError(GhError):
    """Raised when gh CLI is not installed."""

    def __init__(self) -> None:
        super().__init__("gh CLI not found. Install it: https://cli.github.com/ then run: gh auth login")


class GhNotAuthenticatedError(GhError):
    """Raised when gh CLI is not authenticated."""

    def __init__(self, stderr: str = "") -> None:
        super().__init__(
            "gh CLI is not authenticated. Run: gh auth login",
            stderr=stderr,
        )


def run_gh(*args: str, cwd: str | None = None, ok_returncodes: tuple[int, ...] = (0,)) -> str:
    """Run a gh CLI command and return stdout.

    Args:
        *args: Arguments to pass to gh (e.g. "api", "graphql", "-f", "query=...").
        cwd: Working directory for the command.
        ok_returncodes: Exit codes that still carry a usable stdout
            (``gh pr checks`` exits 8 while checks are pending).

    Returns:
        stdout as a string.

    Raises:
        GhNotFoundError: If gh is not installed.
        GhError: If the command fails, times out or cannot be started.
    """
    cmd = ["gh", *args]
    logger.debug("Running: %s", " ".join(cmd))
    start = time.perf_counter()
    try:
        result = subprocess.run(  # noqa: S603
            cmd,
            capture_output=True,
            text=True,
            check=False,
            cwd=cwd,
            timeout=GH_TIMEOUT_SECONDS,
        )
    except FileNotFoundError:
        raise GhNotFoundError from None
    except subprocess.TimeoutExpired as exc:
        msg = f"gh {' '.join(args[:2])} timed out after {GH_TIMEOUT_SECONDS}s"
        raise GhError(msg) from exc
    except OSError as exc:
        msg = f"Failed to run gh: {exc}"
        raise GhError(msg) from exc

    duration_ms = round((time.perf_counter() - start) * 1000)
    logger.debug("gh %s exited %d in %dms", args[0] if args else "", result.returncode, duration_ms)

    if result.returncode not in ok_returncodes:
        logger.debug("gh stderr: %s", result.stderr)
        raise GhError(
            result.stderr.strip(),
            stderr=result.stderr,
            returncode=result.returncode,
        )
    return result.stdout


def _parse_json(raw: str, context: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        msg = f"Failed to parse {context} output: {exc}"
        raise GhError(msg) from exc


def check_graphql_errors(result: dict[str, Any], context: str) -> None:
    """Raise GhError if a GraphQL response contains errors."""
    errors = result.get("errors")
    if errors:
        messages = ", ".join(e.get("message", str(e)) for e in errors)
        msg = f"GraphQL error in {context}: {messages}"
        raise GhError(msg)


def graphql(query: str, variables: dict[str, Any] | None = None, cwd: str | None = None) -> dict[str, Any]:
    """Execute a GitHub GraphQL query via gh api graphql.

    Args:
        query: GraphQL query string.
        variables: Optional variables to pass with -f (strings) or -F (ints/bools).
        cwd: Working directory.

    Returns:
        Parsed JSON response.
    """
    args = ["api", "graphql", "-f", f"query={query}"]
    for key, value in (variables or {}).items():
        if isinstance(value, bool):
            args.extend(["-F", f"{key}={str(value).lower()}"])
        elif isinstance(value, int):
            args.extend(["-F", f"{key}={value}"])
        else:
            args.extend(["-f", f"{key}={value}"])

    raw = run_gh(*args, cwd=cwd)
    return _parse_json(raw, "gh api graphql")


def run_gh_json(*args: str, cwd: str | None = None, ok_returncodes: tuple[int, ...] = (0,)) -> Any:
    """Run a gh command that prints JSON (``--json ...``) and parse its output."""
    raw = run_gh(*args, cwd=cwd, ok_returncodes=ok_returncodes)
    return _parse_json(raw, f"gh {' '.join(args[:2])}")


def check_auth(cwd: str | None = None) -> str:
    """Verify gh CLI is installed and authenticated.

    Returns:
        The authenticated GitHub username.

    Raises:
        GhNotFoundError: If gh is not installed.
        GhNotAuthenticatedError: If not authenticated.
    """
    try:
        result = run_gh("auth", "status", cwd=cwd)
    except GhNotFoundError:
        raise
    except GhError as e:
        raise GhNotAuthenticatedError(stderr=e.stderr) from e

    # Extract username from output like "Logged in to github.com account username"
    for line in result.splitlines():
        if "account" in line.lower():
            parts = line.split()
            for i, part in enumerate(parts):
                if part.lower() == "account" and i + 1 < len(parts):
                    return parts[i + 1].strip("()")
    return "authenticated"


def parse_repo(repo: str) -> tuple[str, str]:
    """Parse an ``owner/repo`` string into a ``(owner, repo_name)`` tuple.

    Raises:
        ValueError: If the string is not in ``owner/repo`` format.
    """
    owner, _, repo_name = repo.partition("/")
    if not owner or not repo_name or "/" in repo_name:
        msg = f"Invalid repo format {repo!r}. Expected 'owner/repo'."
        raise ValueError(msg)
    return owner, repo_name


def get_current_pr_number(cwd: str | None = None) -> int:
    """Detect the PR number associated with the current git branch.

    Uses ``gh pr view`` which resolves the current branch to its open PR.

    Raises:
        GhError: If no PR is associated with the current branch.
    """
    raw = run_gh("pr", "view", "--json", "number", "-q", ".number", cwd=cwd)
    return int(raw.strip())


def get_repo_info(cwd: str | None = None) -> tuple[str, str]:
    """Get the owner and repo name for the current repository."""
    raw = run_gh("repo", "view", "--json", "nameWithOwner", "-q", ".nameWithOwner", cwd=cwd)
    return parse_repo(raw.strip())
