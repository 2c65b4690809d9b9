"""CI check model, status classification and include/exclude filtering."""

from __future__ import annotations

import fnmatch
import logging
from abc import ABC, abstractmethod
from enum import StrEnum

from pydantic import BaseModel, Field

from prloop import gh

logger = logging.getLogger(__name__)


class CheckStatus(StrEnum):
    """Normalized status of a CI check."""

    PASS = "pass"
    FAIL = "fail"
    PENDING = "pending"
    SKIPPING = "skipping"
    CANCELLED = "cancelled"

    @classmethod
    def from_bucket(cls, bucket: str) -> CheckStatus:
        """Map a ``gh pr checks`` bucket string to a status.

        Unknown buckets map to PENDING so an unfamiliar provider state reads as
        "still running" rather than as a pass or a failure.
        """
        return _BUCKET_MAP.get(bucket, cls.PENDING)


_BUCKET_MAP: dict[str, CheckStatus] = {
    "pass": CheckStatus.PASS,
    "fail": CheckStatus.FAIL,
    "pending": CheckStatus.PENDING,
    "skipping": CheckStatus.SKIPPING,
    "cancel": CheckStatus.CANCELLED,
}


class Check(BaseModel):
    """A single CI check result."""

    name: str = Field(description="Check name as reported by the provider")
    status: CheckStatus = Field(description="Normalized check status")
    url: str | None = Field(default=None, description="Detail URL of the check run, if any")


class ChecksSummary(BaseModel):
    """Filtered checks for one PR."""

    checks: list[Check] = Field(default_factory=list, description="Checks that survived filtering")

    def with_status(self, status: CheckStatus) -> list[Check]:
        return [c for c in self.checks if c.status == status]

    def failed(self) -> list[Check]:
        return self.with_status(CheckStatus.FAIL)

    def pending(self) -> list[Check]:
        return self.with_status(CheckStatus.PENDING)


# ---------------------------------------------------------------------------
# Glob filtering
# ---------------------------------------------------------------------------


class InvalidGlobError(ValueError):
    """Raised when an include or exclude pattern is not a valid glob."""

    def __init__(self, message: str, pattern: str) -> None:
        super().__init__(message)
        self.pattern = pattern


def _glob_syntax_error(pattern: str) -> str | None:
    """Return a description of the first syntax error in *pattern*, or None."""
    i, n = 0, len(pattern)
    while i < n:
        c = pattern[i]
        if c == "[":
            j = i + 1
            if j < n and pattern[j] == "!":
                j += 1
            # A leading ']' is a literal member of the class.
            if j < n and pattern[j] == "]":
                j += 1
            while j < n and pattern[j] != "]":
                j += 1
            if j >= n:
                return f"unterminated character class at position {i}"
            i = j + 1
            continue
        if c == "*":
            j = i
            while j < n and pattern[j] == "*":
                j += 1
            run = j - i
            if run > 2:  # noqa: PLR2004
                return f"wildcards are either '*' or '**', got {'*' * run} at position {i}"
            if run == 2:  # noqa: PLR2004
                before_ok = i == 0 or pattern[i - 1] == "/"
                after_ok = j == n or pattern[j] == "/"
                if not (before_ok and after_ok):
                    return f"'**' must form a whole path component at position {i}"
            i = j
            continue
        i += 1
    return None


def _compile_patterns(patterns: list[str], kind: str) -> list[str]:
    for pattern in patterns:
        error = _glob_syntax_error(pattern)
        if error:
            msg = f"Invalid {kind} pattern: {pattern} ({error})"
            raise InvalidGlobError(msg, pattern)
    return list(patterns)


def _matches_any(name: str, patterns: list[str]) -> bool:
    return any(fnmatch.fnmatchcase(name, p) for p in patterns)


def filter_checks(
    checks: list[Check],
    include_patterns: list[str] | None = None,
    exclude_patterns: list[str] | None = None,
) -> list[Check]:
    """Filter checks by shell-style include/exclude globs.

    A check is kept when it matches at least one include pattern (or no
    include patterns are given) and matches no exclude pattern. Exclude wins
    when a name matches both.

    Raises:
        InvalidGlobError: If any pattern is syntactically invalid.
    """
    includes = _compile_patterns(include_patterns or [], "include")
    excludes = _compile_patterns(exclude_patterns or [], "exclude")

    return [
        check
        for check in checks
        if (not includes or _matches_any(check.name, includes)) and not _matches_any(check.name, excludes)
    ]


# ---------------------------------------------------------------------------
# Fetchers
# ---------------------------------------------------------------------------


class ChecksFetcher(ABC):
    """Source of CI check records for a PR."""

    @abstractmethod
    def fetch_checks(self, owner: str, repo: str, pr_number: int) -> list[Check]:
        """Return every check on the PR.

        Raises:
            FetchError: If the checks could not be retrieved.
        """


# gh pr checks exits 8 when some checks are still pending.
_GH_CHECKS_PENDING_EXIT = 8


class GhChecksFetcher(ChecksFetcher):
    """Fetch checks with ``gh pr checks --json``."""

    def __init__(self, cwd: str | None = None) -> None:
        self.cwd = cwd

    def fetch_checks(self, owner: str, repo: str, pr_number: int) -> list[Check]:
        raw = gh.run_gh_json(
            "pr",
            "checks",
            str(pr_number),
            "--repo",
            f"{owner}/{repo}",
            "--json",
            "name,bucket,link,description",
            cwd=self.cwd,
            ok_returncodes=(0, _GH_CHECKS_PENDING_EXIT),
        )
        try:
            return [
                Check(
                    name=item["name"],
                    status=CheckStatus.from_bucket(item.get("bucket", "")),
                    url=item.get("link") or None,
                )
                for item in raw or []
            ]
        except (ValueError, KeyError, TypeError, AttributeError) as exc:
            msg = f"Failed to parse checks for {owner}/{repo}#{pr_number}: {exc}"
            raise gh.GhError(msg) from exc


class InMemoryChecksFetcher(ChecksFetcher):
    """Serve a fixed list of checks, or raise a fixed error."""

    def __init__(self, checks: list[Check] | None = None, error: Exception | None = None) -> None:
        self.checks = list(checks or [])
        self.error = error
        self.calls = 0

    def fetch_checks(self, owner: str, repo: str, pr_number: int) -> list[Check]:  # noqa: ARG002
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.checks)


def get_checks_summary(
    fetcher: ChecksFetcher,
    owner: str,
    repo: str,
    pr_number: int,
    include_patterns: list[str] | None = None,
    exclude_patterns: list[str] | None = None,
) -> ChecksSummary:
    """Fetch and filter the checks for a PR."""
    checks = fetcher.fetch_checks(owner, repo, pr_number)
    filtered = filter_checks(checks, include_patterns, exclude_patterns)
    logger.debug("Checks for %s/%s#%d: %d fetched, %d after filtering", owner, repo, pr_number, len(checks), len(filtered))
    return ChecksSummary(checks=filtered)
