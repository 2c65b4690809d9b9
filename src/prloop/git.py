"""Git collaborator: timestamp of the most recent local commit."""

from __future__ import annotations

import logging
import subprocess  # noqa: S404
from abc import ABC, abstractmethod
from datetime import UTC, datetime

from prloop.errors import FetchError

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 30


class GitError(FetchError):
    """Raised when a git command fails or its output cannot be parsed."""


class GitFetcher(ABC):
    """Source of local git metadata."""

    @abstractmethod
    def get_last_commit_time(self) -> datetime:
        """Return the commit time of HEAD as an aware UTC datetime.

        Raises:
            GitError: If the time cannot be determined.
        """


class SubprocessGitFetcher(GitFetcher):
    """Read commit metadata with ``git log``."""

    def __init__(self, cwd: str | None = None) -> None:
        self.cwd = cwd

    def get_last_commit_time(self) -> datetime:
        cmd = ["git", "log", "-1", "--format=%ct"]
        logger.debug("Running: %s", " ".join(cmd))
        try:
            result = subprocess.run(  # noqa: S603
                cmd,
                capture_output=True,
                text=True,
                check=False,
                cwd=self.cwd,
                timeout=GIT_TIMEOUT_SECONDS,
            )
        except FileNotFoundError:
            msg = "git not found. Is git installed?"
            raise GitError(msg) from None
        except subprocess.TimeoutExpired as exc:
            msg = f"git log timed out after {GIT_TIMEOUT_SECONDS}s"
            raise GitError(msg) from exc
        except OSError as exc:
            msg = f"Failed to run git: {exc}"
            raise GitError(msg) from exc

        if result.returncode != 0:
            msg = f"Failed to get last commit time: {result.stderr.strip()}"
            raise GitError(msg)

        try:
            timestamp = int(result.stdout.strip())
        except ValueError as exc:
            msg = f"Failed to parse commit timestamp {result.stdout.strip()!r}"
            raise GitError(msg) from exc
        return datetime.fromtimestamp(timestamp, tz=UTC)


class InMemoryGitFetcher(GitFetcher):
    """Return a fixed commit time, or raise a fixed error."""

    def __init__(self, last_commit_time: datetime | None = None, error: Exception | None = None) -> None:
        self.last_commit_time = last_commit_time or datetime.now(tz=UTC)
        self.error = error

    def get_last_commit_time(self) -> datetime:
        if self.error is not None:
            raise self.error
        return self.last_commit_time
