"""Review-thread model and classifier.

The classifier is pure: every predicate works on an already-fetched
:class:`ReviewThread`. Fetchers live at the bottom of the module.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from prloop import gh

logger = logging.getLogger(__name__)

# Prefix of every comment posted by the assistant.
ASSISTANT_MARKER = "🤖 From Claude:"

# Either form flags a thread for the human reviewer; flagged threads are
# never considered actionable.
FLAG_SHORTCODE = ":paperclip:"
FLAG_EMOJI = "📎"

GHOST_AUTHOR = "ghost"


def is_assistant_comment(body: str) -> bool:
    """Whether a comment body was posted by the assistant."""
    return body.startswith(ASSISTANT_MARKER)


def has_flag_marker(body: str) -> bool:
    """Whether a comment body carries the human-review flag in either form."""
    return FLAG_SHORTCODE in body or FLAG_EMOJI in body


def strip_flag_markers(body: str) -> str:
    """Remove both forms of the human-review flag from a comment body."""
    return body.replace(FLAG_SHORTCODE, "").replace(FLAG_EMOJI, "")


class ThreadComment(BaseModel):
    """A single comment within a review thread."""

    id: str = Field(description="GraphQL node ID of the comment")
    author: str = Field(description="GitHub login of the author ('ghost' for deleted accounts)")
    body: str = Field(description="Comment body text")


class ReviewThread(BaseModel):
    """A review thread on a pull request, comments ordered oldest to newest."""

    id: str = Field(description="GraphQL node ID (PRRT_...)")
    is_resolved: bool = Field(default=False, description="Whether the thread is resolved")
    path: str | None = Field(default=None, description="File path the thread is anchored to")
    line: int | None = Field(default=None, description="Line number in the file")
    comments: list[ThreadComment] = Field(default_factory=list, description="Comments, oldest first")

    def last_comment(self) -> ThreadComment | None:
        return self.comments[-1] if self.comments else None

    def needs_response(self) -> bool:
        """Unresolved and the newest comment is not from the assistant."""
        if self.is_resolved:
            return False
        last = self.last_comment()
        if last is None:
            return False
        return not is_assistant_comment(last.body)

    def has_flag(self) -> bool:
        """Whether any comment flags this thread for the human reviewer."""
        return any(has_flag_marker(c.body) for c in self.comments)

    def is_pure_assistant(self) -> bool:
        """Whether every comment is attributable to the assistant identity.

        A comment counts when it carries the marker, or when its author posted
        at least one marked comment in this thread. Empty threads never count.
        """
        if not self.comments:
            return False
        assistant_authors = {c.author for c in self.comments if is_assistant_comment(c.body)}
        return all(is_assistant_comment(c.body) or c.author in assistant_authors for c in self.comments)

    def human_comments_after(self, comment_id: str) -> list[ThreadComment] | None:
        """Return unmarked comments posted after *comment_id*, or None if it is not in the thread."""
        for index, comment in enumerate(self.comments):
            if comment.id == comment_id:
                return [c for c in self.comments[index + 1 :] if not is_assistant_comment(c.body)]
        return None

    def comment_ids(self) -> list[str]:
        return [c.id for c in self.comments]


class ActionableThread(BaseModel):
    """A review thread that needs a response."""

    thread: ReviewThread = Field(description="The thread awaiting a response")

    @property
    def location(self) -> str:
        """Display location: ``path:line``, ``path`` or ``unknown location``."""
        path, line = self.thread.path, self.thread.line
        if path and line is not None:
            return f"{path}:{line}"
        if path:
            return path
        return "unknown location"


def find_actionable_threads(threads: list[ReviewThread]) -> list[ActionableThread]:
    """Threads needing a response, in input order, skipping flagged threads."""
    return [ActionableThread(thread=t) for t in threads if not t.has_flag() and t.needs_response()]


# ---------------------------------------------------------------------------
# Fetchers
# ---------------------------------------------------------------------------


class ThreadNotFoundError(LookupError):
    """Raised when a comment cannot be located in any review thread."""

    def __init__(self, message: str, comment_id: str) -> None:
        super().__init__(message)
        self.comment_id = comment_id


class ThreadsFetcher(ABC):
    """Source of review threads for a PR."""

    @abstractmethod
    def fetch_threads(self, owner: str, repo: str, pr_number: int) -> list[ReviewThread]:
        """Return every review thread on the PR.

        Raises:
            FetchError: If the threads could not be retrieved.
        """

    @abstractmethod
    def fetch_thread_by_comment_id(self, comment_id: str) -> ReviewThread:
        """Return the thread that contains *comment_id*.

        Raises:
            ThreadNotFoundError: If no thread contains the comment.
        """


_THREADS_QUERY = """
query($owner: String!, $repo: String!, $pr: Int!, $cursor: String) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $pr) {
      reviewThreads(first: 100, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          isResolved
          path
          line
          comments(first: 100) {
            pageInfo { hasNextPage endCursor }
            nodes {
              id
              author { login }
              body
            }
          }
        }
      }
    }
  }
}
"""

_REMAINING_COMMENTS_QUERY = """
query($id: ID!, $cursor: String) {
  node(id: $id) {
    ... on PullRequestReviewThread {
      comments(first: 100, after: $cursor) {
        pageInfo { hasNextPage endCursor }
        nodes {
          id
          author { login }
          body
        }
      }
    }
  }
}
"""

_COMMENT_PR_QUERY = """
query($id: ID!) {
  node(id: $id) {
    ... on PullRequestReviewComment {
      pullRequest {
        number
        repository {
          name
          owner { login }
        }
      }
    }
  }
}
"""


def _parse_comments(nodes: list[dict[str, Any]]) -> list[ThreadComment]:
    return [
        ThreadComment(
            id=c["id"],
            author=(c.get("author") or {}).get("login") or GHOST_AUTHOR,
            body=c.get("body") or "",
        )
        for c in nodes
    ]


class GhThreadsFetcher(ThreadsFetcher):
    """Fetch review threads through ``gh api graphql`` with full pagination."""

    def __init__(self, cwd: str | None = None) -> None:
        self.cwd = cwd

    def fetch_threads(self, owner: str, repo: str, pr_number: int) -> list[ReviewThread]:
        threads: list[ReviewThread] = []
        cursor = None
        page = 0

        while True:
            page += 1
            variables: dict[str, Any] = {"owner": owner, "repo": repo, "pr": pr_number}
            if cursor:
                variables["cursor"] = cursor

            result = gh.graphql(_THREADS_QUERY, variables=variables, cwd=self.cwd)
            gh.check_graphql_errors(result, f"fetch review threads for PR #{pr_number} (page {page})")
            pr_data = ((result.get("data") or {}).get("repository") or {}).get("pullRequest")
            if pr_data is None:
                msg = f"Pull request {owner}/{repo}#{pr_number} not found"
                raise gh.GhError(msg)
            threads_data = pr_data.get("reviewThreads") or {}

            try:
                threads.extend(self._parse_thread(node) for node in threads_data.get("nodes") or [])
            except (ValueError, KeyError, TypeError, AttributeError) as exc:
                msg = f"Malformed review thread data for PR #{pr_number}: {exc}"
                raise gh.GhError(msg) from exc

            page_info = threads_data.get("pageInfo") or {}
            if page_info.get("hasNextPage") and page_info.get("endCursor"):
                cursor = page_info["endCursor"]
            else:
                break

        logger.debug("Fetched %d review threads for %s/%s#%d", len(threads), owner, repo, pr_number)
        return threads

    def _parse_thread(self, node: dict[str, Any]) -> ReviewThread:
        comments_data = node.get("comments") or {}
        comments = _parse_comments(comments_data.get("nodes") or [])

        page_info = comments_data.get("pageInfo") or {}
        if page_info.get("hasNextPage"):
            comments.extend(self._fetch_remaining_comments(node["id"], page_info.get("endCursor")))

        return ReviewThread(
            id=node["id"],
            is_resolved=bool(node.get("isResolved")),
            path=node.get("path"),
            line=node.get("line"),
            comments=comments,
        )

    def _fetch_remaining_comments(self, thread_id: str, cursor: str | None) -> list[ThreadComment]:
        """Page through the comments of a thread with more than one page of them."""
        comments: list[ThreadComment] = []
        while True:
            variables: dict[str, Any] = {"id": thread_id}
            if cursor:
                variables["cursor"] = cursor

            result = gh.graphql(_REMAINING_COMMENTS_QUERY, variables=variables, cwd=self.cwd)
            gh.check_graphql_errors(result, f"fetch comments of thread {thread_id}")
            node = (result.get("data") or {}).get("node") or {}
            comments_data = node.get("comments") or {}
            comments.extend(_parse_comments(comments_data.get("nodes") or []))

            page_info = comments_data.get("pageInfo") or {}
            if page_info.get("hasNextPage") and page_info.get("endCursor"):
                cursor = page_info["endCursor"]
            else:
                return comments

    def fetch_thread_by_comment_id(self, comment_id: str) -> ReviewThread:
        # GitHub exposes no thread field on a comment, so resolve the PR first.
        result = gh.graphql(_COMMENT_PR_QUERY, variables={"id": comment_id}, cwd=self.cwd)
        gh.check_graphql_errors(result, f"look up comment {comment_id}")
        node = (result.get("data") or {}).get("node") or {}
        pr_info = node.get("pullRequest")
        if not pr_info:
            msg = f"Comment not found or not a PR review comment: {comment_id}"
            raise ThreadNotFoundError(msg, comment_id)

        try:
            owner = pr_info["repository"]["owner"]["login"]
            repo = pr_info["repository"]["name"]
            pr_number = int(pr_info["number"])
        except (ValueError, KeyError, TypeError) as exc:
            msg = f"Malformed pull request data for comment {comment_id}: {exc}"
            raise gh.GhError(msg) from exc
        threads = self.fetch_threads(owner, repo, pr_number)
        return _find_thread_with_comment(threads, comment_id)


def _find_thread_with_comment(threads: list[ReviewThread], comment_id: str) -> ReviewThread:
    for thread in threads:
        if comment_id in thread.comment_ids():
            return thread
    msg = f"Comment {comment_id} not found in any thread"
    raise ThreadNotFoundError(msg, comment_id)


class InMemoryThreadsFetcher(ThreadsFetcher):
    """Serve a fixed list of threads, or raise a fixed error."""

    def __init__(self, threads: list[ReviewThread] | None = None, error: Exception | None = None) -> None:
        self.threads = list(threads or [])
        self.error = error
        self.calls = 0

    def fetch_threads(self, owner: str, repo: str, pr_number: int) -> list[ReviewThread]:  # noqa: ARG002
        self.calls += 1
        if self.error is not None:
            raise self.error
        return [t.model_copy(deep=True) for t in self.threads]

    def fetch_thread_by_comment_id(self, comment_id: str) -> ReviewThread:
        return _find_thread_with_comment(self.threads, comment_id)
