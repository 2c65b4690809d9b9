"""Review-comment mutations: replying, resolving and batch cleanup."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Any

from prloop import gh
from prloop.errors import FetchError
from prloop.models import BatchResult, CleanupResult, ReplyResult
from prloop.threads import ASSISTANT_MARKER, ThreadNotFoundError, has_flag_marker, strip_flag_markers

if TYPE_CHECKING:
    from collections.abc import Callable

    from prloop.threads import ReviewThread, ThreadsFetcher

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 10

NEWER_COMMENTS_NOTE = (
    "(Looks like you had something else to say here while I was working. I'll look at that now.)"
)


def format_assistant_message(message: str) -> str:
    """Prefix a message with the assistant marker."""
    return f"{ASSISTANT_MARKER} {message}"


# ---------------------------------------------------------------------------
# Comment client
# ---------------------------------------------------------------------------


class CommentClient(ABC):
    """Mutations on review threads and their comments."""

    @abstractmethod
    def post_reply(self, thread_id: str, body: str) -> str:
        """Reply to a thread and return the new comment's ID."""

    @abstractmethod
    def resolve_thread(self, thread_id: str) -> None:
        """Mark a thread resolved."""

    @abstractmethod
    def delete_comment(self, comment_id: str) -> None:
        """Delete a review comment."""

    @abstractmethod
    def update_comment(self, comment_id: str, body: str) -> None:
        """Replace the body of a review comment."""


_REPLY_TO_THREAD_MUTATION = """
mutation($threadId: ID!, $body: String!) {
  addPullRequestReviewThreadReply(input: {
    pullRequestReviewThreadId: $threadId,
    body: $body
  }) {
    comment { id }
  }
}
"""

_RESOLVE_THREAD_MUTATION = """
mutation($threadId: ID!) {
  resolveReviewThread(input: {threadId: $threadId}) {
    thread { id isResolved }
  }
}
"""

_DELETE_COMMENT_MUTATION = """
mutation($id: ID!) {
  deletePullRequestReviewComment(input: {id: $id}) {
    clientMutationId
  }
}
"""

_UPDATE_COMMENT_MUTATION = """
mutation($id: ID!, $body: String!) {
  updatePullRequestReviewComment(input: {pullRequestReviewCommentId: $id, body: $body}) {
    pullRequestReviewComment { id }
  }
}
"""


class GhCommentClient(CommentClient):
    """Comment mutations through ``gh api graphql``."""

    def __init__(self, cwd: str | None = None) -> None:
        self.cwd = cwd

    def _mutate(self, mutation: str, variables: dict[str, Any], context: str) -> dict[str, Any]:
        result = gh.graphql(mutation, variables=variables, cwd=self.cwd)
        gh.check_graphql_errors(result, context)
        return result

    def post_reply(self, thread_id: str, body: str) -> str:
        result = self._mutate(
            _REPLY_TO_THREAD_MUTATION,
            {"threadId": thread_id, "body": body},
            f"reply to thread {thread_id}",
        )
        comment = (((result.get("data") or {}).get("addPullRequestReviewThreadReply") or {}).get("comment")) or {}
        comment_id = comment.get("id")
        if not comment_id:
            msg = "No comment ID returned from mutation"
            raise gh.GhError(msg)
        return comment_id

    def resolve_thread(self, thread_id: str) -> None:
        self._mutate(_RESOLVE_THREAD_MUTATION, {"threadId": thread_id}, f"resolve thread {thread_id}")

    def delete_comment(self, comment_id: str) -> None:
        self._mutate(_DELETE_COMMENT_MUTATION, {"id": comment_id}, f"delete comment {comment_id}")

    def update_comment(self, comment_id: str, body: str) -> None:
        self._mutate(_UPDATE_COMMENT_MUTATION, {"id": comment_id, "body": body}, f"update comment {comment_id}")


class InMemoryCommentClient(CommentClient):
    """Record mutations; comment IDs in *failing_ids* raise instead."""

    def __init__(self, failing_ids: set[str] | None = None) -> None:
        self.failing_ids = failing_ids or set()
        self.replies: list[tuple[str, str]] = []
        self.resolved: list[str] = []
        self.deleted: list[str] = []
        self.updated: dict[str, str] = {}

    def _check(self, item_id: str) -> None:
        if item_id in self.failing_ids:
            msg = f"mutation failed for {item_id}"
            raise FetchError(msg)

    def post_reply(self, thread_id: str, body: str) -> str:
        self._check(thread_id)
        self.replies.append((thread_id, body))
        return f"reply-{len(self.replies)}"

    def resolve_thread(self, thread_id: str) -> None:
        self._check(thread_id)
        self.resolved.append(thread_id)

    def delete_comment(self, comment_id: str) -> None:
        self._check(comment_id)
        self.deleted.append(comment_id)

    def update_comment(self, comment_id: str, body: str) -> None:
        self._check(comment_id)
        self.updated[comment_id] = body


# ---------------------------------------------------------------------------
# Reply
# ---------------------------------------------------------------------------


def reply_to_comment(
    threads_fetcher: ThreadsFetcher,
    client: CommentClient,
    comment_id: str,
    message: str,
    *,
    resolve: bool = False,
) -> ReplyResult:
    """Reply in the thread that contains *comment_id*.

    If humans commented after *comment_id*, the reply acknowledges it and the
    newer comments come back in the result so the caller can address them.

    Raises:
        ThreadNotFoundError: If the comment is not in any thread.
    """
    thread = threads_fetcher.fetch_thread_by_comment_id(comment_id)
    newer = thread.human_comments_after(comment_id)
    if newer is None:
        msg = f"Comment {comment_id} not found in thread {thread.id}"
        raise ThreadNotFoundError(msg, comment_id)

    if newer:
        message = f"{message}\n\n{NEWER_COMMENTS_NOTE}"

    logger.info("Replying to thread %s", thread.id)
    new_comment_id = client.post_reply(thread.id, format_assistant_message(message))
    if resolve:
        client.resolve_thread(thread.id)

    return ReplyResult(
        thread_id=thread.id,
        comment_id=new_comment_id,
        resolved=resolve,
        newer_comments=newer,
    )


# ---------------------------------------------------------------------------
# Batch mutations
# ---------------------------------------------------------------------------


def _run_chunked(
    items: list[str],
    action: Callable[[str], None],
    description: str,
    max_concurrent: int,
) -> BatchResult:
    """Run *action* over *items* in parallel chunks of *max_concurrent*.

    Every worker of a chunk finishes before the next chunk starts. A failing
    item is logged and counted without affecting the others.
    """
    if max_concurrent <= 0:
        msg = f"max_concurrent must be positive, got {max_concurrent}"
        raise ValueError(msg)

    def work(item: str) -> bool:
        try:
            action(item)
        except Exception as exc:
            logger.warning("Failed to %s %s: %s", description, item, exc)
            return False
        return True

    result = BatchResult()
    for start in range(0, len(items), max_concurrent):
        chunk = items[start : start + max_concurrent]
        with ThreadPoolExecutor(max_workers=len(chunk)) as executor:
            outcomes = list(executor.map(work, chunk))
        result.succeeded += sum(outcomes)
        result.failed += len(outcomes) - sum(outcomes)
    return result


def delete_comments_parallel(
    client: CommentClient,
    comment_ids: list[str],
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> BatchResult:
    """Delete comments with bounded concurrency."""
    return _run_chunked(comment_ids, client.delete_comment, "delete comment", max_concurrent)


def strip_flagged_comments(
    client: CommentClient,
    threads: list[ReviewThread],
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> tuple[int, BatchResult]:
    """Remove the flag marker from every marked comment in flagged threads.

    Returns:
        (number of flagged threads, update tally).
    """
    flagged = [t for t in threads if t.has_flag()]
    new_bodies = {
        comment.id: strip_flag_markers(comment.body)
        for thread in flagged
        for comment in thread.comments
        if has_flag_marker(comment.body)
    }
    result = _run_chunked(
        list(new_bodies),
        lambda comment_id: client.update_comment(comment_id, new_bodies[comment_id]),
        "strip flag marker from comment",
        max_concurrent,
    )
    return len(flagged), result


def clean_threads(
    client: CommentClient,
    threads: list[ReviewThread],
    *,
    delete_pure_assistant: bool = True,
    max_concurrent: int = DEFAULT_MAX_CONCURRENT,
) -> CleanupResult:
    """Delete resolved pure-assistant threads, then strip flag markers.

    Deletion runs first: once markers are stripped a retry could no longer
    tell flagged threads apart and might delete them.
    """
    result = CleanupResult()

    if delete_pure_assistant:
        doomed = [t for t in threads if not t.has_flag() and t.is_resolved and t.is_pure_assistant()]
        comment_ids = [cid for t in doomed for cid in t.comment_ids()]
        if comment_ids:
            deleted = delete_comments_parallel(client, comment_ids, max_concurrent)
            result.deleted_threads = len(doomed)
            result.deleted_comments = deleted.succeeded
            result.delete_failures = deleted.failed
        logger.info("Deleted %d comment(s) from %d pure-assistant thread(s)", result.deleted_comments, len(doomed))

    flagged_count, stripped = strip_flagged_comments(client, threads, max_concurrent)
    result.flagged_threads = flagged_count
    result.stripped_comments = stripped.succeeded
    result.strip_failures = stripped.failed
    if stripped.succeeded:
        logger.info(
            "Stripped flag marker from %d comment(s) in %d thread(s)",
            stripped.succeeded,
            flagged_count,
        )
    return result
