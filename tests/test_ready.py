"""Tests for marking a draft PR ready for review."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from helpers.builders import assistant_comment, check, comment, thread

if TYPE_CHECKING:
    from pytest_mock import MockerFixture

from prloop.checks import CheckStatus, InMemoryChecksFetcher, InvalidGlobError
from prloop.errors import FetchError
from prloop.models import PrContext
from prloop.pr import InMemoryPrClient, build_status_block
from prloop.threads import InMemoryThreadsFetcher
from prloop.tools.comments import InMemoryCommentClient
from prloop.tools.ready import SQUASH_INSTRUCTIONS, mark_pr_ready

PR = PrContext(owner="acme", repo="widgets", pr_number=7)


def _run(
    pr_client: InMemoryPrClient | None = None,
    checks: list | None = None,
    threads: list | None = None,
    comment_client: InMemoryCommentClient | None = None,
    **kwargs,
):
    pr_client = pr_client or InMemoryPrClient()
    checks_fetcher = InMemoryChecksFetcher(checks if checks is not None else [check("build")])
    threads_fetcher = InMemoryThreadsFetcher(threads or [])
    comment_client = comment_client or InMemoryCommentClient()
    return mark_pr_ready(PR, pr_client, checks_fetcher, threads_fetcher, comment_client, **kwargs)


# ---------------------------------------------------------------------------
# Preconditions
# ---------------------------------------------------------------------------


class TestPreconditions:
    def test_not_draft(self):
        pr_client = InMemoryPrClient(is_draft=False)
        result = _run(pr_client)

        assert result.ready is False
        assert result.error == "PR is not in draft mode. The 'ready' command is for marking draft PRs as ready."
        assert result.steps == []

    def test_multiple_commits(self):
        result = _run(InMemoryPrClient(commit_count=3))

        assert result.error.startswith("PR has 3 commits. Please squash to a single commit")
        assert result.error.endswith(SQUASH_INSTRUCTIONS)
        assert result.steps == ["PR is in draft mode"]

    def test_unresolved_threads(self):
        threads = [
            thread("T1", comment("c1")),
            thread("T2", comment("c2"), assistant_comment("c3")),
            thread("T3", comment("c4"), resolved=True),
        ]
        result = _run(threads=threads)

        assert result.error == (
            "PR has 2 unresolved review thread(s). All threads must be resolved before marking ready."
        )
        assert result.steps == ["PR is in draft mode", "PR has a single commit"]

    def test_flagged_threads_do_not_block(self):
        pr_client = InMemoryPrClient()
        result = _run(pr_client, threads=[thread("T1", comment("c1", "For Alice :paperclip:"))])

        assert result.ready is True
        assert pr_client.draft is False

    def test_failing_checks(self):
        checks = [check("test", CheckStatus.FAIL), check("lint", CheckStatus.FAIL), check("build")]
        result = _run(checks=checks)

        assert result.error == "PR has 2 failing CI check(s): lint, test"

    def test_pending_checks(self):
        result = _run(checks=[check("deploy", CheckStatus.PENDING)])

        assert result.error == (
            "PR has 1 pending CI check(s): deploy\nWait for CI to complete before marking ready."
        )

    def test_excluded_checks_are_ignored(self):
        result = _run(checks=[check("deploy", CheckStatus.FAIL), check("build")], exclude_patterns=["deploy"])
        assert result.ready is True

    def test_invalid_pattern_raises(self):
        with pytest.raises(InvalidGlobError):
            _run(include_patterns=["[oops"])

    def test_draft_lookup_failure(self, mocker: MockerFixture):
        pr_client = InMemoryPrClient()
        mocker.patch.object(pr_client, "is_draft", side_effect=FetchError("boom"))
        result = _run(pr_client)
        assert result.error == "Failed to check PR draft status: boom"


# ---------------------------------------------------------------------------
# Success path
# ---------------------------------------------------------------------------


class TestMarkReady:
    def test_full_run(self):
        pr_client = InMemoryPrClient(body=f"{build_status_block('iterating')}\n\nAdds widgets")
        comment_client = InMemoryCommentClient()
        threads = [
            thread("T1", assistant_comment("c1"), resolved=True),
            thread("T2", comment("c2", author="alice"), assistant_comment("c3"), resolved=True),
        ]

        result = _run(pr_client, threads=threads, comment_client=comment_client)

        assert result.ready is True
        assert result.error is None
        assert result.steps == [
            "PR is in draft mode",
            "PR has a single commit",
            "All threads resolved",
            "All CI checks passed",
            "Cleaned up review threads",
            "Status block removed",
            "PR marked as ready for review",
        ]
        assert comment_client.deleted == ["c1"]
        assert result.cleanup.deleted_threads == 1
        assert pr_client.body == "Adds widgets"
        assert pr_client.draft is False

    def test_no_status_block_skips_step(self):
        result = _run(InMemoryPrClient(body="Adds widgets"))
        assert "Status block removed" not in result.steps
        assert result.ready is True

    def test_preserve_assistant_threads(self):
        comment_client = InMemoryCommentClient()
        threads = [
            thread("T1", assistant_comment("c1"), resolved=True),
            thread("T2", assistant_comment("c2", "See :paperclip:"), resolved=True),
        ]

        result = _run(threads=threads, comment_client=comment_client, preserve_assistant_threads=True)

        assert result.ready is True
        assert comment_client.deleted == []
        assert list(comment_client.updated) == ["c2"]

    def test_cleanup_failures_do_not_block(self):
        comment_client = InMemoryCommentClient(failing_ids={"c1"})
        result = _run(threads=[thread("T1", assistant_comment("c1"), resolved=True)], comment_client=comment_client)

        assert result.ready is True
        assert result.cleanup.delete_failures == 1

    def test_status_block_failure_does_not_block(self, mocker: MockerFixture, caplog):
        pr_client = InMemoryPrClient(body=build_status_block())
        mocker.patch.object(pr_client, "set_body", side_effect=FetchError("edit denied"))

        result = _run(pr_client)

        assert result.ready is True
        assert "Status block removed" not in result.steps
        assert "Failed to remove status block: edit denied" in caplog.text

    def test_mark_ready_failure(self, mocker: MockerFixture):
        pr_client = InMemoryPrClient()
        mocker.patch.object(pr_client, "mark_ready", side_effect=FetchError("forbidden"))

        result = _run(pr_client)

        assert result.ready is False
        assert result.error == "Failed to mark PR as ready: forbidden"
        assert "PR marked as ready for review" not in result.steps
