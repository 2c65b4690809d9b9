"""Tests for the PR status block and PR metadata clients."""

from __future__ import annotations

import json
import subprocess  # noqa: S404
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from pytest_mock import MockerFixture

from prloop.gh import GhError
from prloop.pr import (
    STATUS_BLOCK_END,
    STATUS_BLOCK_START,
    GhPrClient,
    InMemoryPrClient,
    build_status_block,
    has_status_block,
    remove_status_block,
    update_body_with_status,
    update_pr_status,
)


def _completed(stdout: str = "", returncode: int = 0, stderr: str = "") -> subprocess.CompletedProcess[str]:
    return subprocess.CompletedProcess(args=["gh"], returncode=returncode, stdout=stdout, stderr=stderr)


# ---------------------------------------------------------------------------
# Status block
# ---------------------------------------------------------------------------


class TestBuildStatusBlock:
    def test_wrapped_in_markers(self):
        block = build_status_block()
        assert block.startswith(STATUS_BLOCK_START)
        assert block.endswith(STATUS_BLOCK_END)
        assert "LLM Iteration In Progress" in block
        assert "**Status:**" not in block

    def test_includes_status_message(self):
        block = build_status_block("Fixing lint")
        assert "> **Status:** Fixing lint" in block


class TestRemoveStatusBlock:
    def test_no_block(self):
        assert remove_status_block("Just a description") == "Just a description"

    def test_block_at_top(self):
        body = f"{build_status_block('x')}\n\nThe description"
        assert remove_status_block(body) == "The description"

    def test_block_in_middle_joins_with_blank_line(self):
        body = f"Intro\n\n\n{build_status_block()}\n\n\nOutro"
        assert remove_status_block(body) == "Intro\n\nOutro"

    def test_block_at_bottom(self):
        body = f"Intro\n\n{build_status_block()}\n"
        assert remove_status_block(body) == "Intro"

    def test_only_block(self):
        assert remove_status_block(build_status_block()) == ""

    def test_start_without_end_is_untouched(self):
        body = f"{STATUS_BLOCK_START}\nhalf a block"
        assert remove_status_block(body) == body


class TestUpdateBodyWithStatus:
    def test_adds_block_to_empty_body(self):
        assert update_body_with_status("", "Working") == build_status_block("Working")

    def test_prepends_block(self):
        assert update_body_with_status("Description") == f"{build_status_block()}\n\nDescription"

    def test_replaces_existing_block(self):
        body = update_body_with_status("Description", "first")
        updated = update_body_with_status(body, "second")
        assert updated.count(STATUS_BLOCK_START) == 1
        assert "second" in updated
        assert "first" not in updated
        assert updated.endswith("\n\nDescription")


class TestHasStatusBlock:
    def test_both_markers(self):
        assert has_status_block(build_status_block())

    def test_single_marker(self):
        assert not has_status_block(STATUS_BLOCK_START)
        assert not has_status_block("plain")


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class TestUpdatePrStatus:
    def test_rewrites_body(self):
        client = InMemoryPrClient(body="Adds a feature")
        update_pr_status(client, "o", "r", 1, "Waiting on CI")
        assert has_status_block(client.body)
        assert "Waiting on CI" in client.body
        assert client.body.endswith("Adds a feature")


class TestInMemoryPrClient:
    def test_mark_ready_clears_draft(self):
        client = InMemoryPrClient()
        assert client.is_draft("o", "r", 1)
        client.mark_ready("o", "r", 1)
        assert not client.is_draft("o", "r", 1)

    def test_commit_count(self):
        assert InMemoryPrClient(commit_count=3).get_commit_count("o", "r", 1) == 3


class TestGhPrClient:
    def test_is_draft(self, mocker: MockerFixture):
        run = mocker.patch("prloop.gh.subprocess.run", return_value=_completed(json.dumps({"isDraft": True})))

        assert GhPrClient().is_draft("acme", "widgets", 7) is True
        cmd = run.call_args.args[0]
        assert cmd == ["gh", "pr", "view", "7", "--repo", "acme/widgets", "--json", "isDraft"]

    def test_commit_count(self, mocker: MockerFixture):
        payload = {"commits": [{"oid": "a"}, {"oid": "b"}]}
        mocker.patch("prloop.gh.subprocess.run", return_value=_completed(json.dumps(payload)))
        assert GhPrClient().get_commit_count("acme", "widgets", 7) == 2

    def test_null_body(self, mocker: MockerFixture):
        mocker.patch("prloop.gh.subprocess.run", return_value=_completed(json.dumps({"body": None})))
        assert GhPrClient().get_body("acme", "widgets", 7) == ""

    def test_set_body_and_mark_ready(self, mocker: MockerFixture):
        run = mocker.patch("prloop.gh.subprocess.run", return_value=_completed())
        client = GhPrClient()

        client.set_body("acme", "widgets", 7, "new body")
        client.mark_ready("acme", "widgets", 7)

        edit, ready = (c.args[0] for c in run.call_args_list)
        assert edit == ["gh", "pr", "edit", "7", "--repo", "acme/widgets", "--body", "new body"]
        assert ready == ["gh", "pr", "ready", "7", "--repo", "acme/widgets"]

    def test_failure_raises_gh_error(self, mocker: MockerFixture):
        mocker.patch("prloop.gh.subprocess.run", return_value=_completed(returncode=1, stderr="no pull requests found"))
        with pytest.raises(GhError, match="no pull requests found"):
            GhPrClient().is_draft("acme", "widgets", 7)
