"""Pull request metadata and the iteration status block in the PR description."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from prloop import gh

logger = logging.getLogger(__name__)

STATUS_BLOCK_START = "<!-- pr-loop-status-start -->"
STATUS_BLOCK_END = "<!-- pr-loop-status-end -->"


def build_status_block(status_message: str | None = None) -> str:
    """Build the status block shown at the top of a PR under iteration."""
    lines = [
        STATUS_BLOCK_START,
        "> **🤖 LLM Iteration In Progress**",
        "> ",
        "> This PR is being iterated on with help from an LLM assistant.",
        "> It is not ready for human review yet.",
    ]
    if status_message:
        lines.extend(["> ", f"> **Status:** {status_message}"])
    lines.append(STATUS_BLOCK_END)
    return "\n".join(lines)


def remove_status_block(body: str) -> str:
    """Remove the status block, joining what surrounds it with one blank line.

    A start marker without an end marker leaves the body untouched.
    """
    start = body.find(STATUS_BLOCK_START)
    if start == -1:
        return body
    end = body.find(STATUS_BLOCK_END)
    if end == -1:
        return body

    before = body[:start].rstrip()
    after = body[end + len(STATUS_BLOCK_END) :].lstrip()
    if not before:
        return after
    if not after:
        return before
    return f"{before}\n\n{after}"


def update_body_with_status(current_body: str, status_message: str | None = None) -> str:
    """Return *current_body* with a fresh status block at the top."""
    rest = remove_status_block(current_body)
    block = build_status_block(status_message)
    return f"{block}\n\n{rest}" if rest else block


def has_status_block(body: str) -> bool:
    return STATUS_BLOCK_START in body and STATUS_BLOCK_END in body


# ---------------------------------------------------------------------------
# PR client
# ---------------------------------------------------------------------------


class PrClient(ABC):
    """Read and update pull request metadata."""

    @abstractmethod
    def is_draft(self, owner: str, repo: str, pr_number: int) -> bool: ...

    @abstractmethod
    def get_commit_count(self, owner: str, repo: str, pr_number: int) -> int: ...

    @abstractmethod
    def get_body(self, owner: str, repo: str, pr_number: int) -> str: ...

    @abstractmethod
    def set_body(self, owner: str, repo: str, pr_number: int, body: str) -> None: ...

    @abstractmethod
    def mark_ready(self, owner: str, repo: str, pr_number: int) -> None: ...


class GhPrClient(PrClient):
    """PR metadata through ``gh pr view/edit/ready``."""

    def __init__(self, cwd: str | None = None) -> None:
        self.cwd = cwd

    def _view(self, owner: str, repo: str, pr_number: int, fields: str) -> dict:
        return gh.run_gh_json("pr", "view", str(pr_number), "--repo", f"{owner}/{repo}", "--json", fields, cwd=self.cwd)

    def is_draft(self, owner: str, repo: str, pr_number: int) -> bool:
        return bool(self._view(owner, repo, pr_number, "isDraft").get("isDraft"))

    def get_commit_count(self, owner: str, repo: str, pr_number: int) -> int:
        return len(self._view(owner, repo, pr_number, "commits").get("commits") or [])

    def get_body(self, owner: str, repo: str, pr_number: int) -> str:
        return self._view(owner, repo, pr_number, "body").get("body") or ""

    def set_body(self, owner: str, repo: str, pr_number: int, body: str) -> None:
        gh.run_gh("pr", "edit", str(pr_number), "--repo", f"{owner}/{repo}", "--body", body, cwd=self.cwd)

    def mark_ready(self, owner: str, repo: str, pr_number: int) -> None:
        gh.run_gh("pr", "ready", str(pr_number), "--repo", f"{owner}/{repo}", cwd=self.cwd)


class InMemoryPrClient(PrClient):
    """A single in-memory pull request."""

    def __init__(self, *, is_draft: bool = True, body: str = "", commit_count: int = 1) -> None:
        self.draft = is_draft
        self.body = body
        self.commit_count = commit_count

    def is_draft(self, owner: str, repo: str, pr_number: int) -> bool:  # noqa: ARG002
        return self.draft

    def get_commit_count(self, owner: str, repo: str, pr_number: int) -> int:  # noqa: ARG002
        return self.commit_count

    def get_body(self, owner: str, repo: str, pr_number: int) -> str:  # noqa: ARG002
        return self.body

    def set_body(self, owner: str, repo: str, pr_number: int, body: str) -> None:  # noqa: ARG002
        self.body = body

    def mark_ready(self, owner: str, repo: str, pr_number: int) -> None:  # noqa: ARG002
        self.draft = False


def update_pr_status(client: PrClient, owner: str, repo: str, pr_number: int, status_message: str | None = None) -> None:
    """Refresh the status block in the PR description."""
    body = client.get_body(owner, repo, pr_number)
    client.set_body(owner, repo, pr_number, update_body_with_status(body, status_message))
    logger.info("Updated PR status block")
