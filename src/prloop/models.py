"""Pydantic models for pr-loop decisions and operation results."""

from __future__ import annotations

from enum import StrEnum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field

from prloop.checks import Check  # noqa: TC001 - Pydantic needs this at runtime
from prloop.circleci import FailedStepLog  # noqa: TC001 - Pydantic needs this at runtime
from prloop.threads import ActionableThread, ThreadComment  # noqa: TC001 - Pydantic needs this at runtime


class PrSnapshot(BaseModel):
    """Point-in-time summary of a PR, recomputed on every poll."""

    model_config = ConfigDict(frozen=True)

    actionable_thread_ids: frozenset[str] = Field(
        default_factory=frozenset, description="Unresolved, unflagged threads whose last comment is not the assistant's"
    )
    unresolved_thread_ids: frozenset[str] = Field(default_factory=frozenset, description="Unresolved, unflagged threads")
    failed_check_names: frozenset[str] = Field(default_factory=frozenset, description="Checks with FAIL status after filtering")
    pending_check_names: frozenset[str] = Field(default_factory=frozenset, description="Checks with PENDING status after filtering")

    def is_actionable(self) -> bool:
        return bool(self.actionable_thread_ids or self.failed_check_names)

    def is_ci_happy(self) -> bool:
        return not self.failed_check_names and not self.pending_check_names

    def is_happy(self) -> bool:
        return self.is_ci_happy() and not self.actionable_thread_ids


# ---------------------------------------------------------------------------
# Next action (tagged union)
# ---------------------------------------------------------------------------


class RespondToComments(BaseModel):
    """Review threads are waiting on a reply."""

    kind: Literal["respond_to_comments"] = "respond_to_comments"
    threads: list[ActionableThread] = Field(description="Every thread that needs a response")
    also_has_ci_failures: bool = Field(default=False, description="Whether failed checks also exist")
    ci_pending: bool = Field(default=False, description="Whether pending checks also exist")


class FixCiFailures(BaseModel):
    """At least one check failed."""

    kind: Literal["fix_ci_failures"] = "fix_ci_failures"
    failed_check_names: list[str] = Field(description="Names of failed checks, in check order")


class WaitForCi(BaseModel):
    """Checks are still running."""

    kind: Literal["wait_for_ci"] = "wait_for_ci"
    pending_check_names: list[str] = Field(description="Names of pending checks, in check order")


class PrReady(BaseModel):
    """Nothing left to do."""

    kind: Literal["pr_ready"] = "pr_ready"


NextAction = Annotated[
    RespondToComments | FixCiFailures | WaitForCi | PrReady,
    Field(discriminator="kind"),
]


class WaitResult(StrEnum):
    """Terminal state of a wait loop."""

    ACTIONABLE = "actionable"
    HAPPY = "happy"
    TIMEOUT = "timeout"


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class PrContext(BaseModel):
    """The pull request an operation targets."""

    owner: str = Field(description="Repository owner")
    repo: str = Field(description="Repository name")
    pr_number: int = Field(description="Pull request number")

    @property
    def slug(self) -> str:
        return f"{self.owner}/{self.repo}#{self.pr_number}"


class AnalysisResult(BaseModel):
    """Recommended next action for a PR plus the data behind it."""

    pr: PrContext | None = Field(default=None, description="The analyzed PR")
    action: NextAction | None = Field(default=None, description="The single recommended next action")
    checks: list[Check] = Field(default_factory=list, description="Checks after include/exclude filtering")
    failure_logs: list[FailedStepLog] = Field(default_factory=list, description="CI logs of failed steps, when available")
    wait_result: WaitResult | None = Field(default=None, description="Outcome of the wait loop, if one ran")
    error: str | None = Field(default=None, description="Error message if the request failed")


class ChecksResult(BaseModel):
    """Filtered checks for a PR, with failure logs when available."""

    checks: list[Check] = Field(default_factory=list, description="Checks after include/exclude filtering")
    failure_logs: list[FailedStepLog] = Field(default_factory=list, description="CI logs of failed steps")
    error: str | None = Field(default=None, description="Error message if the request failed")


class ReplyResult(BaseModel):
    """Result of replying to a review comment."""

    thread_id: str = Field(default="", description="Thread the reply was posted to")
    comment_id: str = Field(default="", description="ID of the newly posted comment")
    resolved: bool = Field(default=False, description="Whether the thread was resolved after replying")
    newer_comments: list[ThreadComment] = Field(
        default_factory=list, description="Human comments posted after the one replied to"
    )
    error: str | None = Field(default=None, description="Error message if the request failed")


class BatchResult(BaseModel):
    """Success/failure tally of a batch of comment mutations."""

    succeeded: int = Field(default=0, description="Mutations that succeeded")
    failed: int = Field(default=0, description="Mutations that failed")


class CleanupResult(BaseModel):
    """Result of deleting pure-assistant threads and stripping flag markers."""

    deleted_threads: int = Field(default=0, description="Pure-assistant threads whose comments were deleted")
    deleted_comments: int = Field(default=0, description="Comments deleted")
    delete_failures: int = Field(default=0, description="Comment deletions that failed")
    flagged_threads: int = Field(default=0, description="Flagged threads whose markers were stripped")
    stripped_comments: int = Field(default=0, description="Comments whose flag marker was removed")
    strip_failures: int = Field(default=0, description="Comment updates that failed")
    error: str | None = Field(default=None, description="Error message if the request failed")


class ReadyResult(BaseModel):
    """Result of marking a PR ready for review."""

    ready: bool = Field(default=False, description="Whether the PR was marked ready")
    steps: list[str] = Field(default_factory=list, description="Completed steps, in order")
    cleanup: CleanupResult | None = Field(default=None, description="Thread cleanup outcome")
    error: str | None = Field(default=None, description="Why the PR could not be marked ready")
