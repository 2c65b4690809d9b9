"""Markdown rendering of analysis, checks, replies and readiness results."""

from __future__ import annotations

from typing import TYPE_CHECKING

from prloop.checks import CheckStatus
from prloop.models import FixCiFailures, PrReady, RespondToComments, WaitForCi
from prloop.threads import ASSISTANT_MARKER

if TYPE_CHECKING:
    from prloop.circleci import FailedStepLog
    from prloop.models import AnalysisResult, ChecksResult, CleanupResult, PrContext, ReadyResult, ReplyResult
    from prloop.threads import ThreadComment

MAX_LOG_LENGTH = 2000


def truncate_log(text: str, max_len: int = MAX_LOG_LENGTH) -> str:
    """Keep the first *max_len* bytes of a log."""
    data = text.encode()
    if len(data) <= max_len:
        return text
    head = data[:max_len].decode(errors="ignore")
    return f"{head}...\n[truncated, {len(data) - max_len} more bytes]"


def truncate_log_tail(text: str, max_len: int = MAX_LOG_LENGTH) -> str:
    """Keep roughly the last *max_len* bytes of a log, starting on a line boundary."""
    data = text.encode()
    if len(data) <= max_len:
        return text
    start = len(data) - max_len
    newline = data.find(b"\n", start)
    if newline != -1:
        start = newline + 1
    return f"[... {start} bytes truncated]\n{data[start:].decode(errors='ignore')}"


def _plural(count: int, singular: str = "", plural: str = "s") -> str:
    return singular if count == 1 else plural


def _quote(body: str) -> list[str]:
    return [f"> {line}" for line in body.splitlines()] or [">"]


def _render_failure_logs(logs: list[FailedStepLog]) -> list[str]:
    lines = ["## CI Failure Details"]
    for log in logs:
        lines.extend(["", f"### Job: {log.job_name} / Step: {log.step_name}"])
        if log.error:
            lines.extend(["", "**Stderr:**", "```", truncate_log(log.error), "```"])
        if log.output:
            lines.extend(["", "**Stdout (last lines):**", "```", truncate_log_tail(log.output), "```"])
    return lines


def _render_respond(action: RespondToComments, result: AnalysisResult) -> list[str]:
    count = len(action.threads)
    lines = [
        "## ACTION REQUIRED: Respond to review comments",
        "",
        f"There {_plural(count, 'is', 'are')} {count} unaddressed review thread{_plural(count)}:",
        "",
    ]
    for i, actionable in enumerate(action.threads):
        lines.extend([f"### Thread {i + 1} - {actionable.location}", f"Thread ID: `{actionable.thread.id}`", ""])
        for comment in actionable.thread.comments:
            lines.append(f"**@{comment.author}** (comment `{comment.id}`):")
            lines.extend(_quote(comment.body))
            lines.append("")
        if i < count - 1:
            lines.extend(["---", ""])

    lines.extend([
        "To reply, use:",
        '  pr-loop reply --in-reply-to <COMMENT_ID> --message "Your response"',
        "",
        "The --in-reply-to should be the ID of the last comment shown above.",
        f'Your message will be prefixed with "{ASSISTANT_MARKER}"',
    ])
    if action.also_has_ci_failures:
        failed = sum(1 for c in result.checks if c.status == CheckStatus.FAIL)
        lines.extend(["", f"⚠ Note: {failed} CI check(s) have also failed."])
    if action.ci_pending:
        pending = sum(1 for c in result.checks if c.status == CheckStatus.PENDING)
        lines.extend(["", f"○ Note: {pending} CI check(s) are still pending."])
    return lines


def _render_fix_ci(action: FixCiFailures, result: AnalysisResult) -> list[str]:
    count = len(action.failed_check_names)
    lines = [
        "## ACTION REQUIRED: Fix CI failures",
        "",
        f"The following {count} check{_plural(count)} failed:",
    ]
    lines.extend(f"  ✗ {name}" for name in action.failed_check_names)
    lines.append("")
    if result.failure_logs:
        lines.extend(_render_failure_logs(result.failure_logs))
        lines.extend(["", "Analyze the errors above and push fixes to resolve them."])
    else:
        lines.extend([
            "No CI logs were retrieved. Inspect the failed jobs in the CI provider",
            "(set CIRCLECI_TOKEN to include CircleCI step logs here),",
            "then push fixes to resolve the issues.",
        ])
    return lines


def _render_wait(action: WaitForCi) -> list[str]:
    count = len(action.pending_check_names)
    lines = [
        "## WAITING: CI checks in progress",
        "",
        f"The following {count} check{_plural(count, ' is', 's are')} still running:",
    ]
    lines.extend(f"  ○ {name}" for name in action.pending_check_names)
    lines.extend(["", "No action needed. Wait for CI to complete."])
    return lines


def _render_ready() -> list[str]:
    return [
        "## PR READY",
        "",
        "✓ All CI checks passed",
        "✓ No unaddressed review comments",
        "",
        "The PR is ready for merge or further review.",
    ]


def render_analysis(result: AnalysisResult) -> str:
    """Render the recommendation as Markdown."""
    lines = [f"# PR Analysis: {result.pr.slug}" if result.pr else "# PR Analysis", ""]
    action = result.action
    if isinstance(action, RespondToComments):
        lines.extend(_render_respond(action, result))
    elif isinstance(action, FixCiFailures):
        lines.extend(_render_fix_ci(action, result))
    elif isinstance(action, WaitForCi):
        lines.extend(_render_wait(action))
    elif isinstance(action, PrReady):
        lines.extend(_render_ready())
    return "\n".join(lines)


_CHECK_GROUPS = [
    (CheckStatus.FAIL, "Failed", "✗"),
    (CheckStatus.PENDING, "Pending", "○"),
    (CheckStatus.PASS, "Passed", "✓"),
    (CheckStatus.SKIPPING, "Skipped", "⊘"),
    (CheckStatus.CANCELLED, "Cancelled", "⊘"),
]


def render_checks(pr: PrContext, result: ChecksResult) -> str:
    """Render checks grouped by status, followed by any failure logs."""
    lines = [f"# CI Checks: {pr.slug}", ""]
    if not result.checks:
        lines.append("No checks found.")
        return "\n".join(lines)

    for status, title, symbol in _CHECK_GROUPS:
        group = [c for c in result.checks if c.status == status]
        if not group:
            continue
        lines.append(f"## {title} ({len(group)})")
        lines.extend(f"  {symbol} {c.name}" for c in group)
        lines.append("")

    if result.failure_logs:
        lines.extend(_render_failure_logs(result.failure_logs))
    return "\n".join(lines)


def render_newer_comments(comments: list[ThreadComment], thread_id: str) -> str:
    """Render human comments that arrived while a reply was being written."""
    count = len(comments)
    lines = [
        "## NEWER COMMENTS DETECTED",
        "",
        f"The following {count} comment{_plural(count)} {_plural(count, 'was', 'were')} "
        "posted to this thread while you were working.",
        f"Please address {_plural(count, 'it', 'them')} as well:",
        "",
    ]
    for i, comment in enumerate(comments, start=1):
        lines.append(f"### Comment {i} (in thread {thread_id})")
        lines.append(f"**@{comment.author}:**")
        lines.extend(_quote(comment.body))
        lines.append("")
    return "\n".join(lines)


def render_reply(pr: PrContext, result: ReplyResult) -> str:
    lines = [
        f"Replying to thread {result.thread_id} on {pr.slug}",
        f"✓ Reply posted (comment ID: {result.comment_id})",
    ]
    if result.resolved:
        lines.append("✓ Thread resolved")
    if result.newer_comments:
        lines.extend(["", render_newer_comments(result.newer_comments, result.thread_id)])
    return "\n".join(lines)


def render_cleanup(cleanup: CleanupResult) -> str:
    lines = []
    if cleanup.deleted_threads:
        lines.append(
            f"✓ Deleted {cleanup.deleted_comments} comment(s) from {cleanup.deleted_threads} pure-assistant thread(s)"
        )
        if cleanup.delete_failures:
            lines.append(f"  ({cleanup.delete_failures} deletion(s) failed)")
    else:
        lines.append("  (no resolved pure-assistant threads deleted)")
    if cleanup.flagged_threads:
        lines.append(
            f"✓ Stripped flag marker from {cleanup.stripped_comments} comment(s) in {cleanup.flagged_threads} thread(s)"
        )
        if cleanup.strip_failures:
            lines.append(f"  ({cleanup.strip_failures} update(s) failed)")
    return "\n".join(lines)


def render_ready(result: ReadyResult) -> str:
    lines = [f"✓ {step}" for step in result.steps]
    if result.cleanup is not None:
        lines.append(render_cleanup(result.cleanup))
    if result.ready:
        lines.extend(["", "🎉 PR is now ready for human review!"])
    return "\n".join(lines)
