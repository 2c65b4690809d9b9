"""Decision engine: turn checks and threads into one recommended next action."""

from __future__ import annotations

from typing import TYPE_CHECKING

from prloop.models import FixCiFailures, NextAction, PrReady, RespondToComments, WaitForCi
from prloop.threads import find_actionable_threads

if TYPE_CHECKING:
    from prloop.checks import ChecksSummary
    from prloop.threads import ReviewThread


def analyze_pr(checks: ChecksSummary, threads: list[ReviewThread]) -> NextAction:
    """Pick the next action in strict priority order.

    1. Threads awaiting a response (flagged threads excluded).
    2. Failed checks.
    3. Pending checks.
    4. Ready.
    """
    actionable = find_actionable_threads(threads)
    failed = checks.failed()
    pending = checks.pending()

    if actionable:
        return RespondToComments(
            threads=actionable,
            also_has_ci_failures=bool(failed),
            ci_pending=bool(pending),
        )
    if failed:
        return FixCiFailures(failed_check_names=[c.name for c in failed])
    if pending:
        return WaitForCi(pending_check_names=[c.name for c in pending])
    return PrReady()
