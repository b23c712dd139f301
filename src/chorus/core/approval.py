"""Auto-approval policy for completed agent runs."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from chorus.schemas.review import SignalType

if TYPE_CHECKING:
    from chorus.schemas.config import AutoApproveSettings
    from chorus.schemas.review import TaskCompletionResult


SKIP_REVIEW_LABEL = "review:skip"
PER_TASK_REVIEW_LABEL = "review:per-task"


@dataclass(frozen=True)
class ApprovalDecision:
    """An approval outcome and the rule that produced it."""

    approved: bool
    rule: str

    def __bool__(self) -> bool:
        return self.approved


def explain_decision(
    result: TaskCompletionResult,
    config: AutoApproveSettings,
    labels: Iterable[str] = (),
) -> ApprovalDecision:
    """Evaluate the approval rules in order; the first match wins.

    1. Auto-approval disabled -> reject
    2. ``review:skip`` label -> approve, even with failing gates
    3. ``review:per-task`` label -> reject
    4. Missing or non-COMPLETE signal -> reject
    5. More iterations than allowed -> reject
    6. A failed quality gate while passes are required -> reject
    7. Otherwise approve

    Args:
        result: Completion result of the agent run
        config: Auto-approve settings
        labels: Task labels

    Returns:
        ApprovalDecision naming the deciding rule
    """
    label_set = set(labels)

    if not config.enabled:
        return ApprovalDecision(False, "disabled")
    if SKIP_REVIEW_LABEL in label_set:
        return ApprovalDecision(True, "label_skip")
    if PER_TASK_REVIEW_LABEL in label_set:
        return ApprovalDecision(False, "label_per_task")
    if result.signal is None or result.signal.type != SignalType.COMPLETE:
        return ApprovalDecision(False, "signal_not_complete")
    if result.iterations > config.max_iterations:
        return ApprovalDecision(False, "max_iterations")
    if config.require_quality_pass and any(not q.passed for q in result.quality):
        return ApprovalDecision(False, "quality_failed")
    return ApprovalDecision(True, "all_checks_passed")


def can_auto_approve(
    result: TaskCompletionResult,
    config: AutoApproveSettings,
    labels: Iterable[str] = (),
) -> bool:
    """Whether a completed run may be merged without human review."""
    return explain_decision(result, config, labels).approved
