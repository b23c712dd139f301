"""Tests for the auto-approval policy."""

from chorus.core.approval import can_auto_approve, explain_decision
from chorus.schemas.config import AutoApproveSettings
from chorus.schemas.review import QualityRunResult, Signal, SignalType, TaskCompletionResult


def make_result(
    signal: SignalType | None = SignalType.COMPLETE,
    iterations: int = 1,
    quality_passed: bool = True,
) -> TaskCompletionResult:
    """Helper to create a completion result for testing."""
    return TaskCompletionResult(
        task_id="ch-1",
        agent_id="claude-1",
        iterations=iterations,
        signal=Signal(type=signal) if signal else None,
        quality=[
            QualityRunResult(name="lint", passed=True),
            QualityRunResult(name="test", passed=quality_passed),
        ],
    )


class TestCanAutoApprove:
    """Tests for can_auto_approve."""

    def test_all_checks_pass(self) -> None:
        """Test a clean COMPLETE run is approved."""
        assert can_auto_approve(make_result(), AutoApproveSettings()) is True

    def test_disabled(self) -> None:
        """Test nothing is approved when auto-approval is off."""
        config = AutoApproveSettings(enabled=False)
        assert can_auto_approve(make_result(), config, ["review:skip"]) is False

    def test_skip_label_overrides_failures(self) -> None:
        """Test review:skip approves even failing runs."""
        result = make_result(signal=SignalType.BLOCKED, iterations=10, quality_passed=False)
        assert can_auto_approve(result, AutoApproveSettings(), ["review:skip"]) is True

    def test_per_task_label(self) -> None:
        """Test review:per-task forces manual review."""
        assert can_auto_approve(make_result(), AutoApproveSettings(), ["review:per-task"]) is False

    def test_missing_signal(self) -> None:
        """Test a run without a signal is rejected."""
        assert can_auto_approve(make_result(signal=None), AutoApproveSettings()) is False

    def test_non_complete_signal(self) -> None:
        """Test BLOCKED and NEEDS_HELP are rejected."""
        for signal in (SignalType.BLOCKED, SignalType.NEEDS_HELP):
            assert can_auto_approve(make_result(signal=signal), AutoApproveSettings()) is False

    def test_too_many_iterations(self) -> None:
        """Test runs over the iteration budget are rejected."""
        config = AutoApproveSettings(max_iterations=3)

        assert can_auto_approve(make_result(iterations=3), config) is True
        assert can_auto_approve(make_result(iterations=4), config) is False

    def test_failed_quality(self) -> None:
        """Test a failing gate blocks approval when passes are required."""
        result = make_result(quality_passed=False)

        assert can_auto_approve(result, AutoApproveSettings()) is False
        assert can_auto_approve(result, AutoApproveSettings(require_quality_pass=False)) is True

    def test_pure(self) -> None:
        """Test the decision does not change its inputs."""
        result = make_result()
        before = result.model_dump()

        can_auto_approve(result, AutoApproveSettings(), ["x"])
        can_auto_approve(result, AutoApproveSettings(), ["x"])

        assert result.model_dump() == before


class TestExplainDecision:
    """Tests for explain_decision."""

    def test_rule_names(self) -> None:
        """Test the deciding rule is reported."""
        config = AutoApproveSettings()

        assert explain_decision(make_result(), config).rule == "all_checks_passed"
        assert explain_decision(make_result(), config, ["review:skip"]).rule == "label_skip"
        assert explain_decision(make_result(signal=None), config).rule == "signal_not_complete"
        assert explain_decision(make_result(quality_passed=False), config).rule == "quality_failed"

    def test_first_matching_rule_wins(self) -> None:
        """Test per-task label is checked before the signal."""
        decision = explain_decision(make_result(signal=None), AutoApproveSettings(), ["review:per-task"])

        assert not decision
        assert decision.rule == "label_per_task"
