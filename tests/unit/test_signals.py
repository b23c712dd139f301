"""Tests for completion signal parsing."""

from chorus.agents.signals import final_signal, parse_all
from chorus.schemas.review import SignalType


class TestParseAll:
    """Tests for parse_all."""

    def test_no_signal(self) -> None:
        """Test plain output has no signal."""
        assert parse_all("working on it...") == []
        assert parse_all("") == []

    def test_signal_without_payload(self) -> None:
        """Test a bare COMPLETE marker."""
        [signal] = parse_all("done\n<chorus>COMPLETE</chorus>\n")

        assert signal.type == SignalType.COMPLETE
        assert signal.payload is None
        assert signal.raw == "<chorus>COMPLETE</chorus>"

    def test_signal_with_payload(self) -> None:
        """Test the payload after the colon is captured."""
        [signal] = parse_all("<chorus>BLOCKED:missing API key</chorus>")

        assert signal.type == SignalType.BLOCKED
        assert signal.payload == "missing API key"

    def test_unknown_type_ignored(self) -> None:
        """Test unknown signal names are not parsed."""
        assert parse_all("<chorus>FINISHED</chorus>") == []

    def test_in_order(self) -> None:
        """Test all signals are returned in order of appearance."""
        output = "<chorus>PROGRESS:10</chorus> ... <chorus>PROGRESS:90</chorus><chorus>COMPLETE</chorus>"
        types = [s.type for s in parse_all(output)]

        assert types == [SignalType.PROGRESS, SignalType.PROGRESS, SignalType.COMPLETE]


class TestFinalSignal:
    """Tests for final_signal."""

    def test_skips_progress(self) -> None:
        """Test progress markers do not count as an outcome."""
        output = "<chorus>NEEDS_HELP:tests</chorus><chorus>PROGRESS:50</chorus>"
        assert final_signal(output).type == SignalType.NEEDS_HELP

    def test_last_outcome_wins(self) -> None:
        """Test the latest outcome wins."""
        output = "<chorus>BLOCKED:x</chorus> retrying <chorus>COMPLETE</chorus>"
        assert final_signal(output).type == SignalType.COMPLETE

    def test_only_progress(self) -> None:
        """Test output with only progress has no outcome."""
        assert final_signal("<chorus>PROGRESS:5</chorus>") is None

    def test_multiline_payload(self) -> None:
        """Test a payload may span lines."""
        signal = final_signal("<chorus>NEEDS_HELP:first\nsecond</chorus>")

        assert signal.payload == "first\nsecond"
