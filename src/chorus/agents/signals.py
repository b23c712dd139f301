"""Parsing of completion signals from agent output."""

from __future__ import annotations

import re

from chorus.schemas.review import Signal, SignalType

SIGNAL_PATTERN = re.compile(
    r"<chorus>(COMPLETE|BLOCKED|NEEDS_HELP|PROGRESS)(?::(.*?))?</chorus>",
    re.DOTALL,
)


def parse_all(output: str) -> list[Signal]:
    """All signals in the output, in order of appearance."""
    return [
        Signal(
            type=SignalType(match.group(1)),
            payload=match.group(2) if match.group(2) else None,
            raw=match.group(0),
        )
        for match in SIGNAL_PATTERN.finditer(output)
    ]


def final_signal(output: str) -> Signal | None:
    """The outcome signal of a run: the last non-progress signal, if any."""
    outcomes = [s for s in parse_all(output) if s.type != SignalType.PROGRESS]
    return outcomes[-1] if outcomes else None
