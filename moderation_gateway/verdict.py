# moderation_gateway/verdict.py
"""Turns a moderation model's free-text verdict into scores and a safety flag.

The backend answers with a disposition line (``safe`` or ``unsafe``) and, when
unsafe, a second line of comma-separated category codes, e.g.::

    unsafe
    S1,S8

Category codes are mapped onto risk dimensions through ``CODE_DIMENSIONS``.
Codes that are not in the table are ignored.
"""
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence

# Risk dimensions reported for every message, in response order.
DIMENSIONS = ("threat_of_harm", "commercial_solicitation")

# Category code -> risk dimension it raises to 1.0.
CODE_DIMENSIONS: Dict[str, str] = {
    "S1": "threat_of_harm",
    "S2": "commercial_solicitation",
    "S8": "commercial_solicitation",
}


@dataclass(frozen=True)
class Verdict:
    """Parsed backend answer."""
    violations: List[str] = field(default_factory=list)
    is_safe: bool = True


def contains_unsafe(output: str) -> bool:
    return "unsafe" in output.lower()


def parse_violations(output: str) -> List[str]:
    """Returns the trimmed codes from the second line of ``output``, if any."""
    lines = output.split("\n")
    if len(lines) <= 1:
        return []
    return [code.strip() for code in lines[1].strip().split(",")]


def calculate_scores(
    violations: Sequence[str],
    table: Mapping[str, str] = CODE_DIMENSIONS,
    dimensions: Sequence[str] = DIMENSIONS,
) -> Dict[str, float]:
    """Builds a binary score per dimension from a list of violation codes."""
    scores = {name: 0.0 for name in dimensions}
    for code in violations:
        dimension = table.get(code.strip())
        if dimension in scores:
            scores[dimension] = 1.0
    return scores


def parse_verdict(output: str) -> Verdict:
    return Verdict(violations=parse_violations(output), is_safe=not contains_unsafe(output))
