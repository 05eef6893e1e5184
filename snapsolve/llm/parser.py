"""Parsing of free-form solver output into an answer/explanation record.

Parsing runs three tiers in order and stops at the first one that recognizes
the text:

1. ``strict``: the delimiter sections requested by the solving prompt.
2. ``legacy``: line-oriented ``ANSWER:`` / ``EXPLANATION:`` labels.
3. ``heuristic``: the whole reply becomes the explanation and a short answer
   is searched for with phrase patterns.

Every tier is a pure function. :func:`parse_response` never raises.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional, Pattern, Tuple

EXPLANATION_START = "===STEP_BY_STEP_EXPLANATION_START==="
EXPLANATION_END = "===STEP_BY_STEP_EXPLANATION_END==="
ANSWER_START = "===FINAL_ANSWER_START==="
ANSWER_END = "===FINAL_ANSWER_END==="

UNKNOWN_ANSWER = "Unable to determine final answer"
NO_EXPLANATION = "No explanation available"

TIER_STRICT = "strict"
TIER_LEGACY = "legacy"
TIER_HEURISTIC = "heuristic"
TIER_EMPTY = "empty"


@dataclass(frozen=True)
class ParsedResponse:
    """Normalized solver reply.

    Attributes:
        answer: Final answer, or :data:`UNKNOWN_ANSWER`.
        explanation: Step-by-step explanation, never empty.
        tier: Name of the tier that produced the result.
    """

    answer: str
    explanation: str
    tier: str

    @property
    def has_answer(self) -> bool:
        return self.answer != UNKNOWN_ANSWER


_EXPLANATION_SECTION = re.compile(
    r"===\s*STEP_BY_STEP_EXPLANATION_START\s*===(.*?)===\s*STEP_BY_STEP_EXPLANATION_END\s*===",
    re.IGNORECASE | re.DOTALL,
)
_ANSWER_SECTION = re.compile(
    r"===\s*FINAL_ANSWER_START\s*===(.*?)===\s*FINAL_ANSWER_END\s*===",
    re.IGNORECASE | re.DOTALL,
)

_FRAME = r"(?:={2,}|-{3,}|_{3,}|\*{2,}|#{2,})"

# Ordered; each pattern only matches protocol-looking residue.
MARKER_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(_FRAME + r"[ \t]*[A-Za-z][A-Za-z0-9_ ]*?_(?:START|END)[ \t]*" + _FRAME, re.IGNORECASE),
    re.compile(r"\[\s*(?:BEGIN|END)\s+OUTPUT\s*\]", re.IGNORECASE),
    re.compile(r"\[\s*/?[A-Z][A-Z0-9_]*_(?:START|END)\s*\]", re.IGNORECASE),
    re.compile(r"={3,}[ \t]*[A-Z][A-Z0-9_]+[ \t]*={3,}"),
    re.compile(r"(?:={2,})?[ \t]*\b[A-Z][A-Z0-9]*(?:_[A-Z0-9]+)*_(?:START|END)\b[ \t]*(?:={2,})?"),
)

_LEGACY_ANSWER = re.compile(r"^\s*ANSWER\s*:\s*(.*)$", re.IGNORECASE)
_LEGACY_EXPLANATION = re.compile(r"^\s*EXPLANATION\s*:\s*(.*)$", re.IGNORECASE)
_SECTION_LABEL = re.compile(r"^\s*(?:ANSWER|EXPLANATION)\s*[:=]\s*", re.IGNORECASE)

_ANSWER_PATTERNS: Tuple[Pattern[str], ...] = (
    re.compile(
        r"(?i:\b(?:correct\s+(?:answer|choice|option)|answer)(?:\s+is)?)\s*[:=]?\s*\(?([A-E])\)?(?![\w])"
    ),
    re.compile(r"(?i:\b(?:the\s+)?(?:final\s+)?(?:answer|result|solution)\s+is)\s*[:=]?\s*([^\n]+?)(?:\.(?:\s|$)|\n|$)"),
    re.compile(r"\b([A-E])\s*[.:)]\s*(?i:(?:is\s+)?(?:correct|right|the\s+answer))\b"),
    re.compile(r"(?i:\b(?:therefore|thus|hence))[\s,]+([^\n]+?)(?:\.(?:\s|$)|\n|$)"),
    re.compile(r"^\s*([-+]?\d[\d.,/]*(?:\s*(?:%|°|cm|m|kg|g|seconds?|minutes?|hours?|degrees?))?)\s*\.?\s*\Z", re.MULTILINE),
    re.compile(r"=\s*([-+]?\d[\d.,/]*)\s*\.?\s*\Z"),
    re.compile(r"^\s*\(?([A-E])\)?\s*\.?\s*\Z", re.MULTILINE),
)


def format_delimited_response(explanation: str, answer: str) -> str:
    """Renders an explanation/answer pair in the strict delimiter format."""
    return "{}\n{}\n{}\n{}\n{}\n{}".format(
        EXPLANATION_START,
        explanation,
        EXPLANATION_END,
        ANSWER_START,
        answer,
        ANSWER_END,
    )


def clean_markers(text: str) -> str:
    """Strips protocol marker residue until no marker pattern matches.

    Blank-line runs are collapsed only when something was removed, so text
    without markers comes back unchanged apart from outer whitespace.
    """
    cleaned = text
    while True:
        previous = cleaned
        for pattern in MARKER_PATTERNS:
            cleaned = pattern.sub("", cleaned)
        if cleaned == previous:
            break
    if cleaned != text:
        cleaned = re.sub(r"[ \t]+$", "", cleaned, flags=re.MULTILINE)
        cleaned = re.sub(r"\n\s*\n(?:\s*\n)+", "\n\n", cleaned)
    return cleaned.strip()


def contains_marker(text: str) -> bool:
    return any(pattern.search(text) for pattern in MARKER_PATTERNS)


def parse_strict(text: str) -> Optional[Tuple[str, str]]:
    """Extracts the delimiter sections.

    Returns:
        ``(answer, explanation)`` when at least one section is present,
        otherwise None.
    """
    explanation_match = _EXPLANATION_SECTION.search(text)
    answer_match = _ANSWER_SECTION.search(text)
    if explanation_match is None and answer_match is None:
        return None
    explanation = explanation_match.group(1).strip() if explanation_match else ""
    answer = answer_match.group(1).strip() if answer_match else ""
    # Models sometimes repeat the legacy label inside a section.
    explanation = _SECTION_LABEL.sub("", explanation, count=1).strip()
    answer = _SECTION_LABEL.sub("", answer, count=1).strip()
    return answer, explanation


def parse_legacy(text: str) -> Optional[Tuple[str, str]]:
    """Parses ``ANSWER:`` / ``EXPLANATION:`` labelled lines.

    The answer is the rest of its label line, or the next non-empty line when
    the label stands alone. Explanation lines accumulate until the next label.
    """
    answer = ""
    awaiting_answer = False
    in_explanation = False
    found = False
    explanation_lines: List[str] = []

    for line in text.splitlines():
        stripped = line.strip()
        answer_match = _LEGACY_ANSWER.match(stripped)
        if answer_match:
            found = True
            in_explanation = False
            answer = answer_match.group(1).strip()
            awaiting_answer = not answer
            continue
        explanation_match = _LEGACY_EXPLANATION.match(stripped)
        if explanation_match:
            found = True
            awaiting_answer = False
            in_explanation = True
            if explanation_match.group(1).strip():
                explanation_lines.append(explanation_match.group(1).strip())
            continue
        if awaiting_answer and stripped:
            answer = stripped
            awaiting_answer = False
            continue
        if in_explanation and stripped:
            explanation_lines.append(stripped)

    if not found:
        return None
    return answer, "\n".join(explanation_lines)


def extract_inline_answer(text: str) -> str:
    for pattern in _ANSWER_PATTERNS:
        match = pattern.search(text)
        if match:
            candidate = match.group(1).strip().rstrip(".").strip()
            if candidate:
                return candidate
    return ""


def parse_heuristic(text: str) -> Tuple[str, str]:
    stripped = text.strip()
    return extract_inline_answer(stripped), stripped


def parse_response(text: Optional[str]) -> ParsedResponse:
    """Converts raw model output into a :class:`ParsedResponse`.

    Args:
        text: Concatenated model output. ``None`` is treated as empty.

    Returns:
        A record whose answer and explanation are never empty and never
        contain marker residue.
    """
    raw = text or ""
    if not raw.strip():
        return ParsedResponse(answer=UNKNOWN_ANSWER, explanation=NO_EXPLANATION, tier=TIER_EMPTY)

    tier = TIER_STRICT
    result = parse_strict(raw)
    if result is None:
        tier = TIER_LEGACY
        result = parse_legacy(raw)
    if result is None:
        tier = TIER_HEURISTIC
        result = parse_heuristic(raw)

    answer, explanation = result
    answer = clean_markers(answer)
    explanation = clean_markers(explanation)

    if not explanation:
        explanation = clean_markers(raw) or NO_EXPLANATION
    if not answer:
        answer = UNKNOWN_ANSWER
    return ParsedResponse(answer=answer, explanation=explanation, tier=tier)
