"""Local concept matching used to title problems without a model call."""

from __future__ import annotations

import re
from typing import Callable, List, Tuple

DEFAULT_TITLE = "Math Problem"

TitleRule = Tuple[Callable[[str], bool], str]


def _mentions(*needles: str) -> Callable[[str], bool]:
    parts = [r"\b" + re.escape(needle) if needle[0].isalnum() else re.escape(needle) for needle in needles]
    pattern = re.compile("|".join(parts), re.IGNORECASE)
    return lambda text: pattern.search(text) is not None


# Evaluated top to bottom; the first matching rule wins.
TITLE_RULES: List[TitleRule] = [
    (_mentions("quadratic", "parabola", "x^2", "x²"), "Quadratic Equation"),
    (_mentions("triangle", "angle", "degree"), "Triangle Problem"),
    (_mentions("circle", "radius", "diameter", "circumference"), "Circle Geometry"),
    (_mentions("linear", "slope", "y=", "y =", "equation of a line"), "Linear Equation"),
    (_mentions("system", "simultaneous", "equations"), "System of Equations"),
    (_mentions("derivative", "differentiate", "d/dx"), "Calculus Problem"),
    (_mentions("integral", "integrate", "∫"), "Integration Problem"),
    (_mentions("probability", "chance", "odds"), "Probability Problem"),
    (_mentions("statistics", "mean", "median", "mode"), "Statistics Problem"),
    (_mentions("fraction", "numerator", "denominator"), "Fraction Problem"),
    (_mentions("percentage", "percent", "%"), "Percentage Problem"),
    (_mentions("algebra", "variable", "solve for"), "Algebra Problem"),
    (_mentions("geometry", "geometric", "shape"), "Geometry Problem"),
]


def derive_title(text: str) -> str:
    """Maps problem text to a short display title.

    Args:
        text: Raw or extracted problem text.

    Returns:
        The label of the first matching concept rule, or
        :data:`DEFAULT_TITLE`.
    """
    for predicate, label in TITLE_RULES:
        if predicate(text or ""):
            return label
    return DEFAULT_TITLE
