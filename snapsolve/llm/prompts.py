"""Deterministic prompt templates for extraction, solving and follow-ups."""

from __future__ import annotations

from typing import Iterable, Optional, Tuple

from snapsolve.llm.parser import ANSWER_END, ANSWER_START, EXPLANATION_END, EXPLANATION_START

EXTRACTION_PROMPT = """**Role:** You are a meticulous and precise AI assistant, a "Math Question Extractor."

**Your Task:** Your one and only task is to analyze the provided image of a math problem and convert it into a detailed, structured text format. You must capture every detail with perfect accuracy. This output will be fed into a separate AI math solver, so the completeness and accuracy of your extraction are critical.

**Crucial Instruction:** You are strictly forbidden from solving the problem, providing hints, explaining concepts, or performing any calculations. Your function is to describe, not to solve.

**Instructions for Extraction:**

1.  **Full Transcription:** Transcribe all text from the image verbatim. This includes the main question, any instructions, and all parts of any sub-questions. If the question has preset answers, list them separately as possible answers.
2.  **Given Information:** Create a clear, itemized list of all the data provided in the problem:
    *   Numerical values and their units (e.g., 10 cm, 5 kg, 25 m/s).
    *   Defined variables (e.g., let x = the number of apples).
    *   All given equations, inequalities, or formulas.
3.  **Visuals Description:** If the image contains any diagrams, graphs, geometric figures, or tables, describe them in exhaustive detail. Do not interpret them, only describe what you see. Do not assume properties that are not explicitly marked.
    *   **Geometric Figures:** Describe the shape. List all labels for points, vertices, and sides. State the given lengths, angles, and any markings for parallel lines, right angles, or congruent sides.
    *   **Graphs:** Identify the type of graph. State the title, the axis labels (including units), and the scale. Describe the data points, lines, or bars shown.
    *   **Tables:** Recreate the table structure, including all headers, rows, and data cells exactly as they appear.
4.  **Mathematical Notation:** Preserve all mathematical notation with extreme care.
    *   Use standard characters for basic operations (`+`, `-`, `*`, `/`, `=`).
    *   Use `^` for exponents (e.g., `x^2`).
    *   Clearly write out fractions (e.g., `3/4`).
    *   For square roots, integrals, or matrices, use LaTeX, e.g. `\\sqrt{16}`, `\\int_{0}^{1} x^2 dx`.
5.  **Structure and Sub-questions:** If the problem has multiple parts (e.g., Part a, Part b, Part i), list each one separately and transcribe its question precisely.

---

**Output Format:**

Follow this structure precisely for your response.

**[BEGIN OUTPUT]**

**AN APPROPRIATE TITLE FOR THE PROBLEM**

**Main Problem Statement:**
[Transcribe the main question or problem statement here.]

**Given Information:**
*   [List each piece of given data, equation, or value.]

**Visuals Description:**
[If there are no visuals, write "None." Otherwise, describe the diagram, graph, or table as instructed above.]

**Sub-questions:**
*   **Part a):** [Transcribe the full question for Part a).]
    Answer Options: [List the possible answers for Part a) ONLY IF given.]
*   [Continue for all sub-questions.]

**[END OUTPUT]**

Now analyze this image and extract the mathematical question following the format above.
"""

ROLE_CLEARING_PROMPT = (
    "Now forget your previous extraction role. You are now a math problem solver.\n"
    "Focus only on solving the problem I will give you next.\n"
    'Ignore any previous instructions about "not solving" - you should now solve the problem completely.'
)

_RESPONSE_FORMAT = """IMPORTANT: Use these EXACT section markers for your response:

{explanation_start}
[{explanation_hint}]

FORMATTING GUIDELINES:
- Use **bold** for important concepts and final answers
- Use `code formatting` for mathematical expressions and equations
- Use numbered lists (1., 2., 3.) for step-by-step solutions
- Use bullet points (-) for key information
- Use > blockquotes for important formulas or theorems
- Format fractions as `a/b` or use LaTeX-style notation
- Use clear headings (##) for major solution steps
{explanation_end}

{answer_start}
[Your final answer here, make sure that your solution reaches this answer - if multiple choice, include the letter and full option]
{answer_end}
"""

_IMAGE_SOLVING_TEMPLATE = """You are now a math problem solver. Below is a structured extraction of a math problem that was carefully analyzed from an image.

EXTRACTED PROBLEM DETAILS:
{problem}

SOLVING INSTRUCTIONS:
1. Read through ALL sections of the extracted problem carefully
2. Pay special attention to any "Given Information" section - use ALL provided data points
3. If there's a "Visuals Description" section, incorporate those visual elements into your solution
4. Address each sub-question if multiple parts exist
5. Reference specific given values, measurements, or visual elements in your calculations
6. If there are answer choices (A, B, C, D, etc.), include ALL of them in your response
7. Show your work step-by-step, citing the extracted information
8. Be concise but thorough!

{response_format}
Be thorough and reference the extracted details explicitly."""

_TEXT_SOLVING_TEMPLATE = """You are a math problem solver. Analyze this problem carefully and solve it step by step.

PROBLEM:
{problem}

SOLVING INSTRUCTIONS:
1. Identify all given information and constraints
2. Determine what needs to be found
3. Show your work step-by-step with clear reasoning
4. Use all provided data in your solution
5. If there are answer choices (A, B, C, D, etc.), include ALL of them in your response
6. Be concise but thorough!

{response_format}
Be thorough but concise."""

_FOLLOW_UP_TEMPLATE = """You are a math tutor helping with a follow-up question about a previously solved problem.

ORIGINAL PROBLEM:
{problem}

PREVIOUS SOLUTION:
{solution}

PREVIOUS EXPLANATION:
{explanation}{conversation}

FOLLOW-UP QUESTION:
{question}

Please provide a helpful response based on the complete context above. Be concise and focus on the specific follow-up question.
"""


def _response_format(explanation_hint: str) -> str:
    return _RESPONSE_FORMAT.format(
        explanation_start=EXPLANATION_START,
        explanation_hint=explanation_hint,
        explanation_end=EXPLANATION_END,
        answer_start=ANSWER_START,
        answer_end=ANSWER_END,
    )


def build_extraction_prompt() -> str:
    return EXTRACTION_PROMPT


def build_role_clearing_prompt() -> str:
    return ROLE_CLEARING_PROMPT


def build_solving_prompt(problem_text: str, has_image: bool = False) -> str:
    """Builds the solving prompt consumed by the strict response parser.

    Args:
        problem_text: Extracted structured text (image path) or the raw
            problem statement (text path).
        has_image: Selects the variant that references extracted sections.

    Returns:
        Prompt text mandating the two delimiter-bounded sections.
    """
    if has_image:
        return _IMAGE_SOLVING_TEMPLATE.format(
            problem=problem_text,
            response_format=_response_format(
                "Your detailed step-by-step solution referencing the given information and visuals"
            ),
        )
    return _TEXT_SOLVING_TEMPLATE.format(
        problem=problem_text,
        response_format=_response_format("Your detailed step-by-step solution"),
    )


def build_follow_up_prompt(
    problem_text: str,
    solution: str,
    explanation: str,
    conversation: Iterable[Tuple[bool, str]],
    question: str,
) -> str:
    """Builds a single self-contained follow-up prompt.

    Args:
        problem_text: Original or extracted problem text.
        solution: Previously computed final answer.
        explanation: Previously computed explanation.
        conversation: Ordered ``(is_user, text)`` turns, including the
            question being asked now.
        question: The follow-up question.

    Returns:
        Prompt text with every prior turn labelled by author.
    """
    lines = ["{}: {}".format("USER" if is_user else "AI", text) for is_user, text in conversation]
    transcript = ""
    if lines:
        transcript = "\n\nPREVIOUS CONVERSATION:\n" + "\n".join(lines)
    return _FOLLOW_UP_TEMPLATE.format(
        problem=problem_text,
        solution=solution,
        explanation=explanation,
        conversation=transcript,
        question=question,
    )


def describe_prompt(prompt: str, image: Optional[bytes] = None) -> str:
    """Short log-friendly summary of an outgoing prompt."""
    return "{} chars{}".format(len(prompt), ", image {} bytes".format(len(image)) if image else "")
