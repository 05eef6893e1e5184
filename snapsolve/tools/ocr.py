"""OCR utilities backed by RapidOCR."""

from __future__ import annotations

import re
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, TypedDict

from snapsolve.errors import SolverError
from snapsolve.llm.engine import guess_image_media_type
from snapsolve.utils.logger import get_logger

try:  # pragma: no cover - optional dependency
    from rapidocr_onnxruntime import RapidOCR
except ImportError:  # pragma: no cover
    RapidOCR = None  # type: ignore[assignment]

logger = get_logger(__name__)

_CHOICE_LINE = re.compile(r"^\s*(?:\(([A-Ea-e1-9])\)|([A-Ea-e1-9])[\).:])\s+(\S.*)$")


class OCRUnavailableError(SolverError):
    """Raised when OCR dependency is unavailable."""


class OCRProcessingError(SolverError):
    """Raised when OCR processing fails."""


class OCRLine(TypedDict, total=False):
    text: str
    confidence: float


class MathOCRResult(TypedDict):
    text: str
    question: str
    answer_choices: List[str]
    confidence: Optional[float]
    engine: str
    warnings: List[str]


def extract_math_from_image(image: bytes, config: Optional[Dict[str, Any]] = None) -> MathOCRResult:
    """Reads a math problem from an image with RapidOCR.

    Args:
        image: Raw image bytes.
        config: Optional OCR configuration (``min_confidence``,
            ``merge_strategy``).

    Returns:
        MathOCRResult with the full text, the question without answer
        choices, and the choices when at least two were found.

    Raises:
        OCRUnavailableError: If RapidOCR dependency is unavailable.
        OCRProcessingError: If the image is empty or OCR fails.
    """
    if RapidOCR is None:
        raise OCRUnavailableError(
            "RapidOCR is not available. Install dependency `rapidocr_onnxruntime` to enable local OCR."
        )
    if not image:
        raise OCRProcessingError("No image payload provided for OCR.")

    cfg = dict(config or {})
    min_confidence = _safe_float(cfg.get("min_confidence"), default=0.0)
    merge_strategy = str(cfg.get("merge_strategy", "lines")).strip().lower() or "lines"
    if merge_strategy not in {"lines", "paragraph"}:
        merge_strategy = "lines"

    ocr = RapidOCR()
    warnings: List[str] = []
    temp_path = _save_temp_image(image)
    try:
        lines, raw_confidence = _run_ocr(ocr, temp_path, min_confidence)
    finally:
        Path(temp_path).unlink(missing_ok=True)

    if raw_confidence is not None and raw_confidence < min_confidence:
        warnings.append("Low OCR confidence ({:.2f} < {:.2f}).".format(raw_confidence, min_confidence))

    texts = [line["text"] for line in lines]
    question_lines, choices = split_answer_choices(texts)
    joiner = " " if merge_strategy == "paragraph" else "\n"
    confidences = [line["confidence"] for line in lines]
    confidence = round(sum(confidences) / len(confidences), 4) if confidences else None

    logger.info("ocr_done lines=%s choices=%s confidence=%s", len(lines), len(choices), confidence)
    return MathOCRResult(
        text=joiner.join(texts),
        question=joiner.join(question_lines),
        answer_choices=choices,
        confidence=confidence,
        engine="rapidocr",
        warnings=warnings,
    )


def split_answer_choices(lines: List[str]) -> Tuple[List[str], List[str]]:
    """Separates answer-choice lines from the question text.

    Lines such as ``A) 4``, ``(B) 5`` or ``1. 6`` count as choices, but they
    are only split off when at least two are present.
    """
    choices = [line.strip() for line in lines if _CHOICE_LINE.match(line)]
    if len(choices) < 2:
        return list(lines), []
    question = [line for line in lines if not _CHOICE_LINE.match(line)]
    return question, choices


def _run_ocr(ocr: Any, image_ref: str, min_confidence: float) -> Tuple[List[OCRLine], Optional[float]]:
    try:
        raw_result, _ = ocr(image_ref)
    except Exception as exc:
        raise OCRProcessingError("OCR failed: {}".format(exc)) from exc

    lines: List[OCRLine] = []
    raw_confidences: List[float] = []
    entries = raw_result if isinstance(raw_result, list) else []
    for item in entries:
        if not isinstance(item, (list, tuple)) or len(item) < 3:
            continue
        text = str(item[1] or "").strip()
        if not text:
            continue
        confidence = _safe_float(item[2], default=0.0)
        raw_confidences.append(confidence)
        if confidence < min_confidence:
            continue
        lines.append(OCRLine(text=text, confidence=confidence))

    raw_confidence = round(sum(raw_confidences) / len(raw_confidences), 4) if raw_confidences else None
    return lines, raw_confidence


def _save_temp_image(payload: bytes) -> str:
    suffix = _media_type_to_suffix(guess_image_media_type(payload))
    with tempfile.NamedTemporaryFile(suffix=suffix, delete=False) as handle:
        handle.write(payload)
        return handle.name


def _media_type_to_suffix(media_type: str) -> str:
    normalized = media_type.lower()
    if "jpeg" in normalized or "jpg" in normalized:
        return ".jpg"
    if "webp" in normalized:
        return ".webp"
    if "gif" in normalized:
        return ".gif"
    return ".png"


def _safe_float(value: Any, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float(default)
