"""Local tools used around the model: titling and OCR."""

from .ocr import OCRProcessingError, OCRUnavailableError, extract_math_from_image, split_answer_choices
from .titles import DEFAULT_TITLE, derive_title

__all__ = [
    "derive_title",
    "DEFAULT_TITLE",
    "extract_math_from_image",
    "split_answer_choices",
    "OCRUnavailableError",
    "OCRProcessingError",
]
