import unittest
from unittest.mock import patch

from snapsolve.tools.ocr import OCRProcessingError, OCRUnavailableError, extract_math_from_image, split_answer_choices

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


class _FakeRapidOCR:
    lines = [
        [None, "What is 2 + 2?", 0.95],
        [None, "A) 3", 0.9],
        [None, "B) 4", 0.9],
        [None, "smudge", 0.1],
    ]

    def __call__(self, image_ref):  # noqa: ANN001 - test double signature
        del image_ref
        return (list(self.lines), None)


class _BrokenRapidOCR:
    def __call__(self, image_ref):  # noqa: ANN001 - test double signature
        raise RuntimeError("onnx failure")


class OCRToolTestCase(unittest.TestCase):
    def test_raises_when_dependency_missing(self) -> None:
        with patch("snapsolve.tools.ocr.RapidOCR", None):
            with self.assertRaises(OCRUnavailableError):
                extract_math_from_image(PNG_BYTES)

    def test_empty_payload(self) -> None:
        with patch("snapsolve.tools.ocr.RapidOCR", _FakeRapidOCR):
            with self.assertRaises(OCRProcessingError):
                extract_math_from_image(b"")

    def test_extracts_question_and_choices(self) -> None:
        with patch("snapsolve.tools.ocr.RapidOCR", _FakeRapidOCR):
            result = extract_math_from_image(PNG_BYTES, {"min_confidence": 0.35})

        self.assertEqual(result["engine"], "rapidocr")
        self.assertEqual(result["question"], "What is 2 + 2?")
        self.assertEqual(result["answer_choices"], ["A) 3", "B) 4"])
        self.assertNotIn("smudge", result["text"])
        self.assertEqual(result["warnings"], [])

    def test_low_confidence_warning(self) -> None:
        with patch("snapsolve.tools.ocr.RapidOCR", _FakeRapidOCR):
            result = extract_math_from_image(PNG_BYTES, {"min_confidence": 0.9})
        self.assertEqual(len(result["warnings"]), 1)

    def test_engine_failure(self) -> None:
        with patch("snapsolve.tools.ocr.RapidOCR", _BrokenRapidOCR):
            with self.assertRaises(OCRProcessingError):
                extract_math_from_image(PNG_BYTES)

    def test_single_choice_is_not_split(self) -> None:
        self.assertEqual(split_answer_choices(["Find x", "1. x > 0"]), (["Find x", "1. x > 0"], []))
        self.assertEqual(
            split_answer_choices(["Pick one", "(a) red", "(b) blue"]),
            (["Pick one"], ["(a) red", "(b) blue"]),
        )


if __name__ == "__main__":
    unittest.main()
