from pathlib import Path
from unittest.mock import MagicMock

import pytest
import pytesseract
from PIL import Image

from vnocr.errors import OcrError
from vnocr.schemas import PageImage
from vnocr.services import ocr_processor
from vnocr.services.ocr_processor import PageRecognizer

TESSERACT_DATA = {
    "text": ["", "Xin", "chào", "Việt", "Nam"],
    "block_num": [1, 1, 1, 2, 2],
    "par_num": [1, 1, 1, 1, 1],
    "line_num": [0, 1, 1, 1, 1],
    "conf": ["-1", "90", "80", "70", "60"],
}


@pytest.fixture()
def page(tmp_path: Path) -> PageImage:
    path = tmp_path / "page_00001.png"
    Image.new("RGB", (40, 20), "white").save(path)
    return PageImage(page_number=1, path=path)


@pytest.fixture()
def recognizer() -> PageRecognizer:
    return PageRecognizer(languages="vie+eng", fallback_language="eng", retries=2, backoff=0, preprocess=False)


def _fake_image_to_data(*outcomes):
    """Возвращает по очереди результаты/исключения, запоминая языки вызовов."""
    calls = []
    queue = list(outcomes)

    def image_to_data(image, lang, config, timeout, output_type):
        calls.append(lang)
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    return image_to_data, calls


class TestPageRecognizer:
    def test_recognize_assembles_text(self, monkeypatch, recognizer, page) -> None:
        fake, calls = _fake_image_to_data(TESSERACT_DATA)
        monkeypatch.setattr(pytesseract, "image_to_data", fake)

        result = recognizer.recognize(page)

        assert result.page_number == 1
        assert result.text == "Xin chào\n\nViệt Nam"
        assert result.confidence == 75.0
        assert result.attempts == 1
        assert result.language == "vie+eng"
        assert calls == ["vie+eng"]

    def test_page_image_consumed(self, monkeypatch, recognizer, page) -> None:
        fake, _ = _fake_image_to_data(TESSERACT_DATA)
        monkeypatch.setattr(pytesseract, "image_to_data", fake)

        recognizer.recognize(page)

        assert not page.path.exists()

    def test_languages_override(self, monkeypatch, recognizer, page) -> None:
        fake, calls = _fake_image_to_data(TESSERACT_DATA)
        monkeypatch.setattr(pytesseract, "image_to_data", fake)

        recognizer.recognize(page, languages="vie")

        assert calls == ["vie"]

    def test_transient_failure_retried(self, monkeypatch, recognizer, page) -> None:
        fake, calls = _fake_image_to_data(RuntimeError("Tesseract process timeout"), TESSERACT_DATA)
        monkeypatch.setattr(pytesseract, "image_to_data", fake)

        result = recognizer.recognize(page)

        assert result.attempts == 2
        assert len(calls) == 2

    def test_retries_exhausted(self, monkeypatch, recognizer, page) -> None:
        fake, calls = _fake_image_to_data(pytesseract.TesseractError(-11, "Segmentation fault"))
        monkeypatch.setattr(pytesseract, "image_to_data", fake)

        with pytest.raises(OcrError) as exc_info:
            recognizer.recognize(page)

        assert exc_info.value.page_number == 1
        assert isinstance(exc_info.value.cause, pytesseract.TesseractError)
        assert len(calls) == 3
        assert not page.path.exists()

    def test_unexpected_error_not_retried(self, monkeypatch, recognizer, page) -> None:
        fake, calls = _fake_image_to_data(ValueError("bad output"))
        monkeypatch.setattr(pytesseract, "image_to_data", fake)

        with pytest.raises(OcrError):
            recognizer.recognize(page)

        assert len(calls) == 1

    def test_missing_language_falls_back(self, monkeypatch, recognizer, page) -> None:
        fake, calls = _fake_image_to_data(
            pytesseract.TesseractError(1, "Failed loading language 'vie'"), TESSERACT_DATA
        )
        monkeypatch.setattr(pytesseract, "image_to_data", fake)

        result = recognizer.recognize(page)

        assert calls == ["vie+eng", "eng"]
        assert result.language == "eng"
        assert result.attempts == 1

    def test_preprocessing_applied_when_enabled(self, monkeypatch, page) -> None:
        fake, _ = _fake_image_to_data(TESSERACT_DATA)
        monkeypatch.setattr(pytesseract, "image_to_data", fake)
        preprocess = MagicMock(side_effect=lambda img, page_number: img)
        monkeypatch.setattr(ocr_processor, "preprocess_page", preprocess)

        PageRecognizer(retries=0, preprocess=True).recognize(page)

        preprocess.assert_called_once()
        assert preprocess.call_args.args[1] == 1

    def test_tesseract_config(self) -> None:
        assert PageRecognizer(oem=1, psm=6).tesseract_config == "--oem 1 --psm 6"


class TestHelpers:
    def test_mean_confidence_ignores_non_words(self) -> None:
        assert ocr_processor._mean_confidence({"conf": ["-1", "50", 70, "x"]}) == 60.0

    def test_mean_confidence_empty(self) -> None:
        assert ocr_processor._mean_confidence({"conf": []}) == 0.0

    def test_assemble_lines_and_blocks(self) -> None:
        data = {
            "text": ["Điều", "1", "Thời", "hạn", "Ký"],
            "block_num": [1, 1, 1, 1, 2],
            "par_num": [1, 1, 1, 1, 1],
            "line_num": [1, 1, 2, 2, 1],
        }
        assert ocr_processor._assemble_text_from_data(data) == "Điều 1\nThời hạn\n\nKý"
