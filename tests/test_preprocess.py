from unittest.mock import MagicMock

import pytesseract
from PIL import Image

from vnocr.services import preprocess
from vnocr.services.preprocess import apply_deskew, apply_rotation, detect_rotation, preprocess_page


def _image(width: int = 200, height: int = 100) -> Image.Image:
    return Image.new("RGB", (width, height), "white")


class TestRotation:
    def test_confident_osd(self, monkeypatch) -> None:
        monkeypatch.setattr(
            pytesseract,
            "image_to_osd",
            MagicMock(return_value={"rotate": 90, "orientation_conf": 8.5}),
        )
        assert detect_rotation(_image()) == 90

    def test_low_confidence_ignored(self, monkeypatch) -> None:
        monkeypatch.setattr(
            pytesseract,
            "image_to_osd",
            MagicMock(return_value={"rotate": 180, "orientation_conf": 0.4}),
        )
        assert detect_rotation(_image()) == 0

    def test_osd_failure_means_no_rotation(self, monkeypatch) -> None:
        monkeypatch.setattr(
            pytesseract,
            "image_to_osd",
            MagicMock(side_effect=pytesseract.TesseractError(1, "Too few characters")),
        )
        assert detect_rotation(_image()) == 0

    def test_apply_rotation_swaps_dimensions(self) -> None:
        assert apply_rotation(_image(200, 100), 90).size == (100, 200)
        assert apply_rotation(_image(200, 100), 180).size == (200, 100)
        assert apply_rotation(_image(200, 100), 0).size == (200, 100)


class TestDeskew:
    def test_small_angle_ignored(self) -> None:
        img = _image()
        assert apply_deskew(img, 0.1) is img

    def test_large_angle_rotates(self) -> None:
        assert apply_deskew(_image(), 5.0).size != (200, 100)


class TestPreprocessPage:
    def test_failure_returns_original(self, monkeypatch) -> None:
        monkeypatch.setattr(preprocess, "detect_rotation", MagicMock(return_value=0))
        monkeypatch.setattr(preprocess, "detect_skew", MagicMock(side_effect=ValueError("no lines")))
        img = _image()

        assert preprocess_page(img, 1) is img

    def test_rotation_and_skew_applied(self, monkeypatch) -> None:
        monkeypatch.setattr(preprocess, "detect_rotation", MagicMock(return_value=270))
        monkeypatch.setattr(preprocess, "detect_skew", MagicMock(return_value=0.0))

        assert preprocess_page(_image(200, 100), 1).size == (100, 200)
