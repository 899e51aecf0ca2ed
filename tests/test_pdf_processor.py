from pathlib import Path
from unittest.mock import MagicMock

import pytest
from pdf2image.exceptions import PDFPageCountError

from vnocr.errors import ConversionError
from vnocr.services import pdf_processor
from vnocr.services.pdf_processor import PdfRasterizer


@pytest.fixture()
def rasterizer() -> PdfRasterizer:
    return PdfRasterizer(dpi=300, fmt="jpeg", max_dimension=0, thread_count=1)


def _fake_convert(calls: list):
    def convert_from_path(pdf_path, **kwargs):
        calls.append(kwargs)
        page = kwargs["first_page"]
        path = Path(kwargs["output_folder"]) / f"{kwargs['output_file']}-{page}.jpg"
        path.write_bytes(b"\xff\xd8")
        return [str(path)]

    return convert_from_path


class TestPageCount:
    def test_reads_pdfinfo(self, monkeypatch, rasterizer, tmp_path) -> None:
        monkeypatch.setattr(pdf_processor, "pdfinfo_from_path", MagicMock(return_value={"Pages": 12}))
        assert rasterizer.page_count(tmp_path / "doc.pdf") == 12

    def test_from_bytes(self, monkeypatch, rasterizer) -> None:
        monkeypatch.setattr(pdf_processor, "pdfinfo_from_bytes", MagicMock(return_value={"Pages": "3"}))
        assert rasterizer.page_count_from_bytes(b"%PDF-1.4") == 3

    def test_unreadable_pdf(self, monkeypatch, rasterizer, tmp_path) -> None:
        monkeypatch.setattr(
            pdf_processor,
            "pdfinfo_from_path",
            MagicMock(side_effect=PDFPageCountError("Incorrect password")),
        )
        with pytest.raises(ConversionError) as exc_info:
            rasterizer.page_count(tmp_path / "locked.pdf")
        assert isinstance(exc_info.value.cause, PDFPageCountError)

    def test_zero_pages(self, monkeypatch, rasterizer, tmp_path) -> None:
        monkeypatch.setattr(pdf_processor, "pdfinfo_from_path", MagicMock(return_value={"Pages": 0}))
        with pytest.raises(ConversionError):
            rasterizer.page_count(tmp_path / "empty.pdf")


class TestIterPages:
    def test_renders_one_page_at_a_time(self, monkeypatch, rasterizer, tmp_path) -> None:
        calls: list = []
        monkeypatch.setattr(pdf_processor, "convert_from_path", _fake_convert(calls))

        pages = list(rasterizer.iter_pages(tmp_path / "doc.pdf", tmp_path, total_pages=3))

        assert [p.page_number for p in pages] == [1, 2, 3]
        assert all(p.path.exists() for p in pages)
        assert [(c["first_page"], c["last_page"]) for c in calls] == [(1, 1), (2, 2), (3, 3)]
        assert all(c["paths_only"] for c in calls)
        assert calls[0]["dpi"] == 300
        assert calls[0]["size"] is None

    def test_lazy(self, monkeypatch, rasterizer, tmp_path) -> None:
        calls: list = []
        monkeypatch.setattr(pdf_processor, "convert_from_path", _fake_convert(calls))

        iterator = rasterizer.iter_pages(tmp_path / "doc.pdf", tmp_path, total_pages=100)
        next(iterator)

        assert len(calls) == 1

    def test_page_count_looked_up_when_unknown(self, monkeypatch, rasterizer, tmp_path) -> None:
        calls: list = []
        monkeypatch.setattr(pdf_processor, "convert_from_path", _fake_convert(calls))
        monkeypatch.setattr(pdf_processor, "pdfinfo_from_path", MagicMock(return_value={"Pages": 2}))

        pages = list(rasterizer.iter_pages(tmp_path / "doc.pdf", tmp_path))

        assert len(pages) == 2

    def test_max_dimension_maps_to_size(self, monkeypatch, tmp_path) -> None:
        calls: list = []
        monkeypatch.setattr(pdf_processor, "convert_from_path", _fake_convert(calls))

        PdfRasterizer(max_dimension=2000).render_page(tmp_path / "doc.pdf", tmp_path, 1)

        assert calls[0]["size"] == 2000

    def test_render_failure(self, monkeypatch, rasterizer, tmp_path) -> None:
        monkeypatch.setattr(
            pdf_processor, "convert_from_path", MagicMock(side_effect=OSError("pdftoppm crashed"))
        )
        with pytest.raises(ConversionError, match="страницу 2"):
            rasterizer.render_page(tmp_path / "doc.pdf", tmp_path, 2)

    def test_no_image_produced(self, monkeypatch, rasterizer, tmp_path) -> None:
        monkeypatch.setattr(pdf_processor, "convert_from_path", MagicMock(return_value=[]))
        with pytest.raises(ConversionError):
            rasterizer.render_page(tmp_path / "doc.pdf", tmp_path, 1)
