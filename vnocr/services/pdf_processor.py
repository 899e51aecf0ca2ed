"""
Адаптер рендеринга PDF в изображения страниц.

Использует pdf2image (pdftoppm/pdfinfo из poppler). Страницы рендерятся
по одной прямо в scratch-директорию задачи, поэтому на диске одновременно
лежат только страницы, которые сейчас в работе — документ на сотни
страниц не держится целиком ни в памяти, ни на диске.
"""

import logging
from pathlib import Path
from typing import Iterator, Optional

from pdf2image import convert_from_path
from pdf2image.exceptions import PDFInfoNotInstalledError, PDFPageCountError, PDFSyntaxError
from pdf2image.pdf2image import pdfinfo_from_bytes, pdfinfo_from_path

from vnocr.config import settings
from vnocr.errors import ConversionError
from vnocr.schemas import PageImage

logger = logging.getLogger(__name__)

_PDF2IMAGE_ERRORS = (
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFSyntaxError,
)


class PdfRasterizer:
    """
    Рендерит PDF постранично.

    Attributes:
        dpi: разрешение рендеринга
        fmt: формат изображений ("jpeg", "png")
        max_dimension: ограничение длинной стороны в пикселях (0 — без ограничения)
        thread_count: потоки pdftoppm
    """

    def __init__(
        self,
        dpi: Optional[int] = None,
        fmt: Optional[str] = None,
        max_dimension: Optional[int] = None,
        thread_count: Optional[int] = None,
    ):
        self.dpi = dpi or settings.render_dpi
        self.fmt = fmt or settings.render_format
        self.max_dimension = (
            settings.render_max_dimension if max_dimension is None else max_dimension
        )
        self.thread_count = thread_count or settings.render_thread_count

    def page_count(self, pdf_path: Path) -> int:
        """
        Получает количество страниц без рендеринга (pdfinfo).

        Raises:
            ConversionError: PDF битый, зашифрован или не содержит страниц
        """
        try:
            info = pdfinfo_from_path(str(pdf_path))
        except _PDF2IMAGE_ERRORS as e:
            raise ConversionError(f"Не удалось прочитать PDF: {e}", cause=e) from e
        return _pages_from_info(info)

    def page_count_from_bytes(self, pdf_bytes: bytes) -> int:
        """То же, что page_count, но для PDF в памяти (используется при маршрутизации)."""
        try:
            info = pdfinfo_from_bytes(pdf_bytes)
        except _PDF2IMAGE_ERRORS as e:
            raise ConversionError(f"Не удалось прочитать PDF: {e}", cause=e) from e
        return _pages_from_info(info)

    def iter_pages(
        self,
        pdf_path: Path,
        output_dir: Path,
        total_pages: Optional[int] = None,
    ) -> Iterator[PageImage]:
        """
        Лениво рендерит страницы по порядку, начиная с 1.

        Каждая страница рендерится отдельным вызовом pdftoppm
        (first_page=last_page=N) прямо в output_dir.

        Args:
            pdf_path: путь к PDF в scratch-директории
            output_dir: куда складывать изображения страниц
            total_pages: число страниц, если уже известно

        Yields:
            PageImage: страницы строго по возрастанию номера

        Raises:
            ConversionError: при ошибке рендеринга любой страницы
        """
        if total_pages is None:
            total_pages = self.page_count(pdf_path)

        logger.info(
            f"Рендеринг PDF: {total_pages} страниц, dpi={self.dpi}, "
            f"формат={self.fmt}, max_dimension={self.max_dimension or 'нет'}"
        )

        for page_number in range(1, total_pages + 1):
            yield self.render_page(pdf_path, output_dir, page_number)

    def render_page(self, pdf_path: Path, output_dir: Path, page_number: int) -> PageImage:
        """
        Рендерит одну страницу в файл.

        Raises:
            ConversionError: pdftoppm не создал изображение или упал
        """
        try:
            paths = convert_from_path(
                str(pdf_path),
                dpi=self.dpi,
                fmt=self.fmt,
                thread_count=self.thread_count,
                first_page=page_number,
                last_page=page_number,
                output_folder=str(output_dir),
                output_file=f"page_{page_number:05d}",
                paths_only=True,
                size=self.max_dimension or None,
            )
        except Exception as e:
            raise ConversionError(
                f"Не удалось отрендерить страницу {page_number}: {e}", cause=e
            ) from e

        if not paths:
            raise ConversionError(f"pdftoppm не вернул изображение страницы {page_number}")

        return PageImage(page_number=page_number, path=Path(paths[0]))


def _pages_from_info(info: dict) -> int:
    pages = int(info.get("Pages", 0) or 0)
    if pages <= 0:
        raise ConversionError("PDF не содержит страниц")
    return pages
