"""
Сборка результатов страниц в документ.

Порядок вывода определяется только номером страницы, не порядком
завершения OCR. Набор страниц обязан быть непрерывным 1..N без
дубликатов — иначе AggregationError: молча перенумеровать или
пропустить страницу нельзя.
"""

import logging
from collections import Counter
from datetime import datetime
from typing import Optional

from vnocr.errors import AggregationError
from vnocr.schemas import DocumentMetadata, DocumentResult, PageResult

logger = logging.getLogger(__name__)

EMPTY_PAGE_TEXT = "[No text detected]"
SEPARATOR = "=" * 50


def page_marker(page_number: int) -> str:
    return f"--- Page {page_number} ---"


def validate_page_set(
    page_numbers: list[int],
    expected_pages: Optional[int] = None,
) -> list[int]:
    """
    Проверяет, что номера страниц образуют ровно 1..N.

    Args:
        page_numbers: номера страниц в любом порядке
        expected_pages: ожидаемое N (если известно)

    Returns:
        list[int]: отсортированные номера

    Raises:
        AggregationError: пусто, дубликаты, пропуски или не то количество
    """
    if not page_numbers:
        raise AggregationError("Нет ни одной страницы для сборки документа")

    duplicates = sorted(n for n, count in Counter(page_numbers).items() if count > 1)
    if duplicates:
        raise AggregationError(f"Дубликаты страниц: {duplicates}")

    ordered = sorted(page_numbers)
    expected = list(range(1, (expected_pages or len(ordered)) + 1))
    if ordered != expected:
        missing = sorted(set(expected) - set(ordered))
        extra = sorted(set(ordered) - set(expected))
        raise AggregationError(
            f"Набор страниц не непрерывен: пропущены {missing}, лишние {extra}"
        )
    return ordered


def aggregate(
    page_results: list[PageResult],
    expected_pages: Optional[int] = None,
) -> DocumentResult:
    """
    Склеивает страницы в документ.

    Сырой текст — страницы по возрастанию номера с маркером
    "--- Page N ---" перед каждой. Очищенный текст собирается так же,
    если хотя бы у одной страницы он есть (у остальных берётся сырой).

    Метаданные:
        - changes_count: сумма правок по страницам
        - confidence: среднее по страницам, где она есть (иначе None)
        - document_type: самый частый распознанный тип (иначе "unknown")

    Args:
        page_results: результаты страниц в любом порядке
        expected_pages: ожидаемое количество страниц

    Returns:
        DocumentResult: документ

    Raises:
        AggregationError: если набор страниц неполный или с дубликатами
    """
    validate_page_set([p.page_number for p in page_results], expected_pages)
    ordered = sorted(page_results, key=lambda p: p.page_number)

    raw_text = _join_segments((p.page_number, p.raw_text) for p in ordered)

    has_cleaning = any(p.cleaned_text is not None for p in ordered)
    cleaned_text = None
    if has_cleaning:
        cleaned_text = _join_segments(
            (p.page_number, p.cleaned_text if p.cleaned_text is not None else p.raw_text)
            for p in ordered
        )

    page_metadata = [p.change_metadata for p in ordered if p.change_metadata is not None]
    confidences = [m.confidence for m in page_metadata if m.confidence is not None]
    detected_types = [m.document_type for m in page_metadata if m.document_type != "unknown"]

    metadata = DocumentMetadata(
        document_type=Counter(detected_types).most_common(1)[0][0] if detected_types else "unknown",
        changes_count=sum(m.changes_count for m in page_metadata),
        confidence=round(sum(confidences) / len(confidences), 2) if confidences else None,
        original_length=len(raw_text),
        cleaned_length=len(cleaned_text) if cleaned_text is not None else len(raw_text),
    )

    logger.info(
        f"Документ собран: {len(ordered)} страниц, {len(raw_text)} символов, "
        f"правок: {metadata.changes_count}, тип: {metadata.document_type}"
    )

    return DocumentResult(
        raw_text=raw_text,
        cleaned_text=cleaned_text,
        page_numbers=[p.page_number for p in ordered],
        metadata=metadata,
    )


def render_text_file(
    text: str,
    filename: str,
    languages: str,
    total_pages: int,
    extracted_at: Optional[datetime] = None,
) -> str:
    """Формирует содержимое txt файла для скачивания: заголовок + текст."""
    extracted_at = extracted_at or datetime.now()
    header = (
        "OCR Extraction Results\n"
        f"{SEPARATOR}\n"
        f"Original File: {filename}\n"
        f"Extracted: {extracted_at.strftime('%Y-%m-%d %H:%M:%S')}\n"
        f"Language: {languages}\n"
        f"Total pages: {total_pages}\n"
        f"{SEPARATOR}\n\n"
    )
    return header + text + "\n"


def _join_segments(segments) -> str:
    parts = []
    for page_number, text in segments:
        body = text.strip() if text and text.strip() else EMPTY_PAGE_TEXT
        parts.append(f"{page_marker(page_number)}\n{body}")
    return "\n\n".join(parts)
