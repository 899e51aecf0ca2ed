"""
OCR одной страницы через Tesseract.

Один вызов image_to_data на попытку: из него собираются и текст
(с учётом структуры блоков/строк), и средняя уверенность.

Устойчивость:
    - таймаут на попытку (timeout у pytesseract убивает процесс tesseract)
    - ограниченное число повторов с фиксированной паузой (tenacity)
    - если языковой пакет не установлен — повтор с запасным языком

После вызова файл изображения страницы удаляется при любом исходе.
"""

import logging
import time
from typing import Optional

import pytesseract
from PIL import Image
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from vnocr.config import settings
from vnocr.errors import OcrError
from vnocr.schemas import PageImage, RecognizedText
from vnocr.services.preprocess import preprocess_page

logger = logging.getLogger(__name__)

# Сбои внешнего процесса tesseract, которые имеет смысл повторить:
# падение процесса, таймаут (RuntimeError), нехватка ресурсов / IO
_TRANSIENT_ERRORS = (pytesseract.TesseractError, RuntimeError, OSError)


class PageRecognizer:
    """
    Распознаёт текст страницы с таймаутом и повторами.

    Attributes:
        languages: языки Tesseract по умолчанию ("vie+eng")
        fallback_language: язык, если основной пакет не загрузился
        oem: режим движка (1 = LSTM)
        psm: режим сегментации страницы (3 = автоматический)
        timeout: таймаут одной попытки в секундах
        retries: дополнительные попытки после первой
        backoff: пауза между попытками в секундах
        preprocess: исправлять ли ориентацию и наклон перед OCR
    """

    def __init__(
        self,
        languages: Optional[str] = None,
        fallback_language: Optional[str] = None,
        oem: Optional[int] = None,
        psm: Optional[int] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        backoff: Optional[float] = None,
        preprocess: Optional[bool] = None,
    ):
        self.languages = languages or settings.ocr_languages
        self.fallback_language = fallback_language or settings.ocr_fallback_language
        self.oem = settings.ocr_oem if oem is None else oem
        self.psm = settings.ocr_psm if psm is None else psm
        self.timeout = settings.ocr_timeout_seconds if timeout is None else timeout
        self.retries = settings.ocr_retries if retries is None else retries
        self.backoff = settings.ocr_retry_backoff_seconds if backoff is None else backoff
        self.preprocess = settings.preprocess_enabled if preprocess is None else preprocess

    @property
    def tesseract_config(self) -> str:
        return f"--oem {self.oem} --psm {self.psm}"

    def recognize(self, page: PageImage, languages: Optional[str] = None) -> RecognizedText:
        """
        Распознаёт страницу. Потребляет изображение: после вызова файла нет.

        Args:
            page: изображение страницы
            languages: языки для этой задачи (None — по умолчанию)

        Returns:
            RecognizedText: текст, уверенность, время и число попыток

        Raises:
            OcrError: все попытки исчерпаны
        """
        lang = languages or self.languages
        start = time.perf_counter()
        attempts = 0

        try:
            retrying = Retrying(
                stop=stop_after_attempt(self.retries + 1),
                wait=wait_fixed(self.backoff),
                retry=retry_if_exception_type(_TRANSIENT_ERRORS),
                before_sleep=_log_retry(page.page_number),
                reraise=True,
            )
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    text, confidence, used_lang = self._recognize_once(page, lang)
        except Exception as e:
            logger.error(
                f"OCR страницы {page.page_number} не удался после {attempts} попыток: {e}"
            )
            raise OcrError(page.page_number, e) from e
        finally:
            page.path.unlink(missing_ok=True)

        duration_ms = int((time.perf_counter() - start) * 1000)
        logger.info(
            f"Страница {page.page_number}: {len(text)} символов, "
            f"conf={confidence:.1f}, {duration_ms}ms, попыток: {attempts}"
        )

        return RecognizedText(
            page_number=page.page_number,
            text=text,
            confidence=confidence,
            duration_ms=duration_ms,
            attempts=attempts,
            language=used_lang,
        )

    def _recognize_once(self, page: PageImage, lang: str) -> tuple[str, float, str]:
        with Image.open(page.path) as img:
            img.load()
            image = preprocess_page(img, page.page_number) if self.preprocess else img

            try:
                data = self._image_to_data(image, lang)
            except pytesseract.TesseractError as e:
                if not _is_missing_language(e) or lang == self.fallback_language:
                    raise
                logger.warning(
                    f"Языковой пакет '{lang}' недоступен для страницы {page.page_number}, "
                    f"повтор с '{self.fallback_language}'"
                )
                lang = self.fallback_language
                data = self._image_to_data(image, lang)

        return _assemble_text_from_data(data), _mean_confidence(data), lang

    def _image_to_data(self, image: Image.Image, lang: str) -> dict:
        return pytesseract.image_to_data(
            image,
            lang=lang,
            config=self.tesseract_config,
            timeout=self.timeout,
            output_type=pytesseract.Output.DICT,
        )


def _log_retry(page_number: int):
    def before_sleep(retry_state: RetryCallState) -> None:
        logger.warning(
            f"OCR страницы {page_number}: попытка {retry_state.attempt_number} "
            f"не удалась ({retry_state.outcome.exception()}), повтор"
        )

    return before_sleep


def _is_missing_language(error: pytesseract.TesseractError) -> bool:
    return "Failed loading language" in str(error.message)


def _mean_confidence(data: dict) -> float:
    """Средняя уверенность только по реальным словам (conf >= 0)."""
    confidences = []
    for conf in data.get("conf", []):
        try:
            value = float(conf)
        except (TypeError, ValueError):
            continue
        if value >= 0:
            confidences.append(value)
    return sum(confidences) / len(confidences) if confidences else 0.0


def _assemble_text_from_data(data: dict) -> str:
    """
    Собирает текст из словаря image_to_data с правильной структурой.

    Алгоритм:
        - Слова на одной строке (line_num) соединяются пробелами
        - Разные строки в одном блоке — новая строка
        - Разные блоки — пустая строка между ними

    Args:
        data: словарь от pytesseract.image_to_data()

    Returns:
        str: собранный текст
    """
    # {block_num: {par_num: {line_num: [words]}}}
    blocks: dict = {}

    for i, raw_word in enumerate(data["text"]):
        word = str(raw_word).strip()
        if not word:
            continue

        block = data["block_num"][i]
        par = data["par_num"][i]
        line = data["line_num"][i]
        blocks.setdefault(block, {}).setdefault(par, {}).setdefault(line, []).append(word)

    result_blocks = []
    for block_num in sorted(blocks):
        block_lines = []
        for par_num in sorted(blocks[block_num]):
            for line_num in sorted(blocks[block_num][par_num]):
                block_lines.append(" ".join(blocks[block_num][par_num][line_num]))
        result_blocks.append("\n".join(block_lines))

    return "\n\n".join(result_blocks)
