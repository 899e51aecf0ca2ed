"""
Иерархия ошибок OCR сервиса.

Фатальные для задачи: DocumentValidationError, ConversionError, OcrError,
AggregationError, JobCancelledError.
Нефатальная: CleaningError — пайплайн откатывается на сырой текст.
Ошибки сессий (SessionNotFoundError, SessionNotReadyError) не связаны
с обработкой документа и отдаются клиенту отдельными статусами.
"""

from typing import Optional


class OCRServiceError(Exception):
    """Базовая ошибка сервиса."""

    code = "processing_error"


class DocumentValidationError(OCRServiceError):
    """
    Некорректный вход: не PDF, пустой файл, слишком большой файл.

    Выбрасывается до выделения каких-либо ресурсов.
    """

    code = "invalid_document"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        if code:
            self.code = code


class ConversionError(OCRServiceError):
    """Ошибка рендеринга PDF в изображения (битый, зашифрованный, пустой PDF)."""

    code = "conversion_failed"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class OcrError(OCRServiceError):
    """Страница не распознана после всех попыток."""

    code = "ocr_failed"

    def __init__(self, page_number: int, cause: BaseException):
        super().__init__(f"OCR страницы {page_number} не удался: {cause}")
        self.page_number = page_number
        self.cause = cause


class CleaningError(OCRServiceError):
    """Ошибка очистки текста. Никогда не фатальна для задачи."""

    code = "cleaning_failed"


class AggregationError(OCRServiceError):
    """Набор страниц неполный или с дубликатами — это баг, не пользовательская ошибка."""

    code = "aggregation_failed"


class JobCancelledError(OCRServiceError):
    """Задача остановлена кооперативной отменой на границе страниц."""

    code = "cancelled"


class SessionNotFoundError(OCRServiceError):
    """Сессия с таким id не существует или уже удалена."""

    code = "not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Сессия {session_id} не найдена")
        self.session_id = session_id


class SessionNotReadyError(OCRServiceError):
    """Результат сессии ещё не готов (или сессия завершилась без результата)."""

    code = "not_ready"

    def __init__(self, session_id: str, status: str):
        super().__init__(f"Результат сессии {session_id} недоступен, статус: {status}")
        self.session_id = session_id
        self.status = status
