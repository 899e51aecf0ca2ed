"""
VN-OCR — сервис распознавания текста из вьетнамских PDF.

    - FastAPI эндпоинты: синхронный OCR и streaming-сессии для больших файлов
    - Пайплайн: PDF -> страницы -> OCR (Tesseract vie+eng) -> очистка -> документ
    - Очистка вьетнамского OCR текста с определением типа документа

Страницы одного документа распознаются параллельно через ThreadPoolExecutor.
"""

from vnocr.config import settings
from vnocr.schemas import OCROptions, OCRResponse, SessionStatusResponse, StreamingAcceptedResponse

__all__ = [
    "settings",
    "OCROptions",
    "OCRResponse",
    "SessionStatusResponse",
    "StreamingAcceptedResponse",
]
