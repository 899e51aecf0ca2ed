"""
Сервисы OCR обработки.

Модули:
    - scratch: временные директории задач и файлы результатов
    - pdf_processor: рендеринг страниц PDF в изображения
    - preprocess: ориентация (OSD) и коррекция наклона страницы
    - ocr_processor: распознавание страницы с таймаутом и повторами
    - cleaner: очистка вьетнамского OCR текста
    - aggregator: сборка страниц в документ
    - session_store: реестр streaming-сессий
    - metrics: счётчики сервиса
    - pipeline: оркестрация sync/streaming задач
"""

from vnocr.services.aggregator import aggregate, render_text_file
from vnocr.services.cleaner import VietnameseOCRCleaner
from vnocr.services.metrics import ServiceMetrics
from vnocr.services.ocr_processor import PageRecognizer
from vnocr.services.pdf_processor import PdfRasterizer
from vnocr.services.pipeline import OCRPipeline
from vnocr.services.scratch import ScratchManager
from vnocr.services.session_store import SessionRegistry

__all__ = [
    "aggregate",
    "render_text_file",
    "VietnameseOCRCleaner",
    "ServiceMetrics",
    "PageRecognizer",
    "PdfRasterizer",
    "OCRPipeline",
    "ScratchManager",
    "SessionRegistry",
]
