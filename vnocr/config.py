"""
Конфигурация сервиса OCR для вьетнамских PDF.

Все значения читаются из .env файла (или переменных окружения)
с префиксом OCR_. В отличие от первой версии сервиса, у всех параметров
есть дефолты — сервис запускается и без .env.

Документация по параметрам: .env.example
"""

import os
import tempfile

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Настройки OCR сервиса.

    Объединяет все параметры: сервер, лимиты, маршрутизацию
    sync/streaming, рендеринг, OCR, очистку текста и сессии.
    """

    model_config = SettingsConfigDict(
        env_prefix="OCR_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # --- Сервер ---
    host: str = "0.0.0.0"
    port: int = 8000

    # --- API: лимиты ---
    max_file_size_mb: int = 50

    # --- Маршрутизация: синхронный режим или streaming-сессия ---
    streaming_enabled: bool = True
    # Файлы строго больше порога уходят в streaming
    streaming_threshold_mb: int = 10
    # 0 = отключено; иначе документы с большим числом страниц уходят в streaming
    streaming_page_threshold: int = 0

    # --- Временные файлы ---
    temp_dir: str = os.path.join(tempfile.gettempdir(), "vnocr")

    # --- Split: PDF -> images ---
    render_dpi: int = 300
    render_format: str = "jpeg"
    # 0 = без ограничения; иначе длинная сторона страницы в пикселях
    render_max_dimension: int = 0
    render_thread_count: int = 1

    # --- Предобработка: OSD + deskew (по умолчанию выключена) ---
    preprocess_enabled: bool = False
    osd_crop_percent: float = 0.15
    osd_resize_px: int = 2048
    osd_confidence_threshold: float = 2.0
    deskew_resize_px: int = 1200
    deskew_num_peaks: int = 20
    skew_threshold: float = 0.5

    # --- OCR: Tesseract ---
    ocr_languages: str = "vie+eng"
    ocr_fallback_language: str = "eng"
    ocr_oem: int = 1
    ocr_psm: int = 3
    ocr_timeout_seconds: float = 60.0
    # Дополнительные попытки после первой
    ocr_retries: int = 2
    ocr_retry_backoff_seconds: float = 1.0
    # Сколько страниц одного документа распознаются одновременно
    ocr_concurrency: int = 2

    # --- Очистка текста ---
    cleaning_enabled: bool = True

    # --- Streaming-сессии ---
    session_retention_seconds: int = 3600
    session_sweep_interval_seconds: int = 300
    background_workers: int = 2


# Глобальный экземпляр настроек
settings = Settings()
