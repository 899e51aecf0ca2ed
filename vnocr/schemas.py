"""
Схемы данных OCR сервиса.

Включает:
    - Pydantic модели для API (опции, синхронный ответ, streaming-ответ, статус)
    - Внутренние dataclass'ы для пайплайна (страница, результат, документ)
    - Состояние streaming-сессии
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# =============================================================================
# Внутренние dataclass'ы для пайплайна
# =============================================================================


class JobMode(str, Enum):
    """Режим выполнения задачи."""

    SYNCHRONOUS = "synchronous"
    STREAMING = "streaming"


@dataclass
class PageImage:
    """
    Отрендеренная страница PDF на временном диске.

    Attributes:
        page_number: номер страницы (начинается с 1)
        path: путь к файлу изображения внутри scratch-директории задачи
    """

    page_number: int
    path: Path


@dataclass
class RecognizedText:
    """
    Результат распознавания одной страницы.

    Attributes:
        page_number: номер страницы
        text: распознанный текст
        confidence: средняя уверенность Tesseract по словам (0-100)
        duration_ms: время OCR страницы, включая повторные попытки
        attempts: сколько попыток потребовалось
        language: языки, с которыми страница реально распознана
    """

    page_number: int
    text: str
    confidence: float = 0.0
    duration_ms: int = 0
    attempts: int = 1
    language: str = ""


@dataclass
class CleaningMetadata:
    """
    Отчёт об очистке текста.

    Attributes:
        document_type: тип документа по сигнатурам ("unknown" если не распознан)
        changes_count: количество правок
        confidence: уверенность очистки (0-1)
        original_length: длина текста до очистки
        cleaned_length: длина после
        reduction: сокращение длины в процентах
        changes: список записей о правках ({"type": ..., "count": ...})
    """

    document_type: str = "unknown"
    changes_count: int = 0
    confidence: Optional[float] = None
    original_length: int = 0
    cleaned_length: int = 0
    reduction: float = 0.0
    changes: list[dict] = field(default_factory=list)


@dataclass
class PageResult:
    """
    Результат обработки одной страницы (OCR + опциональная очистка).

    Attributes:
        page_number: номер страницы (начинается с 1)
        raw_text: текст после OCR
        cleaned_text: текст после очистки (None если очистка не применялась)
        change_metadata: отчёт очистки (None если очистка не применялась)
        ocr_confidence: средняя уверенность Tesseract
        ocr_duration_ms: время OCR страницы
    """

    page_number: int
    raw_text: str
    cleaned_text: Optional[str] = None
    change_metadata: Optional[CleaningMetadata] = None
    ocr_confidence: float = 0.0
    ocr_duration_ms: int = 0


@dataclass
class DocumentMetadata:
    """Сводные метаданные документа."""

    document_type: str = "unknown"
    changes_count: int = 0
    confidence: Optional[float] = None
    original_length: int = 0
    cleaned_length: int = 0


@dataclass
class DocumentResult:
    """
    Итог агрегации всех страниц документа.

    Attributes:
        raw_text: сырой текст всех страниц с маркерами границ
        cleaned_text: очищенный текст с теми же маркерами (если была очистка)
        page_numbers: номера страниц в порядке вывода (всегда 1..N)
        metadata: сводные метаданные
    """

    raw_text: str
    cleaned_text: Optional[str]
    page_numbers: list[int]
    metadata: DocumentMetadata

    @property
    def page_count(self) -> int:
        return len(self.page_numbers)


@dataclass
class JobTimings:
    """Замеры времени синхронной задачи в мс."""

    processing_ms: int = 0
    ocr_ms: int = 0
    cleaning_ms: int = 0


# =============================================================================
# Streaming-сессии
# =============================================================================


class SessionStatus(str, Enum):
    """Состояния streaming-сессии. Терминальные: COMPLETE, FAILED, CANCELLED."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {SessionStatus.COMPLETE, SessionStatus.FAILED, SessionStatus.CANCELLED}
)


@dataclass(frozen=True)
class SessionSnapshot:
    """
    Согласованный снимок сессии для чтения.

    Снимается под блокировкой реестра, поэтому поля никогда
    не противоречат друг другу.

    Attributes:
        session_id: UUID сессии
        filename: имя загруженного файла
        file_size: размер файла в байтах
        status: текущее состояние
        total_pages: число страниц; None пока неизвестно (до рендеринга)
        last_page: последняя страница непрерывного готового префикса
        percentage: процент выполнения (0 пока total_pages неизвестно)
        has_output: есть ли готовый результат для скачивания
        estimated_time_remaining_ms: оценка по среднему времени страницы
        error: сообщение об ошибке для FAILED
        created_at: время создания (unix)
        updated_at: время последнего изменения (unix)
    """

    session_id: str
    filename: str
    file_size: int
    status: SessionStatus
    total_pages: Optional[int]
    last_page: int
    percentage: int
    has_output: bool
    estimated_time_remaining_ms: Optional[int]
    error: Optional[str]
    created_at: float
    updated_at: float

    @property
    def complete(self) -> bool:
        return self.status == SessionStatus.COMPLETE


# =============================================================================
# Pydantic модели для API
# =============================================================================


class CamelModel(BaseModel):
    """Базовая модель: camelCase в JSON, snake_case в Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class OCROptions(BaseModel):
    """
    Опции OCR от пользователя (JSON в поле формы config).

    Attributes:
        languages: языки Tesseract, например "vie+eng" (None — из настроек)
        clean: применять ли очистку текста
    """

    languages: Optional[str] = Field(
        default=None,
        description="Языки Tesseract: 'vie', 'vie+eng'",
        pattern=r"^[a-z_]+(\+[a-z_]+)*$",
    )
    clean: bool = Field(
        default=True,
        description="Применять очистку вьетнамского OCR текста",
    )


class MetadataModel(CamelModel):
    """Метаданные документа в ответе API."""

    document_type: str = "unknown"
    changes_count: int = 0
    confidence: Optional[float] = None
    original_length: int = 0
    cleaned_length: int = 0


class OCRResponse(CamelModel):
    """
    Ответ синхронного режима.

    Attributes:
        raw_text: сырой текст документа
        cleaned_text: очищенный текст (None если очистка выключена)
        metadata: метаданные документа и очистки
        pages: количество страниц
        processing_time_ms: общее время обработки
        ocr_time_ms: время рендеринга + OCR
        cleaning_time_ms: время очистки
        filename: имя исходного файла
    """

    raw_text: str
    cleaned_text: Optional[str] = None
    metadata: MetadataModel
    pages: int
    processing_time_ms: int
    ocr_time_ms: int
    cleaning_time_ms: int
    filename: str


class StreamingAcceptedResponse(CamelModel):
    """Ответ на постановку большой задачи в streaming-режим."""

    session_id: str
    streaming: bool = True
    message: str = "Обработка большого файла запущена"
    status_endpoint: str
    download_endpoint: str
    filename: str
    file_size: int


class SessionStatusResponse(CamelModel):
    """Ответ на опрос статуса сессии."""

    session_id: str
    status: str
    filename: str
    last_page: int
    total_pages: Optional[int] = None
    percentage: int
    complete: bool
    has_output: bool
    estimated_time_remaining: Optional[int] = None
    error: Optional[str] = None
    created_at: float
    updated_at: float
