"""
VN-OCR — FastAPI приложение для распознавания вьетнамских PDF.

Маленькие файлы обрабатываются синхронно, большие уходят
в streaming-сессию с опросом статуса и скачиванием результата.

Эндпоинты:
    GET    /health                         — Tesseract, языки, конфиг, счётчики
    POST   /api/ocr                        — загрузка PDF (sync или streaming)
    GET    /api/session/{id}/status        — прогресс streaming-сессии
    GET    /api/session/{id}/download      — txt результат (?variant=raw|cleaned)
    DELETE /api/session/{id}               — отмена сессии
    GET    /api/sessions                   — список сессий и статистика

Запуск:
    uvicorn vnocr.main:app --host 0.0.0.0 --port 8000
"""

import asyncio
import json
import logging
import os
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, File, Form, Query, Request, UploadFile
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError
from starlette.background import BackgroundTask
from starlette.concurrency import run_in_threadpool

from vnocr.config import settings
from vnocr.errors import (
    ConversionError,
    DocumentValidationError,
    OCRServiceError,
    OcrError,
    SessionNotFoundError,
    SessionNotReadyError,
)
from vnocr.schemas import (
    JobMode,
    MetadataModel,
    OCROptions,
    OCRResponse,
    SessionSnapshot,
    SessionStatusResponse,
    StreamingAcceptedResponse,
)
from vnocr.services.cleaner import VietnameseOCRCleaner
from vnocr.services.metrics import ServiceMetrics
from vnocr.services.ocr_processor import PageRecognizer
from vnocr.services.pdf_processor import PdfRasterizer
from vnocr.services.pipeline import OCRPipeline
from vnocr.services.scratch import ScratchManager
from vnocr.services.session_store import SessionRegistry

# Настройка логгера
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [VN-OCR] %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)

VERSION = "1.0.0"

# HTTP статус по типу ошибки; порядок важен (первое совпадение по isinstance)
_ERROR_STATUS = (
    (DocumentValidationError, 400),
    (ConversionError, 422),
    (OcrError, 500),
    (SessionNotFoundError, 404),
    (SessionNotReadyError, 409),
)


class UnicodeJSONResponse(JSONResponse):
    """JSON ответ с читаемой вьетнамской диакритикой (без \\uXXXX экранирования)."""

    def render(self, content) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


def build_pipeline() -> OCRPipeline:
    """Собирает пайплайн с боевыми коллабораторами из настроек."""
    scratch = ScratchManager(Path(settings.temp_dir))
    sessions = SessionRegistry(scratch, settings.session_retention_seconds)
    cleaner = VietnameseOCRCleaner() if settings.cleaning_enabled else None

    return OCRPipeline(
        scratch=scratch,
        sessions=sessions,
        metrics=ServiceMetrics(),
        rasterizer=PdfRasterizer(),
        recognizer=PageRecognizer(),
        cleaner=cleaner,
    )


async def _sweep_loop(pipeline: OCRPipeline, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(pipeline.sweep)
        except OSError as e:
            logger.warning(f"Ошибка очистки устаревших сессий: {e}")


def create_app(pipeline: Optional[OCRPipeline] = None) -> FastAPI:
    """
    Создаёт FastAPI приложение.

    Args:
        pipeline: готовый пайплайн (в тестах — с фейковыми коллабораторами);
            None — собрать из настроек при старте

    Returns:
        FastAPI: приложение
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.pipeline = pipeline or build_pipeline()
        sweeper = asyncio.create_task(
            _sweep_loop(app.state.pipeline, settings.session_sweep_interval_seconds)
        )
        logger.info(
            f"VN-OCR {VERSION} запущен: языки={settings.ocr_languages}, "
            f"streaming порог={settings.streaming_threshold_mb} МБ, CPU={os.cpu_count()}"
        )
        try:
            yield
        finally:
            sweeper.cancel()
            with suppress(asyncio.CancelledError):
                await sweeper
            await run_in_threadpool(app.state.pipeline.shutdown)
            logger.info("VN-OCR остановлен")

    app = FastAPI(
        title="VN-OCR",
        description="Распознавание текста из вьетнамских PDF (Tesseract OCR + очистка)",
        version=VERSION,
        default_response_class=UnicodeJSONResponse,
        lifespan=lifespan,
    )
    app.add_exception_handler(OCRServiceError, _service_error_handler)
    _register_routes(app)
    return app


async def _service_error_handler(request: Request, exc: OCRServiceError) -> UnicodeJSONResponse:
    status_code = _status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path}: {exc}")
    else:
        logger.warning(f"{request.method} {request.url.path}: {exc.code}: {exc}")

    return UnicodeJSONResponse(
        status_code=status_code,
        content={"error": exc.code, "message": str(exc)},
    )


def _status_for(exc: OCRServiceError) -> int:
    if isinstance(exc, DocumentValidationError) and exc.code == "file_too_large":
        return 413
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _register_routes(app: FastAPI) -> None:

    @app.get("/health")
    async def health_check(request: Request) -> dict:
        """
        Проверка работоспособности сервиса.

        Проверяет доступность Tesseract и наличие языкового пакета vie.

        Returns:
            dict: статус сервиса, конфигурация и счётчики
        """
        pipeline: OCRPipeline = request.app.state.pipeline

        tesseract_ok = False
        tesseract_version = "unknown"
        languages: list[str] = []
        try:
            import pytesseract
            tesseract_version = str(pytesseract.get_tesseract_version())
            languages = sorted(pytesseract.get_languages(config=""))
            tesseract_ok = True
        except Exception as e:
            tesseract_version = f"error: {e}"

        vietnamese_ok = "vie" in languages

        return {
            "status": "ok" if tesseract_ok and vietnamese_ok else "degraded",
            "service": "vn-ocr",
            "version": VERSION,
            "cpu_count": os.cpu_count(),
            "tesseract": {
                "available": tesseract_ok,
                "version": tesseract_version,
                "languages": languages,
                "vietnamese": vietnamese_ok,
            },
            "config": {
                "max_file_size_mb": settings.max_file_size_mb,
                "streaming_enabled": settings.streaming_enabled,
                "streaming_threshold_mb": settings.streaming_threshold_mb,
                "render_dpi": settings.render_dpi,
                "ocr_languages": settings.ocr_languages,
                "ocr_oem": settings.ocr_oem,
                "ocr_psm": settings.ocr_psm,
                "ocr_concurrency": settings.ocr_concurrency,
                "cleaning_enabled": settings.cleaning_enabled,
            },
            "metrics": pipeline.metrics.snapshot(),
        }

    @app.post("/api/ocr")
    async def execute_ocr(
        request: Request,
        file: Optional[UploadFile] = File(default=None, description="PDF файл для распознавания"),
        pdf: Optional[UploadFile] = File(
            default=None, description="PDF файл (имя поля веб-клиента)"
        ),
        config: Optional[str] = Form(
            default=None,
            description='JSON конфигурация: {"languages": "vie+eng", "clean": true}',
        ),
    ) -> dict:
        """
        Распознаёт PDF.

        Файлы до порога streaming обрабатываются синхронно и возвращают текст.
        Большие файлы ставятся в фоновую сессию — в ответе id сессии и
        адреса для опроса статуса и скачивания.

        Args:
            file: PDF файл (multipart/form-data, поле "file" или "pdf")
            config: JSON строка с опциями OCR

        Returns:
            dict: OCRResponse или StreamingAcceptedResponse (camelCase)
        """
        pipeline: OCRPipeline = request.app.state.pipeline

        upload = file or pdf
        if upload is None:
            pipeline.metrics.record_request("rejected")
            pipeline.metrics.record_error("no_file")
            raise DocumentValidationError(
                'Файл не передан (ожидается поле "file" или "pdf")', code="no_file"
            )

        try:
            options = _parse_config(config)
            file_bytes = await _read_upload(upload)
        except DocumentValidationError as e:
            pipeline.metrics.record_request("rejected")
            pipeline.metrics.record_error(e.code)
            raise

        filename = upload.filename or "document.pdf"
        logger.info(f"Получен файл: {filename}, {len(file_bytes)} байт, опции: {options.model_dump()}")

        mode = await run_in_threadpool(pipeline.admit, file_bytes)

        try:
            if mode == JobMode.STREAMING:
                session_id = await run_in_threadpool(
                    pipeline.start_streaming, file_bytes, filename, options
                )
                response = StreamingAcceptedResponse(
                    session_id=session_id,
                    status_endpoint=f"/api/session/{session_id}/status",
                    download_endpoint=f"/api/session/{session_id}/download",
                    filename=filename,
                    file_size=len(file_bytes),
                )
                return response.model_dump(by_alias=True)

            document, timings = await run_in_threadpool(
                pipeline.run_sync, file_bytes, filename, options
            )
        except OCRServiceError:
            raise
        except Exception as e:
            logger.exception(f"Ошибка обработки документа {filename}: {e}")
            pipeline.metrics.record_error("processing_error")
            raise OCRServiceError(f"Внутренняя ошибка обработки: {e}") from e

        response = OCRResponse(
            raw_text=document.raw_text,
            cleaned_text=document.cleaned_text,
            metadata=MetadataModel(**vars(document.metadata)),
            pages=document.page_count,
            processing_time_ms=timings.processing_ms,
            ocr_time_ms=timings.ocr_ms,
            cleaning_time_ms=timings.cleaning_ms,
            filename=filename,
        )
        return response.model_dump(by_alias=True)

    @app.get("/api/session/{session_id}/status")
    async def session_status(request: Request, session_id: str):
        """
        Статус streaming-сессии. Не ждёт OCR — отдаёт последнее опубликованное.

        Returns:
            dict: SessionStatusResponse; 404 {"status": "not_found"} для неизвестного id
        """
        snapshot = request.app.state.pipeline.sessions.get(session_id)
        if snapshot is None:
            return UnicodeJSONResponse(status_code=404, content={"status": "not_found"})
        return _status_response(snapshot).model_dump(by_alias=True)

    @app.get("/api/session/{session_id}/download")
    async def download_result(
        request: Request,
        session_id: str,
        variant: str = Query(default="cleaned", pattern="^(raw|cleaned)$"),
    ) -> FileResponse:
        """
        Отдаёт txt результат сессии.

        Результат забирается атомарно: параллельное скачивание той же
        сессии получает 404. После отправки тела сессия удаляется вместе
        с файлами, результат можно скачать один раз.

        Raises:
            SessionNotFoundError: 404
            SessionNotReadyError: 409
        """
        sessions: SessionRegistry = request.app.state.pipeline.sessions
        path, snapshot = sessions.get_output(session_id, variant, claim=True)

        download_name = f"{Path(snapshot.filename).stem or session_id}_ocr_result.txt"
        logger.info(f"Скачивание результата: {session_id}, вариант={variant}, файл={download_name}")

        return FileResponse(
            path,
            media_type="text/plain; charset=utf-8",
            filename=download_name,
            background=BackgroundTask(sessions.remove, session_id),
        )

    @app.delete("/api/session/{session_id}")
    async def cancel_session(request: Request, session_id: str) -> dict:
        """
        Отменяет сессию. Повторная отмена и отмена завершённой сессии — no-op.

        Raises:
            SessionNotFoundError: 404
        """
        sessions: SessionRegistry = request.app.state.pipeline.sessions
        cancelled = sessions.cancel(session_id)
        snapshot = sessions.get(session_id)
        return {
            "sessionId": session_id,
            "cancelled": cancelled,
            "status": snapshot.status.value if snapshot else "not_found",
        }

    @app.get("/api/sessions")
    async def list_sessions(request: Request) -> dict:
        """
        Список сессий и статистика.

        Полезно для мониторинга: сколько задач в работе, сколько страниц обработано.
        """
        pipeline: OCRPipeline = request.app.state.pipeline
        return {
            "sessions": [
                _status_response(s).model_dump(by_alias=True)
                for s in pipeline.sessions.list_sessions()
            ],
            "statistics": pipeline.sessions.statistics(),
            "metrics": pipeline.metrics.snapshot(),
        }


def _status_response(snapshot: SessionSnapshot) -> SessionStatusResponse:
    return SessionStatusResponse(
        session_id=snapshot.session_id,
        status=snapshot.status.value,
        filename=snapshot.filename,
        last_page=snapshot.last_page,
        total_pages=snapshot.total_pages,
        percentage=snapshot.percentage,
        complete=snapshot.complete,
        has_output=snapshot.has_output,
        estimated_time_remaining=snapshot.estimated_time_remaining_ms,
        error=snapshot.error,
        created_at=snapshot.created_at,
        updated_at=snapshot.updated_at,
    )


def _parse_config(config_json: Optional[str]) -> OCROptions:
    """
    Парсит JSON опции из поля формы.

    Args:
        config_json: JSON строка или None

    Returns:
        OCROptions: опции с дефолтными значениями если не указано

    Raises:
        DocumentValidationError: некорректный JSON или значения
    """
    if not config_json:
        return OCROptions()

    try:
        return OCROptions(**json.loads(config_json))
    except json.JSONDecodeError as e:
        raise DocumentValidationError(
            f"Некорректный JSON в config: {e}", code="invalid_config"
        ) from e
    except (ValidationError, TypeError) as e:
        raise DocumentValidationError(
            f"Ошибка парсинга config: {e}", code="invalid_config"
        ) from e


async def _read_upload(file: UploadFile) -> bytes:
    """
    Проверяет Content-Type и читает загруженный файл.

    Размер и сигнатура %PDF проверяются пайплайном.

    Raises:
        DocumentValidationError: тип файла не PDF
    """
    if file.content_type and file.content_type not in (
        "application/pdf",
        "application/octet-stream",
    ):
        raise DocumentValidationError(
            f"Ожидается PDF файл, получен: {file.content_type}",
            code="invalid_file_type",
        )

    return await file.read()


app = create_app()


if __name__ == "__main__":
    import uvicorn

    logger.info(f"Запуск VN-OCR на {settings.host}:{settings.port}")
    logger.info(f"CPU ядер: {os.cpu_count()}")

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level="info",
    )
