"""
Оркестратор пайплайна: PDF -> страницы -> OCR -> очистка -> документ.

Состояния задачи:
    Submitted -> Rasterizing -> OCR(1..N) -> Cleaning -> Aggregating -> Completed | Failed

Два режима:
    - синхронный: run_sync() блокирует вызывающего до результата или ошибки
    - streaming: start_streaming() сразу возвращает id сессии, та же
      машина состояний выполняется в фоновом пуле и публикует прогресс
      в реестр сессий

Параллелизация:
    - страницы одного документа распознаются в ThreadPoolExecutor
      на ocr_concurrency потоков (tesseract — внешний процесс, GIL не мешает)
    - рендеринг ленивый: следующая страница рендерится, пока идут
      текущие, на диске не больше ocr_concurrency + 1 изображений
    - результаты буферизуются по номеру страницы, порядок завершения
      на итоговый текст не влияет

Ресурсы: scratch-директория задачи освобождается на любом выходе
(успех, ошибка рендеринга/OCR, отмена) до того, как исход станет виден.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import (
    ALL_COMPLETED,
    FIRST_COMPLETED,
    Future,
    ThreadPoolExecutor,
    wait,
)
from pathlib import Path
from typing import Optional

from vnocr.config import settings
from vnocr.errors import (
    DocumentValidationError,
    JobCancelledError,
    OCRServiceError,
    SessionNotFoundError,
)
from vnocr.schemas import (
    CleaningMetadata,
    DocumentResult,
    JobMode,
    JobTimings,
    OCROptions,
    PageResult,
    RecognizedText,
)
from vnocr.services.aggregator import aggregate, render_text_file
from vnocr.services.metrics import ServiceMetrics
from vnocr.services.scratch import ScratchManager, ScratchSpace
from vnocr.services.session_store import SessionRegistry

logger = logging.getLogger(__name__)

PDF_SIGNATURE = b"%PDF"


class OCRPipeline:
    """
    Координирует обработку документа в синхронном и streaming режимах.

    Коллабораторы передаются явно:
        rasterizer: page_count(path), page_count_from_bytes(bytes),
            iter_pages(path, output_dir, total_pages) -> Iterator[PageImage]
        recognizer: recognize(PageImage, languages) -> RecognizedText
        cleaner: clean(text) -> CleaningResult (None — очистка недоступна)
    """

    def __init__(
        self,
        scratch: ScratchManager,
        sessions: SessionRegistry,
        metrics: ServiceMetrics,
        rasterizer,
        recognizer,
        cleaner=None,
        concurrency: Optional[int] = None,
        background_workers: Optional[int] = None,
    ):
        self._scratch = scratch
        self._sessions = sessions
        self._metrics = metrics
        self._rasterizer = rasterizer
        self._recognizer = recognizer
        self._cleaner = cleaner
        self._concurrency = max(1, concurrency or settings.ocr_concurrency)
        self._background = ThreadPoolExecutor(
            max_workers=background_workers or settings.background_workers,
            thread_name_prefix="vnocr-session",
        )
        self._futures_lock = threading.Lock()
        self._session_futures: dict[str, Future] = {}

        self.max_file_size_bytes = settings.max_file_size_mb * 1024 * 1024
        self.streaming_enabled = settings.streaming_enabled
        self.streaming_threshold_bytes = settings.streaming_threshold_mb * 1024 * 1024
        self.streaming_page_threshold = settings.streaming_page_threshold

    @property
    def sessions(self) -> SessionRegistry:
        return self._sessions

    @property
    def metrics(self) -> ServiceMetrics:
        return self._metrics

    @property
    def languages(self) -> str:
        return self._recognizer.languages

    def sweep(self) -> int:
        """Удаляет устаревшие терминальные сессии вместе с их результатами."""
        return self._sessions.evict_stale()

    # ------------------------------------------------------------------
    # Приём задачи
    # ------------------------------------------------------------------

    def validate(self, pdf_bytes: bytes) -> None:
        """
        Проверяет вход до выделения ресурсов.

        Raises:
            DocumentValidationError: пустой файл, слишком большой, не PDF
        """
        if not pdf_bytes:
            raise DocumentValidationError("Пустой файл", code="empty_file")

        if len(pdf_bytes) > self.max_file_size_bytes:
            raise DocumentValidationError(
                f"Файл слишком большой: {len(pdf_bytes)} байт, "
                f"максимум: {self.max_file_size_bytes // (1024 * 1024)} МБ",
                code="file_too_large",
            )

        if not pdf_bytes.startswith(PDF_SIGNATURE):
            raise DocumentValidationError(
                "Файл не является валидным PDF (отсутствует сигнатура %PDF)",
                code="invalid_pdf",
            )

    def admit(self, pdf_bytes: bytes) -> JobMode:
        """
        Приём загрузки: одна проверка, выбор режима, учёт запроса.

        Запрос учитывается всегда: по режиму, либо как "rejected".
        run_sync() и start_streaming() ожидают уже принятый файл.

        Raises:
            DocumentValidationError: файл не прошёл проверку
            ConversionError: не удалось прочитать число страниц для выбора режима
        """
        try:
            self.validate(pdf_bytes)
            mode = self.select_mode(pdf_bytes)
        except OCRServiceError as e:
            self._metrics.record_request("rejected")
            self._metrics.record_error(e.code)
            raise

        self._metrics.record_request(mode.value)
        return mode

    def select_mode(self, pdf_bytes: bytes) -> JobMode:
        """
        Выбирает режим по размеру файла, затем (если настроено) по числу страниц.

        Raises:
            ConversionError: если для подсчёта страниц PDF не читается
        """
        if not self.streaming_enabled:
            return JobMode.SYNCHRONOUS

        if len(pdf_bytes) > self.streaming_threshold_bytes:
            return JobMode.STREAMING

        if self.streaming_page_threshold > 0:
            pages = self._rasterizer.page_count_from_bytes(pdf_bytes)
            if pages > self.streaming_page_threshold:
                return JobMode.STREAMING

        return JobMode.SYNCHRONOUS

    # ------------------------------------------------------------------
    # Синхронный режим
    # ------------------------------------------------------------------

    def run_sync(
        self,
        pdf_bytes: bytes,
        filename: str,
        options: Optional[OCROptions] = None,
    ) -> tuple[DocumentResult, JobTimings]:
        """
        Обрабатывает принятый через admit() документ целиком.

        Returns:
            tuple: (DocumentResult, JobTimings)

        Raises:
            ConversionError, OcrError, AggregationError
        """
        options = options or OCROptions()
        job_id = str(uuid.uuid4())
        start = time.perf_counter()
        logger.info("=" * 60)
        logger.info(f"НОВАЯ ЗАДАЧА OCR (sync): {filename}, {len(pdf_bytes) / (1024 * 1024):.2f} MB")
        logger.info("=" * 60)

        try:
            with self._scratch.acquire(job_id) as space:
                space.write_source(pdf_bytes)
                total_pages = self._rasterizer.page_count(space.source_path)

                recognized = self._recognize_pages(space, total_pages, options)
                ocr_ms = int((time.perf_counter() - start) * 1000)

                cleaning_start = time.perf_counter()
                page_results = self._clean_pages(recognized, options.clean)
                cleaning_ms = int((time.perf_counter() - cleaning_start) * 1000)

                document = aggregate(page_results, total_pages)
        except OCRServiceError as e:
            self._metrics.record_error(e.code)
            logger.error(f"Задача {job_id} ({filename}) не выполнена: {e}")
            raise

        timings = JobTimings(
            processing_ms=int((time.perf_counter() - start) * 1000),
            ocr_ms=ocr_ms,
            cleaning_ms=cleaning_ms,
        )
        logger.info(
            f"Задача {job_id} завершена: {document.page_count} страниц, "
            f"OCR {timings.ocr_ms}ms, очистка {timings.cleaning_ms}ms, "
            f"всего {timings.processing_ms}ms"
        )
        return document, timings

    # ------------------------------------------------------------------
    # Streaming режим
    # ------------------------------------------------------------------

    def start_streaming(
        self,
        pdf_bytes: bytes,
        filename: str,
        options: Optional[OCROptions] = None,
    ) -> str:
        """
        Регистрирует сессию для принятого через admit() файла
        и запускает обработку в фоне.

        Фоновая задача не привязана к HTTP запросу: обрыв соединения
        её не останавливает, только cancel() через реестр.

        Returns:
            str: id сессии (в PENDING)

        Raises:
            OSError: не удалось подготовить scratch (сессия уже FAILED)
        """
        options = options or OCROptions()
        session_id = self._sessions.create(
            filename, len(pdf_bytes), parallelism=self._concurrency
        )
        try:
            space = self._scratch.acquire(session_id)
        except OSError as e:
            self._sessions.mark_failed(session_id, f"Не удалось выделить временную директорию: {e}")
            raise

        try:
            space.write_source(pdf_bytes)
        except OSError as e:
            space.release()
            self._sessions.mark_failed(session_id, f"Не удалось сохранить PDF: {e}")
            raise

        self._sessions.attach_release(session_id, space.release)
        with self._futures_lock:
            future = self._background.submit(
                self._run_session, session_id, space, filename, options
            )
            self._session_futures[session_id] = future
        future.add_done_callback(lambda _f: self._forget_future(session_id))

        logger.info(f"Streaming сессия запущена: {session_id}, файл={filename}")
        return session_id

    def join(self, session_id: str, timeout: Optional[float] = None) -> bool:
        """
        Ждёт окончания фоновой задачи сессии.

        Returns:
            bool: True если задача завершилась (или её уже нет)
        """
        with self._futures_lock:
            future = self._session_futures.get(session_id)
        if future is None:
            return True
        done, _ = wait([future], timeout=timeout)
        return bool(done)

    def _forget_future(self, session_id: str) -> None:
        with self._futures_lock:
            self._session_futures.pop(session_id, None)

    def shutdown(self, wait: bool = True) -> None:
        """
        Останавливает фоновый пул.

        Незавершённые сессии отменяются: ещё не начатые освобождают
        scratch сразу, запущенные останавливаются на границе страниц.
        """
        with self._futures_lock:
            pending = list(self._session_futures)
        for session_id in pending:
            try:
                self._sessions.cancel(session_id)
            except SessionNotFoundError:
                continue
        self._background.shutdown(wait=wait)

    def _run_session(
        self,
        session_id: str,
        space: ScratchSpace,
        filename: str,
        options: OCROptions,
    ) -> None:
        start = time.perf_counter()
        try:
            with space:
                if not self._sessions.mark_running(session_id):
                    raise JobCancelledError(f"Сессия {session_id} отменена до старта")

                total_pages = self._rasterizer.page_count(space.source_path)
                self._sessions.set_total_pages(session_id, total_pages)
                logger.info(f"Сессия {session_id}: {total_pages} страниц")

                recognized = self._recognize_pages(
                    space, total_pages, options, session_id=session_id
                )
                self._check_cancelled(session_id)

                page_results = self._clean_pages(recognized, options.clean)
                document = aggregate(page_results, total_pages)
                outputs = self._write_outputs(session_id, document, filename, options)

            if not self._sessions.mark_complete(session_id, outputs):
                # Отменена между последней страницей и публикацией результата
                for path in outputs.values():
                    self._scratch.remove_output(path)
                logger.info(f"Сессия {session_id}: результат отброшен, сессия уже терминальна")
                return

            duration_ms = int((time.perf_counter() - start) * 1000)
            logger.info(f"Сессия {session_id} готова: {total_pages} страниц за {duration_ms}ms")

        except JobCancelledError as e:
            logger.info(f"Сессия {session_id} остановлена: {e}")
        except SessionNotFoundError:
            logger.info(f"Сессия {session_id} удалена до старта обработки")
        except OCRServiceError as e:
            if self._sessions.mark_failed(session_id, str(e)):
                self._metrics.record_error(e.code)
        except Exception as e:
            logger.exception(f"Непредвиденная ошибка в сессии {session_id}: {e}")
            if self._sessions.mark_failed(session_id, f"Внутренняя ошибка: {e}"):
                self._metrics.record_error("internal")
        finally:
            # Scratch уже освобождён: отмену можно публиковать
            self._sessions.mark_cancelled(session_id)

    def _write_outputs(
        self,
        session_id: str,
        document: DocumentResult,
        filename: str,
        options: OCROptions,
    ) -> dict[str, Path]:
        languages = options.languages or self.languages
        variants = {"raw": document.raw_text}
        if document.cleaned_text is not None:
            variants["cleaned"] = document.cleaned_text

        outputs = {}
        try:
            for variant, text in variants.items():
                path = self._scratch.output_path(session_id, variant)
                outputs[variant] = path
                path.write_text(
                    render_text_file(text, filename, languages, document.page_count),
                    encoding="utf-8",
                )
        except BaseException:
            # Сессия не получит outputs: удаляем то, что успели записать
            for path in outputs.values():
                self._scratch.remove_output(path)
            raise
        return outputs

    # ------------------------------------------------------------------
    # Общие этапы
    # ------------------------------------------------------------------

    def _recognize_pages(
        self,
        space: ScratchSpace,
        total_pages: int,
        options: OCROptions,
        session_id: Optional[str] = None,
    ) -> dict[int, RecognizedText]:
        """
        Рендерит и распознаёт все страницы с ограниченным параллелизмом.

        Любая ошибка рендеринга или OCR прерывает задачу: ещё не начатые
        страницы отменяются, уже распознанные отбрасываются.
        """
        recognized: dict[int, RecognizedText] = {}
        in_flight: dict[Future, int] = {}
        pages = self._rasterizer.iter_pages(space.source_path, space.pages_dir, total_pages)

        with ThreadPoolExecutor(
            max_workers=self._concurrency,
            thread_name_prefix=f"ocr-{space.job_id[:8]}",
        ) as pool:
            try:
                for page in pages:
                    self._check_cancelled(session_id)
                    future = pool.submit(self._recognizer.recognize, page, options.languages)
                    in_flight[future] = page.page_number

                    if len(in_flight) >= self._concurrency:
                        self._collect(in_flight, recognized, FIRST_COMPLETED, total_pages, session_id)

                self._collect(in_flight, recognized, ALL_COMPLETED, total_pages, session_id)
            except BaseException:
                for future in in_flight:
                    future.cancel()
                raise

        self._metrics.record_pages(len(recognized))
        return recognized

    def _collect(
        self,
        in_flight: dict[Future, int],
        recognized: dict[int, RecognizedText],
        return_when: str,
        total_pages: int,
        session_id: Optional[str],
    ) -> None:
        if not in_flight:
            return

        done, _ = wait(list(in_flight), return_when=return_when)
        for future in sorted(done, key=lambda f: in_flight[f]):
            page_number = in_flight.pop(future)
            recognized[page_number] = future.result()

            if session_id is not None:
                self._publish_progress(session_id, recognized, total_pages, page_number)

        self._check_cancelled(session_id)

    def _publish_progress(
        self,
        session_id: str,
        recognized: dict[int, RecognizedText],
        total_pages: int,
        page_number: int,
    ) -> None:
        # Публикуем непрерывный префикс готовых страниц: last_page растёт монотонно
        last_page = 0
        while last_page + 1 in recognized:
            last_page += 1

        self._sessions.update_progress(
            session_id,
            last_page,
            total_pages=total_pages,
            page_duration_ms=recognized[page_number].duration_ms,
        )

    def _check_cancelled(self, session_id: Optional[str]) -> None:
        if session_id is not None and self._sessions.is_cancelled(session_id):
            raise JobCancelledError(f"Сессия {session_id} отменена")

    def _clean_pages(
        self,
        recognized: dict[int, RecognizedText],
        clean: bool,
    ) -> list[PageResult]:
        """
        Применяет очистку постранично.

        Ошибка очистки не фатальна: страница остаётся с сырым текстом
        и changes_count=0.
        """
        results = []
        for page_number in sorted(recognized):
            page = recognized[page_number]
            result = PageResult(
                page_number=page_number,
                raw_text=page.text,
                ocr_confidence=page.confidence,
                ocr_duration_ms=page.duration_ms,
            )

            if clean and self._cleaner is not None:
                try:
                    cleaning = self._cleaner.clean(page.text)
                    result.cleaned_text = cleaning.cleaned
                    result.change_metadata = cleaning.metadata
                except Exception as e:
                    logger.warning(
                        f"Очистка страницы {page_number} не удалась, используется сырой текст: {e}"
                    )
                    self._metrics.record_error("cleaning_failed")
                    result.change_metadata = CleaningMetadata(
                        changes_count=0,
                        original_length=len(page.text),
                        cleaned_length=len(page.text),
                    )

            results.append(result)
        return results
