"""
In-memory реестр streaming-сессий.

Хранит состояние длинных задач для опроса клиентом:
    PENDING -> RUNNING -> COMPLETE | FAILED | CANCELLED

Особенности:
    - Хранение в памяти процесса (после рестарта сессии теряются)
    - Идентификатор — UUID4, знает только владелец
    - Все изменения и чтения одной сессии идут под одной блокировкой,
      читатель получает согласованный снимок (SessionSnapshot)
    - Терминальные состояния липкие: из них переходов нет
    - Файлы результата принадлежат реестру и удаляются при eviction
    - Терминальное состояние публикуется только после освобождения
      scratch-директории задачи:
        PENDING + cancel  -> scratch удаляется сразу, под блокировкой
        RUNNING + cancel  -> остаётся RUNNING, пока фоновая задача не выйдет
                             из scratch и не вызовет mark_cancelled()
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from vnocr.errors import SessionNotFoundError, SessionNotReadyError
from vnocr.schemas import SessionSnapshot, SessionStatus
from vnocr.services.scratch import ScratchManager

logger = logging.getLogger(__name__)


@dataclass
class _SessionRecord:
    session_id: str
    filename: str
    file_size: int
    created_at: float
    updated_at: float
    status: SessionStatus = SessionStatus.PENDING
    total_pages: Optional[int] = None
    last_page: int = 0
    outputs: dict[str, Path] = field(default_factory=dict)
    error: Optional[str] = None
    page_durations_ms: list[int] = field(default_factory=list)
    parallelism: int = 1
    cancel_event: threading.Event = field(default_factory=threading.Event)
    release: Optional[Callable[[], object]] = None
    claimed: bool = False


class SessionRegistry:
    """
    Реестр сессий.

    Attributes:
        retention_seconds: сколько терминальная сессия живёт без обращений
    """

    def __init__(
        self,
        scratch: ScratchManager,
        retention_seconds: int,
        clock: Callable[[], float] = time.time,
    ):
        self._scratch = scratch
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: dict[str, _SessionRecord] = {}
        self.retention_seconds = retention_seconds

    # ------------------------------------------------------------------
    # Жизненный цикл (вызывается только оркестратором)
    # ------------------------------------------------------------------

    def create(self, filename: str, file_size: int, parallelism: int = 1) -> str:
        """
        Регистрирует новую сессию в PENDING и возвращает её UUID.

        Args:
            filename: имя загруженного файла
            file_size: размер в байтах
            parallelism: сколько страниц распознаётся одновременно (для ETA)
        """
        session_id = str(uuid.uuid4())
        now = self._clock()

        with self._lock:
            self._sessions[session_id] = _SessionRecord(
                session_id=session_id,
                filename=filename,
                file_size=file_size,
                created_at=now,
                updated_at=now,
                parallelism=max(1, parallelism),
            )
            total = len(self._sessions)

        logger.info(f"Сессия создана: {session_id}, файл={filename}, всего сессий={total}")
        return session_id

    def attach_release(self, session_id: str, release: Callable[[], object]) -> None:
        """
        Привязывает освобождение scratch ещё не запущенной задачи.

        cancel() для PENDING сессии вызывает его сразу, не дожидаясь
        фонового пула.
        """
        with self._lock:
            record = self._require(session_id)
            if record.cancel_event.is_set():
                release()
                return
            record.release = release

    def mark_running(self, session_id: str) -> bool:
        """
        PENDING -> RUNNING.

        Returns:
            bool: False если сессия уже не PENDING (например, отменена до старта)
        """
        with self._lock:
            record = self._require(session_id)
            if record.status != SessionStatus.PENDING or record.cancel_event.is_set():
                return False
            record.status = SessionStatus.RUNNING
            record.release = None
            record.updated_at = self._clock()
            return True

    def set_total_pages(self, session_id: str, total_pages: int) -> None:
        with self._lock:
            record = self._require(session_id)
            if record.status.is_terminal:
                return
            record.total_pages = total_pages
            record.updated_at = self._clock()

    def update_progress(
        self,
        session_id: str,
        last_page: int,
        total_pages: Optional[int] = None,
        page_duration_ms: Optional[int] = None,
    ) -> None:
        """
        Публикует прогресс.

        last_page монотонен: меньшее значение игнорируется.
        После терминального состояния обновления игнорируются.

        Raises:
            ValueError: last_page больше числа страниц
        """
        with self._lock:
            record = self._require(session_id)
            if record.status.is_terminal:
                return

            if total_pages is not None:
                record.total_pages = total_pages
            if record.total_pages is not None and last_page > record.total_pages:
                raise ValueError(
                    f"last_page={last_page} больше total_pages={record.total_pages}"
                )

            if page_duration_ms is not None:
                record.page_durations_ms.append(page_duration_ms)
            if last_page > record.last_page:
                record.last_page = last_page
            record.updated_at = self._clock()

    def mark_complete(self, session_id: str, outputs: dict[str, Path]) -> bool:
        """
        Терминальный переход в COMPLETE с файлами результата.

        Повторный вызов (и вызов после FAILED/CANCELLED или запроса
        отмены) ничего не меняет.

        Args:
            session_id: UUID сессии
            outputs: {"raw": путь, "cleaned": путь}

        Returns:
            bool: True если переход выполнен этим вызовом
        """
        with self._lock:
            record = self._require(session_id)
            if record.status.is_terminal or record.cancel_event.is_set():
                return False
            record.status = SessionStatus.COMPLETE
            record.outputs = dict(outputs)
            if record.total_pages is not None:
                record.last_page = record.total_pages
            record.updated_at = self._clock()

        logger.info(f"Сессия завершена: {session_id}")
        return True

    def mark_failed(self, session_id: str, error: str) -> bool:
        """
        Терминальный переход в FAILED. Повторный вызов ничего не меняет.

        Ошибка после запроса отмены не записывается: сессия станет CANCELLED.
        """
        with self._lock:
            record = self._require(session_id)
            if record.status.is_terminal or record.cancel_event.is_set():
                return False
            record.status = SessionStatus.FAILED
            record.error = error
            record.updated_at = self._clock()

        logger.warning(f"Сессия завершилась с ошибкой: {session_id}: {error}")
        return True

    def mark_cancelled(self, session_id: str) -> bool:
        """
        Завершает запрошенную отмену: RUNNING -> CANCELLED.

        Вызывается фоновой задачей после освобождения scratch.
        Без запроса отмены, для терминальной или удалённой сессии — no-op.
        """
        with self._lock:
            record = self._sessions.get(session_id)
            if (
                record is None
                or record.status.is_terminal
                or not record.cancel_event.is_set()
            ):
                return False
            record.status = SessionStatus.CANCELLED
            record.updated_at = self._clock()

        logger.info(f"Сессия остановлена после отмены: {session_id}")
        return True

    def is_cancelled(self, session_id: str) -> bool:
        """Проверка флага отмены на границе страниц (без блокировки реестра)."""
        record = self._sessions.get(session_id)
        return record is None or record.cancel_event.is_set()

    # ------------------------------------------------------------------
    # Клиентские операции
    # ------------------------------------------------------------------

    def cancel(self, session_id: str) -> bool:
        """
        Кооперативная отмена.

        PENDING сессия сразу становится CANCELLED, её scratch удаляется
        до того, как новый статус станет виден. RUNNING сессия получает
        сигнал и остановится на ближайшей границе страниц; CANCELLED она
        станет через mark_cancelled(). Повторная отмена и отмена
        терминальной сессии — no-op.

        Returns:
            bool: True если отмена выполнена этим вызовом

        Raises:
            SessionNotFoundError: неизвестный id
        """
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                raise SessionNotFoundError(session_id)
            if record.status.is_terminal or record.cancel_event.is_set():
                return False

            record.cancel_event.set()
            record.updated_at = self._clock()
            if record.status == SessionStatus.PENDING:
                if record.release is not None:
                    record.release()
                    record.release = None
                record.status = SessionStatus.CANCELLED

        logger.info(f"Сессия отменена: {session_id}")
        return True

    def get(self, session_id: str) -> Optional[SessionSnapshot]:
        """
        Снимок сессии. Никогда не ждёт OCR — читает последнее опубликованное.

        Returns:
            SessionSnapshot или None если сессия не найдена
        """
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None:
                return None
            return _snapshot(record)

    def get_output(
        self,
        session_id: str,
        variant: str = "raw",
        claim: bool = False,
    ) -> tuple[Path, SessionSnapshot]:
        """
        Путь к файлу результата.

        Если запрошен "cleaned", а очистки не было — отдаётся "raw".

        Args:
            claim: забрать результат для скачивания; после этого сессия
                для других скачиваний считается удалённой

        Raises:
            SessionNotFoundError: неизвестный id, результат уже забран
                или файл пропал с диска
            SessionNotReadyError: сессия не в COMPLETE
        """
        with self._lock:
            record = self._sessions.get(session_id)
            if record is None or record.claimed:
                raise SessionNotFoundError(session_id)
            if record.status != SessionStatus.COMPLETE:
                raise SessionNotReadyError(session_id, record.status.value)
            path = record.outputs.get(variant) or record.outputs["raw"]
            if not path.exists():
                raise SessionNotFoundError(session_id)
            if claim:
                record.claimed = True
            return path, _snapshot(record)

    def remove(self, session_id: str) -> bool:
        """
        Удаляет сессию из реестра вместе с файлами результата.

        Незавершённая сессия перед удалением получает сигнал отмены.
        """
        with self._lock:
            record = self._sessions.pop(session_id, None)
        if record is None:
            return False

        record.cancel_event.set()
        if record.release is not None:
            record.release()
        for path in record.outputs.values():
            self._scratch.remove_output(path)
        logger.info(f"Сессия удалена: {session_id}")
        return True

    def evict_stale(self, now: Optional[float] = None) -> int:
        """
        Удаляет терминальные сессии, к которым не обращались дольше retention.

        Returns:
            int: сколько сессий удалено
        """
        now = self._clock() if now is None else now
        with self._lock:
            stale = [
                sid
                for sid, record in self._sessions.items()
                if record.status.is_terminal
                and now - record.updated_at > self.retention_seconds
            ]

        removed = sum(1 for sid in stale if self.remove(sid))
        if removed:
            logger.info(f"Eviction: удалено {removed} устаревших сессий")
        return removed

    def list_sessions(self) -> list[SessionSnapshot]:
        """Снимки всех сессий, свежие первыми."""
        with self._lock:
            snapshots = [_snapshot(r) for r in self._sessions.values()]
        return sorted(snapshots, key=lambda s: s.updated_at, reverse=True)

    def statistics(self) -> dict:
        """Сводка по сессиям для мониторинга."""
        snapshots = self.list_sessions()
        by_status = {status.value: 0 for status in SessionStatus}
        for s in snapshots:
            by_status[s.status.value] += 1

        return {
            "total_sessions": len(snapshots),
            "by_status": by_status,
            "pages_processed": sum(s.last_page for s in snapshots),
            "pages_total": sum(s.total_pages or 0 for s in snapshots),
        }

    def _require(self, session_id: str) -> _SessionRecord:
        record = self._sessions.get(session_id)
        if record is None:
            raise SessionNotFoundError(session_id)
        return record


def _snapshot(record: _SessionRecord) -> SessionSnapshot:
    total = record.total_pages
    if record.status == SessionStatus.COMPLETE:
        percentage = 100
    elif total:
        percentage = round(record.last_page / total * 100)
    else:
        percentage = 0

    eta = None
    if (
        record.status == SessionStatus.RUNNING
        and total is not None
        and record.page_durations_ms
    ):
        avg = sum(record.page_durations_ms) / len(record.page_durations_ms)
        remaining = total - record.last_page
        # Страницы идут параллельно, но последняя не быстрее одной страницы
        lanes = max(1, min(record.parallelism, remaining))
        eta = round(remaining * avg / lanes)

    return SessionSnapshot(
        session_id=record.session_id,
        filename=record.filename,
        file_size=record.file_size,
        status=record.status,
        total_pages=total,
        last_page=record.last_page,
        percentage=percentage,
        has_output=record.status == SessionStatus.COMPLETE and bool(record.outputs),
        estimated_time_remaining_ms=eta,
        error=record.error,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )
