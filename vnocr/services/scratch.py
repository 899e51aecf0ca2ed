"""
Менеджер временных ресурсов.

Каждая задача получает собственную scratch-директорию:
    <temp_dir>/jobs/<job_id>/
        source.pdf   — загруженный PDF
        pages/       — изображения страниц (живут только пока страница в OCR)

Результаты streaming-сессий хранятся отдельно, в <temp_dir>/outputs/,
и принадлежат реестру сессий: scratch задачи освобождается сразу
по её завершению, а результат — только после скачивания или eviction.

ScratchSpace — контекстный менеджер: release() вызывается на любом
выходе из блока with, повторный вызов ничего не делает.
"""

import logging
import shutil
import threading
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


class ScratchSpace:
    """
    Изолированная временная директория одной задачи.

    Attributes:
        job_id: идентификатор задачи
        path: корень директории
    """

    def __init__(self, manager: "ScratchManager", job_id: str, path: Path):
        self._manager = manager
        self._lock = threading.Lock()
        self._released = False
        self.job_id = job_id
        self.path = path

    @property
    def source_path(self) -> Path:
        return self.path / "source.pdf"

    @property
    def pages_dir(self) -> Path:
        return self.path / "pages"

    @property
    def released(self) -> bool:
        return self._released

    def write_source(self, pdf_bytes: bytes) -> Path:
        """Сохраняет загруженный PDF в scratch и возвращает путь к нему."""
        self.source_path.write_bytes(pdf_bytes)
        return self.source_path

    def release(self) -> bool:
        """
        Удаляет директорию со всем содержимым.

        Идемпотентна: повторный вызов и вызов после частичного сбоя безопасны.

        Returns:
            bool: True если этот вызов действительно освободил ресурсы
        """
        with self._lock:
            if self._released:
                return False
            self._released = True

        shutil.rmtree(self.path, ignore_errors=True)
        self._manager._forget(self.job_id)
        logger.info(f"Scratch освобождён: job_id={self.job_id}")
        return True

    def __enter__(self) -> "ScratchSpace":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


class ScratchManager:
    """
    Выделяет scratch-директории задачам и следит за активными.

    Две задачи никогда не делят путь: директория создаётся
    с exist_ok=False, повторный job_id приводит к ошибке.
    """

    def __init__(self, root: Path):
        self.root = Path(root)
        self.jobs_dir = self.root / "jobs"
        self.outputs_dir = self.root / "outputs"
        self._lock = threading.Lock()
        self._active: dict[str, ScratchSpace] = {}

    def acquire(self, job_id: str) -> ScratchSpace:
        """
        Создаёт scratch-директорию для задачи.

        Args:
            job_id: уникальный идентификатор задачи

        Returns:
            ScratchSpace: хэндл, который нужно освободить через release()
                или использовать как контекстный менеджер

        Raises:
            FileExistsError: если директория для job_id уже существует
        """
        path = self.jobs_dir / job_id
        self.jobs_dir.mkdir(parents=True, exist_ok=True)
        path.mkdir(exist_ok=False)

        space = ScratchSpace(self, job_id, path)
        space.pages_dir.mkdir()

        with self._lock:
            self._active[job_id] = space

        logger.info(f"Scratch выделен: job_id={job_id}, path={path}")
        return space

    def output_path(self, session_id: str, variant: str = "raw") -> Path:
        """Путь к файлу результата сессии (директория создаётся при необходимости)."""
        self.outputs_dir.mkdir(parents=True, exist_ok=True)
        suffix = "" if variant == "raw" else f".{variant}"
        return self.outputs_dir / f"{session_id}{suffix}.txt"

    def remove_output(self, path: Optional[Path]) -> None:
        """Удаляет файл результата; отсутствие файла не ошибка."""
        if path is None:
            return
        path.unlink(missing_ok=True)

    def active_jobs(self) -> list[str]:
        with self._lock:
            return list(self._active)

    def _forget(self, job_id: str) -> None:
        with self._lock:
            self._active.pop(job_id, None)
