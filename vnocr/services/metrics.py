"""
Счётчики сервиса: запросы, ошибки, обработанные страницы.

Один экземпляр создаётся при старте приложения и передаётся
в пайплайн; отдаётся наружу через /health и /api/sessions.
"""

import threading
import time
from collections import Counter


class ServiceMetrics:
    """Потокобезопасные счётчики запросов и ошибок по видам."""

    def __init__(self):
        self._lock = threading.Lock()
        self._requests: Counter = Counter()
        self._errors: Counter = Counter()
        self._pages = 0
        self._started_at = time.time()

    def record_request(self, kind: str) -> None:
        with self._lock:
            self._requests[kind] += 1

    def record_error(self, kind: str) -> None:
        with self._lock:
            self._errors[kind] += 1

    def record_pages(self, count: int) -> None:
        with self._lock:
            self._pages += count

    def snapshot(self) -> dict:
        with self._lock:
            return {
                "requests": dict(self._requests),
                "errors": dict(self._errors),
                "requests_total": sum(self._requests.values()),
                "errors_total": sum(self._errors.values()),
                "pages_processed": self._pages,
                "uptime_seconds": int(time.time() - self._started_at),
            }
