from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List

from models import JobEvent


logger = logging.getLogger(__name__)

Listener = Callable[[JobEvent], None]


class EventBus:
    """Per-job observer lists.

    A terminal event (``complete`` or ``error``) is delivered once, after which
    the job's observers are dropped and further emits are ignored. Subscribers
    arriving later get the stored terminal event straight away.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: Dict[str, List[Listener]] = {}
        self._terminal: Dict[str, JobEvent] = {}

    def subscribe(self, job_id: str, listener: Listener) -> Callable[[], None]:
        with self._lock:
            final = self._terminal.get(job_id)
            if final is None:
                self._listeners.setdefault(job_id, []).append(listener)

        if final is not None:
            self._deliver(listener, final)
            return lambda: None

        def _unsubscribe() -> None:
            with self._lock:
                current = self._listeners.get(job_id)
                if not current:
                    return
                try:
                    current.remove(listener)
                except ValueError:
                    return
                if not current:
                    self._listeners.pop(job_id, None)

        return _unsubscribe

    def emit(self, event: JobEvent) -> bool:
        with self._lock:
            if event.job_id in self._terminal:
                return False
            snapshot = list(self._listeners.get(event.job_id, ()))
            if event.terminal:
                self._terminal[event.job_id] = event
                self._listeners.pop(event.job_id, None)

        for listener in snapshot:
            self._deliver(listener, event)
        return True

    def _deliver(self, listener: Listener, event: JobEvent) -> None:
        try:
            listener(event)
        except Exception:
            logger.exception("Listener failed for %s event on job %s", event.type, event.job_id)

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._listeners.get(job_id, ()))

    def is_terminal(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._terminal

    def discard(self, job_id: str) -> None:
        with self._lock:
            self._listeners.pop(job_id, None)
            self._terminal.pop(job_id, None)
