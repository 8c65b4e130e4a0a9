"""
Best-effort delivery of audit writes.

Request handlers submit small write jobs (an audit row, a security event, a
session touch) and return immediately. A single daemon thread drains the
bounded queue and runs each job in its own database session. Nothing here
raises into the request path: a full queue drops the job and a failing job
is rolled back and logged.
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass
from typing import Callable, Optional

from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

WriteJob = Callable[[Session], None]


@dataclass
class _QueuedJob:
    label: str
    job: WriteJob


_STOP = object()


class AuditChannel:
    def __init__(self, session_factory: sessionmaker, max_size: int = 1000) -> None:
        self._session_factory = session_factory
        self._queue: "queue.Queue" = queue.Queue(maxsize=max_size)
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.dropped = 0

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._thread = threading.Thread(
                target=self._run, name="audit-channel", daemon=True)
            self._thread.start()
        logger.info("Audit channel worker started")

    def stop(self, timeout: float = 5.0) -> None:
        with self._lock:
            thread = self._thread
            if thread is None:
                return
            try:
                self._queue.put(_STOP, timeout=timeout)
            except queue.Full:
                logger.warning("Audit channel queue full at shutdown; pending writes are lost")
            thread.join(timeout)
            self._thread = None
        logger.info("Audit channel worker stopped")

    def submit(self, label: str, job: WriteJob) -> bool:
        """Queue a write job without blocking. Returns False if it was dropped."""
        try:
            self._queue.put_nowait(_QueuedJob(label, job))
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Audit channel full; dropping {label} (dropped so far: {self.dropped})")
            return False

    def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every queued job has been delivered.

        Without a running worker the jobs are delivered on the calling thread.
        """
        if self.running:
            if timeout is None:
                self._queue.join()
                return
            done = threading.Event()

            def _wait():
                self._queue.join()
                done.set()

            threading.Thread(target=_wait, daemon=True).start()
            done.wait(timeout)
            return

        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            try:
                if item is not _STOP:
                    self._deliver(item)
            finally:
                self._queue.task_done()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                self._deliver(item)
            finally:
                self._queue.task_done()

    def _deliver(self, item: _QueuedJob) -> None:
        db = self._session_factory()
        try:
            item.job(db)
            db.commit()
        except Exception:
            db.rollback()
            logger.exception(f"Failed to write {item.label}")
        finally:
            db.close()
