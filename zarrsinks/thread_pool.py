"""A fixed-size pool of worker threads consuming a FIFO job queue."""

from __future__ import annotations

import os
import threading
from collections import deque
from collections.abc import Callable

Job = Callable[[], object]
ErrorHandler = Callable[[str], object]


class ThreadPool:
    """Run submitted jobs on worker threads.

    A job is a callable taking no arguments. A job fails by raising; the
    error handler is then called with the exception's message.
    """

    def __init__(self, n_threads: int, error_handler: ErrorHandler) -> None:
        max_threads = max(os.cpu_count() or 1, 1)
        count = min(max(n_threads, 1), max_threads)

        self._error_handler = error_handler
        self._jobs: deque[Job] = deque()
        self._cv = threading.Condition()
        self._accepting = True
        self._threads = [
            threading.Thread(target=self._process_tasks, daemon=True)
            for _ in range(count)
        ]
        for thread in self._threads:
            thread.start()

    @property
    def n_threads(self) -> int:
        """Number of worker threads."""
        return len(self._threads)

    def push_job(self, job: Job) -> None:
        """Queue ``job``; raise RuntimeError if the pool has been stopped."""
        with self._cv:
            if not self._accepting:
                raise RuntimeError("Thread pool is not accepting jobs.")
            self._jobs.append(job)
            self._cv.notify()

    def await_stop(self) -> None:
        """Stop accepting jobs, run the queued ones, then join the workers."""
        with self._cv:
            self._accepting = False
            self._cv.notify_all()

        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current and thread.is_alive():
                thread.join()

    def __enter__(self) -> ThreadPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.await_stop()

    def _should_stop(self) -> bool:
        return not self._accepting and not self._jobs

    def _process_tasks(self) -> None:
        while True:
            with self._cv:
                self._cv.wait_for(lambda: self._should_stop() or bool(self._jobs))
                if self._should_stop():
                    return
                job = self._jobs.popleft()

            try:
                job()
            except Exception as exc:  # noqa: BLE001 - reported to the handler
                self._error_handler(str(exc))