"""
Single-consumer work queue that serializes every call into the database.

Jobs run one at a time, in submission order, on a dedicated thread. Each
submission returns a `concurrent.futures.Future` that carries the job's result
or exception back to the caller.
"""

import queue
import threading
from concurrent.futures import CancelledError, Future
from typing import Any, Callable, Optional

from simindex.errors import ServiceUnavailableError

_STOP = object()


class SerialWorker:
    """A single background thread draining a FIFO of jobs."""

    def __init__(self, name: str = "simindex-worker"):
        self._queue: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    @property
    def closed(self) -> bool:
        return self._closed

    def in_worker(self) -> bool:
        return threading.current_thread() is self._thread

    def submit(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future:
        future: Future = Future()
        with self._lock:
            if self._closed:
                raise ServiceUnavailableError()
            self._queue.put((future, fn, args, kwargs))
        return future

    def call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Submit a job and block until it completes."""
        if self.in_worker():
            # already serialized; queueing here would deadlock
            return fn(*args, **kwargs)
        future = self.submit(fn, *args, **kwargs)
        try:
            return future.result()
        except CancelledError as e:
            raise ServiceUnavailableError() from e

    def shutdown(self, final_job: Optional[Callable[[], Any]] = None) -> None:
        """
        Stop accepting jobs and tear the worker down.

        The job currently running finishes. Jobs still queued are cancelled, so
        their callers get ServiceUnavailableError. `final_job` runs last, on
        the worker thread.
        """
        final: Future = Future()
        with self._lock:
            if self._closed:
                return
            self._closed = True

            while True:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                if item is not _STOP:
                    item[0].cancel()

            if final_job is not None:
                self._queue.put((final, final_job, (), {}))
            self._queue.put(_STOP)

        if not self.in_worker():
            self._thread.join()
            if final_job is not None:
                final.result()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                break

            future, fn, args, kwargs = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                result = fn(*args, **kwargs)
            except BaseException as e:
                future.set_exception(e)
            else:
                future.set_result(result)
