# scheduler.py

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from apscheduler.executors.pool import ThreadPoolExecutor as JobPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from loguru import logger


class ScheduledTask:
    """
    Handle to a periodic task started by TaskScheduler.schedule_at_fixed_rate.

    Each tick borrows a pool worker only while `fn` runs. A tick that comes
    due while the previous one is still running is skipped, so two runs of
    the same task never overlap.
    """

    def __init__(self, fn: Callable[[], None]):
        self._fn = fn
        self._job = None
        self._cond = threading.Condition()
        self._cancelled = False
        self._running_thread: Optional[int] = None
        self._exception: Optional[BaseException] = None

    def _tick(self) -> None:
        with self._cond:
            if self._cancelled:
                return
            self._running_thread = threading.get_ident()
        try:
            self._fn()
        except Exception as e:
            logger.error(f"Periodic task failed, no further runs: {e}")
            self._exception = e
            self.cancel()
        finally:
            with self._cond:
                self._running_thread = None
                self._cond.notify_all()

    def cancel(self) -> None:
        """Stop scheduling further runs. A run in progress is allowed to finish."""
        with self._cond:
            if self._cancelled:
                return
            self._cancelled = True
            self._cond.notify_all()
        self._remove_job()

    def _remove_job(self) -> None:
        if self._job is None:
            return
        try:
            self._job.remove()
        except JobLookupError:
            pass

    def cancelled(self) -> bool:
        return self._cancelled

    def done(self) -> bool:
        with self._cond:
            return self._cancelled and self._running_thread is None

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the task is cancelled and no run is in progress.
        Returns False on timeout. Called from the task's own run (e.g. by a
        callback inside `fn`) it returns immediately instead of deadlocking.
        """
        with self._cond:
            if self._running_thread == threading.get_ident():
                return True
            return self._cond.wait_for(
                lambda: self._cancelled and self._running_thread is None, timeout
            )

    def result(self, timeout: Optional[float] = None) -> None:
        """Join the task, re-raising whatever ended it."""
        if not self.wait(timeout):
            raise FutureTimeoutError()
        if self._exception is not None:
            raise self._exception


class TaskScheduler:
    """
    Runs background and periodic tasks on bounded thread pools.

    One-shot tasks (`submit`) run on a concurrent.futures pool. Periodic tasks
    are driven by an APScheduler background scheduler whose pool is only
    occupied while a tick executes, so far more periodic tasks than workers
    can be active at once.
    """

    def __init__(self, max_workers: int = 4, thread_name_prefix: str = "liveness"):
        if max_workers < 1:
            raise ValueError(f"Invalid max_workers [max_workers={max_workers}]")
        self.max_workers = max_workers
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix=thread_name_prefix
        )
        self._job_scheduler = BackgroundScheduler(
            executors={"default": JobPoolExecutor(max_workers)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
            timezone="UTC",
        )
        self._job_scheduler.start()
        self._periodic: List[ScheduledTask] = []
        self._lock = threading.Lock()

    def submit(self, fn: Callable, *args, **kwargs) -> Future:
        """Run `fn` once in the background."""
        return self._executor.submit(fn, *args, **kwargs)

    def schedule_at_fixed_rate(
        self, fn: Callable[[], None], interval: float, initial_delay: float = 0.0
    ) -> ScheduledTask:
        """Run `fn` every `interval` seconds, first after `initial_delay`, until cancelled."""
        if interval <= 0:
            raise ValueError(f"Invalid interval [interval={interval}]")
        if initial_delay < 0:
            raise ValueError(f"Invalid initial_delay [initial_delay={initial_delay}]")
        task = ScheduledTask(fn)
        task._job = self._job_scheduler.add_job(
            task._tick,
            "interval",
            seconds=interval,
            next_run_time=datetime.now(timezone.utc) + timedelta(seconds=initial_delay),
        )
        if task.cancelled():
            # cancelled by its own first run before the job handle was stored
            task._remove_job()
        with self._lock:
            self._periodic = [t for t in self._periodic if not t.done()]
            self._periodic.append(task)
        return task

    def shutdown(self, wait: bool = True) -> None:
        """Cancel outstanding periodic tasks and release the pools."""
        with self._lock:
            periodic, self._periodic = self._periodic, []
        for task in periodic:
            task.cancel()
        self._job_scheduler.shutdown(wait=wait)
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> "TaskScheduler":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
