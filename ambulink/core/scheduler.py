import threading
from typing import Any, Callable, List, Set

from ambulink.core.logger import get_logger

logger = get_logger(__name__)


class TimerScheduler:
    """One-shot delayed calls on daemon threading.Timer threads."""

    def __init__(self):
        self._lock = threading.Lock()
        self._timers: Set[threading.Timer] = set()

    def call_later(self, delay_seconds: float, fn: Callable[..., Any], *args: Any) -> threading.Timer:
        timer = threading.Timer(max(0.0, delay_seconds), self._run, args=(fn, args))
        timer.daemon = True
        with self._lock:
            self._timers.add(timer)
        timer.start()
        return timer

    def _run(self, fn: Callable[..., Any], args: tuple) -> None:
        try:
            fn(*args)
        except Exception:
            logger.exception("scheduled call %s failed", getattr(fn, "__name__", fn))
        finally:
            with self._lock:
                self._timers.discard(threading.current_thread())

    def shutdown(self) -> None:
        with self._lock:
            timers, self._timers = list(self._timers), set()
        for timer in timers:
            timer.cancel()


class PeriodicSweeper:
    """Runs each job every `interval_seconds` on one daemon thread until stopped."""

    def __init__(self, interval_seconds: float, jobs: List[Callable[[], Any]]):
        self.interval_seconds = interval_seconds
        self.jobs = list(jobs)
        self._stop = threading.Event()
        self._thread = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="ambulink-sweeper", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)

    def run_once(self) -> None:
        for job in self.jobs:
            try:
                job()
            except Exception:
                logger.exception("sweep job %s failed", getattr(job, "__name__", job))

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()
