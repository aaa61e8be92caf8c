"""Time source, cancellation and periodic background tasks.

Loops never call ``time.sleep`` directly; they go through a ``Clock`` so
tests can substitute a clock that advances instantly.
"""
from __future__ import annotations

import logging
import threading
import time
from datetime import datetime
from typing import Callable, Optional

from .utils import utc_now


class CancellationToken:
    """Cooperative stop flag shared between a loop and whoever may stop it."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, seconds: float) -> bool:
        """Block up to ``seconds``; return True when cancelled meanwhile."""
        return self._event.wait(max(seconds, 0.0))


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError

    def monotonic(self) -> float:
        raise NotImplementedError

    def sleep(self, seconds: float, token: Optional[CancellationToken] = None) -> bool:
        """Sleep, returning True if the token was cancelled before the time elapsed."""
        raise NotImplementedError


class SystemClock(Clock):
    def now(self) -> datetime:
        return utc_now()

    def monotonic(self) -> float:
        return time.monotonic()

    def sleep(self, seconds: float, token: Optional[CancellationToken] = None) -> bool:
        if token is not None:
            return token.wait(seconds)
        if seconds > 0:
            time.sleep(seconds)
        return False


class PeriodicTask:
    """Run ``action`` every ``interval`` seconds on a daemon thread.

    Exceptions raised by ``action`` are handed to ``on_error``; the task keeps
    running unless ``on_error`` cancels it.
    """

    def __init__(
        self,
        interval: float,
        action: Callable[[], None],
        *,
        name: str = "periodic-task",
        on_error: Optional[Callable[[BaseException], None]] = None,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.interval = interval
        self.action = action
        self.name = name
        self.on_error = on_error
        self._token = CancellationToken()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "PeriodicTask":
        if self._thread is not None:
            raise RuntimeError(f"{self.name} already started")
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()
        return self

    def _run(self) -> None:
        while not self._token.wait(self.interval):
            try:
                self.action()
            except Exception as exc:  # pylint: disable=broad-except
                logging.warning("%s failed: %s", self.name, exc)
                if self.on_error is not None:
                    self.on_error(exc)

    def stop(self, timeout: float = 5.0) -> None:
        self._token.cancel()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def __enter__(self) -> "PeriodicTask":
        return self.start()

    def __exit__(self, *exc) -> None:
        self.stop()
