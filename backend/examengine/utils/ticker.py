"""Periodic callback on a daemon thread."""

from __future__ import annotations

import json
import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger("examengine.timer")


class Ticker:
    """Call `callback` every `interval` seconds until cancelled.

    `cancel()` may be called from inside the callback; in that case the loop
    exits after the callback returns.
    """
    def __init__(self, interval: float, callback: Callable[[], None], name: str = "exam-ticker"):
        self._interval = interval
        self._callback = callback
        self._name = name
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._loop, name=self._name, daemon=True)
        self._thread.start()

    def cancel(self, timeout: Optional[float] = None) -> None:
        """Stop the loop; with `timeout` also wait for the thread to finish."""
        self._stop.set()
        thread = self._thread
        if timeout is not None and thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._callback()
            except Exception:
                logger.exception("tick_failed %s", json.dumps({"ticker": self._name}, ensure_ascii=True))
