#!/usr/bin/env python3
"""
Signals - Minimal observer registration used to publish scanner and ripper events
"""

import logging
import threading
from typing import Any, Callable, List


class Signal:
    """A named event observers can connect callbacks to"""

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(__name__)
        self._callbacks: List[Callable[..., Any]] = []
        self._lock = threading.Lock()

    def connect(self, callback: Callable[..., Any]) -> None:
        with self._lock:
            self._callbacks.append(callback)

    def disconnect(self, callback: Callable[..., Any]) -> None:
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    def emit(self, *args: Any) -> None:
        """Call every connected observer; an observer failure never reaches the emitter"""
        with self._lock:
            callbacks = list(self._callbacks)

        for callback in callbacks:
            try:
                callback(*args)
            except Exception as e:
                self.logger.error(f"Observer of '{self.name}' failed: {e}")
