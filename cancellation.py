#!/usr/bin/env python3
"""
Cancellation - Cooperative cancellation shared by the scanner, ripper and transcoder
"""

import logging
import threading


class CancellationToken:
    """Set-once flag checked at every blocking or looping boundary"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._event = threading.Event()

    def cancel(self) -> bool:
        """Request cancellation. Returns True only for the call that set the flag."""
        if self._event.is_set():
            return False
        self._event.set()
        self.logger.info("Cancellation requested")
        return True

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        """Sleep up to timeout seconds, waking early if cancelled"""
        return self._event.wait(timeout)
