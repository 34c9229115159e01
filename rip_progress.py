#!/usr/bin/env python3
"""
Rip Progress - Shared progress state for the ripping and transcoding phases
"""

import logging
import threading
from typing import Dict, Any, List, Optional, Tuple

from signals import Signal

PROGRESS_MIN = 0
PROGRESS_MAX = 100


class RippingProgress:
    """Per-track fractions and completion counters, guarded by one lock.

    Each track contributes two halves: ripping and transcoding. Fractions are
    clamped to [0, 1] and never lowered, so the aggregate cannot go backwards.
    """

    def __init__(self, num_tracks: int):
        self.lock = threading.Lock()
        self.num_tracks = num_tracks
        self.current_progress = 0
        self.finished_success = 0
        self.finished_failed = 0
        self.per_track_ripping_progress: List[float] = [0.0] * num_tracks
        self.per_track_transcoding_progress: List[float] = [0.0] * num_tracks

    def _aggregate(self) -> float:
        if self.num_tracks == 0:
            return float(PROGRESS_MAX)
        total = sum(self.per_track_ripping_progress) + sum(self.per_track_transcoding_progress)
        return PROGRESS_MAX * total / (2 * self.num_tracks)

    def _set(self, fractions: List[float], index: int, fraction: float) -> Optional[int]:
        """Caller holds the lock. Returns the new rounded progress if it increased."""
        if not 0 <= index < self.num_tracks:
            return None
        fraction = min(1.0, max(0.0, fraction))
        if fraction <= fractions[index]:
            return None
        fractions[index] = fraction

        rounded = int(round(self._aggregate()))
        if rounded > self.current_progress:
            self.current_progress = min(PROGRESS_MAX, rounded)
            return self.current_progress
        return None

    def set_ripping(self, index: int, fraction: float) -> Optional[int]:
        with self.lock:
            return self._set(self.per_track_ripping_progress, index, fraction)

    def set_transcoding(self, index: int, fraction: float) -> Optional[int]:
        with self.lock:
            return self._set(self.per_track_transcoding_progress, index, fraction)

    def record_result(self, success: bool) -> Tuple[int, int]:
        with self.lock:
            if success:
                self.finished_success += 1
            else:
                self.finished_failed += 1
            return self.finished_success, self.finished_failed

    def snapshot(self) -> Dict[str, Any]:
        with self.lock:
            return {
                'progress': self.current_progress,
                'finished_success': self.finished_success,
                'finished_failed': self.finished_failed,
                'ripping': list(self.per_track_ripping_progress),
                'transcoding': list(self.per_track_transcoding_progress),
            }


class ProgressAggregator:
    """Turns per-track fraction updates into progress signals"""

    def __init__(self, num_tracks: int = 0):
        self.logger = logging.getLogger(__name__)
        self.progress_interval = Signal('progress_interval')
        self.progress = Signal('progress')
        self.state = RippingProgress(num_tracks)
        # Orders emissions without holding the state lock during callbacks
        self._emit_lock = threading.RLock()
        self._last_emitted = -1

    def setup_progress_interval(self, num_tracks: int) -> None:
        """Reset state for a new run and announce the 0..100 interval"""
        self.state = RippingProgress(num_tracks)
        with self._emit_lock:
            self._last_emitted = PROGRESS_MIN
        self.progress_interval.emit(PROGRESS_MIN, PROGRESS_MAX)
        self.progress.emit(PROGRESS_MIN)

    def update_ripping_progress(self, index: int, job_start: int, job_end: int, job_current: int) -> None:
        """Record position based ripping progress for the track at index"""
        span = job_end - job_start
        if span <= 0:
            fraction = 1.0 if job_current > job_start else 0.0
        else:
            fraction = (job_current - job_start) / span
        self._publish(self.state.set_ripping(index, fraction))

    def update_transcoding_progress(self, index: int, fraction: float) -> None:
        self._publish(self.state.set_transcoding(index, fraction))

    def complete_track(self, index: int) -> None:
        """Mark both phases of a track done, whatever its outcome"""
        self._publish(self.state.set_ripping(index, 1.0))
        self._publish(self.state.set_transcoding(index, 1.0))

    def record_result(self, success: bool) -> Tuple[int, int]:
        return self.state.record_result(success)

    @property
    def current_progress(self) -> int:
        with self.state.lock:
            return self.state.current_progress

    def _publish(self, value: Optional[int]) -> None:
        if value is None:
            return
        with self._emit_lock:
            latest = self.current_progress
            if latest <= self._last_emitted:
                return
            self._last_emitted = latest
            self.progress.emit(latest)
