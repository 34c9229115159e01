"""Shared test configuration and fixtures."""

import logging
import threading
from pathlib import Path
from typing import Dict, Any, List, Optional, Tuple

import pytest

from media_pipeline import MediaPipeline, PipelineQueryError, DeviceReadError, TocEvent, TagEvent
from models import NSEC_PER_SEC


class FakePipeline(MediaPipeline):
    """In-memory media pipeline.

    Queues a TOC event (if given) and the tags of track 1 on open; seeking
    queues the tags of the target track. read_samples() serves the bytes in
    audio for the current track in chunk_size pieces.
    """

    def __init__(self, num_tracks: int = 3, toc: Optional[List[Tuple[int, int]]] = None,
                 tags: Optional[Dict[int, Dict[str, Any]]] = None, open_error: Optional[Exception] = None,
                 count_error: Optional[Exception] = None, audio: Optional[Dict[int, bytes]] = None,
                 fail_tracks=(), chunk_size: int = 4096, media_change: bool = False):
        self.num_tracks = num_tracks
        self.toc = toc
        self.tags = tags
        self.open_error = open_error
        self.count_error = count_error
        self.audio = audio or {}
        self.fail_tracks = set(fail_tracks)
        self.chunk_size = chunk_size
        self.media_change = media_change

        self.events: List[Any] = []
        self.seeks: List[int] = []
        self.open_calls: List[bool] = []
        self.opened = False
        self.closed = False
        self._position = 1
        self._offset = 0

    def open(self, read_tags: bool = True) -> None:
        self.open_calls.append(read_tags)
        if self.open_error is not None:
            raise self.open_error
        self.opened = True
        if not read_tags:
            return
        if self.toc is not None:
            self.events.append(TocEvent(entries=list(self.toc)))
        self._queue_tags(1)

    def _queue_tags(self, track_number: int) -> None:
        if self.tags is not None and track_number in self.tags:
            self.events.append(TagEvent(fields=dict(self.tags[track_number])))

    def track_count(self) -> int:
        if self.count_error is not None:
            raise self.count_error
        if not self.opened:
            raise PipelineQueryError("Device is not open")
        return self.num_tracks

    def wait_event(self, timeout: float):
        return self.events.pop(0) if self.events else None

    def position(self) -> int:
        return self._position

    def seek_to_track(self, track_number: int) -> None:
        self.seeks.append(track_number)
        self._position = track_number
        self._offset = 0
        self._queue_tags(track_number)

    def read_samples(self) -> bytes:
        if self._position in self.fail_tracks and self._offset > 0:
            raise DeviceReadError(f"Read error on track {self._position}")
        data = self.audio.get(self._position, b'')[self._offset:self._offset + self.chunk_size]
        self._offset += len(data)
        return data

    def close(self) -> None:
        self.closed = True
        self.opened = False

    def media_changed(self) -> bool:
        return self.media_change


class FakeTranscoder:
    """Completes jobs synchronously inside submit(), writing the output on success"""

    def __init__(self, fail_outputs=(), on_submit=None, submit_error: Optional[Exception] = None):
        self.fail_outputs = {Path(p) for p in fail_outputs}
        self.on_submit = on_submit
        self.submit_error = submit_error
        self.submitted: List[Tuple[Path, Path]] = []
        self.cancelled: List[int] = []
        self._lock = threading.Lock()
        self._next_job_id = 1

    def submit(self, input_path, output_path, preset, on_complete) -> int:
        if self.submit_error is not None:
            raise self.submit_error
        with self._lock:
            job_id = self._next_job_id
            self._next_job_id += 1
            self.submitted.append((Path(input_path), Path(output_path)))

        if self.on_submit is not None:
            self.on_submit(job_id)

        success = Path(output_path) not in self.fail_outputs
        if success:
            Path(output_path).parent.mkdir(parents=True, exist_ok=True)
            Path(output_path).write_bytes(b'encoded')
        on_complete(job_id, Path(input_path), Path(output_path), success)
        return job_id

    def progress(self, job_id: int) -> float:
        return 1.0

    def cancel(self, job_id: int) -> None:
        self.cancelled.append(job_id)

    def cancel_all(self) -> None:
        pass

    def shutdown(self, wait: bool = True) -> None:
        pass


class InFlightTranscoder:
    """Keeps jobs running until the test completes them.

    progress() reports the fraction set in progress_values (or
    default_progress), and submitted is set whenever a job arrives.
    """

    def __init__(self, default_progress: float = 0.0, on_submit=None):
        self.default_progress = default_progress
        self.on_submit = on_submit
        self.progress_values: Dict[int, float] = {}
        self.cancelled: List[int] = []
        self.submitted = threading.Event()
        self._jobs: Dict[int, Tuple[Path, Path, Any]] = {}
        self._lock = threading.Lock()
        self._next_job_id = 1

    def submit(self, input_path, output_path, preset, on_complete) -> int:
        with self._lock:
            job_id = self._next_job_id
            self._next_job_id += 1
            self._jobs[job_id] = (Path(input_path), Path(output_path), on_complete)
        self.submitted.set()
        if self.on_submit is not None:
            self.on_submit(job_id)
        return job_id

    def in_flight(self) -> List[int]:
        with self._lock:
            return sorted(self._jobs)

    def complete(self, job_id: int, success: bool = True) -> None:
        with self._lock:
            input_path, output_path, on_complete = self._jobs.pop(job_id)
        if success:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output_path.write_bytes(b'encoded')
        on_complete(job_id, input_path, output_path, success)

    def progress(self, job_id: int) -> float:
        return self.progress_values.get(job_id, self.default_progress)

    def cancel(self, job_id: int) -> None:
        self.cancelled.append(job_id)

    def cancel_all(self) -> None:
        pass

    def shutdown(self, wait: bool = True) -> None:
        pass


def toc_from_seconds(*lengths: int) -> List[Tuple[int, int]]:
    """Contiguous (start, stop) nanosecond TOC entries for tracks of the given lengths"""
    entries = []
    start = 0
    for seconds in lengths:
        stop = start + seconds * NSEC_PER_SEC
        entries.append((start, stop))
        start = stop
    return entries


@pytest.fixture
def make_pipeline():
    """Factory for fake pipelines"""
    return FakePipeline


@pytest.fixture
def test_config(tmp_path):
    """Configuration with fast polling and a private temporary directory"""
    temp_dir = tmp_path / "tmp"
    temp_dir.mkdir()
    return {
        'cd_drive': {
            'device': '/dev/fake-cdrom',
            'offset': 0,
            'read_cd_text': False,
            'scan_timeout': 1,
            'open_timeout': 1,
        },
        'output': {
            'directory': str(tmp_path / "output"),
            'format': 'flac',
            'compression_level': 5,
        },
        'ripping': {
            'paranoia_mode': 'full',
            'max_transcode_jobs': 2,
            'progress_poll_interval_ms': 10,
            'temp_directory': str(temp_dir),
        },
        'metadata': {
            'use_musicbrainz': True,
            'musicbrainz_server': 'musicbrainz.org',
            'user_agent': 'Rip-and-Tear-Tests',
            'contact_email': 'tests@example.com',
        },
        'logging': {
            'level': 'DEBUG',
            'max_log_files': 1,
            'max_log_size_mb': 1,
        },
    }


@pytest.fixture(scope="function", autouse=True)
def reset_logging():
    """Reset logging configuration after each test."""
    yield
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)
    root_logger.setLevel(logging.WARNING)
