#!/usr/bin/env python3
"""
Track Ripper - Extracts one track's raw audio into a WAV file
"""

import os
import struct
import logging
from pathlib import Path
from typing import Callable, Optional, BinaryIO

from cancellation import CancellationToken
from media_pipeline import MediaPipeline, PipelineError
from models import TrackInfo, SAMPLE_RATE, CHANNELS, BITS_PER_SAMPLE, BYTES_PER_SECOND

WAV_HEADER_SIZE = 44
WAVE_FORMAT_PCM = 1

# (track_number, start, end, current) byte positions
ProgressCallback = Callable[[int, int, int, int], None]


def wav_header(data_bytes: int) -> bytes:
    """Canonical 44 byte PCM WAV header for CD audio"""
    block_align = CHANNELS * BITS_PER_SAMPLE // 8
    return struct.pack(
        '<4sI4s4sIHHIIHH4sI',
        b'RIFF', 36 + data_bytes, b'WAVE',
        b'fmt ', 16, WAVE_FORMAT_PCM, CHANNELS, SAMPLE_RATE,
        BYTES_PER_SECOND, block_align, BITS_PER_SAMPLE,
        b'data', data_bytes
    )


def patch_wav_sizes(stream: BinaryIO, data_bytes: int) -> None:
    """Rewrite the RIFF and data chunk sizes once the real size is known"""
    stream.seek(4)
    stream.write(struct.pack('<I', 36 + data_bytes))
    stream.seek(40)
    stream.write(struct.pack('<I', data_bytes))
    stream.seek(0, os.SEEK_END)


class TrackRipper:
    """Reads one track at a time from a media pipeline session it has been handed"""

    def __init__(self, pipeline: MediaPipeline, cancel_token: CancellationToken,
                 progress_callback: Optional[ProgressCallback] = None,
                 report_interval: int = BYTES_PER_SECOND):
        self.logger = logging.getLogger(__name__)
        self.pipeline = pipeline
        self.cancel_token = cancel_token
        self.progress_callback = progress_callback
        self.report_interval = max(1, report_interval)

    def rip(self, track: TrackInfo, destination: Path) -> bool:
        """Rip a track to destination.

        Returns False if the rip failed or was cancelled; the partial file is
        removed in both cases.
        """
        if self.cancel_token.cancelled:
            return False

        self.logger.info(f"Ripping track {track.number} to {destination}")
        try:
            success = self._rip_to_file(track, destination)
        except (PipelineError, OSError) as e:
            self.logger.error(f"Failed to rip track {track.number}: {e}")
            success = False

        if not success:
            self._remove_partial(destination)
        return success

    def _rip_to_file(self, track: TrackInfo, destination: Path) -> bool:
        expected = track.expected_bytes
        end = expected
        written = 0
        next_report = self.report_interval

        self.pipeline.seek_to_track(track.number)
        with open(destination, 'wb') as stream:
            stream.write(wav_header(expected))
            self._report(track.number, end, written)

            while True:
                if self.cancel_token.cancelled:
                    self.logger.info(f"Ripping of track {track.number} cancelled")
                    return False

                data = self.pipeline.read_samples()
                if not data:
                    break
                stream.write(data)
                written += len(data)
                end = max(end, written)

                if written >= next_report:
                    self._report(track.number, end, written)
                    next_report = written + self.report_interval

            if written != expected:
                self.logger.debug(f"Track {track.number}: expected {expected} bytes, read {written}")
                patch_wav_sizes(stream, written)

        self._report(track.number, written, written)
        self.logger.info(f"Ripped track {track.number} ({written} bytes)")
        return True

    def _report(self, track_number: int, end: int, current: int) -> None:
        if self.progress_callback is not None:
            self.progress_callback(track_number, 0, end, current)

    def _remove_partial(self, destination: Path) -> None:
        try:
            if destination.exists():
                destination.unlink()
        except OSError as e:
            self.logger.warning(f"Could not remove partial rip {destination}: {e}")
