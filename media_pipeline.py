#!/usr/bin/env python3
"""
Media Pipeline - Access to the audio CD for scanning and raw extraction
Wraps python-discid for the table of contents and disc ID, cdrdao for CD-Text
and cd-paranoia for reading raw audio samples
"""

import os
import re
import queue
import logging
import tempfile
import threading
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Tuple, Union

import discid

from models import NSEC_PER_SEC

# Tag fields carried by TagEvent
TAG_TITLE = 'title'
TAG_ARTIST = 'artist'
TAG_ALBUM = 'album'
TAG_ALBUM_ARTIST = 'album-artist'
TAG_GENRE = 'genre'
TAG_DURATION = 'duration'
TAG_TRACK_NUMBER = 'track-number'
TAG_ISRC = 'isrc'
TAG_MUSICBRAINZ_DISCID = 'musicbrainz-discid'

SECTORS_PER_SECOND = 75
BYTES_PER_SECTOR = 2352
LEAD_IN_SECTORS = 150


class PipelineError(Exception):
    """Base class for media pipeline failures"""


class DeviceUnavailableError(PipelineError):
    """The device could not be opened or holds no readable audio disc"""


class DeviceBusyError(DeviceUnavailableError):
    """Another component currently owns the device"""


class PipelineQueryError(PipelineError):
    """The device was opened but could not answer a query"""


class DeviceReadError(PipelineError):
    """Reading audio samples from the device failed"""


@dataclass
class TocEvent:
    """Table of contents: one (start, stop) pair in nanoseconds per track, in track order"""
    entries: List[Tuple[int, int]]


@dataclass
class TagEvent:
    """Key/value tags for one track, usually including TAG_TRACK_NUMBER"""
    fields: Dict[str, Any] = field(default_factory=dict)


PipelineEvent = Union[TocEvent, TagEvent]


def sectors_to_ns(sectors: int) -> int:
    """Convert CD sectors (1/75 s) to nanoseconds"""
    return sectors * NSEC_PER_SEC // SECTORS_PER_SECOND


class MediaPipeline(ABC):
    """One exclusive session on a disc device.

    A session is owned by exactly one component at a time: the disc scanner
    while scanning, then the track ripper while extracting. Use it as a
    context manager or pair open() with close().
    """

    @abstractmethod
    def open(self, read_tags: bool = True) -> None:
        """Take ownership of the device. Raises DeviceUnavailableError.

        With read_tags False the session only answers TOC queries: no
        CD-Text is read and no TOC or tag events are queued.
        """

    @abstractmethod
    def track_count(self) -> int:
        """Number of audio tracks. Raises PipelineQueryError."""

    @abstractmethod
    def wait_event(self, timeout: float) -> Optional[PipelineEvent]:
        """Next TOC or tag event, or None if nothing arrived within timeout seconds"""

    @abstractmethod
    def position(self) -> int:
        """Track number (1-based) the pipeline is currently positioned on"""

    @abstractmethod
    def seek_to_track(self, track_number: int) -> None:
        """Move to the start of a track; solicits a tag event for it"""

    @abstractmethod
    def read_samples(self) -> bytes:
        """Next chunk of raw interleaved samples of the current track, b'' at its end"""

    @abstractmethod
    def close(self) -> None:
        """Release the device"""

    def media_changed(self) -> bool:
        """True if the disc differs from the one seen by the previous call"""
        return False

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class CdParanoiaPipeline(MediaPipeline):
    """Media pipeline backed by python-discid, cdrdao and cd-paranoia"""

    # One owner per device across all sessions in the process
    _device_locks: Dict[str, threading.Lock] = {}
    _last_disc_ids: Dict[str, str] = {}
    _registry_lock = threading.Lock()

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.logger = logging.getLogger(__name__)
        drive_config = config['cd_drive']
        self.device = drive_config['device']
        self.read_cd_text = drive_config.get('read_cd_text', True)
        self.open_timeout = drive_config.get('open_timeout', 30)
        self.offset = drive_config.get('offset', 0)
        self.paranoia_mode = config.get('ripping', {}).get('paranoia_mode', 'full')
        self.chunk_size = BYTES_PER_SECTOR * drive_config.get('read_sectors', 75)

        self._lock = self._device_lock(self.device)
        self._owned = False
        self._disc = None
        self._cd_text_disc: Dict[str, str] = {}
        self._cd_text_tracks: Dict[int, Dict[str, str]] = {}
        self._events: "queue.Queue[PipelineEvent]" = queue.Queue()
        self._position = 1
        self._reader: Optional[subprocess.Popen] = None
        self._eof = False

    @classmethod
    def _device_lock(cls, device: str) -> threading.Lock:
        with cls._registry_lock:
            return cls._device_locks.setdefault(device, threading.Lock())

    def open(self, read_tags: bool = True) -> None:
        if self._owned:
            return

        if not self._lock.acquire(timeout=self.open_timeout):
            raise DeviceBusyError(f"Device {self.device} is in use")
        self._owned = True

        try:
            self._disc = self._read_disc()
        except DeviceUnavailableError:
            # No disc: the next disc seen counts as changed media
            with self._registry_lock:
                self._last_disc_ids.pop(self.device, None)
            self.close()
            raise
        except Exception:
            self.close()
            raise

        self._position = 1
        if not read_tags:
            self.logger.debug(f"Opened {self.device} for TOC queries, disc ID {self._disc.id}")
            return

        self.logger.info(f"Opened {self.device}: {len(self._disc.tracks)} tracks, disc ID {self._disc.id}")

        if self.read_cd_text:
            self._read_cd_text()

        self._events.put(self._build_toc_event())
        self._events.put(self._build_tag_event(1))

    def _read_disc(self):
        """Read the disc TOC, retrying without ISRC/MCN if the drive refuses them"""
        if not os.path.exists(self.device):
            raise DeviceUnavailableError(f"Device {self.device} does not exist")
        try:
            return discid.read(self.device, features=['mcn', 'isrc'])
        except discid.DiscError as e:
            self.logger.debug(f"Full disc read failed ({e}), retrying without extra features")
        try:
            return discid.read(self.device)
        except discid.DiscError as e:
            raise DeviceUnavailableError(f"Cannot read disc in {self.device}: {e}") from e

    def _read_cd_text(self) -> None:
        """Read CD-Text with cdrdao read-toc. Missing CD-Text is not an error."""
        fd, toc_path = tempfile.mkstemp(suffix='.toc')
        os.close(fd)
        os.unlink(toc_path)  # cdrdao refuses to overwrite
        try:
            result = subprocess.run(
                ['cdrdao', 'read-toc', '--fast-toc', '--device', self.device, toc_path],
                capture_output=True, text=True, timeout=60
            )
            if result.returncode != 0 or not os.path.exists(toc_path):
                self.logger.debug(f"cdrdao read-toc failed: {result.stderr}")
                return
            with open(toc_path, 'r', errors='replace') as f:
                self._cd_text_disc, self._cd_text_tracks = parse_cd_text(f.read())
            if self._cd_text_disc or self._cd_text_tracks:
                self.logger.info(f"Found CD-Text for {len(self._cd_text_tracks)} tracks")
        except (subprocess.TimeoutExpired, OSError) as e:
            self.logger.debug(f"CD-Text reading failed: {e}")
        finally:
            if os.path.exists(toc_path):
                os.unlink(toc_path)

    def _build_toc_event(self) -> TocEvent:
        entries = []
        for track in self._disc.tracks:
            start = sectors_to_ns(track.offset - LEAD_IN_SECTORS)
            stop = sectors_to_ns(track.offset - LEAD_IN_SECTORS + track.sectors)
            entries.append((start, stop))
        return TocEvent(entries=entries)

    def _build_tag_event(self, track_number: int) -> TagEvent:
        track = self._disc.tracks[track_number - 1]
        fields = {
            TAG_TRACK_NUMBER: track_number,
            TAG_DURATION: sectors_to_ns(track.sectors),
            TAG_MUSICBRAINZ_DISCID: self._disc.id,
        }
        isrc = getattr(track, 'isrc', None)
        if isrc:
            fields[TAG_ISRC] = isrc

        if self._cd_text_disc.get('TITLE'):
            fields[TAG_ALBUM] = self._cd_text_disc['TITLE']
        if self._cd_text_disc.get('PERFORMER'):
            fields[TAG_ALBUM_ARTIST] = self._cd_text_disc['PERFORMER']
        track_text = self._cd_text_tracks.get(track_number, {})
        if track_text.get('TITLE'):
            fields[TAG_TITLE] = track_text['TITLE']
        if track_text.get('PERFORMER'):
            fields[TAG_ARTIST] = track_text['PERFORMER']
        return TagEvent(fields=fields)

    def track_count(self) -> int:
        if self._disc is None:
            raise PipelineQueryError("Device is not open")
        return len(self._disc.tracks)

    def wait_event(self, timeout: float) -> Optional[PipelineEvent]:
        try:
            return self._events.get(timeout=timeout)
        except queue.Empty:
            return None

    def position(self) -> int:
        return self._position

    def seek_to_track(self, track_number: int) -> None:
        if not 1 <= track_number <= self.track_count():
            raise PipelineError(f"Track {track_number} is not on the disc")
        self._stop_reader()
        self._position = track_number
        self._eof = False
        self._events.put(self._build_tag_event(track_number))

    def read_samples(self) -> bytes:
        if self._eof:
            return b''
        if self._reader is None:
            self._start_reader()

        data = self._reader.stdout.read(self.chunk_size)
        if data:
            return data

        self._eof = True
        returncode = self._reader.wait()
        stderr = self._reader.stderr.read().decode(errors='replace')
        self._reader = None
        if returncode != 0:
            raise DeviceReadError(f"cd-paranoia failed on track {self._position}: {stderr.strip()}")
        return b''

    def _start_reader(self) -> None:
        cmd = ['cd-paranoia', '-d', self.device, '-q']
        if self.paranoia_mode == 'disabled':
            cmd.append('-Z')
        if self.offset != 0:
            cmd.extend(['-O', str(self.offset)])
        cmd.extend(['-r', str(self._position), '-'])

        self.logger.debug(f"Starting reader: {' '.join(cmd)}")
        try:
            self._reader = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except OSError as e:
            raise DeviceReadError(f"Cannot start cd-paranoia: {e}") from e

    def _stop_reader(self) -> None:
        if self._reader is None:
            return
        if self._reader.poll() is None:
            self._reader.terminate()
            try:
                self._reader.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._reader.kill()
                self._reader.wait()
        self._reader = None

    def close(self) -> None:
        self._stop_reader()
        self._disc = None
        if self._owned:
            self._owned = False
            self._lock.release()

    def media_changed(self) -> bool:
        if self._disc is None:
            raise PipelineQueryError("Device is not open")
        with self._registry_lock:
            previous = self._last_disc_ids.get(self.device)
            self._last_disc_ids[self.device] = self._disc.id
        return previous != self._disc.id


def parse_cd_text(toc_text: str) -> Tuple[Dict[str, str], Dict[int, Dict[str, str]]]:
    """Extract TITLE/PERFORMER CD-Text from a cdrdao TOC file.

    Returns the disc level fields and a mapping of track number to track fields.
    """
    disc_fields: Dict[str, str] = {}
    track_fields: Dict[int, Dict[str, str]] = {}

    blocks = re.split(r'^\s*TRACK\s+AUDIO\b', toc_text, flags=re.MULTILINE)
    for index, block in enumerate(blocks):
        fields: Dict[str, str] = {}
        for key, value in re.findall(r'^\s*(TITLE|PERFORMER)\s+"((?:[^"\\]|\\.)*)"', block, re.MULTILINE):
            value = value.replace('\\"', '"').strip()
            if value:
                fields.setdefault(key, value)
        if index == 0:
            disc_fields = fields
        elif fields:
            track_fields[index] = fields

    return disc_fields, track_fields
