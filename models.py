#!/usr/bin/env python3
"""
Models - Track and album descriptors shared by the scanner, ripper and tagger
"""

from dataclasses import dataclass, replace
from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from transcoder import TranscoderPreset

NSEC_PER_SEC = 1_000_000_000
NSEC_PER_MSEC = 1_000_000

# Red Book audio: 44.1kHz, 16-bit, stereo
SAMPLE_RATE = 44100
CHANNELS = 2
BITS_PER_SAMPLE = 16
BYTES_PER_SECOND = SAMPLE_RATE * CHANNELS * BITS_PER_SAMPLE // 8


@dataclass
class TrackInfo:
    """A single track on the disc, optionally selected for ripping"""
    number: int
    title: str = ""
    duration_ns: int = 0
    artist: str = ""
    album: str = ""
    album_artist: str = ""
    genre: str = ""
    year: int = 0
    output_path: Optional[Path] = None
    preset: Optional["TranscoderPreset"] = None
    temporary_path: Optional[Path] = None

    @property
    def length_seconds(self) -> float:
        return self.duration_ns / NSEC_PER_SEC

    @property
    def expected_bytes(self) -> int:
        """Size of the raw PCM data for this track, rounded down to whole frames"""
        frames = self.duration_ns * SAMPLE_RATE // NSEC_PER_SEC
        return frames * CHANNELS * BITS_PER_SAMPLE // 8


@dataclass
class AlbumInfo:
    """Album level metadata applied to every tagged file"""
    album: str = ""
    artist: str = ""
    genre: str = ""
    year: int = 0
    disc: int = 0
    file_type: str = ""


def placeholder_tracks(count: int) -> List[TrackInfo]:
    """Tracks 1..count with generic titles and no duration"""
    return [TrackInfo(number=n, title=f"Track {n}") for n in range(1, count + 1)]


def copy_tracks(tracks: List[TrackInfo]) -> List[TrackInfo]:
    """Shallow per-track copies so observers never see later mutation"""
    return [replace(track) for track in tracks]
