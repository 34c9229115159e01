#!/usr/bin/env python3
"""
Tag Writer - Writes album and track metadata into transcoded files
"""

import logging
from pathlib import Path

import mutagen
from mutagen import MutagenError

from models import AlbumInfo, TrackInfo


class TagWriter:
    """Tags FLAC, MP3 and Ogg files through mutagen's easy interface"""

    def __init__(self):
        self.logger = logging.getLogger(__name__)

    def write_tags(self, file_path: Path, album: AlbumInfo, track: TrackInfo) -> bool:
        """Write tags to file_path. Returns False on any failure."""
        try:
            audio = mutagen.File(str(file_path), easy=True)
            if audio is None:
                self.logger.error(f"Unsupported file type for tagging: {file_path}")
                return False
            if audio.tags is None:
                audio.add_tags()

            tags = {
                'title': track.title,
                'artist': track.artist or album.artist,
                'album': album.album,
                'albumartist': album.artist,
                'genre': album.genre,
                'tracknumber': str(track.number),
            }
            if album.year:
                tags['date'] = str(album.year)
            if album.disc:
                tags['discnumber'] = str(album.disc)

            for key, value in tags.items():
                if value:
                    audio[key] = value

            audio.save()
            self.logger.info(f"Tagged {file_path}")
            return True

        except (MutagenError, OSError, KeyError, ValueError) as e:
            self.logger.error(f"Failed to tag {file_path}: {e}")
            return False
