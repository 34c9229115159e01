#!/usr/bin/env python3
"""
CD Monitor - Detects CD insertion and rips every track of the new disc
"""

import time
import logging
import threading
from pathlib import Path
from typing import Dict, Any, List, Optional

from cd_ripper import CDRipper
from disc_scanner import DiscScanner
from metadata_fetcher import MetadataFetcher, DiscMetadata
from models import TrackInfo, AlbumInfo


class CDMonitor:
    """Monitors for CD insertion and triggers scanning and ripping"""

    def __init__(self, cd_ripper: CDRipper, scanner: DiscScanner, metadata_fetcher: MetadataFetcher,
                 config: Dict[str, Any]):
        self.cd_ripper = cd_ripper
        self.scanner = scanner
        self.metadata_fetcher = metadata_fetcher
        self.config = config
        self.logger = logging.getLogger(__name__)
        self.output_dir = Path(config['output']['directory'])
        self.poll_interval = config.get('monitor', {}).get('poll_interval', 2)
        self.running = False

    def start_monitoring(self):
        """Start monitoring for CD insertion"""
        self.running = True
        self.logger.info("Starting CD monitoring...")

        while self.running:
            try:
                if not self.cd_ripper.is_running() and self.cd_ripper.media_changed():
                    self.logger.info("New CD detected")
                    self._handle_cd_insertion()
                time.sleep(self.poll_interval)

            except Exception as e:
                self.logger.error(f"Error in CD monitoring: {e}")
                time.sleep(5)  # Wait longer on error

    def stop_monitoring(self):
        """Stop monitoring and cancel any rip in progress"""
        self.running = False
        self.scanner.stop()
        if self.cd_ripper.is_running():
            self.cd_ripper.cancel()
        self.logger.info("Stopped CD monitoring")

    def _handle_cd_insertion(self) -> bool:
        """Scan the disc, look up its metadata and rip all tracks. Blocks until done."""
        scan = self._scan_disc()
        if not scan['tracks']:
            self.logger.error(f"Disc scan produced no tracks ({self.scanner.last_error or 'empty disc'})")
            return False

        metadata = self.metadata_fetcher.lookup(scan['disc_id']) if scan['disc_id'] else None
        album = self._album_information(scan['tracks'], metadata)
        album_dir = self._create_album_directory(album)

        self.cd_ripper.clear_tracks()
        preset = self.cd_ripper.default_preset
        for track in scan['tracks']:
            title, artist = self._track_title(track, metadata, album)
            filename = self._sanitize_filename(f"{track.number:02d} - {title}") + f".{preset.extension}"
            self.cd_ripper.add_track(track.number, title, album_dir / filename, preset, artist=artist,
                                     duration_ns=track.duration_ns)

        self.cd_ripper.set_album_information(album.album, album.artist, album.genre, album.year, album.disc,
                                             preset.name)
        return self._run_rip()

    def _scan_disc(self) -> Dict[str, Any]:
        """Run the scanner synchronously and collect the most refined track list"""
        result: Dict[str, Any] = {'tracks': [], 'disc_id': ''}

        def tracks_loaded(tracks: List[TrackInfo]):
            result['tracks'] = tracks

        def disc_id_loaded(disc_id: str):
            result['disc_id'] = disc_id

        observers = [
            (self.scanner.songs_loaded, tracks_loaded),
            (self.scanner.songs_duration_loaded, tracks_loaded),
            (self.scanner.songs_metadata_loaded, tracks_loaded),
            (self.scanner.disc_id_loaded, disc_id_loaded),
        ]
        for signal, callback in observers:
            signal.connect(callback)
        try:
            self.scanner.scan()
        finally:
            for signal, callback in observers:
                signal.disconnect(callback)
        return result

    def _run_rip(self) -> bool:
        done = threading.Event()
        outcome = {'finished': False}

        def finished():
            outcome['finished'] = True
            done.set()

        self.cd_ripper.finished.connect(finished)
        self.cd_ripper.cancelled.connect(done.set)
        try:
            if not self.cd_ripper.start():
                return False
            done.wait()
        finally:
            self.cd_ripper.finished.disconnect(finished)
            self.cd_ripper.cancelled.disconnect(done.set)

        status = self.cd_ripper.get_status()
        self.logger.info(f"Rip done: {status['finished_success']} tracks succeeded, "
                         f"{status['finished_failed']} failed")
        return outcome['finished']

    def _album_information(self, tracks: List[TrackInfo], metadata: Optional[DiscMetadata]) -> AlbumInfo:
        """MusicBrainz data wins over CD-Text, which wins over placeholders"""
        first = tracks[0]
        if metadata is not None:
            year = metadata.tracks[0].year if metadata.tracks else 0
            return AlbumInfo(album=metadata.album, artist=metadata.artist, genre=first.genre, year=year, disc=1)

        return AlbumInfo(
            album=first.album or 'Unknown Album',
            artist=first.album_artist or first.artist or 'Unknown Artist',
            genre=first.genre,
            disc=1,
        )

    def _track_title(self, track: TrackInfo, metadata: Optional[DiscMetadata], album: AlbumInfo):
        if metadata is not None and track.number <= len(metadata.tracks):
            return metadata.tracks[track.number - 1].title, album.artist
        return track.title or f"Track {track.number:02d}", track.artist or album.artist

    def _create_album_directory(self, album: AlbumInfo) -> Path:
        """Create directory for the album"""
        dir_name = f"{album.artist} - {album.album}"
        if album.year:
            dir_name = f"{album.year} - {dir_name}"

        album_dir = self.output_dir / self._sanitize_filename(dir_name)
        album_dir.mkdir(parents=True, exist_ok=True)
        return album_dir

    def _sanitize_filename(self, filename: str) -> str:
        """Sanitize filename for filesystem compatibility"""
        chars_to_replace = {
            '/': '-',
            '\\': '-',
            ':': ' -',
            '*': '',
            '?': '',
            '"': "'",
            '<': '(',
            '>': ')',
            '|': '-'
        }

        for char, replacement in chars_to_replace.items():
            filename = filename.replace(char, replacement)

        return ' '.join(filename.split()).strip()

    def get_status(self) -> Dict[str, Any]:
        """Get monitoring status"""
        return {
            'monitoring': self.running,
            'scanning': self.scanner.is_active(),
            'ripper': self.cd_ripper.get_status(),
        }
