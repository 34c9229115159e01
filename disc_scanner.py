#!/usr/bin/env python3
"""
Disc Scanner - Enumerates the tracks of an audio CD
Publishes the track list as soon as the track count is known, then refines it
with TOC durations, CD-Text tags and finally the MusicBrainz disc ID
"""

import logging
import threading
from typing import Dict, Any, List, Optional, Callable

from cancellation import CancellationToken
from media_pipeline import (
    MediaPipeline, PipelineError, TocEvent, TagEvent,
    TAG_TITLE, TAG_ARTIST, TAG_ALBUM, TAG_ALBUM_ARTIST, TAG_GENRE,
    TAG_DURATION, TAG_TRACK_NUMBER, TAG_MUSICBRAINZ_DISCID,
)
from metadata_fetcher import MetadataFetcher, DiscMetadata
from models import TrackInfo, NSEC_PER_MSEC, placeholder_tracks, copy_tracks
from signals import Signal

DEFAULT_EVENT_TIMEOUT = 10.0


class DiscScanner:
    """Drives a media pipeline through the scan protocol on a background thread"""

    def __init__(self, pipeline_factory: Callable[[], MediaPipeline],
                 metadata_fetcher: Optional[MetadataFetcher] = None,
                 event_timeout: float = DEFAULT_EVENT_TIMEOUT):
        self.logger = logging.getLogger(__name__)
        self.pipeline_factory = pipeline_factory
        self.metadata_fetcher = metadata_fetcher
        self.event_timeout = event_timeout
        self.last_error = ""

        self._cancel = CancellationToken()
        self._thread: Optional[threading.Thread] = None

        self.songs_loaded = Signal('songs_loaded')
        self.songs_duration_loaded = Signal('songs_duration_loaded')
        self.songs_metadata_loaded = Signal('songs_metadata_loaded')
        self.disc_id_loaded = Signal('disc_id_loaded')

        if metadata_fetcher is not None:
            self.disc_id_loaded.connect(self._load_audio_cd_tags)

    @classmethod
    def from_config(cls, config: Dict[str, Any], pipeline_factory: Callable[[], MediaPipeline],
                    metadata_fetcher: Optional[MetadataFetcher] = None) -> 'DiscScanner':
        timeout = config['cd_drive'].get('scan_timeout', DEFAULT_EVENT_TIMEOUT)
        return cls(pipeline_factory, metadata_fetcher, event_timeout=timeout)

    def is_active(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def load_tracks(self) -> bool:
        """Start scanning in the background unless a scan is already running"""
        if self.is_active():
            self.logger.debug("Scan already in progress")
            return False

        self._cancel = CancellationToken()
        self._thread = threading.Thread(target=self._run, name="disc-scanner", daemon=True)
        self._thread.start()
        return True

    def stop(self) -> None:
        """Ask a running scan to stop at its next wait"""
        self._cancel.cancel()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the background scan. Returns False if it is still running."""
        if self._thread is not None:
            self._thread.join(timeout)
        return not self.is_active()

    def _run(self) -> None:
        try:
            self.scan()
        except Exception as e:
            self.logger.error(f"Disc scan failed: {e}")

    def scan(self) -> bool:
        """Run the full scan protocol on the calling thread.

        Returns False if the device could not be opened or queried, in which
        case no signal has been emitted.
        """
        self.last_error = ""
        pipeline = self.pipeline_factory()

        try:
            pipeline.open()
        except PipelineError as e:
            self.last_error = "device_unavailable"
            self.logger.error(f"Cannot open CD device: {e}")
            return False

        try:
            try:
                num_tracks = pipeline.track_count()
            except PipelineError as e:
                self.last_error = "query_failed"
                self.logger.error(f"Error while querying the disc for track count: {e}")
                return False

            self.logger.info(f"Disc has {num_tracks} tracks")
            initial_tracks = placeholder_tracks(num_tracks)
            self.songs_loaded.emit(copy_tracks(initial_tracks))

            self._read_events(pipeline, initial_tracks, num_tracks)
            return True
        finally:
            pipeline.close()

    def _read_events(self, pipeline: MediaPipeline, initial_tracks: List[TrackInfo], num_tracks: int) -> None:
        """Consume TOC and tag events until both are done, cancelled or timed out"""
        tagged_tracks = copy_tracks(initial_tracks)
        want_toc = True
        want_tags = True
        musicbrainz_discid = ""
        loaded_cd_tags = False

        while want_toc or want_tags:
            if self._cancel.cancelled:
                self.logger.info("Disc scan cancelled")
                break

            event = pipeline.wait_event(self.event_timeout)
            if event is None:
                self.logger.debug("No further events from pipeline")
                break

            if isinstance(event, TocEvent) and want_toc:
                if self._apply_toc(event, initial_tracks):
                    self.songs_duration_loaded.emit(copy_tracks(initial_tracks))
                    want_toc = False

            elif isinstance(event, TagEvent) and want_tags:
                event_disc_id = event.fields.get(TAG_MUSICBRAINZ_DISCID)
                if not musicbrainz_discid and event_disc_id:
                    musicbrainz_discid = str(event_disc_id)
                    self.logger.info(f"MusicBrainz disc ID: {musicbrainz_discid}")

                loaded_cd_tags |= self._parse_track_tags(tagged_tracks, event)
                want_tags = self._advance_to_next_track(pipeline, num_tracks)

        if loaded_cd_tags:
            for tagged, toc_track in zip(tagged_tracks, initial_tracks):
                if not tagged.duration_ns:
                    tagged.duration_ns = toc_track.duration_ns
            self.songs_metadata_loaded.emit(copy_tracks(tagged_tracks))

        if musicbrainz_discid:
            self.disc_id_loaded.emit(musicbrainz_discid)

    def _apply_toc(self, event: TocEvent, tracks: List[TrackInfo]) -> bool:
        """Set durations positionally; rejects a TOC with fewer entries than tracks"""
        if not event.entries or len(event.entries) < len(tracks):
            self.logger.warning(f"Ignoring TOC with {len(event.entries)} entries for {len(tracks)} tracks")
            return False

        for track, (start, stop) in zip(tracks, event.entries):
            track.duration_ns = max(0, stop - start)
        return True

    def _parse_track_tags(self, tracks: List[TrackInfo], event: TagEvent) -> bool:
        """Merge CD-Text fields into the track named by the event.

        Disc level fields: album, album artist, genre. Track level fields:
        title, artist, duration. Returns True if any field was set.
        """
        fields = event.fields
        track_number = fields.get(TAG_TRACK_NUMBER)
        if track_number is None:
            self.logger.error("Track tags do not contain track number")
            return False
        try:
            track_number = int(track_number)
        except (TypeError, ValueError):
            self.logger.error(f"Invalid track number in tags: {track_number!r}")
            return False
        if not 1 <= track_number <= len(tracks):
            self.logger.error(f"Track number {track_number} in tags is not on the disc")
            return False

        self.logger.debug(f"Tags for track {track_number}: {fields}")
        track = tracks[track_number - 1]
        has_loaded_tags = False

        for key, attribute in ((TAG_ALBUM, 'album'), (TAG_ALBUM_ARTIST, 'album_artist'),
                               (TAG_GENRE, 'genre'), (TAG_ARTIST, 'artist'), (TAG_TITLE, 'title')):
            value = fields.get(key)
            if value:
                setattr(track, attribute, str(value))
                has_loaded_tags = True

        duration = fields.get(TAG_DURATION)
        if duration is not None:
            try:
                track.duration_ns = int(duration)
                has_loaded_tags = True
            except (TypeError, ValueError):
                self.logger.error(f"Invalid duration in tags for track {track_number}: {duration!r}")

        return has_loaded_tags

    def _advance_to_next_track(self, pipeline: MediaPipeline, num_tracks: int) -> bool:
        """Seek to the following track to solicit its tags. Returns False when done."""
        try:
            current = pipeline.position()
            if current < num_tracks:
                pipeline.seek_to_track(current + 1)
                return True
        except PipelineError as e:
            self.logger.error(f"Failed to seek for next track tags: {e}")
        return False

    def _load_audio_cd_tags(self, disc_id: str) -> None:
        self.metadata_fetcher.lookup_async(disc_id, self._audio_cd_tags_loaded)

    def _audio_cd_tags_loaded(self, metadata: Optional[DiscMetadata]) -> None:
        if metadata is None or not metadata.tracks:
            return

        tracks = []
        for number, result in enumerate(metadata.tracks, 1):
            tracks.append(TrackInfo(
                number=number,
                title=result.title,
                duration_ns=result.duration_ms * NSEC_PER_MSEC,
                artist=metadata.artist,
                album=metadata.album,
                album_artist=metadata.artist,
                year=result.year,
            ))
        self.songs_metadata_loaded.emit(tracks)
