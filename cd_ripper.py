#!/usr/bin/env python3
"""
CD Ripper - Main ripping functionality
Rips selected tracks sequentially from the disc while transcoding finished
rips concurrently, then tags the transcoded files with the album metadata
"""

import shutil
import logging
import tempfile
import threading
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Dict, Any, List, Optional, Callable, Set

from cancellation import CancellationToken
from media_pipeline import MediaPipeline, CdParanoiaPipeline, PipelineError
from models import TrackInfo, AlbumInfo, copy_tracks
from rip_progress import ProgressAggregator
from signals import Signal
from tag_writer import TagWriter
from track_ripper import TrackRipper
from transcoder import Transcoder, TranscoderPreset, get_preset


class RipStatus:
    """Status tracking for rip operations"""
    IDLE = "idle"
    RIPPING = "ripping"
    TAGGING = "tagging"
    CANCELLING = "cancelling"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    ERROR = "error"


class CDRipper:
    """Rips tracks from an audio CD, transcodes them and tags the results.

    Add tracks with add_track() and album metadata with
    set_album_information(), then call start(). Exactly one of the finished
    or cancelled signals fires per run.
    """

    def __init__(self, config: Dict[str, Any],
                 pipeline_factory: Optional[Callable[[], MediaPipeline]] = None,
                 transcoder: Optional[Transcoder] = None,
                 tag_writer: Optional[TagWriter] = None):
        self.config = config
        self.logger = logging.getLogger(__name__)
        ripping_config = config.get('ripping', {})
        output_config = config.get('output', {})

        self.pipeline_factory = pipeline_factory or partial(CdParanoiaPipeline, config)
        self.transcoder = transcoder or Transcoder(ripping_config.get('max_transcode_jobs'))
        self.tag_writer = tag_writer or TagWriter()
        self.default_preset = get_preset(output_config.get('format', 'flac'),
                                         output_config.get('compression_level'))
        self.poll_interval = ripping_config.get('progress_poll_interval_ms', 250) / 1000.0
        self.temp_root = ripping_config.get('temp_directory') or None

        self.status = RipStatus.IDLE
        self.error_message = ""
        self.current_track = 0
        self.files_tagged = 0
        self.files_tag_failed = 0
        self.rip_start_time: Optional[datetime] = None

        self.tracks: List[TrackInfo] = []
        self.album = AlbumInfo()
        self._tracks_on_disc: Optional[int] = None

        self.aggregator = ProgressAggregator()
        self.progress_interval = self.aggregator.progress_interval
        self.progress = self.aggregator.progress
        self.finished = Signal('finished')
        self.cancelled = Signal('cancelled')
        self.ripping_complete = Signal('ripping_complete')

        # Run bookkeeping. Lock order: self._lock before the progress state lock.
        self._lock = threading.Lock()
        self._cancel = CancellationToken()
        self._running = False
        self._ripping_done = False
        self._completing = False
        self._submitted = 0
        self._jobs: Dict[int, int] = {}
        self._completed_jobs: Set[int] = set()
        self._successful: List[int] = []
        self._run_tracks: List[TrackInfo] = []
        self._temporary_directory: Optional[Path] = None
        self._poll_stop: Optional[threading.Event] = None
        self._rip_thread: Optional[threading.Thread] = None

    # Track list

    def add_track(self, track_number: int, title: str, transcoded_filename, preset: Optional[TranscoderPreset] = None,
                  artist: str = "", duration_ns: int = 0) -> bool:
        """Add a track to the rip list if it exists on the disc"""
        if self.is_running():
            self.logger.warning("Cannot change the rip list while ripping")
            return False

        tracks_on_disc = self._tracks_on_disc if self._tracks_on_disc is not None else self.tracks_on_disc()
        if not 1 <= track_number <= tracks_on_disc:
            self.logger.warning(f"Track {track_number} is not on the disc ({tracks_on_disc} tracks)")
            return False

        self.tracks.append(TrackInfo(
            number=track_number,
            title=title,
            artist=artist,
            duration_ns=duration_ns,
            output_path=Path(transcoded_filename),
            preset=preset or self.default_preset,
        ))
        return True

    def set_album_information(self, album: str, artist: str, genre: str, year: int, disc: int,
                              file_type: str) -> None:
        """Album metadata used when tagging the transcoded files"""
        self.album = AlbumInfo(album=album, artist=artist, genre=genre, year=year, disc=disc,
                               file_type=file_type)

    def tracks_on_disc(self) -> int:
        """Number of audio tracks on the disc, 0 if it cannot be read.

        The count is remembered until clear_tracks() or a media change, so
        building a rip list opens the device once.
        """
        if self.is_running():
            return self._tracks_on_disc or 0
        try:
            pipeline = self._open_for_query()
            try:
                self._tracks_on_disc = pipeline.track_count()
            finally:
                pipeline.close()
        except PipelineError as e:
            self.logger.error(f"Cannot read track count: {e}")
            self._tracks_on_disc = None
            return 0
        return self._tracks_on_disc

    def added_tracks(self) -> int:
        return len(self.tracks)

    def clear_tracks(self) -> None:
        if self.is_running():
            self.logger.warning("Cannot change the rip list while ripping")
            return
        self.tracks = []
        self._tracks_on_disc = None

    def check_device_is_valid(self) -> bool:
        """True if the CD device can be opened"""
        try:
            self._open_for_query().close()
            return True
        except PipelineError as e:
            self.logger.warning(f"CD device is not usable: {e}")
            return False

    def media_changed(self) -> bool:
        try:
            pipeline = self._open_for_query()
            try:
                changed = pipeline.media_changed()
            finally:
                pipeline.close()
        except PipelineError as e:
            self.logger.debug(f"Cannot check for media change: {e}")
            return False
        if changed:
            self._tracks_on_disc = None
        return changed

    def _open_for_query(self) -> MediaPipeline:
        """Open a session for TOC queries only, without reading CD-Text"""
        pipeline = self.pipeline_factory()
        pipeline.open(read_tags=False)
        return pipeline

    def is_running(self) -> bool:
        with self._lock:
            return self._running

    # Run control

    def start(self) -> bool:
        """Start ripping the added tracks in the background"""
        with self._lock:
            if self._running:
                self.logger.warning("Ripping is already in progress")
                return False
            if not self.tracks:
                self.logger.warning("No tracks added to rip list")
                return False

            self._running = True
            self._ripping_done = False
            self._completing = False
            self._submitted = 0
            self._jobs = {}
            self._completed_jobs = set()
            self._successful = []
            self._run_tracks = copy_tracks(self.tracks)
            self._cancel = CancellationToken()

        self.rip_start_time = datetime.now()
        self.error_message = ""
        self.files_tagged = 0
        self.files_tag_failed = 0
        self.current_track = 0

        try:
            self._temporary_directory = Path(tempfile.mkdtemp(prefix='rip_and_tear_', dir=self.temp_root))
        except OSError as e:
            self.logger.error(f"Cannot create temporary directory: {e}")
            with self._lock:
                self._running = False
            self._update_status(RipStatus.ERROR, str(e))
            return False

        self.logger.info(f"Starting rip of {len(self._run_tracks)} tracks")
        self.aggregator.setup_progress_interval(len(self._run_tracks))
        self._update_status(RipStatus.RIPPING)

        self._start_polling()
        self._rip_thread = threading.Thread(target=self._rip, name="cd-ripper", daemon=True)
        self._rip_thread.start()
        return True

    def cancel(self) -> bool:
        """Request cancellation; the cancelled signal fires once in-flight work has stopped"""
        with self._lock:
            if not self._running or self._completing:
                self.logger.warning("No active rip operation to cancel")
                return False
            self._cancel.cancel()
            job_ids = list(self._jobs)

        self.logger.info("Cancel requested - stopping ripping and transcoding")
        self._update_status(RipStatus.CANCELLING)
        for job_id in job_ids:
            self.transcoder.cancel(job_id)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the ripping thread. Transcoding may still be running afterwards."""
        if self._rip_thread is not None:
            self._rip_thread.join(timeout)
            return not self._rip_thread.is_alive()
        return True

    # Ripping phase

    def _rip(self) -> None:
        processed = 0
        try:
            pipeline = self.pipeline_factory()
            try:
                pipeline.open(read_tags=False)
            except PipelineError as e:
                self.logger.error(f"Cannot open CD device for ripping: {e}")
                self._update_status(RipStatus.ERROR, f"Cannot open CD device: {e}")
                for index in range(len(self._run_tracks)):
                    self._record_rip_failure(index)
                return

            try:
                ripper = TrackRipper(pipeline, self._cancel, self._update_ripping_progress)
                for index, track in enumerate(self._run_tracks):
                    if self._cancel.cancelled:
                        break

                    self.current_track = track.number
                    track.temporary_path = self._temporary_directory / f"track{track.number:02d}.wav"
                    if ripper.rip(track, track.temporary_path):
                        self._submit(index, track)
                    elif not self._cancel.cancelled:
                        self._record_rip_failure(index)
                    processed = index + 1
            finally:
                pipeline.close()

        except Exception as e:
            self.logger.error(f"CD ripping failed: {e}")
            self.error_message = str(e)
            # Tracks never reached still have to report for the run to finish
            if not self._cancel.cancelled:
                for index in range(processed, len(self._run_tracks)):
                    self._record_rip_failure(index)
        finally:
            with self._lock:
                self._ripping_done = True
            self.ripping_complete.emit()
            self._maybe_finish()

    def _update_ripping_progress(self, track_number: int, job_start: int, job_end: int, job_current: int) -> None:
        for index, track in enumerate(self._run_tracks):
            if track.number == track_number:
                self.aggregator.update_ripping_progress(index, job_start, job_end, job_current)
                return

    def _record_rip_failure(self, index: int) -> None:
        """A track that could not be ripped counts as a submitted job that failed"""
        with self._lock:
            self._submitted += 1
        self._job_finished(index, False)

    def _submit(self, index: int, track: TrackInfo) -> None:
        with self._lock:
            if self._cancel.cancelled:
                return
            self._submitted += 1

        callback = partial(self._transcoding_job_complete, index)
        try:
            job_id = self.transcoder.submit(track.temporary_path, track.output_path, track.preset, callback)
        except Exception as e:
            self.logger.error(f"Cannot submit track {track.number} for transcoding: {e}")
            self._job_finished(index, False)
            return

        with self._lock:
            if job_id not in self._completed_jobs:
                self._jobs[job_id] = index
            cancelled = self._cancel.cancelled
        if cancelled:
            self.transcoder.cancel(job_id)

    # Transcoding phase

    def _transcoding_job_complete(self, index: int, job_id: int, input_path: Path, output_path: Path,
                                  success: bool) -> None:
        with self._lock:
            self._jobs.pop(job_id, None)
            self._completed_jobs.add(job_id)

        if success:
            self.logger.info(f"Transcoding of track {self._run_tracks[index].number} finished: {output_path}")
        else:
            self.logger.warning(f"Transcoding of {input_path} failed")
        self._job_finished(index, success)

    def _job_finished(self, index: int, success: bool) -> None:
        with self._lock:
            if success:
                self._successful.append(index)
        self.aggregator.complete_track(index)
        self.aggregator.record_result(success)
        self._maybe_finish()

    def _start_polling(self) -> None:
        stop = threading.Event()
        with self._lock:
            self._poll_stop = stop
        thread = threading.Thread(target=self._poll_transcoding_progress, args=(stop,),
                                  name="cd-ripper-progress", daemon=True)
        thread.start()

    def _poll_transcoding_progress(self, stop: threading.Event) -> None:
        """Poll in-flight jobs every poll_interval until the run completes"""
        while not stop.wait(self.poll_interval):
            try:
                self._update_transcoding_progress()
            except Exception as e:
                self.logger.error(f"Progress polling failed: {e}")

    def _update_transcoding_progress(self) -> None:
        with self._lock:
            jobs = dict(self._jobs)
        for job_id, index in jobs.items():
            self.aggregator.update_transcoding_progress(index, self.transcoder.progress(job_id))

    def _stop_polling(self) -> None:
        with self._lock:
            stop = self._poll_stop
            self._poll_stop = None
        if stop is not None:
            stop.set()

    # Completion

    def _maybe_finish(self) -> None:
        """Complete the run once ripping stopped and every submitted job reported"""
        with self._lock:
            if self._completing or not self._ripping_done:
                return
            state = self.aggregator.state
            with state.lock:
                reported = state.finished_success + state.finished_failed
            if reported < self._submitted:
                return
            self._completing = True
            was_cancelled = self._cancel.cancelled
            successful = sorted(self._successful)

        self._stop_polling()
        if was_cancelled:
            self._finish_cancelled()
        else:
            self._finish(successful)

    def _finish(self, successful: List[int]) -> None:
        error = self.error_message
        self._update_status(RipStatus.TAGGING)
        self._tag_files(successful)
        self._remove_temporary_directory()

        snapshot = self.aggregator.state.snapshot()
        self.logger.info(f"Ripping finished: {snapshot['finished_success']} succeeded, "
                         f"{snapshot['finished_failed']} failed, {self.files_tagged} tagged")
        self._update_status(RipStatus.ERROR if error else RipStatus.COMPLETED, error)
        with self._lock:
            self._running = False
        self.finished.emit()

    def _finish_cancelled(self) -> None:
        self._remove_temporary_directory()
        self.logger.info("Ripping cancelled")
        self._update_status(RipStatus.CANCELLED, "Operation cancelled by user")
        with self._lock:
            self._running = False
        self.cancelled.emit()

    def _tag_files(self, successful: List[int]) -> None:
        """Tag every transcoded file; a tagging failure never blocks completion"""
        file_type = self.album.file_type or 'audio'
        self.logger.info(f"Tagging {len(successful)} {file_type} files")
        for index in successful:
            track = self._run_tracks[index]
            if self.album.file_type and track.preset is not None and track.preset.name != self.album.file_type:
                self.logger.warning(f"Track {track.number} was encoded as {track.preset.name}, "
                                    f"album file type is {self.album.file_type}")
            try:
                tagged = self.tag_writer.write_tags(track.output_path, self.album, track)
            except Exception as e:
                self.logger.error(f"Tagging {track.output_path} failed: {e}")
                tagged = False
            if tagged:
                self.files_tagged += 1
            else:
                self.files_tag_failed += 1

    def _remove_temporary_directory(self) -> None:
        if self._temporary_directory is None:
            return
        try:
            shutil.rmtree(self._temporary_directory)
            self.logger.debug(f"Removed temporary directory {self._temporary_directory}")
        except OSError as e:
            self.logger.warning(f"Could not remove temporary directory {self._temporary_directory}: {e}")
        self._temporary_directory = None

    # Status

    def _update_status(self, status: str, error_msg: str = ""):
        """Update current status"""
        self.status = status
        self.error_message = error_msg
        self.logger.info(f"Status: {status}" + (f" - {error_msg}" if error_msg else ""))

    def get_status(self) -> Dict[str, Any]:
        """Get current ripping status"""
        snapshot = self.aggregator.state.snapshot()
        return {
            'status': self.status,
            'progress': snapshot['progress'],
            'current_track': self.current_track,
            'total_tracks': len(self._run_tracks),
            'finished_success': snapshot['finished_success'],
            'finished_failed': snapshot['finished_failed'],
            'files_tagged': self.files_tagged,
            'files_tag_failed': self.files_tag_failed,
            'error_message': self.error_message,
            'start_time': self.rip_start_time.isoformat() if self.rip_start_time else None,
        }
