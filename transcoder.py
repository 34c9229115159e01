#!/usr/bin/env python3
"""
Transcoder - Encodes ripped WAV files with external encoders on a bounded worker pool
"""

import os
import re
import logging
import threading
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional, Callable

# (job_id, input_path, output_path, success)
CompletionCallback = Callable[[int, Path, Path, bool], None]


@dataclass(frozen=True)
class TranscoderPreset:
    """How to encode one output format"""
    name: str
    description: str
    extension: str
    command: List[str] = field(default_factory=list)
    progress_pattern: str = ''
    quality: int = 0

    def build_command(self, input_path: Path, output_path: Path) -> List[str]:
        return [
            arg.format(input=input_path, output=output_path, quality=self.quality)
            for arg in self.command
        ]

    def parse_progress(self, text: str) -> Optional[float]:
        """Fraction from the last progress figure in encoder output, if any"""
        matches = re.findall(self.progress_pattern, text) if self.progress_pattern else []
        if not matches:
            return None
        return min(1.0, float(matches[-1]) / 100.0)


PRESETS: Dict[str, TranscoderPreset] = {
    'flac': TranscoderPreset(
        name='flac', description='FLAC', extension='flac',
        command=['flac', '--compression-level-{quality}', '-f', '-o', '{output}', '{input}'],
        progress_pattern=r'(\d+)% complete', quality=5
    ),
    'mp3': TranscoderPreset(
        name='mp3', description='MP3 (LAME VBR)', extension='mp3',
        command=['lame', '--nohist', '-V', '{quality}', '{input}', '{output}'],
        progress_pattern=r'\(\s*(\d+)%\)', quality=2
    ),
    'ogg': TranscoderPreset(
        name='ogg', description='Ogg Vorbis', extension='ogg',
        command=['oggenc', '-q', '{quality}', '-o', '{output}', '{input}'],
        progress_pattern=r'\[\s*(\d+(?:\.\d+)?)%\]', quality=5
    ),
}


def get_preset(name: str, quality: Optional[int] = None) -> TranscoderPreset:
    """Look up a preset by name, optionally overriding its quality setting"""
    try:
        preset = PRESETS[name.lower()]
    except KeyError:
        raise ValueError(f"Unknown output format '{name}', expected one of {sorted(PRESETS)}")
    if quality is not None:
        preset = replace(preset, quality=quality)
    return preset


@dataclass
class TranscodeJob:
    job_id: int
    input_path: Path
    output_path: Path
    preset: TranscoderPreset
    on_complete: CompletionCallback
    progress: float = 0.0
    process: Optional[subprocess.Popen] = None
    cancel_requested: bool = False


class Transcoder:
    """Runs one encoder process per job, at most max_jobs at a time.

    Every submitted job reports through its completion callback exactly once,
    including jobs cancelled before their encoder started.
    """

    def __init__(self, max_jobs: Optional[int] = None):
        self.logger = logging.getLogger(__name__)
        self.max_jobs = max_jobs or os.cpu_count() or 1
        self._executor = ThreadPoolExecutor(max_workers=self.max_jobs, thread_name_prefix='transcoder')
        self._lock = threading.Lock()
        self._jobs: Dict[int, TranscodeJob] = {}
        self._next_job_id = 1

    def submit(self, input_path: Path, output_path: Path, preset: TranscoderPreset,
               on_complete: CompletionCallback) -> int:
        """Queue an encode; returns the job ID"""
        with self._lock:
            job_id = self._next_job_id
            self._next_job_id += 1
            job = TranscodeJob(job_id, Path(input_path), Path(output_path), preset, on_complete)
            self._jobs[job_id] = job

        self.logger.info(f"Queued {preset.description} job {job_id}: {input_path} -> {output_path}")
        self._executor.submit(self._run_job, job)
        return job_id

    def progress(self, job_id: int) -> float:
        """Fraction done for a job; finished or unknown jobs count as done"""
        with self._lock:
            job = self._jobs.get(job_id)
            return job.progress if job is not None else 1.0

    def cancel(self, job_id: int) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return
            job.cancel_requested = True
            process = job.process

        if process is not None and process.poll() is None:
            self.logger.info(f"Terminating transcoding job {job_id}")
            process.terminate()

    def cancel_all(self) -> None:
        with self._lock:
            job_ids = list(self._jobs)
        for job_id in job_ids:
            self.cancel(job_id)

    def shutdown(self, wait: bool = True) -> None:
        self.cancel_all()
        self._executor.shutdown(wait=wait)

    def _run_job(self, job: TranscodeJob) -> None:
        success = False
        try:
            success = self._encode(job)
        except Exception as e:
            self.logger.error(f"Transcoding job {job.job_id} failed: {e}")
        finally:
            with self._lock:
                self._jobs.pop(job.job_id, None)

        if not success:
            self._remove_partial(job.output_path)
        try:
            job.on_complete(job.job_id, job.input_path, job.output_path, success)
        except Exception as e:
            self.logger.error(f"Completion callback for job {job.job_id} failed: {e}")

    def _encode(self, job: TranscodeJob) -> bool:
        job.output_path.parent.mkdir(parents=True, exist_ok=True)
        cmd = job.preset.build_command(job.input_path, job.output_path)

        with self._lock:
            if job.cancel_requested:
                self.logger.info(f"Transcoding job {job.job_id} cancelled before start")
                return False
            self.logger.debug(f"Running: {' '.join(cmd)}")
            job.process = subprocess.Popen(cmd, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE)

        tail = ''
        while True:
            chunk = job.process.stderr.read1(4096)
            if not chunk:
                break
            # Encoders redraw their progress line with carriage returns
            tail = (tail + chunk.decode(errors='replace'))[-512:]
            fraction = job.preset.parse_progress(tail)
            if fraction is not None:
                with self._lock:
                    job.progress = max(job.progress, fraction)

        returncode = job.process.wait()
        if job.cancel_requested:
            self.logger.info(f"Transcoding job {job.job_id} cancelled")
            return False
        if returncode != 0:
            self.logger.error(f"Encoder exited with code {returncode} for {job.input_path}: {tail.strip()[-200:]}")
            return False
        if not job.output_path.exists():
            self.logger.error(f"Encoder produced no output for {job.input_path}")
            return False

        self.logger.info(f"Transcoded {job.input_path.name} -> {job.output_path}")
        return True

    def _remove_partial(self, output_path: Path) -> None:
        try:
            if output_path.exists():
                output_path.unlink()
        except OSError as e:
            self.logger.warning(f"Could not remove partial output {output_path}: {e}")
