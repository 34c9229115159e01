"""Tests for encoder presets and the transcoding pool."""

import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from transcoder import Transcoder, get_preset, PRESETS


def fake_process(chunks, returncode=0, output_path=None, gate=None):
    """Popen side effect that optionally writes the output and waits on gate while encoding"""
    def popen(cmd, **kwargs):
        process = MagicMock()
        remaining = list(chunks)

        def read1(size):
            if gate is not None:
                gate.wait(5)
            return remaining.pop(0) if remaining else b''

        process.stderr.read1.side_effect = read1
        process.wait.return_value = returncode
        process.poll.return_value = None
        if output_path is not None:
            Path(output_path).write_bytes(b'encoded')
        return process
    return popen


def run_job(transcoder, input_path, output_path, preset):
    """Submit a job and wait for its completion callback"""
    done = threading.Event()
    result = {}

    def on_complete(job_id, in_path, out_path, success):
        result.update(job_id=job_id, input=in_path, output=out_path, success=success)
        done.set()

    job_id = transcoder.submit(input_path, output_path, preset, on_complete)
    assert done.wait(5)
    assert result['job_id'] == job_id
    return result


class TestPresets:
    """Test encoder presets."""

    def test_flac_command(self):
        """Test the FLAC command line carries the compression level and paths."""
        preset = get_preset('flac', 8)

        cmd = preset.build_command(Path('/tmp/in.wav'), Path('/out/01.flac'))

        assert cmd == ['flac', '--compression-level-8', '-f', '-o', '/out/01.flac', '/tmp/in.wav']

    def test_get_preset_is_case_insensitive(self):
        assert get_preset('MP3').name == 'mp3'

    def test_default_quality(self):
        assert get_preset('flac').quality == PRESETS['flac'].quality

    def test_unknown_preset(self):
        with pytest.raises(ValueError):
            get_preset('wma')

    @pytest.mark.parametrize("name,text,expected", [
        ('flac', 'in.wav: 12% complete, ratio=0.5\rin.wav: 47% complete', 0.47),
        ('mp3', '  1000/5000   (20%)|    0:01/    0:05', 0.20),
        ('ogg', '\t[ 75.0%] [ 0m01s remaining]', 0.75),
    ])
    def test_parse_progress(self, name, text, expected):
        """Test the last progress figure in encoder output is used."""
        assert PRESETS[name].parse_progress(text) == pytest.approx(expected)

    def test_parse_progress_without_figure(self):
        assert PRESETS['flac'].parse_progress('starting') is None


class TestTranscoder:
    """Test Transcoder job handling."""

    def test_successful_job(self, tmp_path):
        """Test a job whose encoder succeeds reports success."""
        input_path = tmp_path / "track01.wav"
        output_path = tmp_path / "out" / "01.flac"
        transcoder = Transcoder(max_jobs=1)

        with patch('transcoder.subprocess.Popen',
                   side_effect=fake_process([b'50% complete', b'100% complete'], output_path=output_path)) as popen:
            result = run_job(transcoder, input_path, output_path, get_preset('flac'))

        transcoder.shutdown()
        assert result['success'] is True
        assert result['output'] == output_path
        assert popen.call_args[0][0][0] == 'flac'
        assert transcoder.progress(result['job_id']) == 1.0

    def test_failed_job_removes_output(self, tmp_path):
        """Test a non-zero exit fails the job and removes the partial output."""
        output_path = tmp_path / "01.flac"
        transcoder = Transcoder(max_jobs=1)

        with patch('transcoder.subprocess.Popen',
                   side_effect=fake_process([b'error'], returncode=1, output_path=output_path)):
            result = run_job(transcoder, tmp_path / "in.wav", output_path, get_preset('flac'))

        transcoder.shutdown()
        assert result['success'] is False
        assert not output_path.exists()

    def test_missing_output_fails(self, tmp_path):
        """Test an encoder that exits cleanly without output fails the job."""
        transcoder = Transcoder(max_jobs=1)

        with patch('transcoder.subprocess.Popen', side_effect=fake_process([])):
            result = run_job(transcoder, tmp_path / "in.wav", tmp_path / "01.flac", get_preset('flac'))

        transcoder.shutdown()
        assert result['success'] is False

    def test_missing_encoder(self, tmp_path):
        """Test an encoder binary that cannot be started fails the job."""
        transcoder = Transcoder(max_jobs=1)

        with patch('transcoder.subprocess.Popen', side_effect=FileNotFoundError("flac")):
            result = run_job(transcoder, tmp_path / "in.wav", tmp_path / "01.flac", get_preset('flac'))

        transcoder.shutdown()
        assert result['success'] is False

    def test_cancel_queued_job(self, tmp_path):
        """Test a job cancelled before its encoder starts still reports, as a failure."""
        gate = threading.Event()
        transcoder = Transcoder(max_jobs=1)
        results = {}
        done = threading.Event()

        def on_complete(job_id, in_path, out_path, success):
            results[job_id] = success
            if len(results) == 2:
                done.set()

        with patch('transcoder.subprocess.Popen',
                   side_effect=fake_process([], output_path=tmp_path / "01.flac", gate=gate)) as popen:
            first = transcoder.submit(tmp_path / "1.wav", tmp_path / "01.flac", get_preset('flac'), on_complete)
            second = transcoder.submit(tmp_path / "2.wav", tmp_path / "02.flac", get_preset('flac'), on_complete)
            transcoder.cancel(second)
            gate.set()
            assert done.wait(5)

        transcoder.shutdown()
        assert results == {first: True, second: False}
        assert popen.call_count == 1

    def test_cancel_running_job_terminates_encoder(self, tmp_path):
        """Test cancelling a running job terminates its process."""
        gate = threading.Event()
        started = threading.Event()
        processes = []
        transcoder = Transcoder(max_jobs=1)
        popen_side_effect = fake_process([b'10% complete'], gate=gate)

        def popen(cmd, **kwargs):
            process = popen_side_effect(cmd, **kwargs)
            processes.append(process)
            started.set()
            return process

        done = threading.Event()
        result = {}

        def on_complete(job_id, in_path, out_path, success):
            result['success'] = success
            done.set()

        with patch('transcoder.subprocess.Popen', side_effect=popen):
            job_id = transcoder.submit(tmp_path / "1.wav", tmp_path / "01.flac", get_preset('flac'), on_complete)
            assert started.wait(5)
            transcoder.cancel(job_id)
            gate.set()
            assert done.wait(5)

        transcoder.shutdown()
        processes[0].terminate.assert_called_once()
        assert result['success'] is False

    def test_unknown_job_progress(self):
        transcoder = Transcoder(max_jobs=1)

        assert transcoder.progress(1234) == 1.0
        transcoder.shutdown()
