"""Tests for disc insertion handling."""

from unittest.mock import Mock

import pytest

from cd_monitor import CDMonitor
from conftest import FakePipeline, toc_from_seconds
from disc_scanner import DiscScanner
from media_pipeline import TAG_TITLE, TAG_ALBUM, TAG_ALBUM_ARTIST, TAG_TRACK_NUMBER, TAG_MUSICBRAINZ_DISCID
from metadata_fetcher import DiscMetadata, LookupResult
from models import NSEC_PER_SEC
from signals import Signal
from transcoder import get_preset


@pytest.fixture
def cd_ripper():
    """Ripper double whose start() completes immediately"""
    ripper = Mock()
    ripper.finished = Signal('finished')
    ripper.cancelled = Signal('cancelled')
    ripper.default_preset = get_preset('flac')
    ripper.get_status.return_value = {'finished_success': 2, 'finished_failed': 0}

    def start():
        ripper.finished.emit()
        return True

    ripper.start.side_effect = start
    return ripper


def make_monitor(test_config, cd_ripper, pipeline, metadata=None):
    scanner = DiscScanner(lambda: pipeline, event_timeout=0.01)
    fetcher = Mock()
    fetcher.lookup.return_value = metadata
    return CDMonitor(cd_ripper, scanner, fetcher, test_config), fetcher


def cd_text_pipeline():
    tags = {
        n: {TAG_TRACK_NUMBER: n, TAG_TITLE: title, TAG_ALBUM: "Live/Loud", TAG_ALBUM_ARTIST: "Band",
            TAG_MUSICBRAINZ_DISCID: "disc-1"}
        for n, title in ((1, "Intro"), (2, "What?"))
    }
    return FakePipeline(num_tracks=2, toc=toc_from_seconds(60, 120), tags=tags)


class TestCDMonitor:
    """Test CDMonitor insertion handling."""

    def test_rip_with_cd_text(self, test_config, cd_ripper, tmp_path):
        """Test CD-Text names the album directory and files when MusicBrainz has nothing."""
        monitor, fetcher = make_monitor(test_config, cd_ripper, cd_text_pipeline())

        assert monitor._handle_cd_insertion() is True

        fetcher.lookup.assert_called_once_with("disc-1")
        album_dir = tmp_path / "output" / "Band - Live-Loud"
        assert album_dir.is_dir()
        calls = cd_ripper.add_track.call_args_list
        assert [c[0][0] for c in calls] == [1, 2]
        assert [c[0][1] for c in calls] == ["Intro", "What?"]
        assert calls[1][0][2] == album_dir / "02 - What.flac"
        assert calls[1][1]['duration_ns'] == 120 * NSEC_PER_SEC
        cd_ripper.set_album_information.assert_called_once_with("Live/Loud", "Band", "", 0, 1, "flac")
        cd_ripper.clear_tracks.assert_called_once()

    def test_rip_with_musicbrainz(self, test_config, cd_ripper, tmp_path):
        """Test MusicBrainz results take precedence over CD-Text."""
        metadata = DiscMetadata(artist="MB Band", album="MB Album", tracks=[
            LookupResult(title="Opening", duration_ms=60000, year=2004),
            LookupResult(title="Ending", duration_ms=120000, year=2004),
        ])
        monitor, _ = make_monitor(test_config, cd_ripper, cd_text_pipeline(), metadata)

        monitor._handle_cd_insertion()

        album_dir = tmp_path / "output" / "2004 - MB Band - MB Album"
        assert album_dir.is_dir()
        titles = [c[0][1] for c in cd_ripper.add_track.call_args_list]
        assert titles == ["Opening", "Ending"]
        cd_ripper.set_album_information.assert_called_once_with("MB Album", "MB Band", "", 2004, 1, "flac")

    def test_placeholder_names_without_metadata(self, test_config, cd_ripper, tmp_path):
        """Test a disc with no CD-Text and no disc ID gets placeholder names."""
        pipeline = FakePipeline(num_tracks=1, toc=toc_from_seconds(30))
        monitor, fetcher = make_monitor(test_config, cd_ripper, pipeline)

        monitor._handle_cd_insertion()

        fetcher.lookup.assert_not_called()
        assert (tmp_path / "output" / "Unknown Artist - Unknown Album").is_dir()
        assert cd_ripper.add_track.call_args[0][1] == "Track 1"

    def test_unreadable_disc_is_not_ripped(self, test_config, cd_ripper):
        pipeline = FakePipeline(num_tracks=0)
        monitor, _ = make_monitor(test_config, cd_ripper, pipeline)

        assert monitor._handle_cd_insertion() is False
        cd_ripper.start.assert_not_called()

    def test_cancelled_rip(self, test_config, cd_ripper):
        """Test a cancelled rip unblocks the monitor."""
        def start():
            cd_ripper.cancelled.emit()
            return True

        cd_ripper.start.side_effect = start
        monitor, _ = make_monitor(test_config, cd_ripper, cd_text_pipeline())

        assert monitor._handle_cd_insertion() is False

    @pytest.mark.parametrize("name,expected", [
        ("AC/DC: Live", "AC-DC - Live"),
        ('Why? "Because"', "Why 'Because'"),
        ("a  <b>  c|d", "a (b) c-d"),
    ])
    def test_sanitize_filename(self, test_config, cd_ripper, name, expected):
        monitor, _ = make_monitor(test_config, cd_ripper, FakePipeline())

        assert monitor._sanitize_filename(name) == expected

    def test_get_status(self, test_config, cd_ripper):
        cd_ripper.get_status.return_value = {'status': 'idle'}
        monitor, _ = make_monitor(test_config, cd_ripper, FakePipeline())

        status = monitor.get_status()

        assert status['monitoring'] is False
        assert status['scanning'] is False
        assert status['ripper'] == {'status': 'idle'}
