#!/usr/bin/env python3
"""
Metadata Fetcher - Fetches CD metadata from MusicBrainz by disc ID
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Callable

import musicbrainzngs as mb


@dataclass
class LookupResult:
    """One track as returned by MusicBrainz"""
    title: str
    duration_ms: int
    year: int


@dataclass
class DiscMetadata:
    """Release level result of a disc ID lookup"""
    artist: str
    album: str
    tracks: List[LookupResult] = field(default_factory=list)


class MetadataFetcher:
    """Fetches metadata from MusicBrainz"""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.logger = logging.getLogger(__name__)
        metadata_config = config.get('metadata', {})
        self.enabled = metadata_config.get('use_musicbrainz', True)

        # MusicBrainz requires a user agent on every request
        mb.set_useragent(
            metadata_config.get('user_agent', 'Rip-and-Tear'),
            "1.0",
            metadata_config.get('contact_email', "contact@example.com")
        )

        if metadata_config.get('musicbrainz_server', 'musicbrainz.org') != 'musicbrainz.org':
            mb.set_hostname(metadata_config['musicbrainz_server'])

    def _safe_get(self, data, *keys, default=None):
        """Safely navigate nested dictionary structure"""
        current = data
        for key in keys:
            if not isinstance(current, dict) or key not in current:
                return default
            current = current[key]
        return current if current is not None else default

    def lookup(self, disc_id: str) -> Optional[DiscMetadata]:
        """Look up a disc ID. Returns None when disabled, not found or on error."""
        if not self.enabled:
            self.logger.info("MusicBrainz lookup disabled")
            return None
        if not disc_id:
            return None

        try:
            self.logger.info(f"Searching MusicBrainz for disc ID: {disc_id}")
            result = mb.get_releases_by_discid(
                id=disc_id,
                includes=['artist-credits', 'recordings'],
                cdstubs=True
            )

            release_list = self._safe_get(result, 'disc', 'release-list', default=[])
            if not release_list:
                release_list = result.get('release-list', [])

            if release_list:
                self.logger.info(f"Found {len(release_list)} releases for disc ID {disc_id}")
                return self._fetch_release(release_list[0].get('id'), disc_id)

            if 'cdstub' in result:
                return self._parse_cdstub(result['cdstub'])

            self.logger.info(f"No matches found for disc ID: {disc_id}")
            return None

        except mb.ResponseError as e:
            # MusicBrainz answers 404 for unknown disc IDs
            self.logger.info(f"No MusicBrainz entry for disc ID {disc_id}: {e}")
            return None
        except Exception as e:
            self.logger.error(f"Disc ID search failed: {e}")
            return None

    def lookup_async(self, disc_id: str, callback: Callable[[Optional[DiscMetadata]], None]) -> threading.Thread:
        """Run lookup() on a background thread and hand the result to callback"""
        def run():
            metadata = self.lookup(disc_id)
            try:
                callback(metadata)
            except Exception as e:
                self.logger.error(f"Metadata callback failed: {e}")

        thread = threading.Thread(target=run, name=f"mb-lookup-{disc_id}", daemon=True)
        thread.start()
        return thread

    def _fetch_release(self, release_id: Optional[str], disc_id: str) -> Optional[DiscMetadata]:
        """Fetch the full release and pick the medium this disc belongs to"""
        if not release_id:
            self.logger.warning("No release ID found in MusicBrainz data")
            return None

        detailed_release = mb.get_release_by_id(
            release_id,
            includes=['recordings', 'artist-credits', 'discids']
        )
        release_data = detailed_release.get('release', {})
        year = self._get_release_year(release_data)

        metadata = DiscMetadata(
            artist=self._get_artist_name(release_data.get('artist-credit', [])),
            album=release_data.get('title', 'Unknown Album'),
        )

        medium = self._find_medium(release_data.get('medium-list', []), disc_id)
        for track in (medium or {}).get('track-list', []):
            if not isinstance(track, dict):
                continue
            recording = track.get('recording', {})
            if not isinstance(recording, dict):
                recording = {}

            title = track.get('title') or recording.get('title') or 'Unknown Track'
            metadata.tracks.append(LookupResult(
                title=title,
                duration_ms=self._parse_length(track.get('length') or recording.get('length')),
                year=year
            ))

        self.logger.info(f"Found metadata: {metadata.artist} - {metadata.album} ({len(metadata.tracks)} tracks)")
        return metadata

    def _find_medium(self, medium_list: List[Dict], disc_id: str) -> Optional[Dict]:
        """Medium carrying the disc ID, else the first medium"""
        media = [m for m in medium_list if isinstance(m, dict)]
        for medium in media:
            if any(disc.get('id') == disc_id for disc in medium.get('disc-list', [])):
                return medium
        return media[0] if media else None

    def _parse_cdstub(self, cdstub: Dict[str, Any]) -> DiscMetadata:
        """CD stubs carry titles only, no lengths or dates"""
        self.logger.info(f"Found CD stub: {cdstub.get('title', 'Unknown')}")
        metadata = DiscMetadata(
            artist=cdstub.get('artist', 'Unknown Artist'),
            album=cdstub.get('title', 'Unknown Album'),
        )
        for track in cdstub.get('track-list', []):
            metadata.tracks.append(LookupResult(
                title=track.get('title', 'Unknown Track'),
                duration_ms=self._parse_length(track.get('length')),
                year=0
            ))
        return metadata

    def _parse_length(self, length) -> int:
        """MusicBrainz lengths are milliseconds, as int or digit string"""
        if isinstance(length, int) and length >= 0:
            return length
        if isinstance(length, str) and length.isdigit():
            return int(length)
        return 0

    def _get_artist_name(self, artist_credit) -> str:
        """Extract artist name from artist credit"""
        if isinstance(artist_credit, list) and artist_credit:
            first_credit = artist_credit[0]
            if isinstance(first_credit, dict):
                for keys in (('name',), ('artist', 'name'), ('artist', 'sort-name')):
                    name = self._safe_get(first_credit, *keys, default='')
                    if name:
                        return str(name)
        elif isinstance(artist_credit, dict) and artist_credit.get('name'):
            return str(artist_credit['name'])

        return 'Unknown Artist'

    def _get_release_year(self, release_data: Dict) -> int:
        """Year of the release date, 0 when unknown"""
        candidates = [release_data.get('date', '')]
        for event in release_data.get('release-event-list', []):
            if isinstance(event, dict):
                candidates.append(event.get('date', ''))

        for date_value in candidates:
            year_part = str(date_value or '').strip().split('-')[0]
            if year_part.isdigit() and len(year_part) == 4:
                return int(year_part)
        return 0
