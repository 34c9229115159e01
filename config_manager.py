#!/usr/bin/env python3
"""
Configuration Manager for Rip and Tear
Loads the YAML configuration, fills in defaults and applies environment overrides
"""

import os
import yaml
import logging
from pathlib import Path
from typing import Dict, Any, Optional

from transcoder import PRESETS

PARANOIA_MODES = ('full', 'disabled')


class ConfigManager:
    """Manages application configuration"""

    def __init__(self, config_dir: Optional[Path] = None):
        self.logger = logging.getLogger(__name__)
        self.config_dir = Path(config_dir or os.getenv('CONFIG_DIR', '/config'))
        self.config_file = self.config_dir / 'config.yaml'

    def load_config(self) -> Dict[str, Any]:
        """Load configuration from file and environment variables"""
        try:
            if self.config_file.exists():
                with open(self.config_file, 'r') as f:
                    config = yaml.safe_load(f) or {}
                self.logger.info(f"Loaded configuration from {self.config_file}")
            else:
                config = self._load_default_config()
                self.save_config(config)
                self.logger.info("Created new configuration from defaults")

            config = self._merge_with_defaults(config)
            config = self._apply_environment_overrides(config)
            return self._validate_config(config)

        except (OSError, yaml.YAMLError) as e:
            self.logger.error(f"Error loading configuration: {e}")
            config = self._apply_environment_overrides(self._load_default_config())
            return self._validate_config(config)

    def save_config(self, config: Dict[str, Any]) -> None:
        """Save configuration to file"""
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, 'w') as f:
                yaml.safe_dump(config, f, default_flow_style=False, indent=2)
            self.logger.info(f"Saved configuration to {self.config_file}")
        except OSError as e:
            self.logger.error(f"Error saving configuration: {e}")

    def _load_default_config(self) -> Dict[str, Any]:
        """Load default configuration"""
        return {
            'cd_drive': {
                'device': '/dev/cdrom',
                'offset': 0,  # Drive offset correction in samples
                'read_cd_text': True,
                'scan_timeout': 10,  # Seconds to wait for each TOC/tag event
                'open_timeout': 30,  # Seconds to wait for another owner to release the drive
            },
            'output': {
                'directory': os.getenv('OUTPUT_DIR', '/output'),
                'format': 'flac',  # flac, mp3, ogg
                'compression_level': 5,
            },
            'ripping': {
                'paranoia_mode': 'full',
                'max_transcode_jobs': os.cpu_count() or 1,
                'progress_poll_interval_ms': 250,
                'temp_directory': '',  # Empty uses the system temporary directory
            },
            'metadata': {
                'use_musicbrainz': True,
                'musicbrainz_server': 'musicbrainz.org',
                'user_agent': 'Rip-and-Tear',
                'contact_email': 'user@example.com',
            },
            'logging': {
                'level': 'INFO',
                'max_log_files': 10,
                'max_log_size_mb': 50,
            }
        }

    def _merge_with_defaults(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Fill missing configuration values from the defaults"""

        def merge_configs(default: Dict, user: Dict) -> Dict:
            """Recursively merge user config with defaults"""
            result = default.copy()
            for key, value in user.items():
                if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                    result[key] = merge_configs(result[key], value)
                else:
                    result[key] = value
            return result

        return merge_configs(self._load_default_config(), config)

    def _validate_config(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Replace values the rest of the application cannot use"""
        defaults = self._load_default_config()

        output_format = str(config['output'].get('format', '')).lower()
        if output_format not in PRESETS:
            self.logger.warning(f"Unknown output format '{output_format}', using flac")
            output_format = defaults['output']['format']
        config['output']['format'] = output_format

        if config['ripping'].get('paranoia_mode') not in PARANOIA_MODES:
            self.logger.warning(f"Unknown paranoia mode '{config['ripping'].get('paranoia_mode')}', using full")
            config['ripping']['paranoia_mode'] = defaults['ripping']['paranoia_mode']

        for section, key in (('ripping', 'max_transcode_jobs'), ('ripping', 'progress_poll_interval_ms'),
                             ('cd_drive', 'scan_timeout'), ('cd_drive', 'open_timeout')):
            value = config[section].get(key)
            if not isinstance(value, int) or value < 1:
                self.logger.warning(f"Invalid {section}.{key}: {value!r}, using {defaults[section][key]}")
                config[section][key] = defaults[section][key]

        return config

    def _apply_environment_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration"""
        env_mappings = {
            # CD Drive settings
            'CD_DEVICE': ('cd_drive', 'device'),
            'DRIVE_OFFSET': ('cd_drive', 'offset', int),
            'READ_CD_TEXT': ('cd_drive', 'read_cd_text', self._str_to_bool),
            'SCAN_TIMEOUT': ('cd_drive', 'scan_timeout', int),
            'OPEN_TIMEOUT': ('cd_drive', 'open_timeout', int),

            # Output settings
            'OUTPUT_DIR': ('output', 'directory'),
            'OUTPUT_FORMAT': ('output', 'format'),
            'COMPRESSION_LEVEL': ('output', 'compression_level', int),

            # Ripping settings
            'PARANOIA_MODE': ('ripping', 'paranoia_mode'),
            'MAX_TRANSCODE_JOBS': ('ripping', 'max_transcode_jobs', int),
            'PROGRESS_POLL_INTERVAL_MS': ('ripping', 'progress_poll_interval_ms', int),
            'TEMP_DIR': ('ripping', 'temp_directory'),

            # Metadata settings
            'USE_MUSICBRAINZ': ('metadata', 'use_musicbrainz', self._str_to_bool),
            'MUSICBRAINZ_SERVER': ('metadata', 'musicbrainz_server'),
            'USER_AGENT': ('metadata', 'user_agent'),
            'CONTACT_EMAIL': ('metadata', 'contact_email'),

            # Logging settings
            'LOG_LEVEL': ('logging', 'level'),
            'MAX_LOG_FILES': ('logging', 'max_log_files', int),
            'MAX_LOG_SIZE_MB': ('logging', 'max_log_size_mb', int),
        }

        for env_var, mapping in env_mappings.items():
            env_value = os.getenv(env_var)
            if env_value is None:
                continue

            section, key = mapping[0], mapping[1]
            converter = mapping[2] if len(mapping) > 2 else str
            try:
                config.setdefault(section, {})[key] = converter(env_value)
                self.logger.debug(f"Applied environment override: {env_var}={env_value}")
            except ValueError:
                self.logger.warning(f"Invalid value for {env_var}: {env_value}")

        return config

    def _str_to_bool(self, value: str) -> bool:
        """Convert string to boolean"""
        return value.lower() in ('true', '1', 'yes', 'on', 'enabled')

    def get_cd_device(self, config: Dict[str, Any]) -> str:
        """Get CD device path, with auto-detection fallback"""
        device = config['cd_drive']['device']

        if not os.path.exists(device):
            potential_devices = ['/dev/cdrom', '/dev/sr0', '/dev/sr1', '/dev/cdrom0']
            for dev in potential_devices:
                if os.path.exists(dev):
                    self.logger.info(f"Auto-detected CD device: {dev}")
                    return dev

            self.logger.warning(f"CD device {device} not found, using anyway")

        return device
