#!/usr/bin/env python3
"""
Rip and Tear Main Application
Automatically detects CD insertion, rips every track and transcodes it with metadata

Copyright (c) 2025 Rip and Tear Contributors
Licensed under the MIT License - see LICENSE file for details
"""

import os
import sys
import time
import threading
import logging
from functools import partial
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, Any

from cd_ripper import CDRipper
from cd_monitor import CDMonitor
from config_manager import ConfigManager
from disc_scanner import DiscScanner
from media_pipeline import CdParanoiaPipeline
from metadata_fetcher import MetadataFetcher


def setup_logging(logging_config: Dict[str, Any]):
    """Setup logging configuration"""
    log_dir = Path(os.getenv('LOG_DIR', '/logs'))
    log_dir.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        log_dir / 'rip_and_tear.log',
        maxBytes=logging_config.get('max_log_size_mb', 50) * 1024 * 1024,
        backupCount=logging_config.get('max_log_files', 10)
    )

    level = getattr(logging, str(logging_config.get('level', 'INFO')).upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            file_handler,
            logging.StreamHandler(sys.stdout)
        ]
    )

    # musicbrainzngs logs every request at INFO
    logging.getLogger('musicbrainzngs').setLevel(logging.WARNING)


def main():
    """Main application entry point"""
    # Load configuration
    config_manager = ConfigManager()
    config = config_manager.load_config()
    config['cd_drive']['device'] = config_manager.get_cd_device(config)

    setup_logging(config['logging'])
    logger = logging.getLogger(__name__)

    logger.info("Starting Rip and Tear application")

    cd_ripper = None
    cd_monitor = None
    try:
        pipeline_factory = partial(CdParanoiaPipeline, config)
        metadata_fetcher = MetadataFetcher(config)
        scanner = DiscScanner.from_config(config, pipeline_factory)

        # Initialize CD ripper
        cd_ripper = CDRipper(config, pipeline_factory=pipeline_factory)
        cd_ripper.progress.connect(lambda value: logger.debug(f"Progress: {value}%"))

        # Start CD monitoring
        cd_monitor = CDMonitor(cd_ripper, scanner, metadata_fetcher, config)
        monitor_thread = threading.Thread(target=cd_monitor.start_monitoring, daemon=True)
        monitor_thread.start()
        logger.info("CD monitoring started")

        # Keep main thread alive
        while True:
            time.sleep(1)

    except KeyboardInterrupt:
        logger.info("Shutting down Rip and Tear application")
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)
    finally:
        if cd_monitor is not None:
            cd_monitor.stop_monitoring()
        if cd_ripper is not None:
            cd_ripper.transcoder.shutdown(wait=False)


if __name__ == "__main__":
    main()
