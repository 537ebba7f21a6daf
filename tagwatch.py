#!/usr/bin/env python3
"""
Container Image Update Watcher

Watches running containers, works out the image version each one runs and
asks the image's registry (Docker Hub, ECR, GCR or ACR) whether a newer
version has been published, honouring semantic versioning and per-container
include/exclude tag filters.
"""

__version__ = "1.0.0"

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

import jsonschema

from errors import ConfigurationError
from notify import make_dispatcher
from registries import build_registries
from resolver import ImageResolver
from store import ResultStore
from watcher import Watcher

# Configuration schema; registries and watchers validate their own sections
CONFIG_SCHEMA = {
    "type": "object",
    "properties": {
        "registries": {
            "type": "object",
            "additionalProperties": {"type": "object"},
        },
        "watchers": {
            "type": "object",
            "additionalProperties": {"type": "object"},
        },
        "notifications": {
            "type": "object",
            "properties": {
                "ntfy": {"type": "object"},
                "webhook": {"type": "object"},
            },
        },
    },
}

DEFAULT_WATCHER = "local"


def load_config(config_file: Optional[str]) -> Dict[str, Any]:
    """Load and validate the JSON configuration file.

    A missing file yields an empty configuration (anonymous Hub access and a
    single local watcher with default settings).
    """
    if not config_file or not Path(config_file).exists():
        logging.getLogger(__name__).info(f"No config file {config_file}, using defaults")
        return {}
    try:
        with open(config_file, 'r') as f:
            config = json.load(f)
        jsonschema.validate(config, CONFIG_SCHEMA)
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Error parsing config file {config_file}: {e}")
    except jsonschema.ValidationError as e:
        raise ConfigurationError(f"Configuration validation failed: {e.message}")
    return config


def setup_logging(level: str) -> None:
    """Install a single stream handler on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper()))
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        ))
        root.addHandler(handler)


class TagWatch:
    def __init__(self, config: Dict[str, Any], results_file: Optional[str] = None,
                 dry_run: bool = False):
        """
        Build registries, resolver and watchers from configuration.

        Args:
            config: Validated configuration dict
            results_file: Path of the JSON result file (None disables it)
            dry_run: If True, only log what would be saved or notified
        """
        self.logger = logging.getLogger(__name__)
        self.resolver = ImageResolver(build_registries(config.get('registries')))
        self.store = ResultStore(results_file, dry_run) if results_file else None
        notifications = None if dry_run else config.get('notifications')

        self.watchers: List[Watcher] = []
        for name, watcher_config in (config.get('watchers') or {DEFAULT_WATCHER: {}}).items():
            try:
                self.watchers.append(Watcher(
                    name, watcher_config, self.resolver,
                    sink=self.store,
                    on_update=make_dispatcher(notifications, name),
                ))
            except ConfigurationError as e:
                self.logger.error(f"Watcher '{name}' disabled: {e}")

        if not self.watchers:
            raise ConfigurationError("No usable watcher configured")

    def run_once(self) -> None:
        for watcher in self.watchers:
            watcher.run_cycle()

    def run_forever(self) -> None:
        for watcher in self.watchers:
            watcher.start()
        try:
            while True:
                time.sleep(3600)
        except KeyboardInterrupt:
            self.logger.info("Exiting...")
        finally:
            for watcher in self.watchers:
                watcher.stop(timeout=5)


def main():
    parser = argparse.ArgumentParser(
        description='Watch running containers for newer image versions'
    )
    parser.add_argument(
        'config',
        nargs='?',
        default=os.environ.get('CONFIG_FILE', 'config.json'),
        help='Path to configuration JSON file (env: CONFIG_FILE, default: config.json)'
    )
    parser.add_argument(
        '--results',
        default=os.environ.get('RESULTS_FILE', 'tagwatch_results.json'),
        help='Path to results file (env: RESULTS_FILE, default: tagwatch_results.json)'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        default=os.environ.get('DRY_RUN', '').lower() == 'true',
        help='Log results and updates without saving or notifying (env: DRY_RUN)'
    )
    parser.add_argument(
        '--daemon',
        action='store_true',
        default=os.environ.get('DAEMON', '').lower() == 'true',
        help='Run continuously, each watcher on its own schedule (env: DAEMON)'
    )
    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.environ.get('LOG_LEVEL', 'INFO'),
        help='Logging level (env: LOG_LEVEL, default: INFO)'
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    args = parser.parse_args()
    setup_logging(args.log_level)

    try:
        app = TagWatch(load_config(args.config), args.results, args.dry_run)
    except ConfigurationError as e:
        logging.error(f"Fatal error: {e}")
        sys.exit(1)

    if args.daemon:
        app.logger.info(f"Running in daemon mode with {len(app.watchers)} watcher(s)")
        app.run_forever()
    else:
        app.run_once()


if __name__ == '__main__':
    main()
