"""JSON file holding the last watch cycle of every watcher."""

import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict

from models import CycleResult

logger = logging.getLogger(__name__)


class ResultStore:
    """Result sink writing cycle results to a JSON file, one entry per watcher."""

    def __init__(self, path: str, dry_run: bool = False):
        self.path = Path(path)
        self.dry_run = dry_run
        self._lock = threading.Lock()

    def load(self) -> Dict[str, Any]:
        """Load previous results, starting fresh on a missing or corrupt file."""
        if not self.path.exists():
            return {}
        try:
            with open(self.path, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Error loading results from {self.path}, starting fresh: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def publish(self, watcher: str, cycle: CycleResult) -> None:
        if self.dry_run:
            logger.info(f"[DRY RUN] Would save {len(cycle.results)} result(s) of '{watcher}'")
            return

        with self._lock:
            data = self.load()
            data[watcher] = cycle.to_dict()

            # Write to temp file first, then rename atomically
            temp_file = self.path.with_suffix('.tmp')
            with open(temp_file, 'w') as f:
                json.dump(data, f, indent=2)
            temp_file.replace(self.path)
        logger.debug(f"Saved results of '{watcher}' to {self.path}")
