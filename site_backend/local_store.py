"""
Local JSON file used as the storage tier of last resort.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile

logger = logging.getLogger(__name__)


class LocalFileStore:
    """Reads and writes the registrations array as a JSON file."""

    def __init__(self, file_path: str):
        self.file_path = file_path

    @property
    def exists(self) -> bool:
        return os.path.exists(self.file_path)

    def ensure_file(self) -> None:
        """Create the data directory and an empty array file if missing."""
        if self.exists:
            return
        self.write([])
        logger.info("Created empty fallback file %s", self.file_path)

    def read(self) -> list:
        """Return the stored registrations; a missing or unreadable file is empty."""
        if not self.exists:
            logger.info("No local fallback file at %s", self.file_path)
            return []
        try:
            with open(self.file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as exc:
            logger.error("Error reading local fallback %s: %s", self.file_path, exc)
            return []
        if not isinstance(data, list):
            logger.warning("Local fallback %s does not hold an array", self.file_path)
            return []
        return data

    def write(self, registrations: list) -> bool:
        """Atomically replace the file contents. Returns False on I/O failure."""
        dir_path = os.path.dirname(self.file_path) or "."
        temp_path = None
        try:
            os.makedirs(dir_path, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(
                dir=dir_path, prefix=".tmp_", suffix=".json"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(registrations, f, ensure_ascii=False, indent=2, default=str)
                f.flush()
                os.fsync(f.fileno())
            os.replace(temp_path, self.file_path)
        except OSError as exc:
            logger.error("Error saving to local fallback %s: %s", self.file_path, exc)
            if temp_path and os.path.exists(temp_path):
                os.remove(temp_path)
            return False
        logger.debug("Saved %d registrations to %s", len(registrations), self.file_path)
        return True
