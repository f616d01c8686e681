import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List

from ..errors import InternalError

logger = logging.getLogger(__name__)


class SnapshotManager:
    """Persists the full registry as a JSON mapping `groupKey → [peer, ...]`."""

    def __init__(self, filepath: str):
        self.filepath = Path(filepath)
        self.groups_saved = 0
        self.groups_loaded = 0  # groups actually restored, set by the caller after expiry filtering

    def ensure_directory(self) -> None:
        """Creates the data directory if it does not exist yet."""
        self.filepath.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Dict[str, List[Dict[str, Any]]]:
        """Reads the snapshot. A missing or unreadable file yields an empty registry."""
        try:
            with open(self.filepath, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Error loading peer snapshot %s: %s", self.filepath, exc)
            return {}

        if not isinstance(data, dict):
            logger.error("Peer snapshot %s is not a JSON object; ignoring it.", self.filepath)
            return {}
        return {k: v for k, v in data.items() if isinstance(k, str) and isinstance(v, list)}

    def save(self, groups: Dict[str, List[Dict[str, Any]]]) -> int:
        """Writes the snapshot atomically (temp file + rename)."""
        tmp = self.filepath.with_suffix(self.filepath.suffix + ".tmp")
        try:
            self.ensure_directory()
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(groups, f, indent=2)
            os.replace(tmp, self.filepath)
        except (OSError, TypeError, ValueError) as exc:
            raise InternalError(f"Could not save peer snapshot to {self.filepath}: {exc}") from exc
        self.groups_saved = len(groups)
        logger.info("Saved %d peer groups to %s", len(groups), self.filepath)
        return len(groups)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "persistenceFile": str(self.filepath),
            "groupsLoaded": self.groups_loaded,
            "groupsSaved": self.groups_saved,
        }
