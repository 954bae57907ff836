"""JSON status snapshot of repositories and recent builds."""

import json
import time
from collections import deque
from pathlib import Path
from typing import Any

from loguru import logger

from autobuild.poll.orchestrator import CycleReport
from autobuild.types import BuildResult


def _now_ms() -> int:
    return int(time.time() * 1000)


class StatusStore:
    """
    Keeps the latest cycle report per repository and the most recent build
    results, and persists them to a JSON file for external consumers.
    """

    def __init__(self, path: Path, history: int = 200):
        self.path = path
        self._cycles: dict[str, dict[str, Any]] = {}
        self._builds: deque[dict[str, Any]] = deque(maxlen=history)

    def record_result(self, result: BuildResult) -> None:
        self._builds.appendleft(result.to_dict())

    def record_cycle(self, report: CycleReport, state: dict[str, Any] | None = None) -> None:
        entry = report.to_dict()
        if state:
            entry["state"] = state
        self._cycles[report.repo] = entry
        self.save()

    def snapshot(self) -> dict[str, Any]:
        return {
            "version": 1,
            "updatedAtMs": _now_ms(),
            "repos": list(self._cycles.values()),
            "builds": list(self._builds),
        }

    def save(self) -> None:
        """Write the snapshot atomically; failures are logged, not raised."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp = self.path.with_suffix(".tmp")
            tmp.write_text(json.dumps(self.snapshot(), indent=2))
            tmp.replace(self.path)
        except OSError as e:
            logger.warning(f"Failed to write status file {self.path}: {e}")


def load_status(path: Path) -> dict[str, Any] | None:
    """Read a status snapshot written by ``StatusStore``."""
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text())
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Failed to load status file {path}: {e}")
        return None
