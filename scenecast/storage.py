"""JSON file storage for finished analyses.

All state is stored in flat JSON files under a configurable base directory.
There is no database or ORM — reads and writes go through plain helper
methods that load and dump JSON.

Directory layout:

    {base}/
      config.json             ← app settings (see scenecast.config)
      stories/
        {key}.json            ← StoryAnalysis, keyed by story content hash
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any

from scenecast.models import StoryAnalysis

logger = logging.getLogger(__name__)

_KEY = re.compile(r"^[a-z0-9-]{1,64}$")


def valid_key(key: str) -> bool:
    """Keys are content hashes; anything else never reaches the filesystem."""
    return bool(_KEY.match(key))


class Storage:
    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._stories = base_path / "stories"
        self._stories.mkdir(parents=True, exist_ok=True)

    @property
    def base_path(self) -> Path:
        return self._base

    # ------------------------------------------------------------------
    # Internal path helpers
    # ------------------------------------------------------------------

    def _story_file(self, key: str) -> Path:
        if not valid_key(key):
            raise KeyError(key)
        return self._stories / f"{key}.json"

    def _read_json(self, path: Path) -> Any:
        return json.loads(path.read_text())

    def _write_json(self, path: Path, data: Any) -> None:
        path.write_text(json.dumps(data, indent=2))

    # ------------------------------------------------------------------
    # Analyses
    # ------------------------------------------------------------------

    def save_analysis(self, analysis: StoryAnalysis) -> None:
        self._write_json(self._story_file(analysis.key), analysis.wire())
        logger.debug("Cached analysis %s", analysis.key)

    def get_analysis(self, key: str) -> StoryAnalysis | None:
        if not valid_key(key):
            return None
        path = self._story_file(key)
        if not path.exists():
            return None
        return StoryAnalysis.model_validate(self._read_json(path))

    def list_analyses(self) -> list[dict]:
        """Summary of every cached analysis, newest first."""
        entries = []
        files = sorted(self._stories.glob("*.json"), key=lambda p: p.stat().st_mtime, reverse=True)
        for path in files:
            data = self._read_json(path)
            entries.append({
                "key": data["key"],
                "lines": len(data.get("lines", [])),
                "characters": len(data.get("characters", [])),
                "cancelled": data.get("cancelled", False),
            })
        return entries

    def delete_analysis(self, key: str) -> bool:
        if not valid_key(key):
            return False
        path = self._story_file(key)
        if not path.exists():
            return False
        path.unlink()
        return True
