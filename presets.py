# presets.py
from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Optional

from game_state import ALLOWED_TARGET_SCORES, DEFAULT_TARGET_SCORE, sanitize_team_name

log = logging.getLogger(__name__)

PRESET_SCHEMA_VERSION = 1

KEY_LAST = "last"
KEY_PRESET = "preset"


class PresetStoreError(Exception):
    pass


@dataclass(frozen=True)
class SavedConfig:
    """Team names, rule toggles and feedback toggles; never scores."""

    team_a_name: str = "A"
    team_b_name: str = "B"
    target_score: int = DEFAULT_TARGET_SCORE
    win_by_two: bool = True
    three_point_mode: bool = False
    loud_mode: bool = False
    keep_screen_awake: bool = True
    video_capture_mode: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, d) -> Optional["SavedConfig"]:
        if not isinstance(d, dict):
            return None
        try:
            target = int(d.get("target_score", DEFAULT_TARGET_SCORE))
        except (TypeError, ValueError):
            return None
        if target not in ALLOWED_TARGET_SCORES:
            return None
        return cls(
            team_a_name=sanitize_team_name(d.get("team_a_name"), "A"),
            team_b_name=sanitize_team_name(d.get("team_b_name"), "B"),
            target_score=target,
            win_by_two=bool(d.get("win_by_two", True)),
            three_point_mode=bool(d.get("three_point_mode", False)),
            loud_mode=bool(d.get("loud_mode", False)),
            keep_screen_awake=bool(d.get("keep_screen_awake", True)),
            video_capture_mode=bool(d.get("video_capture_mode", False)),
        )


class PresetStore:
    """JSON file holding the last-used config and one named preset."""

    def __init__(self, path):
        self.path = Path(path)

    # ---------- file I/O ----------
    def _read(self) -> dict:
        if not self.path.exists():
            return {"schema": PRESET_SCHEMA_VERSION}
        try:
            data = json.loads(self.path.read_text())
            if isinstance(data, dict):
                data.setdefault("schema", PRESET_SCHEMA_VERSION)
                return data
        except (OSError, ValueError) as exc:
            log.warning(f"unreadable preset file {self.path}: {exc}")
        return {"schema": PRESET_SCHEMA_VERSION}

    def _write_key(self, key: str, cfg: SavedConfig):
        data = self._read()
        data[key] = cfg.to_dict()
        data["schema"] = PRESET_SCHEMA_VERSION
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data, indent=2))
        except OSError as exc:
            raise PresetStoreError(f"cannot write {self.path}: {exc}") from exc

    # ---------- public API ----------
    def save_last(self, cfg: SavedConfig):
        self._write_key(KEY_LAST, cfg)

    def load_last(self) -> Optional[SavedConfig]:
        return SavedConfig.from_dict(self._read().get(KEY_LAST))

    def save_preset(self, cfg: SavedConfig):
        self._write_key(KEY_PRESET, cfg)

    def load_preset(self) -> Optional[SavedConfig]:
        return SavedConfig.from_dict(self._read().get(KEY_PRESET))

    def has_preset(self) -> bool:
        return self.load_preset() is not None
