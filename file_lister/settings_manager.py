from __future__ import annotations

import json
import os
from typing import Any

from .logger import get_logger
from .path_utils import abs_path_str

_logger = get_logger("settings")


class SettingsManager:
    def __init__(self, settings_path: str | None = None):
        self.settings_path = abs_path_str(settings_path) if settings_path else None
        self._settings: dict[str, Any] = {}
        self.load()

    DEFAULTS: dict[str, Any] = {
        "thumbnail_max_edge": 400,
        "pdf_dpi": 150,
        "video_timeout_s": 10.0,
        "video_seek_s": 1.0,
        "cache_pixel_budget": 64_000_000,
        "failure_cooldown_s": 30.0,
        "scan_workers": 2,
        "thumbnail_workers": 4,
        "ffmpeg_path": None,
        "delete_to_trash": False,
        "recursive": False,
    }

    def load(self) -> None:
        if not self.settings_path:
            self._settings = {}
            return
        try:
            if os.path.exists(self.settings_path):
                with open(self.settings_path, encoding="utf-8") as f:
                    data = json.load(f)
                    if isinstance(data, dict):
                        self._settings = data
                        _logger.debug("settings loaded: %s", self.settings_path)
                        return
        except (OSError, ValueError) as e:
            _logger.warning("settings load failed: %s", e)
        self._settings = {}

    def save(self) -> None:
        if not self.settings_path:
            return
        try:
            parent = os.path.dirname(self.settings_path)
            if parent:
                os.makedirs(parent, exist_ok=True)
            with open(self.settings_path, "w", encoding="utf-8") as f:
                json.dump(self._settings, f, ensure_ascii=False, indent=2)
            _logger.debug("settings saved: %s", self.settings_path)
        except OSError as e:
            _logger.error("settings save failed: %s", e)

    def get(self, key: str, default: Any = None) -> Any:
        if key in self._settings:
            return self._settings[key]
        if default is not None:
            return default
        return self.DEFAULTS.get(key)

    def has(self, key: str) -> bool:
        return key in self._settings

    def set(self, key: str, value: Any) -> None:
        self._settings[key] = value
        self.save()

    @property
    def data(self) -> dict[str, Any]:
        return self._settings

    def get_int(self, key: str) -> int:
        try:
            return int(self.get(key))
        except (TypeError, ValueError):
            _logger.warning("setting %s is not an integer; using default", key)
            return int(self.DEFAULTS[key])

    def get_float(self, key: str) -> float:
        try:
            return float(self.get(key))
        except (TypeError, ValueError):
            _logger.warning("setting %s is not a number; using default", key)
            return float(self.DEFAULTS[key])

    @property
    def delete_to_trash(self) -> bool:
        return bool(self.get("delete_to_trash", False))

    @property
    def ffmpeg_path(self) -> str | None:
        val = self.get("ffmpeg_path")
        return val if isinstance(val, str) and val.strip() else None
