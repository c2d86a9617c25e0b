"""
Local preference store persisted as a JSON file.

Values are read once on construction and the whole file is rewritten on every
change. There is no schema version: a missing key, a value of the wrong type
or an unreadable file simply yields the documented default.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_PREFERENCES_PATH = os.getenv(
    "OPS_DASHBOARD_PREFERENCES_PATH",
    str(Path.home() / ".config" / "ops-dashboard" / "preferences.json"),
)

THEMES = ("light", "dark", "system")
NOTIFICATION_TOGGLES = ("taskAssigned", "taskDue", "comments")

DEFAULTS: dict[str, Any] = {
    "theme": "system",
    "notification-prefs": {name: True for name in NOTIFICATION_TOGGLES},
    "sidebar-collapsed": False,
    "sidebar-pinned": False,
}


def _valid(key: str, value: Any) -> bool:
    if key == "theme":
        return value in THEMES
    if key == "notification-prefs":
        return isinstance(value, dict) and all(
            isinstance(value.get(name), bool) for name in NOTIFICATION_TOGGLES
        )
    if key in ("sidebar-collapsed", "sidebar-pinned"):
        return isinstance(value, bool)
    # Unknown keys hold any JSON value.
    return True


class PreferenceStore:
    def __init__(self, path: str | Path | None = None):
        self._path = Path(path or DEFAULT_PREFERENCES_PATH)
        self._values = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> dict[str, Any]:
        try:
            raw = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            logger.warning("Could not read preferences %s: %s", self._path, exc)
            return {}
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Ignoring corrupted preferences %s: %s", self._path, exc)
            return {}
        if not isinstance(data, dict):
            logger.warning("Ignoring preferences %s: expected an object", self._path)
            return {}
        return data

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        tmp.write_text(json.dumps(self._values, indent=2, sort_keys=True), encoding="utf-8")
        os.replace(tmp, self._path)

    def get(self, key: str) -> Any:
        value = self._values.get(key)
        if value is None or not _valid(key, value):
            default = DEFAULTS.get(key)
            return dict(default) if isinstance(default, dict) else default
        return dict(value) if isinstance(value, dict) else value

    def set(self, key: str, value: Any) -> None:
        if not _valid(key, value):
            raise ValueError(f"invalid value for preference '{key}': {value!r}")
        if key == "theme" and value == "system":
            self._values.pop(key, None)
        else:
            self._values[key] = value
        self._save()

    def remove(self, key: str) -> None:
        if self._values.pop(key, None) is not None:
            self._save()

    def all(self) -> dict[str, Any]:
        merged = {key: self.get(key) for key in DEFAULTS}
        for key in self._values:
            if key not in merged:
                merged[key] = self.get(key)
        return merged

    def set_notification(self, name: str, enabled: bool) -> dict[str, bool]:
        if name not in NOTIFICATION_TOGGLES:
            raise ValueError(f"unknown notification toggle '{name}'")
        prefs = self.get("notification-prefs")
        prefs[name] = bool(enabled)
        self.set("notification-prefs", prefs)
        return prefs

    def toggle_sidebar_collapsed(self) -> bool:
        """Flip the collapsed state; a pinned sidebar stays expanded."""
        if self.get("sidebar-pinned"):
            return False
        collapsed = not self.get("sidebar-collapsed")
        self.set("sidebar-collapsed", collapsed)
        return collapsed

    def toggle_sidebar_pinned(self) -> bool:
        pinned = not self.get("sidebar-pinned")
        self._values["sidebar-pinned"] = pinned
        if pinned:
            self._values["sidebar-collapsed"] = False
        self._save()
        return pinned
