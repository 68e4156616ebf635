import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import herd.settings as default_settings

log = logging.getLogger(__name__)

TRUTHY = ("true", "1", "t", "yes", "y")


def _coerce(default: Any, value: Any) -> Any:
    """Converts an override to the type of the setting's default value."""
    if isinstance(default, Path):
        return Path(value)
    if isinstance(default, bool):
        return str(value).lower() in TRUTHY
    if default is None:
        return value
    return type(default)(value)


class MergedSettings:
    """
    The effective supervisor configuration.

    Precedence, lowest first:
    1. Defaults in `herd/settings.py`.
    2. `HERD_*` environment variables and `.env` (read by `settings.py`).
    3. `overrides.json`, restricted to keys in `MODIFIABLE_SETTINGS`.

    Values are read as attributes (`config.WORKER_COUNT`) or with `get`.
    """

    def __init__(self, overrides_path: Optional[Path] = None) -> None:
        self.OVERRIDES_JSON_PATH: Path = overrides_path or default_settings.OVERRIDES_JSON_PATH
        self._config: Dict[str, Any] = {
            key: getattr(default_settings, key) for key in dir(default_settings) if key.isupper()
        }
        self._apply_overrides(self._read_overrides())

    def __getattr__(self, name: str) -> Any:
        config = self.__dict__.get("_config", {})
        if name in config:
            return config[name]
        raise AttributeError(f"'{self.__class__.__name__}' object has no attribute '{name}'")

    def get(self, item: str, default: Any = None) -> Any:
        return self._config.get(item, default)

    def as_dict(self) -> Dict[str, Any]:
        """Returns a copy of every setting, suitable for handing to a ClusterManager."""
        return dict(self._config)

    def _read_overrides(self) -> Dict[str, Any]:
        if not self.OVERRIDES_JSON_PATH.exists():
            return {}
        try:
            with self.OVERRIDES_JSON_PATH.open("r") as f:
                overrides = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            log.error(f"Ignoring unreadable overrides file '{self.OVERRIDES_JSON_PATH}': {e}")
            return {}
        if not isinstance(overrides, dict):
            log.error(f"Ignoring overrides file '{self.OVERRIDES_JSON_PATH}': expected a JSON object.")
            return {}
        log.info(f"Loading configuration overrides from {self.OVERRIDES_JSON_PATH}")
        return overrides

    def _apply_overrides(self, overrides: Dict[str, Any]) -> None:
        modifiable = self._config["MODIFIABLE_SETTINGS"]
        for key, value in overrides.items():
            if key not in self._config:
                log.warning(f"Unknown setting '{key}' in overrides. Ignoring.")
                continue
            if key not in modifiable:
                log.warning(f"Setting '{key}' cannot be overridden at runtime. Ignoring.")
                continue
            try:
                self._config[key] = _coerce(self._config[key], value)
            except (ValueError, TypeError) as e:
                log.error(f"Invalid override {key}={value!r}: {e}")
                continue
            log.debug(f"Overridden setting: {key} = {self._config[key]}")

    def update_setting(self, key: str, value: Any) -> Tuple[bool, str]:
        """
        Changes a modifiable setting and persists it alongside earlier overrides.

        :return: A tuple of (success, message for the operator).
        """
        if key not in self._config["MODIFIABLE_SETTINGS"]:
            return False, f"Setting '{key}' is not modifiable."
        try:
            new_value = _coerce(self._config[key], value)
        except (ValueError, TypeError):
            return False, f"Invalid value '{value}' for {key}."

        overrides = self._read_overrides()
        overrides[key] = new_value
        self._config[key] = new_value
        self.save_overrides(overrides)
        return True, f"{key} set to {new_value}. Restart the master to apply it."

    def save_overrides(self, overrides_to_save: Dict[str, Any]) -> None:
        """
        Persists runtime overrides for the next start of the master.

        Keys outside `MODIFIABLE_SETTINGS` are dropped.

        :param overrides_to_save: A dictionary of settings to persist.
        """
        modifiable = self._config["MODIFIABLE_SETTINGS"]
        kept = {key: value for key, value in overrides_to_save.items() if key in modifiable}
        if not kept:
            log.warning("No modifiable settings provided to save.")
            return

        try:
            self.OVERRIDES_JSON_PATH.parent.mkdir(parents=True, exist_ok=True)
            with self.OVERRIDES_JSON_PATH.open("w") as f:
                json.dump(kept, f, indent=4)
        except IOError as e:
            log.error(f"Failed to write overrides file '{self.OVERRIDES_JSON_PATH}': {e}")
            return
        log.info(f"Configuration overrides saved to {self.OVERRIDES_JSON_PATH}")


effective_settings = MergedSettings()
