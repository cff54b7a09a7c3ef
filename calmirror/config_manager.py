from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from calmirror.errors import ConfigurationError
from calmirror.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)

MASK = "***"
SECRET_FIELDS = (("caldav", "password"),)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _render(config: AppConfig) -> str:
    return yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    """YAML-backed configuration, re-read on every load so edits apply to the next pass."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("Writing default config to %s", self.config_path)
            self.save(default_app_config())

    def _read_raw(self) -> dict[str, Any]:
        text = self.config_path.read_text(encoding="utf-8")
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"{self.config_path} is not valid YAML: {exc}") from exc
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"{self.config_path} must contain a mapping, got {type(data).__name__}")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(self._read_raw())

    def save(self, config: AppConfig) -> None:
        text = _render(config)
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            staged = self.config_path.with_name(self.config_path.name + ".tmp")
            staged.write_text(text, encoding="utf-8")
            try:
                staged.replace(self.config_path)
            except OSError as exc:
                if exc.errno != errno.EBUSY:
                    raise
                # A single-file bind mount cannot be renamed over; write it in place.
                logger.warning("Atomic replace of %s failed (EBUSY), writing in place", self.config_path)
                self.config_path.write_text(text, encoding="utf-8")
                staged.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            config = AppConfig.from_dict(_deep_merge(self.load().to_dict(), payload))
            self.save(config)
            logger.info("Config updated: sections %s", ", ".join(sorted(payload)) or "none")
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = MASK
        return config
