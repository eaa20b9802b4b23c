from __future__ import annotations

import copy
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from icsmirror.files import write_text_atomic
from icsmirror.models import AppConfig, default_app_config

log = logging.getLogger(__name__)

SECRET_PLACEHOLDER = "***"
# (section, key) pairs never echoed back and never cleared by a blank update.
SECRET_KEYS = (("caldav", "password"),)


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _drop_placeholder_secrets(current: dict[str, Any], payload: dict[str, Any]) -> dict[str, Any]:
    """Remove blank or masked secrets from ``payload`` when a secret is already stored."""
    cleaned = copy.deepcopy(payload)
    for section, key in SECRET_KEYS:
        updates = cleaned.get(section)
        if not isinstance(updates, dict) or key not in updates:
            continue
        if str(updates[key] or "").strip() in {"", SECRET_PLACEHOLDER} and current.get(section, {}).get(key):
            del updates[key]
    return cleaned


class ConfigManager:
    """YAML-backed application settings, written atomically and read on every call."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            log.info("Writing default configuration to %s", self.config_path)
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            data = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
        return AppConfig.from_dict(data)

    def save(self, config: AppConfig) -> None:
        text = yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)
        with self._lock:
            write_text_atomic(self.config_path, text)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            current = self.load().to_dict()
            config = AppConfig.from_dict(_deep_merge(current, _drop_placeholder_secrets(current, payload)))
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_KEYS:
            if config.get(section, {}).get(key):
                config[section][key] = SECRET_PLACEHOLDER
        return config
