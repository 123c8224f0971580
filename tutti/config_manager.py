from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from tutti.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)

MASK = "***"
SECTIONS = ("caldav", "sync", "description")
# (section, key) pairs that are never echoed back and never cleared by a blank update.
SECRET_FIELDS = (("caldav", "password"),)
PASSWORD_ENV = "TUTTI_CALDAV_PASSWORD"


def _merge_section(current: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
    merged = dict(current)
    for key, value in changes.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_section(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _is_placeholder(value: Any) -> bool:
    return str(value or "").strip() in {"", MASK}


class ConfigManager:
    """YAML-backed settings for the calendar connection, sync cadence and description layout.

    The CalDAV password may also come from ``TUTTI_CALDAV_PASSWORD``; the
    environment wins over the file and is never written back to it.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("no configuration at %s, writing defaults", self.config_path)
            self.save(default_app_config())

    def _read_raw(self) -> dict[str, Any]:
        text = self.config_path.read_text(encoding="utf-8")
        data = yaml.safe_load(text) or {}
        if not isinstance(data, dict):
            logger.warning("ignoring non-mapping configuration in %s", self.config_path)
            return {}
        return data

    def load(self) -> AppConfig:
        with self._lock:
            config = AppConfig.from_dict(self._read_raw())
        env_password = os.environ.get(PASSWORD_ENV, "")
        if env_password:
            config.caldav.password = env_password
        return config

    def save(self, config: AppConfig) -> None:
        payload = config.to_dict()
        with self._lock:
            if os.environ.get(PASSWORD_ENV) and self.config_path.exists():
                # Keep whatever the file had; the environment value stays out of it.
                stored = self._read_raw().get("caldav") or {}
                payload["caldav"]["password"] = stored.get("password", "") if isinstance(stored, dict) else ""
            text = yaml.safe_dump(payload, sort_keys=False, allow_unicode=True, default_flow_style=False)
            self._write_text(text)

    def _write_text(self, text: str) -> None:
        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.config_path.with_name(self.config_path.name + ".tmp")
        staging.write_text(text, encoding="utf-8")
        try:
            staging.replace(self.config_path)
        except OSError as exc:
            # Bind-mounted single files in containers cannot be atomically replaced.
            if exc.errno != errno.EBUSY:
                raise
            logger.debug("atomic replace of %s refused, writing in place", self.config_path)
            self.config_path.write_text(text, encoding="utf-8")
            staging.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Merge ``payload`` section by section; placeholder secrets keep the stored value."""
        with self._lock:
            current = self.load().to_dict()
            for section, changes in payload.items():
                if section not in SECTIONS:
                    logger.warning("dropping unknown config section %r", section)
                    continue
                if not isinstance(changes, dict):
                    logger.warning("config section %r must be a mapping", section)
                    continue
                changes = {
                    key: value
                    for key, value in changes.items()
                    if not ((section, key) in SECRET_FIELDS and _is_placeholder(value))
                }
                current[section] = _merge_section(current.get(section) or {}, changes)
            config = AppConfig.from_dict(current)
            self.save(config)
            return config

    def set_calendar_id(self, calendar_id: str) -> None:
        with self._lock:
            config = self.load()
            if config.caldav.calendar_id == calendar_id:
                return
            logger.info("remembering calendar %s", calendar_id)
            config.caldav.calendar_id = calendar_id
            self.save(config)

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, key in SECRET_FIELDS:
            if config.get(section, {}).get(key):
                config[section][key] = MASK
        return config
