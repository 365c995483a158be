from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from timeline_sync.errors import AppError
from timeline_sync.models import AppConfig, default_app_config


MASK = "***"
SECRET_ENV_VAR = "TIMELINE_SYNC_INTERNAL_SECRET"


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _drop_masked_secret(payload: dict[str, Any]) -> dict[str, Any]:
    sanitized = copy.deepcopy(payload)
    connector = sanitized.get("connector")
    if isinstance(connector, dict) and "internal_secret" in connector:
        # An empty or masked secret means "keep what is stored".
        if str(connector.get("internal_secret") or "").strip() in {"", MASK}:
            connector.pop("internal_secret")
        if not connector:
            sanitized.pop("connector")
    return sanitized


class ConfigManager:
    """YAML-backed settings for the connector and the sync window.

    ``TIMELINE_SYNC_INTERNAL_SECRET`` overrides the stored connector secret at
    load time and is never written back to the file.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def _read_raw(self) -> dict[str, Any]:
        try:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise AppError(500, "config file is not valid yaml", "config_invalid") from exc
        if not isinstance(data, dict):
            raise AppError(500, "config file must hold a mapping", "config_invalid")
        return data

    def _write(self, config_dict: dict[str, Any], path: Path) -> None:
        with path.open("w", encoding="utf-8") as handle:
            yaml.safe_dump(config_dict, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)

    def load(self) -> AppConfig:
        with self._lock:
            config = AppConfig.from_dict(self._read_raw())
        env_secret = os.getenv(SECRET_ENV_VAR, "").strip()
        if env_secret:
            config.connector.internal_secret = env_secret
        return config

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            config_dict = config.to_dict()
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            self._write(config_dict, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files in containers cannot be atomically replaced.
                if exc.errno != errno.EBUSY:
                    raise
                self._write(config_dict, self.config_path)
                if tmp_path.exists():
                    tmp_path.unlink()

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            stored = AppConfig.from_dict(self._read_raw()).to_dict()
            config = AppConfig.from_dict(_deep_merge(stored, _drop_masked_secret(payload)))
            self.save(config)
        return self.load()

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        if config["connector"].get("internal_secret"):
            config["connector"]["internal_secret"] = MASK
        return config
