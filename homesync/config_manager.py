from __future__ import annotations

import copy
import errno
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from homesync.models import AppConfig, default_app_config

MASKED_SECRET = "***"

# Mappings whose keys are data rather than settings; an update replaces them whole
# so a connection dropped by the caller does not survive the merge.
_REPLACED_MAPPINGS = {("oauth", "access_tokens")}


def merge_settings(
    base: dict[str, Any],
    updates: dict[str, Any],
    _path: tuple[str, ...] = (),
) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        path = (*_path, key)
        current = merged.get(key)
        if isinstance(value, dict) and isinstance(current, dict) and path not in _REPLACED_MAPPINGS:
            merged[key] = merge_settings(current, value, path)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class ConfigManager:
    """YAML settings file shared by the engine, scheduler and admin API.

    The engine reads the config on every sync and token lookup, so the parsed
    ``AppConfig`` is cached against the file's mtime and size. Edits made to the
    file by hand are picked up on the next ``load``.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._cache: tuple[tuple[int, int], AppConfig] | None = None
        if not self.config_path.exists():
            self.save(default_app_config())

    def _stamp(self) -> tuple[int, int]:
        stat = self.config_path.stat()
        return stat.st_mtime_ns, stat.st_size

    def _read(self) -> dict[str, Any]:
        data = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{self.config_path} must contain a YAML mapping")
        return data

    def load(self) -> AppConfig:
        with self._lock:
            stamp = self._stamp()
            if self._cache is None or self._cache[0] != stamp:
                self._cache = (stamp, AppConfig.from_dict(self._read()))
            return copy.deepcopy(self._cache[1])

    def save(self, config: AppConfig) -> None:
        text = yaml.safe_dump(
            config.to_dict(),
            sort_keys=False,
            allow_unicode=True,
            default_flow_style=False,
        )
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.config_path.with_name(self.config_path.name + ".tmp")
            tmp_path.write_text(text, encoding="utf-8")
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # A config file bind-mounted into a container cannot be renamed over.
                if exc.errno != errno.EBUSY:
                    raise
                self.config_path.write_text(text, encoding="utf-8")
                tmp_path.unlink(missing_ok=True)
            self._cache = None

    def update(self, payload: dict[str, Any]) -> AppConfig:
        with self._lock:
            merged = merge_settings(self.load().to_dict(), payload)
            config = AppConfig.from_dict(merged)
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        """Config as a dict with every OAuth access token replaced by ``MASKED_SECRET``."""
        config = self.load().to_dict()
        tokens = config["oauth"]["access_tokens"]
        config["oauth"]["access_tokens"] = {connection_id: MASKED_SECRET for connection_id in tokens}
        return config
