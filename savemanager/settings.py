"""Application settings for the save manager."""
from __future__ import annotations

import json
import logging
import os
from copy import deepcopy
from typing import Any, Dict

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = os.path.expanduser("~/.kazeta-saves/settings.json")

DEFAULT_SETTINGS: Dict[str, Any] = {
    "dev_mode": False,
    "storage": {
        "data_dir": os.path.expanduser("~/.local/share/kazeta"),
        # Empty means: /media if populated, else /run/media/<user>, else /run/media
        "media_roots": [],
        "reserved_partitions": ["frzr_efi"],
        "sync_to_disk": True,
    },
    "timing": {
        "device_refresh_interval": 1.0,
        "progress_poll_interval": 0.05,
        "start_delay": 0.5,
        "completion_hold": 1.5,
    },
    "network": {
        "user_agent": "KazetaPlus-Updater",
        "timeout": [10, 90],
        "update_releases_url": "https://api.github.com/repos/the-outcaster/kazeta-plus/releases",
        "theme_releases_url": "https://api.github.com/repos/the-outcaster/kazeta-plus-themes/releases",
        "runtime_release_url": "https://api.github.com/repos/the-outcaster/kazeta-plus/releases/tags/runtimes",
        "official_runtime_base_url": "https://runtimes.kazeta.org/",
    },
    "paths": {
        "themes_dir": os.path.expanduser("~/.local/share/kazeta-plus/themes"),
        "runtimes_dir": "/usr/share/kazeta/runtimes",
        "dev_runtimes_dir": os.path.expanduser("~/.local/share/kazeta-plus/runtimes"),
        "update_staging_dir": "/tmp",
    },
    "monitor": {
        "log_file": os.path.expanduser("~/.kazeta-saves/logs/events.log"),
        "echo": False,
    },
}


def _deep_merge(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    out = deepcopy(base)
    for k, v in (updates or {}).items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = deepcopy(v)
    return out


def load_settings(path: str = DEFAULT_SETTINGS_PATH) -> Dict[str, Any]:
    if not os.path.exists(path):
        return deepcopy(DEFAULT_SETTINGS)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Ignoring unreadable settings file %s: %s", path, e)
        return deepcopy(DEFAULT_SETTINGS)
    if not isinstance(data, dict):
        logger.warning("Ignoring settings file %s: top level is not an object", path)
        return deepcopy(DEFAULT_SETTINGS)
    return _deep_merge(DEFAULT_SETTINGS, data)


def save_settings(settings: Dict[str, Any], path: str = DEFAULT_SETTINGS_PATH) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings, f, ensure_ascii=False, indent=2)


def merged_settings(overrides: Dict[str, Any] | None = None) -> Dict[str, Any]:
    """Defaults with ``overrides`` applied, without touching disk."""
    return _deep_merge(DEFAULT_SETTINGS, overrides or {})
