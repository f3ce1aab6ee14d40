"""
Configuration
=============

Project configuration lives in ``<root>/taskfleet.yaml`` and is handled
as a plain nested dict:

    config.get("health_monitoring", {}).get("unresponsive_threshold_sec", 90)

``load_config`` deep-merges the file over ``DEFAULT_CONFIG`` so every key
below is always present after loading.
"""

import copy
import logging
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "taskfleet.yaml"

DEFAULT_CONFIG: dict = {
    "paths": {
        "root": ".",
        "state_dir": "state",
        "workers_dir": "workers",
    },
    "store": {
        # sqlite | file
        "backend": "sqlite",
        "lock_timeout_sec": 5.0,
        "lock_poll_interval_sec": 0.1,
    },
    "project": {
        "name": None,
        "max_slots": 4,
    },
    "queues": {
        "max_retries": 3,
        "default_limit": 50,
    },
    "hierarchy": {
        "max_depth": 2,
        "levels": [
            {"level": 0, "role": "ceo", "can_delegate": True, "max_subordinates": 1,
             "subordinate_role": "manager"},
            {"level": 1, "role": "manager", "can_delegate": True, "max_subordinates": 10,
             "subordinate_role": "worker"},
            {"level": 2, "role": "worker", "can_delegate": False, "max_subordinates": 0,
             "subordinate_role": None},
        ],
        "emergency_brake": {
            "max_total_instances": 10,
            "max_tasks_per_worker": 5,
            "timeout_minutes": 60,
        },
    },
    "health_monitoring": {
        "enabled": True,
        "heartbeat_interval_sec": 30,
        "unresponsive_threshold_sec": 90,
        "check_interval_sec": 30,
        "max_consecutive_failures": 3,
        "auto_restart": True,
        "alert_on_faulty": True,
    },
    "launcher": {
        # Argv template; placeholders: {root} {worker_id} {folder_path}
        "command": ["taskfleet", "--root", "{root}", "worker", "run", "{worker_id}"],
    },
}


def deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge ``override`` into a copy of ``base``"""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def config_path(root: "str | Path") -> Path:
    return Path(root) / CONFIG_FILENAME


def load_config(root: "str | Path" = ".", overrides: Optional[dict] = None) -> dict:
    """Load ``taskfleet.yaml`` from a project root, merged over the defaults"""
    root = Path(root)
    path = config_path(root)

    file_config = {}
    if path.exists():
        with open(path, encoding="utf-8") as f:
            file_config = yaml.safe_load(f) or {}
        logger.debug("Loaded config from %s", path)

    config = deep_merge(DEFAULT_CONFIG, file_config)
    if overrides:
        config = deep_merge(config, overrides)

    # The root is wherever the file was found, not whatever the file says
    config["paths"]["root"] = str(root.resolve())
    return config


def write_default_config(root: "str | Path", overrides: Optional[dict] = None) -> Path:
    """Write ``taskfleet.yaml`` unless one already exists"""
    path = config_path(root)
    if path.exists():
        return path

    config = deep_merge(DEFAULT_CONFIG, overrides or {})
    config["paths"].pop("root", None)

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(config, f, sort_keys=False, default_flow_style=False)
    return path


def resolve_path(config: dict, key: str) -> Path:
    """Resolve a ``paths`` entry against the project root"""
    paths = config.get("paths", {})
    root = Path(paths.get("root", "."))
    value = Path(paths.get(key, DEFAULT_CONFIG["paths"].get(key, ".")))
    return value if value.is_absolute() else root / value
