from __future__ import annotations

import copy
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import yaml

DEFAULTS: Dict[str, Any] = {
    "listen": "0.0.0.0:8080",
    "allowed_origins": [],
    "ack_registration": True,
    "max_frame_bytes": 1024 * 1024,
    "outbound_queue": 256,
    "log_level": "INFO",
    "upload": {
        "enabled": False,
        "listen": "0.0.0.0:8081",
        "dir": "uploads",
        "max_bytes": 25 * 1024 * 1024,
    },
}


def load_config(
    path: Optional[Union[str, Path]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Merge defaults, an optional YAML file and environment overrides."""

    cfg = copy.deepcopy(DEFAULTS)
    if path is not None:
        data = yaml.safe_load(Path(path).read_text()) or {}
        if not isinstance(data, dict):
            raise ValueError(f"{path}: top level must be a mapping")
        _merge(cfg, data)

    env = os.environ if environ is None else environ
    port = env.get("PORT")
    if port:
        host, _ = parse_listen(cfg["listen"])
        cfg["listen"] = f"{host}:{int(port)}"
    level = env.get("BVRELAY_LOG_LEVEL")
    if level:
        cfg["log_level"] = level
    return cfg


def parse_listen(value: str) -> Tuple[str, int]:
    host, sep, port = str(value).rpartition(":")
    if not sep or not port.isdigit():
        raise ValueError(f"listen address must be host:port, got {value!r}")
    return host or "0.0.0.0", int(port)


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> None:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value


__all__ = ["DEFAULTS", "load_config", "parse_listen"]
