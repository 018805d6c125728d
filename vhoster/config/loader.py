import os
import yaml
from pathlib import Path
from typing import Mapping, Optional
from .models import AppConfig

_ENV_PORTS = {"PORT": "port", "WS_PORT": "ws_port"}


def load_config(config_path: Path, required: bool = False, environ: Optional[Mapping[str, str]] = None) -> AppConfig:
    """Loads YAML config, applies environment overrides and parses it into AppConfig.

    A missing file yields the defaults unless ``required`` is set.
    """
    if config_path.exists():
        with open(config_path, 'r') as f:
            data = yaml.safe_load(f) or {}
    elif required:
        raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        data = {}

    env = os.environ if environ is None else environ
    server = dict(data.get("server") or {})
    for env_name, key in _ENV_PORTS.items():
        value = env.get(env_name)
        if value:
            server[key] = value
    if server:
        data["server"] = server

    return AppConfig(**data)
