"""Optional ``config.py`` loading shared by the importer and the web app."""
from __future__ import annotations

import importlib.util
import os
from pathlib import Path
from types import ModuleType
from typing import Optional


CONFIG_ENV = "KARAOKE_CONFIG"
DEFAULT_CONFIG_FILE = "config.py"


def load_config_module(path=None) -> Optional[ModuleType]:
    """Load the settings module from ``path``, ``$KARAOKE_CONFIG`` or ``./config.py``.

    Returns None when no file is configured and ``./config.py`` does not exist.
    A file named explicitly or through the environment must exist.
    """

    explicit = path or os.environ.get(CONFIG_ENV)
    config_path = Path(explicit or DEFAULT_CONFIG_FILE).expanduser()
    if not config_path.is_file():
        if explicit:
            raise FileNotFoundError(f"No such configuration file: '{config_path}'")
        return None

    spec = importlib.util.spec_from_file_location("karaoke_config", config_path)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)  # type: ignore[union-attr]
    return module


def take_config(config: Optional[ModuleType], name):
    return getattr(config, name, None) if config is not None else None


def mongo_uri(config: Optional[ModuleType]) -> str:
    mongo_config = take_config(config, 'MONGO') or {}
    return (
        os.environ.get("KARAOKE_MONGO_URI")
        or mongo_config.get('uri')
        or 'mongodb://127.0.0.1:27017/karaoke'
    )


def mongo_database(config: Optional[ModuleType]) -> Optional[str]:
    mongo_config = take_config(config, 'MONGO') or {}
    return os.environ.get("KARAOKE_MONGO_DB") or mongo_config.get('database')


def mongo_collection(config: Optional[ModuleType]) -> Optional[str]:
    mongo_config = take_config(config, 'MONGO') or {}
    return mongo_config.get('collection')


def strip_components(config: Optional[ModuleType]) -> int:
    value = os.environ.get('STRIP_COMPONENTS') or take_config(config, 'STRIP_COMPONENTS') or 0
    return int(value)


def ffprobe_executable(config: Optional[ModuleType]) -> str:
    return os.environ.get('FFPROBE') or take_config(config, 'FFPROBE') or 'ffprobe'
