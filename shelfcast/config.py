"""
Configuration management for Shelfcast.

Settings start from the component dataclass defaults, are merged with an
optional YAML file and finally overridden by ``SHELFCAST_*`` environment
variables (a ``.env`` file is loaded first when present).

Environment variables use a double underscore between section and field,
e.g. ``SHELFCAST_ENGINE__COLD_START_THRESHOLD=0.4`` or
``SHELFCAST_TRACKER__BATCH_SIZE=200``; top-level fields are plain, e.g.
``SHELFCAST_LOG_LEVEL=DEBUG``.
"""

import os
import logging
from dataclasses import dataclass, field, fields, is_dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv

from .core.engine import EngineConfig
from .serving.service import ServiceConfig
from .storage.cache import CacheConfig
from .streaming.behavior_tracker import BehaviorTrackerConfig


ENV_PREFIX = "SHELFCAST_"

logger = logging.getLogger(__name__)


@dataclass
class Settings:
    """Aggregate of every component configuration"""
    engine: EngineConfig = field(default_factory=EngineConfig)
    tracker: BehaviorTrackerConfig = field(default_factory=BehaviorTrackerConfig)
    service: ServiceConfig = field(default_factory=ServiceConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    host: str = "0.0.0.0"
    port: int = 8000
    log_level: str = "INFO"


SECTIONS = ("engine", "tracker", "service", "cache")


def _coerce(raw: str, current: Any) -> Any:
    """Parse an environment string into the type of the current value"""
    if isinstance(current, str):
        return raw
    value = yaml.safe_load(raw)
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, int) and not isinstance(value, bool):
        return int(value)
    if isinstance(current, float):
        return float(value)
    return value


def _apply(target: Any, values: Mapping[str, Any], source: str):
    known = {f.name for f in fields(target)}
    for name, value in values.items():
        if name not in known:
            logger.warning(f"Ignoring unknown setting {name} from {source}")
            continue
        current = getattr(target, name)
        if is_dataclass(current) and isinstance(value, Mapping):
            _apply(current, value, source)
        else:
            setattr(target, name, value)


def _apply_env(settings: Settings, environ: Mapping[str, str]):
    for key, raw in environ.items():
        if not key.startswith(ENV_PREFIX) or key == f"{ENV_PREFIX}CONFIG":
            continue

        name = key[len(ENV_PREFIX):].lower()
        if "__" in name:
            section, field_name = name.split("__", 1)
            if section not in SECTIONS:
                continue
            target = getattr(settings, section)
        else:
            target, field_name = settings, name

        if not hasattr(target, field_name) or is_dataclass(getattr(target, field_name)):
            continue

        try:
            setattr(target, field_name, _coerce(raw, getattr(target, field_name)))
        except (TypeError, ValueError, yaml.YAMLError) as e:
            raise ValueError(f"Invalid value for {key}: {raw!r} ({e})")


def load_settings(
    path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
    load_env_file: bool = True
) -> Settings:
    """
    Load settings from defaults, a YAML file and the environment

    Args:
        path: YAML file; falls back to ``SHELFCAST_CONFIG`` when omitted
        environ: Environment mapping (``os.environ`` by default)
        load_env_file: Load a ``.env`` file into the process environment first

    Returns:
        Settings aggregate
    """
    if load_env_file and environ is None:
        load_dotenv()
    environ = os.environ if environ is None else environ

    settings = Settings()

    path = path or environ.get(f"{ENV_PREFIX}CONFIG")
    if path:
        config_file = Path(path)
        with open(config_file, "r", encoding="utf-8") as f:
            data: Dict[str, Any] = yaml.safe_load(f) or {}
        if not isinstance(data, Mapping):
            raise ValueError(f"Settings file {config_file} must contain a mapping")
        _apply(settings, data, str(config_file))

    _apply_env(settings, environ)
    return settings
