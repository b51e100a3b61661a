"""
Runtime configuration: defaults, then an optional JSON file, then
EPUBSHELF_* environment variables.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, fields, replace
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "EPUBSHELF_"
CONFIG_ENV = "EPUBSHELF_CONFIG"

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.\-]*$")
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class Settings:
    books_dir: str = "."
    host: str = "127.0.0.1"
    port: int = 8123
    scheme: str = "epub"
    mount_prefix: str = "/epub"
    open_external_links: bool = True
    open_browser: bool = True
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"


def parse_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    logger.warning("Ignoring invalid boolean %r, using %s", value, default)
    return default


def parse_int(value: Any, default: int) -> int:
    if isinstance(value, bool):
        logger.warning("Ignoring invalid integer %r, using %s", value, default)
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Ignoring invalid integer %r, using %s", value, default)
        return default


def normalize_scheme(value: Any, default: str) -> str:
    scheme = str(value).strip().lower()
    if not _SCHEME_RE.match(scheme):
        logger.warning("Ignoring invalid scheme %r, using %s", value, default)
        return default
    return scheme


def normalize_mount_prefix(value: Any, default: str) -> str:
    prefix = str(value).strip().strip("/")
    if not prefix:
        logger.warning("Ignoring empty mount prefix, using %s", default)
        return default
    return "/" + prefix


def _coerce(raw: Mapping[str, Any], base: Settings) -> Dict[str, Any]:
    """Converts raw config values onto the field types of Settings."""
    values: Dict[str, Any] = {}
    for f in fields(Settings):
        if f.name not in raw:
            continue
        value = raw[f.name]
        current = getattr(base, f.name)
        if f.name == "port":
            values[f.name] = parse_int(value, current)
        elif f.name in ("open_external_links", "open_browser"):
            values[f.name] = parse_bool(value, current)
        elif f.name == "scheme":
            values[f.name] = normalize_scheme(value, current)
        elif f.name == "mount_prefix":
            values[f.name] = normalize_mount_prefix(value, current)
        elif f.name == "log_level":
            values[f.name] = str(value).strip().upper()
        elif f.name == "log_file":
            values[f.name] = str(value) if value not in (None, "") else None
        else:
            values[f.name] = str(value)
    return values


def read_config_file(path: str) -> Dict[str, Any]:
    """Reads a JSON object; a missing or invalid file is logged and ignored."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logger.warning("Ignoring config file %s: %s", path, e)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", path)
        return {}
    return data


def load_settings(config_path: Optional[str] = None,
                  environ: Optional[Mapping[str, str]] = None) -> Settings:
    environ = os.environ if environ is None else environ
    settings = Settings()

    config_path = config_path or environ.get(CONFIG_ENV)
    if config_path:
        settings = replace(settings, **_coerce(read_config_file(config_path), settings))

    env_values = {}
    for f in fields(Settings):
        key = ENV_PREFIX + f.name.upper()
        if key in environ:
            env_values[f.name] = environ[key]
    if env_values:
        settings = replace(settings, **_coerce(env_values, settings))

    return settings
