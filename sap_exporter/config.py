# sap_exporter/config.py
"""
Configuration for the SAP system exporter.

This module centralizes all tunable settings (listen address, SAPControl URL and
credentials, cache TTLs, scrape timeout, Loki push settings and which optional
collectors to register).

Precedence, lowest first: built-in defaults, environment variables, the YAML
config file, command line flags.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
import logging
import os
import re
import sys
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
from urllib.parse import urlsplit, urlunsplit

import yaml

logger = logging.getLogger(__name__)

CONFIG_NAME = "sap_system_exporter"
CONFIG_DIRS = ("./", "./config/", "./conf/", "/etc/")

_DURATION_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


class ConfigError(ValueError):
    """Raised for unreadable config files or invalid values."""


def parse_duration(raw: Any) -> float:
    """
    Parse a duration into seconds.

    Accepts numbers (seconds) and strings such as "30s", "5m", "24h", "250ms", "-1s".
    """
    if isinstance(raw, bool):
        raise ConfigError(f"invalid duration: {raw!r}")
    if isinstance(raw, (int, float)):
        return float(raw)
    m = _DURATION_RE.match(str(raw))
    if not m:
        raise ConfigError(f"invalid duration: {raw!r}")
    return float(m.group(1)) * _DURATION_UNITS[m.group(2)]


def parse_bool(raw: Any) -> bool:
    """Parse a boolean-ish value; 1/true/yes/on are true."""
    if isinstance(raw, bool):
        return raw
    return str(raw).strip().lower() in ("1", "true", "yes", "on", "y")


def _env_int(name: str, default: int) -> int:
    """Read an integer environment variable, returning default on missing/invalid values."""
    try:
        return int(os.getenv(name, str(default)))
    except Exception:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return parse_bool(raw)


def _env_duration(name: str, default: float) -> float:
    """Read a duration environment variable, returning default on missing/invalid values."""
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return parse_duration(raw)
    except ConfigError:
        return default


@dataclass(frozen=True)
class AppConfig:
    """
    Immutable exporter configuration.

    Notes on the SAPControl URL:
      - a missing scheme defaults to http://
      - the port is mandatory (5xx13 for http, 5xx14 for https)
      - a dotted hostname sets host_domain; a bare one is qualified with host_domain
    """

    # HTTP listener
    address: str = os.getenv("ADDRESS", "0.0.0.0")
    port: int = _env_int("PORT", 9680)
    log_level: str = os.getenv("LOG_LEVEL", "info")

    # SAPControl
    sap_control_url: str = os.getenv("SAP_CONTROL_URL", "https://localhost:50014")
    host_domain: str = os.getenv("SAP_CONTROL_DOMAIN", "")
    sap_control_user: str = os.getenv("SAP_CONTROL_USER", "")
    sap_control_password: str = os.getenv("SAP_CONTROL_PASSWORD", "")
    tls_skip_verify: bool = _env_bool("TLS_SKIP_VERIFY", False)
    sap_sid: str = os.getenv("SAP_SID", "")

    # Cache + scrape controls (seconds)
    cache_ttl: float = _env_duration("SAP_CACHE_TTL", 30.0)
    failure_cache_ttl: float = _env_duration("SAP_FAILURE_CACHE_TTL", 5.0)
    scrape_timeout: float = _env_duration("SCRAPE_TIMEOUT", 30.0)
    max_fanout: int = _env_int("MAX_FANOUT", 8)

    # Alerts / Loki
    send_alerts_to_prom: bool = _env_bool("SEND_ALERTS_TO_PROM", False)
    alert_samples_max_age: float = _env_duration("ALERT_SAMPLES_MAX_AGE", 24 * 3600.0)
    loki_url: str = os.getenv("LOKI_URL", "")
    loki_name: str = os.getenv("LOKI_NAME", "sap_alerts")
    loki_tenantid: str = os.getenv("LOKI_TENANTID", "fake")
    loki_batch_wait: int = _env_int("LOKI_BATCH_WAIT", 100)  # ms
    loki_batch_entries_number: int = _env_int("LOKI_BATCH_ENTRIES_NUMBER", 32)
    loki_http_timeout: int = _env_int("LOKI_HTTP_TIMEOUT", 1000)  # ms
    loki_time_location: str = os.getenv("LOKI_TIME_LOCATION", "Europe/Moscow")

    # Optional collectors
    collect_enqueueserver: bool = _env_bool("COLLECT_ENQUEUESERVER", True)
    collect_dispatcher: bool = _env_bool("COLLECT_DISPATCHER", True)
    collect_workprocess: bool = _env_bool("COLLECT_WORKPROCESS", True)
    collect_alerts: bool = _env_bool("COLLECT_ALERTS", True)

    # Derived from sap_control_url in __post_init__
    use_ssl: bool = field(init=False, default=False)
    sap_host: str = field(init=False, default="")

    def __post_init__(self):
        """
        Normalize and validate sap_control_url, deriving use_ssl, sap_host and host_domain.

        Raises:
            ConfigError if the URL cannot be parsed or has no port.
        """
        url = self.sap_control_url.strip()
        if not re.match(r"^https?://", url):
            url = "http://" + url

        parts = urlsplit(url)
        try:
            port = parts.port
        except ValueError as exc:
            raise ConfigError(f"could not parse url: {url}") from exc
        if not parts.hostname:
            raise ConfigError(f"could not parse url: {url}")
        if port is None:
            raise ConfigError(f"port must be provided for sap_control_url: {url}")

        hostname = parts.hostname
        domain = self.host_domain.strip().lstrip(".")
        if "." in hostname:
            url_domain = hostname.split(".", 1)[1]
            if domain and domain != url_domain:
                logger.warning("host_domain %r is overwritten by sap_control_url: %s", domain, url_domain)
            domain = url_domain
            sap_host = hostname
        elif domain:
            sap_host = f"{hostname}.{domain}"
            url = urlunsplit((parts.scheme, f"{sap_host}:{port}", parts.path, parts.query, parts.fragment))
        else:
            logger.warning("host_domain is empty and sap_control_url has no domain part: %s", url)
            sap_host = hostname

        # dataclass frozen => use object.__setattr__
        object.__setattr__(self, "sap_control_url", url.rstrip("/"))
        object.__setattr__(self, "host_domain", domain)
        object.__setattr__(self, "sap_host", sap_host)
        object.__setattr__(self, "use_ssl", parts.scheme == "https")

    @property
    def basic_auth(self) -> Optional[tuple]:
        """(user, password) for requests, or None when no user is configured."""
        if not self.sap_control_user:
            return None
        return (self.sap_control_user, self.sap_control_password)


_DURATION_KEYS = {"cache_ttl", "failure_cache_ttl", "scrape_timeout", "alert_samples_max_age"}


def _coerce(name: str, value: Any, default: Any) -> Any:
    """Convert a raw file/CLI value to the type of the AppConfig field."""
    if name in _DURATION_KEYS:
        return parse_duration(value)
    if isinstance(default, bool):
        return parse_bool(value)
    if isinstance(default, int):
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"invalid integer for {name}: {value!r}") from exc
    return "" if value is None else str(value)


def find_config_file() -> Optional[Path]:
    """Look for sap_system_exporter.yaml/.yml in the default locations."""
    for directory in CONFIG_DIRS:
        for ext in (".yaml", ".yml"):
            candidate = Path(directory) / f"{CONFIG_NAME}{ext}"
            if candidate.is_file():
                return candidate
    return None


def read_config_file(path: Path) -> Dict[str, Any]:
    """
    Read a YAML config file into a flat dict.

    Keys may use dashes or underscores ("sap-control-url" == "sap_control_url").
    """
    try:
        with path.open() as f:
            data = yaml.safe_load(f)
    except OSError as exc:
        raise ConfigError(f"error reading config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"invalid YAML in config file {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a mapping")
    return {str(k).replace("-", "_"): v for k, v in data.items()}


def load_config(config_path: Optional[str] = None, overrides: Optional[Mapping[str, Any]] = None) -> AppConfig:
    """
    Build an AppConfig from env defaults, a YAML file and CLI overrides.

    Args:
        config_path: explicit config file (must exist). If None, CONFIG_FILE or the
            default locations are searched and a missing file is not an error.
        overrides: values from the command line; None values are ignored.
    """
    path: Optional[Path]
    explicit = config_path or os.getenv("CONFIG_FILE")
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise ConfigError(f"config file not found: {path}")
    else:
        path = find_config_file()

    raw: Dict[str, Any] = {}
    if path is not None:
        raw.update(read_config_file(path))
        logger.info("Using config file: %s", path)
    else:
        logger.warning("No config file found, using defaults and environment variables")

    for k, v in (overrides or {}).items():
        if v is not None:
            raw[k.replace("-", "_")] = v

    defaults = AppConfig.__dataclass_fields__
    kwargs: Dict[str, Any] = {}
    for f in fields(AppConfig):
        if not f.init or f.name not in raw:
            continue
        kwargs[f.name] = _coerce(f.name, raw[f.name], defaults[f.name].default)

    unknown = sorted(set(raw) - {f.name for f in fields(AppConfig)} - {"config"})
    if unknown:
        logger.warning("Ignoring unknown config keys: %s", ", ".join(unknown))

    return AppConfig(**kwargs)


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_LEVELS = {"debug": logging.DEBUG, "info": logging.INFO, "warn": logging.WARNING,
           "warning": logging.WARNING, "error": logging.ERROR}


def configure_logging(level: str) -> int:
    """
    Configure root logging for the process and return the numeric level.

    Valid levels are debug, info, warn(ing) and error; anything else falls back to info.
    """
    numeric = _LEVELS.get((level or "").strip().lower())
    if numeric is None:
        print(
            f"Warning: Invalid log level '{level}', using info. "
            f"Valid levels: debug, info, warn, error",
            file=sys.stderr,
        )
        numeric = logging.INFO

    logging.basicConfig(level=numeric, format=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    logging.getLogger().setLevel(numeric)
    return numeric
