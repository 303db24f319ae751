"""Process configuration from environment variables and an optional YAML file.

Environment variables:

    Provider Selection:
        LB_PROVIDER               Provider slug: "f5_BigIP" or "zevenet" (required)

    Runtime:
        POLL_INTERVAL             Metadata poll interval in milliseconds (default: 1000)
        FORCE_UPDATE_INTERVAL     Force a pass if the metadata version hasn't changed
                                  for this many minutes (default: 1)
        LB_TARGET_RANCHER_SUFFIX  Ownership suffix of target pool names
                                  (default: rancher.internal)
        METADATA_URL              Rancher metadata URL
                                  (default: http://rancher-metadata/2015-12-19)
        HEALTHCHECK_PORT          Healthcheck listener port (default: 1000)

    Logging:
        LOG_LEVEL                 DEBUG, INFO, WARNING, ERROR (default: INFO)
        DEBUG                     "true" forces LOG_LEVEL=DEBUG
        LOG_FILE                  Append log output to this file

    FQDN registration (optional, disabled when CATTLE_URL is unset):
        CATTLE_URL, CATTLE_ACCESS_KEY, CATTLE_SECRET_KEY

    F5 BIG-IP provider:
        F5_BIGIP_HOST, F5_BIGIP_USER, F5_BIGIP_PWD, F5_BIGIP_VERIFY_TLS (default: true)

    Zevenet provider:
        ZAPI_HOST, ZAPI_KEY, ZAPI_FARM, ZAPI_VERIFY_TLS (default: false)

    Config file:
        EXTERNAL_LB_CONFIG_PATH   YAML file with the same settings. Keys are the
                                  lower-cased variable names; provider keys go
                                  under "provider_options" with their variable
                                  names. Example:
                                    lb_provider: zevenet
                                    poll_interval: 2000
                                    provider_options:
                                      ZAPI_HOST: lb.example.com
                                      ZAPI_FARM: web
                                  Environment variables take precedence.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from external_lb.metadata import DEFAULT_METADATA_URL

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 1000
DEFAULT_FORCE_UPDATE_INTERVAL_MINUTES = 1
DEFAULT_TARGET_POOL_SUFFIX = "rancher.internal"
DEFAULT_HEALTHCHECK_PORT = 1000

PROVIDER_OPTION_PREFIXES = ("F5_BIGIP_", "ZAPI_")


class ConfigError(Exception):
    """Configuration is missing or invalid."""


def parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_int(name: str, value: Any, default: int, *, minimum: int = 0) -> int:
    if value is None or str(value).strip() == "":
        return default
    try:
        parsed = int(str(value).strip())
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got '{value}'")
    if parsed < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got {parsed}")
    return parsed


def load_config_file(config_path: str) -> Dict[str, Any]:
    """Load the YAML config file, returning an empty mapping if absent."""
    if not config_path:
        return {}
    path = Path(config_path)
    if not path.is_file():
        logger.warning(f"Config file {config_path} not found, using environment only")
        return {}
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config file {config_path}: {e}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return data


@dataclass(frozen=True)
class Settings:
    provider: str
    poll_interval_ms: int = DEFAULT_POLL_INTERVAL_MS
    force_update_interval_minutes: int = DEFAULT_FORCE_UPDATE_INTERVAL_MINUTES
    target_pool_suffix: str = DEFAULT_TARGET_POOL_SUFFIX
    metadata_url: str = DEFAULT_METADATA_URL
    healthcheck_port: int = DEFAULT_HEALTHCHECK_PORT
    log_level: str = "INFO"
    log_file: str = ""
    cattle_url: str = ""
    cattle_access_key: str = ""
    cattle_secret_key: str = ""
    provider_options: Dict[str, str] = field(default_factory=dict)

    @property
    def poll_interval_seconds(self) -> float:
        return self.poll_interval_ms / 1000.0

    @property
    def force_update_interval_seconds(self) -> float:
        return self.force_update_interval_minutes * 60.0

    @property
    def registration_enabled(self) -> bool:
        return bool(self.cattle_url)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ
        file_data = load_config_file(env.get("EXTERNAL_LB_CONFIG_PATH", ""))

        def get(name: str, default: str = "") -> str:
            value = env.get(name)
            if value is not None and value.strip() != "":
                return value.strip()
            file_value = file_data.get(name.lower())
            if file_value is not None:
                return str(file_value).strip()
            return default

        provider = get("LB_PROVIDER")
        if not provider:
            raise ConfigError("LB_PROVIDER is required")

        log_level = get("LOG_LEVEL", "INFO").upper()
        if parse_bool(get("DEBUG"), default=False):
            log_level = "DEBUG"

        cattle_url = get("CATTLE_URL")
        cattle_access_key = get("CATTLE_ACCESS_KEY")
        cattle_secret_key = get("CATTLE_SECRET_KEY")
        if cattle_url and not (cattle_access_key and cattle_secret_key):
            raise ConfigError(
                "CATTLE_ACCESS_KEY and CATTLE_SECRET_KEY are required with CATTLE_URL"
            )

        provider_options: Dict[str, str] = {}
        file_options = file_data.get("provider_options") or {}
        if not isinstance(file_options, dict):
            raise ConfigError("provider_options in config file must be a mapping")
        for key, value in file_options.items():
            provider_options[str(key).upper()] = "" if value is None else str(value)
        for key, value in env.items():
            if key.startswith(PROVIDER_OPTION_PREFIXES) and value.strip():
                provider_options[key] = value.strip()

        return cls(
            provider=provider,
            poll_interval_ms=_parse_int(
                "POLL_INTERVAL", get("POLL_INTERVAL"), DEFAULT_POLL_INTERVAL_MS, minimum=1
            ),
            force_update_interval_minutes=_parse_int(
                "FORCE_UPDATE_INTERVAL",
                get("FORCE_UPDATE_INTERVAL"),
                DEFAULT_FORCE_UPDATE_INTERVAL_MINUTES,
                minimum=1,
            ),
            target_pool_suffix=get("LB_TARGET_RANCHER_SUFFIX", DEFAULT_TARGET_POOL_SUFFIX),
            metadata_url=get("METADATA_URL", DEFAULT_METADATA_URL),
            healthcheck_port=_parse_int(
                "HEALTHCHECK_PORT", get("HEALTHCHECK_PORT"), DEFAULT_HEALTHCHECK_PORT, minimum=1
            ),
            log_level=log_level,
            log_file=get("LOG_FILE"),
            cattle_url=cattle_url,
            cattle_access_key=cattle_access_key,
            cattle_secret_key=cattle_secret_key,
            provider_options=provider_options,
        )
