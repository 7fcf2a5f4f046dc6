"""
Configuration for the registry server.

Loads all configuration from environment variables with sensible defaults.
Forwarder settings saved in registry.json override the environment.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from npm_registry import __version__
from npm_registry.core.errors import ConfigError
from npm_registry.domain.models import ForwarderSettings, ServerSettings

logger = logging.getLogger(__name__)

ENV_PREFIX = "NPM_REGISTRY_"

# Resolve repository root (project root, not the Python package root)
_REPO_ROOT = Path(__file__).resolve().parents[2]
_DEFAULT_REGISTRY_PATH = _REPO_ROOT / "registry"

DEFAULT_USER_AGENT = f"npm-registry/{__version__}"


def _flag(value: Optional[str], default: bool) -> bool:
    """
    Interpret a yes/no environment value.

    An unset or empty variable keeps the default.
    """
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("yes", "y", "true", "1", "on")


def load_settings(environ: Optional[Mapping[str, str]] = None) -> ServerSettings:
    """
    Build ServerSettings from environment variables.

    Environment Variables:
        NPM_REGISTRY_ROOT: Registry root directory. Default: <project>/registry
        NPM_REGISTRY_HOSTNAME: Bind hostname. Default: localhost
        NPM_REGISTRY_PORT: Bind port. Default: 5984
        NPM_REGISTRY_BASE_URL: Public base URL for tarball links. Default: http://hostname:port/
        NPM_REGISTRY_FORWARDER_URL: Upstream registry. Default: https://registry.npmjs.org/
        NPM_REGISTRY_PROXY_URL: HTTP forward proxy. Default: none
        NPM_REGISTRY_AUTO_FORWARD: yes/no. Default: yes
        NPM_REGISTRY_IGNORE_CERT: yes/no. Default: no
        NPM_REGISTRY_USER_AGENT: Upstream User-Agent. Default: npm-registry/<version>
        NPM_REGISTRY_TIMEOUT: Upstream timeout in seconds. Default: 30
        NPM_REGISTRY_META_TTL: Seconds before proxied metadata is refreshed. Default: never
        NPM_REGISTRY_LOG_LEVEL: Logging level. Default: INFO
        NPM_REGISTRY_LOG_FILE: Optional log file. Default: none (console only)
    """
    env = os.environ if environ is None else environ

    def get(key: str, default: Optional[str] = None) -> Optional[str]:
        value = env.get(ENV_PREFIX + key)
        if value is None or value == "":
            return default
        return value

    try:
        forwarder = ForwarderSettings(
            registry=get("FORWARDER_URL", "https://registry.npmjs.org/"),
            proxy=get("PROXY_URL"),
            auto_forward=_flag(env.get(ENV_PREFIX + "AUTO_FORWARD"), True),
            ignore_cert=_flag(env.get(ENV_PREFIX + "IGNORE_CERT"), False),
            user_agent=get("USER_AGENT", DEFAULT_USER_AGENT),
            timeout=float(get("TIMEOUT", "30")),
            meta_ttl=int(get("META_TTL")) if get("META_TTL") else None,
        )
        settings = ServerSettings(
            registry_path=str(Path(get("ROOT", str(_DEFAULT_REGISTRY_PATH))).expanduser()),
            hostname=get("HOSTNAME", "localhost"),
            port=int(get("PORT", "5984")),
            base_url=get("BASE_URL"),
            log_level=get("LOG_LEVEL", "INFO").upper(),
            log_file=get("LOG_FILE"),
            forwarder=forwarder,
        )
    except ValueError as e:
        # pydantic.ValidationError is a ValueError as well
        raise ConfigError(f"Invalid configuration: {e}") from e

    return settings


def apply_overrides(settings: ServerSettings, overrides: Optional[ForwarderSettings]) -> ServerSettings:
    """
    Return a copy of ``settings`` whose forwarder section is overridden by the
    fields explicitly stored in registry.json.
    """
    if overrides is None:
        return settings

    stored = overrides.model_dump(exclude_unset=True)
    if not stored:
        return settings

    logger.info(f"Applying forwarder settings from registry.json: {sorted(stored)}")
    forwarder = settings.forwarder.model_copy(update=stored)
    return settings.model_copy(update={"forwarder": forwarder})
