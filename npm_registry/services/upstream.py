"""
HTTP client setup shared by metadata forwarding and tarball caching.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from npm_registry.domain.models import ForwarderSettings

logger = logging.getLogger(__name__)


def client_options(settings: ForwarderSettings) -> Dict[str, Any]:
    """
    Keyword arguments for ``httpx.AsyncClient`` derived from the forwarder settings.

    With a forward proxy configured httpx sends plain-HTTP requests to the
    proxy in absolute form (Host header of the upstream) and tunnels HTTPS
    through CONNECT.
    """
    options: Dict[str, Any] = {
        "headers": {"User-Agent": settings.user_agent},
        "timeout": httpx.Timeout(settings.timeout),
        "verify": not settings.ignore_cert,
        "follow_redirects": True,
    }
    if settings.proxy:
        options["proxy"] = settings.proxy
    return options


def open_client(
    settings: ForwarderSettings,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create an AsyncClient for upstream requests (use as ``async with``)."""
    options = client_options(settings)
    if transport is not None:
        # Test transports replace the network (and the proxy) entirely.
        options.pop("proxy", None)
        options["transport"] = transport
    return httpx.AsyncClient(**options)


def describe(url: str, settings: ForwarderSettings) -> str:
    """Human readable request target for log and error messages."""
    if settings.proxy:
        return f"{url} via proxy {settings.proxy}"
    return url
