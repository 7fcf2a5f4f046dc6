"""
Pydantic models for the npm registry.

This module defines the data models used throughout the application:
- Server and forwarder settings
- The per-package document (npm "packument") and registry-wide metadata
- Small API response models

Package documents are stored and served with their npm wire names
(``_rev``, ``dist-tags``, ``_fwd-dists``, ``_proxied``); the Python side
uses snake_case attributes through field aliases.
"""

from __future__ import annotations

from typing import Any, Dict, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from npm_registry.domain.utils import attachment_name


SCHEMA_VERSION = "1"

# Type alias for the query filters understood by MetadataStore.query()
PackageFilter = Literal["all", "local", "proxied"]

# Revisions are integers, except for documents written by an older schema
# which carry an opaque checksum string.
Revision = Union[int, str]


# ---------------------------------------------------------------------------
# Settings Models
# ---------------------------------------------------------------------------


class ForwarderSettings(BaseModel):
    """
    Configuration for forwarding cache misses to an upstream registry.

    Persisted (when overridden) in the ``settings`` block of registry.json.
    """

    registry: str = Field(
        default="https://registry.npmjs.org/",
        description="Base URL of the upstream registry; the package name is appended to it.",
    )
    proxy: Optional[str] = Field(
        default=None,
        description="Optional HTTP forward proxy used for all upstream requests.",
    )
    auto_forward: bool = Field(
        default=True,
        description="If True, metadata and tarball misses are fetched from the upstream registry.",
    )
    ignore_cert: bool = Field(
        default=False,
        description="If True, TLS certificates of the upstream (or proxy) are not verified.",
    )
    user_agent: str = Field(
        default="npm-registry",
        description="User-Agent header sent with upstream requests.",
    )
    timeout: float = Field(
        default=30.0,
        gt=0,
        description="Timeout in seconds for connecting to and reading from the upstream.",
    )
    meta_ttl: Optional[int] = Field(
        default=None,
        ge=0,
        description="Seconds after which proxied metadata is re-fetched. None disables refreshing.",
    )


class ServerSettings(BaseModel):
    """
    Top-level runtime configuration, built from the environment.
    """

    registry_path: str = Field(description="Registry root directory.")
    hostname: str = Field(default="localhost", description="Bind hostname, also used in rewritten tarball URLs.")
    port: int = Field(default=5984, description="Bind port, also used in rewritten tarball URLs.")
    base_url: Optional[str] = Field(
        default=None,
        description="Public base URL for rewritten tarball URLs, when it differs from http://hostname:port/.",
    )
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)
    forwarder: ForwarderSettings = Field(default_factory=ForwarderSettings)

    def public_base_url(self) -> str:
        """Base URL (with trailing slash) clients use to reach this server."""
        if self.base_url:
            return self.base_url.rstrip("/") + "/"
        return f"http://{self.hostname}:{self.port}/"

    def tarball_url(self, package_name: str, filename: str) -> str:
        return f"{self.public_base_url()}{package_name}/-/{filename}"


# ---------------------------------------------------------------------------
# Registry Models
# ---------------------------------------------------------------------------


class PackageDocument(BaseModel):
    """
    Metadata document for a single package, covering all published versions.

    Unknown top-level fields (description, readme, maintainers, ...) are kept
    as extras so a document survives a store round trip unchanged.

    Persisted at: <ROOT>/<name>/<name>.json, or <ROOT>/@scope/<name>/<name>.json
    for scoped packages.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str
    revision: Optional[Revision] = Field(default=None, alias="_rev")
    versions: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    dist_tags: Dict[str, str] = Field(default_factory=dict, alias="dist-tags")
    forward_dists: Optional[Dict[str, str]] = Field(default=None, alias="_fwd-dists")
    proxied: bool = Field(default=False, alias="_proxied")

    @property
    def is_proxied(self) -> bool:
        """True if the document belongs in the ``proxied`` counter bucket."""
        return bool(self.proxied or self.forward_dists)

    def tarball_names(self) -> Dict[str, str]:
        """Map of attachment filename -> version for every version with a tarball."""
        names: Dict[str, str] = {}
        for version, meta in self.versions.items():
            tarball = tarball_url_of(meta)
            if tarball:
                names[attachment_name(tarball)] = version
        return names

    def to_json(self) -> Dict[str, Any]:
        """
        Wire form of the document. Publisher fields keep explicit nulls; only
        ``_rev`` and ``_fwd-dists`` are left out while they are unset.
        """
        data = self.model_dump(mode="json", by_alias=True)
        for key in ("_rev", "_fwd-dists"):
            if data.get(key) is None:
                data.pop(key, None)
        return data


def tarball_url_of(version_meta: Any) -> Optional[str]:
    """Return ``dist.tarball`` of a version blob, or None if it has none."""
    if not isinstance(version_meta, dict):
        return None
    dist = version_meta.get("dist")
    if not isinstance(dist, dict):
        return None
    tarball = dist.get("tarball")
    return tarball if isinstance(tarball, str) and tarball else None


class RegistryMeta(BaseModel):
    """
    Registry-wide metadata: schema version, counters and settings overrides.

    Persisted at: <ROOT>/registry.json
    """

    model_config = ConfigDict(populate_by_name=True)

    schema_version: str = Field(default=SCHEMA_VERSION, alias="schemaVersion")
    count: int = 0
    local: int = 0
    proxied: int = 0
    settings: Optional[ForwarderSettings] = None

    def counters(self) -> Dict[str, int]:
        return {"count": self.count, "local": self.local, "proxied": self.proxied}


# ---------------------------------------------------------------------------
# API Models
# ---------------------------------------------------------------------------


class OkResponse(BaseModel):
    ok: bool = True


class AttachmentUploadResponse(BaseModel):
    ok: bool = True
    id: str
    rev: str = "1"
