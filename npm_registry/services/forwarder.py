"""
Forwarding of metadata cache misses to the upstream registry.

This service handles:
- Resolving package documents (and single versions) from the local store
- Fetching missing documents from the upstream registry
- Rewriting tarball URLs so clients download them through this server
- Refreshing proxied documents whose metadata TTL has expired
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

import httpx
from pydantic import ValidationError

from npm_registry.core.errors import NetworkError, NotFound, UpstreamError
from npm_registry.domain.models import PackageDocument, ServerSettings, tarball_url_of
from npm_registry.domain.utils import attachment_name, escape_package_name, version_key
from npm_registry.services import upstream
from npm_registry.storage.metadata_store import MetadataStore

logger = logging.getLogger(__name__)


class ProxyForwarder:
    """
    Materializes local package documents from an upstream registry.

    Nothing is written unless the upstream answered 200 with a JSON document,
    so a failed forward leaves the package uncached for the next request.
    """

    def __init__(
        self,
        store: MetadataStore,
        settings: ServerSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.settings = settings
        self._transport = transport

    @property
    def auto_forward(self) -> bool:
        return self.settings.forwarder.auto_forward

    def upstream_url(self, name: str) -> str:
        base = self.settings.forwarder.registry
        if not base.endswith("/"):
            base += "/"
        return base + escape_package_name(name)

    # ========================================================================
    # Read path
    # ========================================================================

    async def resolve(
        self, name: str, version: Optional[str] = None
    ) -> Union[PackageDocument, Dict[str, Any]]:
        """
        Return the document for ``name`` (or one version of it), forwarding
        to the upstream registry on a miss when auto-forward is enabled.

        ``version`` may also be a dist-tag such as ``latest``.

        Raises:
            NotFound: if the package/version is neither cached nor forwardable.
        """
        document = self.store.get(name)

        if document is not None and version is None and self._is_expired(name, document):
            logger.info(f"Metadata TTL expired for package {name}")
            try:
                document = await self.forward(name)
            except (UpstreamError, NetworkError) as e:
                logger.warning(f"Failed to refresh metadata of {name}: {e}. Returning cached version.")

        found = self._select(document, version)
        if found is not None:
            return found

        if not self.auto_forward:
            raise NotFound()

        try:
            document = await self.forward(name, version)
        except (UpstreamError, NetworkError) as e:
            logger.error(f"{e.reason}: {e.details}")
            raise NotFound() from e

        found = self._select(document, version)
        if found is None:
            raise NotFound()
        return found

    def _select(
        self, document: Optional[PackageDocument], version: Optional[str]
    ) -> Optional[Union[PackageDocument, Dict[str, Any]]]:
        if document is None:
            return None
        if version is None:
            return with_default_tags(document)
        if version in document.versions:
            return document.versions[version]
        tagged = document.dist_tags.get(version)
        if tagged is not None:
            return document.versions.get(tagged)
        return None

    def _is_expired(self, name: str, document: PackageDocument) -> bool:
        ttl = self.settings.forwarder.meta_ttl
        if ttl is None or not document.is_proxied or not self.auto_forward:
            return False
        mtime = self.store.get_modified_time(name)
        if mtime is None:
            return False
        return mtime + timedelta(seconds=ttl) < datetime.now()

    # ========================================================================
    # Forwarding
    # ========================================================================

    async def forward(self, name: str, version: Optional[str] = None) -> PackageDocument:
        """
        Fetch ``name`` from the upstream registry and store it locally.

        Raises:
            UpstreamError: non-200 answer or a body that is not a package document.
            NetworkError: the upstream (or proxy) could not be reached.
        """
        forwarder = self.settings.forwarder
        url = self.upstream_url(name)
        target = upstream.describe(url, forwarder)
        logger.info(f"Retrieving package {name}@{version or '*'} from forward URL {target}")

        try:
            async with upstream.open_client(forwarder, self._transport) as client:
                response = await client.get(url)
        except httpx.HTTPError as e:
            raise NetworkError(
                f"Failed to retrieve package {name}@{version or '*'} from forward URL {target}",
                details={"error": str(e)},
            ) from e

        if response.status_code != 200:
            raise UpstreamError(
                "Failed to make forward request",
                status=response.status_code,
                details={"url": url, "status": response.status_code},
            )

        try:
            raw = response.json()
        except ValueError as e:
            raise UpstreamError("Failed to parse package metadata", details={"error": str(e)}) from e
        if not isinstance(raw, dict):
            raise UpstreamError("Failed to parse package metadata", details={"error": "not an object"})

        raw["name"] = name
        try:
            document = PackageDocument.model_validate(raw)
        except ValidationError as e:
            raise UpstreamError("Failed to parse package metadata", details={"error": str(e)}) from e

        document = self.rewrite(document)
        self.store.set(document)
        logger.info(f"Cached package {name} ({len(document.versions)} versions) from upstream")
        return document

    def rewrite(self, document: PackageDocument) -> PackageDocument:
        """
        Point every ``dist.tarball`` at this server and remember the original
        URL in the forwarding map.
        """
        forward_dists: Dict[str, str] = {}
        for meta in document.versions.values():
            original = tarball_url_of(meta)
            if original is None:
                continue
            filename = attachment_name(original)
            forward_dists[filename] = original
            meta["dist"]["tarball"] = self.settings.tarball_url(document.name, filename)

        document.forward_dists = forward_dists
        document.proxied = True
        return document

    async def refresh(self, name: str) -> PackageDocument:
        """Re-fetch an already known package from upstream."""
        if self.store.get(name) is None:
            logger.info(f"Unknown package to refresh: {name}")
            raise NotFound()
        try:
            return await self.forward(name)
        except (UpstreamError, NetworkError) as e:
            logger.error(f"Failed to refresh package {name}: {e.reason}")
            raise NotFound() from e


def with_default_tags(document: PackageDocument) -> PackageDocument:
    """
    Documents without dist-tags are served with ``latest`` pointing at the
    highest version (the stored document is left alone).
    """
    if document.dist_tags or not document.versions:
        return document
    highest = max(document.versions, key=version_key)
    return document.model_copy(update={"dist_tags": {"latest": highest}})
