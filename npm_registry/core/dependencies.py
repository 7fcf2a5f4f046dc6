from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import httpx
from fastapi import Request

from npm_registry.core.config import apply_overrides
from npm_registry.domain.models import ServerSettings
from npm_registry.services.attachments import AttachmentStore
from npm_registry.services.forwarder import ProxyForwarder
from npm_registry.services.publish import PublishProtocol
from npm_registry.storage.json_metadata_store import JsonMetadataStore
from npm_registry.storage.metadata_store import MetadataStore

logger = logging.getLogger(__name__)


class RegistryContext:
    """
    One fully wired registry: store, forwarder, attachments and publish protocol.

    Each FastAPI app owns exactly one context (``app.state.registry``); tests
    can build as many independent contexts as they need.
    """

    def __init__(
        self,
        settings: ServerSettings,
        store: Optional[MetadataStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store or JsonMetadataStore()
        self.store.initialize(Path(settings.registry_path))
        self.settings = apply_overrides(settings, self.store.get_meta().settings)

        self.forwarder = ProxyForwarder(self.store, self.settings, transport=transport)
        self.attachments = AttachmentStore(self.store, self.settings, transport=transport)
        self.publisher = PublishProtocol(self.store, self.attachments)


def get_context(request: Request) -> RegistryContext:
    return request.app.state.registry
