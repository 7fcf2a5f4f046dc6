"""
Tarball (attachment) storage.

Attachments live next to the package document in ``<root>/<name>/``.
Proxied packages get their tarballs downloaded lazily on first request,
using the original upstream URL remembered in the document's forwarding map.
"""
from __future__ import annotations

import base64
import binascii
import logging
import os
import tempfile
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

import aiofiles
import httpx

from npm_registry.core.errors import (
    BadRequest,
    FilesystemError,
    InvalidArgument,
    NetworkError,
    NotFound,
    UpstreamError,
)
from npm_registry.domain.models import AttachmentUploadResponse, PackageDocument, ServerSettings
from npm_registry.domain.utils import is_safe_attachment, package_basename
from npm_registry.services import upstream
from npm_registry.storage.metadata_store import MetadataStore

logger = logging.getLogger(__name__)

OCTET_STREAM = "application/octet-stream"
CHUNK_SIZE = 64 * 1024


def media_type(content_type: Optional[str]) -> str:
    """``application/octet-stream; charset=x`` -> ``application/octet-stream``"""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


class AttachmentStore:
    def __init__(
        self,
        store: MetadataStore,
        settings: ServerSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.settings = settings
        self._transport = transport

    @staticmethod
    def _is_storable(name: str, attachment: str) -> bool:
        # Hidden names are staging files; <name>.json is the package document.
        return (
            is_safe_attachment(attachment)
            and not attachment.startswith(".")
            and attachment != f"{package_basename(name)}.json"
        )

    def _check_name(self, name: str, attachment: str) -> None:
        # Must run before anything touches the filesystem.
        if not self._is_storable(name, attachment):
            raise NotFound("attachment not found")

    def _package_document(self, name: str) -> PackageDocument:
        document = self.store.get(name)
        if document is None:
            raise NotFound("package not found")
        return document

    @asynccontextmanager
    async def _staging(self, target: Path) -> AsyncIterator[Any]:
        """
        Open a temp file next to ``target`` for writing.

        On a clean exit the temp file replaces ``target``; on any error it is
        deleted, so ``target`` is either the old file or a complete new one.
        """
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.", suffix=".part")
            os.close(fd)
        except OSError as e:
            raise FilesystemError(f"Failed to create {target}: {e}") from e

        tmp_path = Path(tmp_name)
        try:
            async with aiofiles.open(tmp_path, "wb") as out:
                yield out
            os.replace(tmp_path, target)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    # ------------------------------------------------------------------
    # Download
    # ------------------------------------------------------------------

    async def download(self, name: str, attachment: str) -> Path:
        """
        Return the local path of ``attachment``, fetching it from upstream first
        if the package is proxied and the tarball is not cached yet.
        """
        self._check_name(name, attachment)
        document = self._package_document(name)

        file_path = self.store.package_dir(name) / attachment
        if file_path.is_file():
            return file_path

        forward_url = (document.forward_dists or {}).get(attachment)
        if not forward_url:
            raise NotFound("attachment not found")

        await self._fetch(forward_url, file_path)
        return file_path

    async def _fetch(self, url: str, target: Path) -> None:
        forwarder = self.settings.forwarder
        source = upstream.describe(url, forwarder)
        logger.info(f"Downloading tarball {source}")

        receiving = False
        try:
            async with upstream.open_client(forwarder, self._transport) as client:
                async with client.stream("GET", url) as response:
                    if response.status_code != 200:
                        raise UpstreamError(
                            "Failed to retrieve dist package",
                            status=response.status_code,
                            details={"url": url, "status": response.status_code},
                        )
                    receiving = True
                    async with self._staging(target) as out:
                        async for chunk in response.aiter_bytes(CHUNK_SIZE):
                            await out.write(chunk)
        except httpx.HTTPError as e:
            logger.error(f"Error while downloading {source}: {e}")
            if receiving:
                raise UpstreamError(f"Download of {url} failed mid-stream", details={"error": str(e)}) from e
            raise NetworkError(f"Error while downloading {source}", details={"error": str(e)}) from e
        except OSError as e:
            logger.error(f"Error while writing {target}: {e}")
            raise FilesystemError(f"Failed to write {target}: {e}") from e

        logger.info(f"Cached tarball {target}")

    # ------------------------------------------------------------------
    # Upload / delete
    # ------------------------------------------------------------------

    async def upload(
        self,
        name: str,
        attachment: str,
        content_type: Optional[str],
        body: AsyncIterable[bytes],
    ) -> AttachmentUploadResponse:
        """
        Stream ``body`` into ``<root>/<name>/<attachment>``, replacing any
        existing file. The package document is not touched.
        """
        if media_type(content_type) != OCTET_STREAM:
            raise BadRequest(f"content-type MUST be {OCTET_STREAM}")
        self._check_name(name, attachment)

        file_path = self.store.package_dir(name) / attachment
        try:
            async with self._staging(file_path) as out:
                async for chunk in body:
                    await out.write(chunk)
        except OSError as e:
            raise FilesystemError(f"Failed to write {file_path}: {e}") from e

        logger.info(f"Stored attachment {file_path}")
        return AttachmentUploadResponse(id=str(file_path))

    def delete(self, name: str, attachment: str) -> None:
        self._check_name(name, attachment)
        self._package_document(name)

        file_path = self.store.package_dir(name) / attachment
        if not file_path.is_file():
            raise NotFound("attachment not found")
        try:
            file_path.unlink()
        except FileNotFoundError:
            raise NotFound("attachment not found")
        except OSError as e:
            raise FilesystemError(f"Failed to delete {file_path}: {e}") from e
        logger.info(f"Removed attachment {file_path}")

    # ------------------------------------------------------------------
    # Helpers used by the publish protocol
    # ------------------------------------------------------------------

    async def save_inline(self, document: PackageDocument, attachments: Dict[str, Any]) -> List[str]:
        """
        Write the base64 tarballs an ``npm publish`` sends in ``_attachments``.

        Only attachments referenced by a version's ``dist.tarball`` are kept.
        Every payload is decoded before the first file is written.
        """
        if not isinstance(attachments, dict):
            raise InvalidArgument("_attachments must be an object")

        decoded: Dict[str, bytes] = {}
        for filename in document.tarball_names():
            entry = attachments.get(filename)
            if not isinstance(entry, dict) or not entry.get("data"):
                continue
            if not self._is_storable(document.name, filename):
                raise InvalidArgument(f"Invalid attachment name: {filename!r}")
            try:
                decoded[filename] = base64.b64decode(entry["data"], validate=True)
            except (binascii.Error, TypeError, ValueError) as e:
                raise InvalidArgument(f"Attachment {filename} is not valid base64") from e

        pkg_dir = self.store.package_dir(document.name)
        for filename, data in decoded.items():
            try:
                async with self._staging(pkg_dir / filename) as out:
                    await out.write(data)
            except OSError as e:
                raise FilesystemError(f"Failed to write {pkg_dir / filename}: {e}") from e
            logger.info(f"Stored tarball {filename} ({len(data)} bytes) for {document.name}")

        return sorted(decoded)

    def purge(self, document: PackageDocument) -> None:
        """Delete every tarball file of ``document``; missing files are fine."""
        pkg_dir = self.store.package_dir(document.name)
        names = set(document.tarball_names()) | set(document.forward_dists or {})
        for filename in sorted(names):
            if not self._is_storable(document.name, filename):
                continue
            file_path = pkg_dir / filename
            try:
                file_path.unlink()
                logger.info(f"Removing tarball: {file_path}")
            except FileNotFoundError:
                pass
            except OSError as e:
                raise FilesystemError(f"Failed to delete {file_path}: {e}") from e
