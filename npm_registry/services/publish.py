"""
Publish, tag and unpublish operations with revision-based optimistic concurrency.
"""
from __future__ import annotations

import logging
import shutil
from typing import Any, Optional

from pydantic import ValidationError

from npm_registry.core.errors import Conflict, FilesystemError, InvalidArgument, NotFound
from npm_registry.domain.models import PackageDocument, Revision
from npm_registry.domain.utils import coerce_revision, is_legacy_revision
from npm_registry.services.attachments import AttachmentStore
from npm_registry.storage.metadata_store import MetadataStore

logger = logging.getLogger(__name__)


def increase_revision(rev: Optional[Revision]) -> int:
    """Next revision; a missing or non-numeric revision counts as 0."""
    return (coerce_revision(rev) or 0) + 1


class PublishProtocol:
    """
    State transitions of package documents.

    ABSENT -> LOCAL on the first publish, LOCAL -> LOCAL on every further
    publish or tag (revision advancing), back to ABSENT on unpublish.
    Rejected requests never write anything.
    """

    def __init__(self, store: MetadataStore, attachments: AttachmentStore):
        self.store = store
        self.attachments = attachments

    async def publish_full(self, name: str, body: Any, revision: Optional[str] = None) -> PackageDocument:
        """
        Replace the whole document of ``name`` with ``body``.

        The incoming revision is taken from the URL or, failing that, from the
        body's ``_rev``; updating an existing package requires it to match.
        """
        if not isinstance(body, dict):
            raise InvalidArgument("Package document must be a JSON object")

        existing = self.store.get(name)
        incoming = revision if revision not in (None, "") else body.get("_rev")

        if existing is not None:
            if incoming is None or incoming == "":
                raise Conflict("must supply latest _rev to update existing package")
            if str(incoming) != str(existing.revision):
                raise Conflict("revision does not match one in document")

        if body.get("name") not in (None, name):
            raise InvalidArgument(f"Document name {body.get('name')!r} does not match package {name!r}")

        body = dict(body, name=name)
        inline_attachments = body.pop("_attachments", None)
        try:
            document = PackageDocument.model_validate(body)
        except ValidationError as e:
            raise InvalidArgument(f"Invalid package document: {e}") from e

        if existing is not None:
            document.revision = increase_revision(existing.revision)
        elif document.revision is None:
            document.revision = 0
        document.proxied = False
        document.forward_dists = None

        if inline_attachments:
            await self.attachments.save_inline(document, inline_attachments)

        self.store.set(document)
        logger.info(f"Published package {name} (revision {document.revision})")
        return document

    def publish_version(
        self,
        name: str,
        version: str,
        body: Any,
        tagname: Optional[str] = None,
    ) -> str:
        """
        Add (or overwrite) one version of ``name``, creating the package if needed.

        Returns the published version string.
        """
        if not isinstance(body, dict):
            raise InvalidArgument("Version metadata must be a JSON object")
        if not version:
            raise InvalidArgument("Version must be a non-empty string")

        document = self.store.get(name)
        if document is None:
            document = PackageDocument(name=name, revision=0, proxied=False)

        document.versions[version] = body
        # Other tags go through tag(); a versioned publish only moves "latest".
        if tagname == "latest":
            document.dist_tags["latest"] = version
            for field in ("description", "readme"):
                if field in body:
                    setattr(document, field, body[field])

        if is_legacy_revision(document.revision):
            # Documents from the old schema carry a checksum revision. They
            # restart at 0 here instead of being incremented.
            logger.warning(f"Resetting legacy revision {document.revision!r} of {name}")
            document.revision = 0
        else:
            document.revision = increase_revision(document.revision)

        document.proxied = False
        document.forward_dists = None
        self.store.set(document)
        logger.info(f"Published {name}@{version} (revision {document.revision})")
        return version

    def tag(self, name: str, tagname: str, version: Any) -> PackageDocument:
        """Point dist-tag ``tagname`` at an existing ``version``."""
        document = self.store.get(name)
        if document is None:
            logger.info(f"Unknown package to tag: {name}@{version}")
            raise NotFound()
        if not isinstance(version, str) or version not in document.versions:
            logger.info(f"Unknown version to tag: {name}@{version}")
            raise NotFound()

        logger.info(f"Tagging package {name}@{version} as: {tagname}")
        document.dist_tags[tagname] = version
        document.revision = increase_revision(document.revision)
        self.store.set(document)
        return document

    def unpublish(self, name: str) -> bool:
        """
        Remove ``name`` with all cached tarballs and its directory.

        Returns False if there was nothing to remove.
        """
        document = self.store.get(name)
        if document is None:
            return False

        self.attachments.purge(document)

        logger.info(f"Removing package meta: {name}")
        self.store.remove(name)

        pkg_dir = self.store.package_dir(name)
        logger.info(f"Removing package folder: {pkg_dir}")
        try:
            pkg_dir.rmdir()
        except FileNotFoundError:
            pass
        except OSError:
            # Uploaded files that no version references are left over.
            logger.warning(f"Package folder {pkg_dir} not empty, removing remaining files")
            try:
                shutil.rmtree(pkg_dir)
            except OSError as e:
                raise FilesystemError(f"Failed to remove {pkg_dir}: {e}") from e

        if name.startswith("@"):
            try:
                pkg_dir.parent.rmdir()
            except OSError:
                # Other packages of the scope remain.
                pass
        return True
