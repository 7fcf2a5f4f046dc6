"""
On-disk layout upgrades for the registry root.

Only one older layout exists: a single registry.json holding a flat mapping
of package name -> package document. It is recognised by the absence of a
``schemaVersion`` key and converted into one directory per package.
"""

import logging
from pathlib import Path
from typing import Any, Callable, Dict

from pydantic import ValidationError

from npm_registry.domain.models import SCHEMA_VERSION, PackageDocument, RegistryMeta
from npm_registry.domain.utils import is_safe_package_name, package_basename

logger = logging.getLogger(__name__)


def needs_migration(raw: Any) -> bool:
    return not isinstance(raw, dict) or "schemaVersion" not in raw


def migrate_flat_registry(
    root: Path,
    raw: Dict[str, Any],
    write_json: Callable[[Path, Any], None],
) -> RegistryMeta:
    """
    Materialize every document of a flat registry.json into
    ``<root>/<name>/<name>.json`` and return the new registry meta.

    Documents are written first and registry.json is rewritten by the caller
    afterwards, so an interrupted migration simply runs again on the next
    start (documents are overwritten, counters recomputed).
    """
    meta = RegistryMeta(schema_version=SCHEMA_VERSION)
    if not isinstance(raw, dict):
        logger.warning("Legacy registry.json is not an object; starting empty")
        return meta

    for name, entry in raw.items():
        if not isinstance(entry, dict) or not is_safe_package_name(name):
            logger.warning(f"Skipping legacy registry entry {name!r}: not a package document")
            continue

        # The mapping key is authoritative: it becomes the directory name.
        entry = dict(entry, name=name)
        try:
            document = PackageDocument.model_validate(entry)
        except ValidationError as e:
            logger.warning(f"Skipping legacy registry entry {name!r}: {e}")
            continue

        pkg_dir = root / name
        pkg_dir.mkdir(parents=True, exist_ok=True)
        write_json(pkg_dir / f"{package_basename(name)}.json", document.to_json())

        meta.count += 1
        if document.is_proxied:
            meta.proxied += 1
        else:
            meta.local += 1
        logger.debug(f"Migrated package {name}")

    logger.info(
        f"Migrated {meta.count} packages ({meta.local} local, {meta.proxied} proxied)"
    )
    return meta
