import json
import logging
import os
import tempfile
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from npm_registry.core.errors import (
    ConfigError,
    FilesystemError,
    InvalidArgument,
    NotInitialized,
)
from npm_registry.domain.models import PackageDocument, PackageFilter, RegistryMeta
from npm_registry.domain.utils import is_safe_package_name, package_basename
from npm_registry.storage.metadata_store import MetadataStore
from npm_registry.storage.migrations import migrate_flat_registry, needs_migration

logger = logging.getLogger(__name__)

META_FILENAME = "registry.json"


def write_json_atomic(path: Path, data: Any) -> None:
    """
    Write ``data`` as JSON to ``path`` through a temp file in the same
    directory, so readers never see a half-written file.
    """
    fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class JsonMetadataStore(MetadataStore):
    """
    Stores one JSON document per package under ``<root>/<name>/<name>.json``
    plus the counters in ``<root>/registry.json``.
    """

    def __init__(self):
        self._root: Optional[Path] = None
        self._meta: Optional[RegistryMeta] = None
        # Guards the counters, registry.json and document writes.
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def initialize(self, root: Path) -> None:
        root = Path(root)
        if not root.is_dir():
            raise ConfigError(f"Registry path does not exist: {root}")

        with self._lock:
            self._root = root
            meta_path = root / META_FILENAME

            if not meta_path.exists():
                logger.info(f"Creating {meta_path}")
                self._meta = RegistryMeta()
                self._write_meta()
                return

            try:
                raw = json.loads(meta_path.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                self._root = None
                raise ConfigError(f"Failed to read {meta_path}: {e}") from e

            if needs_migration(raw):
                logger.info("Upgrading legacy flat registry.json")
                try:
                    self._meta = migrate_flat_registry(root, raw, write_json_atomic)
                except OSError as e:
                    self._root = None
                    raise FilesystemError(f"Registry migration failed: {e}") from e
                self._write_meta()
                return

            try:
                self._meta = RegistryMeta.model_validate(raw)
            except ValidationError as e:
                self._root = None
                raise ConfigError(f"Invalid {meta_path}: {e}") from e

    @property
    def root(self) -> Path:
        if self._root is None:
            raise NotInitialized()
        return self._root

    def get_meta(self) -> RegistryMeta:
        if self._meta is None:
            raise NotInitialized()
        return self._meta

    def save_meta(self, meta: RegistryMeta) -> None:
        with self._lock:
            self._meta = meta
            self._write_meta()

    def _write_meta(self) -> None:
        meta = self.get_meta()
        data = meta.model_dump(mode="json", by_alias=True, exclude={"settings"})
        if meta.settings is not None:
            # Only what was explicitly configured, so defaults keep following the environment.
            data["settings"] = meta.settings.model_dump(mode="json", exclude_unset=True)
        try:
            write_json_atomic(self.root / META_FILENAME, data)
        except OSError as e:
            raise FilesystemError(f"Failed to write {META_FILENAME}: {e}") from e

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def package_dir(self, name: str) -> Path:
        root = self.root
        if not is_safe_package_name(name):
            raise InvalidArgument(f"Invalid package name: {name!r}")
        return root / name

    def _document_path(self, name: str) -> Path:
        return self.package_dir(name) / f"{package_basename(name)}.json"

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def _read_document(self, path: Path) -> PackageDocument:
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise FilesystemError(f"Failed to parse package meta: {path}: {e}") from e
        try:
            return PackageDocument.model_validate(raw)
        except ValidationError as e:
            raise FilesystemError(f"Invalid package meta: {path}: {e}") from e

    def get(self, name: str, version: Optional[str] = None) -> Optional[Union[PackageDocument, Dict[str, Any]]]:
        if not isinstance(name, str) or not name:
            raise InvalidArgument("Argument 'name' must be a non-empty string")
        path = self._document_path(name)

        try:
            document = self._read_document(path)
        except FileNotFoundError:
            return None
        except OSError as e:
            raise FilesystemError(f"Failed to read {path}: {e}") from e

        if version is not None:
            return document.versions.get(version)
        return document

    def set(self, document: PackageDocument) -> None:
        if document is None or not getattr(document, "name", None):
            raise InvalidArgument("Expected document to have property name")

        path = self._document_path(document.name)
        with self._lock:
            meta = self.get_meta()
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise FilesystemError(f"Failed to create {path.parent}: {e}") from e

            previous: Optional[PackageDocument] = None
            if path.exists():
                try:
                    previous = self._read_document(path)
                except (OSError, FilesystemError) as e:
                    # Overwriting a corrupt document repairs it; counters stay as they are.
                    logger.warning(f"Overwriting unreadable document {path}: {e}")

            if not path.exists():
                meta.count += 1
                if document.is_proxied:
                    meta.proxied += 1
                else:
                    meta.local += 1
                self._write_meta()
            elif previous is not None and previous.is_proxied != document.is_proxied:
                if document.is_proxied:
                    meta.local -= 1
                    meta.proxied += 1
                else:
                    meta.proxied -= 1
                    meta.local += 1
                self._write_meta()

            try:
                write_json_atomic(path, document.to_json())
            except OSError as e:
                raise FilesystemError(f"Failed to write {path}: {e}") from e

    def remove(self, name: str) -> None:
        if not isinstance(name, str) or not name:
            raise InvalidArgument("Argument 'name' must be a non-empty string")
        path = self._document_path(name)

        with self._lock:
            if not path.exists():
                return
            try:
                document = self._read_document(path)
                proxied = document.is_proxied
            except (OSError, FilesystemError) as e:
                logger.warning(f"Removing unreadable document {path}: {e}")
                proxied = False

            meta = self.get_meta()
            meta.count -= 1
            if proxied:
                meta.proxied -= 1
            else:
                meta.local -= 1
            self._write_meta()

            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                raise FilesystemError(f"Failed to delete {path}: {e}") from e

    def get_modified_time(self, name: str) -> Optional[datetime]:
        path = self._document_path(name)
        try:
            return datetime.fromtimestamp(path.stat().st_mtime)
        except FileNotFoundError:
            return None

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    def _package_dirs(self) -> List[Tuple[str, Path]]:
        """
        (name, directory) of every candidate package below the root; the
        packages of a scope live one level deeper, in ``<root>/@scope/``.
        """
        try:
            entries = sorted(self.root.iterdir())
        except OSError as e:
            raise FilesystemError(f"Failed to list {self.root}: {e}") from e

        candidates: List[Tuple[str, Path]] = []
        for entry in entries:
            if not entry.name.startswith("@"):
                candidates.append((entry.name, entry))
                continue
            try:
                scoped = sorted(entry.iterdir()) if entry.is_dir() else []
            except OSError as e:
                logger.warning(f"Skipping scope folder '{entry.name}': {e}")
                continue
            candidates.extend((f"{entry.name}/{child.name}", child) for child in scoped)
        return candidates

    def _scan(self) -> Dict[str, PackageDocument]:
        """
        Load every package document below the root.

        Directories can disappear while we iterate (unpublish running at the
        same time); such entries are skipped.
        """
        packages: Dict[str, PackageDocument] = {}
        for name, pkg_dir in self._package_dirs():
            if not is_safe_package_name(name):
                continue
            try:
                if not pkg_dir.is_dir():
                    continue
                document = self._read_document(pkg_dir / f"{package_basename(name)}.json")
            except FileNotFoundError:
                logger.warning(f"Package folder '{name}' is missing meta JSON.")
                continue
            except (OSError, FilesystemError) as e:
                logger.warning(f"Skipping package folder '{name}': {e}")
                continue
            packages[name] = document
        return packages

    def query(self, substring: str = "", filter: PackageFilter = "all") -> Dict[str, PackageDocument]:
        substring = substring or ""
        results: Dict[str, PackageDocument] = {}
        for name, document in self._scan().items():
            if substring not in name:
                continue
            if filter == "local" and document.is_proxied:
                continue
            if filter == "proxied" and not document.is_proxied:
                continue
            results[name] = document
        return results

    def refresh_meta(self) -> RegistryMeta:
        with self._lock:
            meta = self.get_meta()
            documents = self._scan()
            meta.count = len(documents)
            meta.proxied = sum(1 for d in documents.values() if d.is_proxied)
            meta.local = meta.count - meta.proxied
            self._write_meta()
            logger.info(
                f"Registry meta refreshed: {meta.count} packages "
                f"({meta.local} local, {meta.proxied} proxied)"
            )
            return meta
