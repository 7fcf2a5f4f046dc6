from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Union

from npm_registry.domain.models import PackageDocument, PackageFilter, RegistryMeta


class MetadataStore(ABC):
    """
    Abstract base class for package metadata storage.

    The store is the sole reader/writer of package documents and keeps the
    registry-wide counters in step with them.
    """

    @abstractmethod
    def initialize(self, root: Path) -> None:
        """Open the registry at ``root`` (migrating older layouts if needed)."""
        pass

    @abstractmethod
    def get_meta(self) -> RegistryMeta:
        """Return the registry-wide metadata (counters, settings overrides)."""
        pass

    @abstractmethod
    def save_meta(self, meta: RegistryMeta) -> None:
        """Persist registry-wide metadata."""
        pass

    @abstractmethod
    def get(self, name: str, version: Optional[str] = None) -> Optional[Union[PackageDocument, Dict[str, Any]]]:
        """
        Get a package document, or one version blob of it.
        Returns None if the document (or the version) does not exist.
        """
        pass

    @abstractmethod
    def set(self, document: PackageDocument) -> None:
        """Save a package document (create or overwrite)."""
        pass

    @abstractmethod
    def remove(self, name: str) -> None:
        """Remove a package document. Missing packages are ignored."""
        pass

    @abstractmethod
    def query(self, substring: str = "", filter: PackageFilter = "all") -> Dict[str, PackageDocument]:
        """Return all packages whose name contains ``substring``."""
        pass

    @abstractmethod
    def refresh_meta(self) -> RegistryMeta:
        """Recompute the counters from what is on disk."""
        pass

    @abstractmethod
    def package_dir(self, name: str) -> Path:
        """
        Absolute path of the package directory (which may not exist yet).
        Attachments of the package live next to its document.
        """
        pass

    @abstractmethod
    def get_modified_time(self, name: str) -> Optional[datetime]:
        """When the package document was last written, or None if absent."""
        pass
