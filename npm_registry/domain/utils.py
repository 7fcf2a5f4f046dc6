from typing import Any, Optional


def attachment_name(tarball_url: str) -> str:
    """Filename part of a tarball URL (everything after the last ``/``)."""
    return tarball_url[tarball_url.rfind("/") + 1:]


def is_safe_attachment(attachment: str) -> bool:
    """
    True if ``attachment`` names a single file inside a package directory.

    Rejects path separators (also percent-encoded ones) and the relative
    directory names so a download, upload or delete can never leave the
    package directory.
    """
    if not attachment or not isinstance(attachment, str):
        return False
    if "/" in attachment or "\\" in attachment or "%2f" in attachment.lower():
        return False
    return attachment not in (".", "..")


def _is_safe_component(part: str) -> bool:
    if not part or "/" in part or "\\" in part or "\x00" in part:
        return False
    return not part.startswith(".") and not part.startswith("@")


def is_safe_package_name(name: Any) -> bool:
    """
    True for ``name`` and ``@scope/name``, each part a single path component.

    Only scopes may start with ``@``; a directory below the registry root
    whose name starts with ``@`` holds the packages of that scope.
    """
    if not isinstance(name, str) or not name:
        return False
    if name.startswith("@"):
        scope, sep, basename = name[1:].partition("/")
        return bool(sep) and _is_safe_component(scope) and _is_safe_component(basename)
    return _is_safe_component(name)


def package_basename(name: str) -> str:
    """``@scope/name`` -> ``name``; the document file is ``<basename>.json``."""
    return name.rpartition("/")[2]


def escape_package_name(name: str) -> str:
    """Upstream registries expect the scope separator percent-encoded."""
    if name.startswith("@"):
        return name.replace("/", "%2f", 1)
    return name


def version_key(v: str) -> tuple:
    """
    Convert a version string into a sortable tuple.

    Numeric parts sort numerically and before textual parts, which is close
    enough to semver ordering for picking the highest published version.
    """
    v_str = str(v) if v is not None else ""
    parts = []
    for part in v_str.replace("-", ".").replace("+", ".").split("."):
        try:
            parts.append((0, int(part)))
        except ValueError:
            parts.append((1, part))
    return tuple(parts)


def coerce_revision(rev: Any) -> Optional[int]:
    """Integer value of a revision, or None for missing/legacy checksum revisions."""
    if isinstance(rev, bool):
        return None
    if isinstance(rev, int):
        return rev
    if isinstance(rev, str) and rev.strip().isdigit():
        return int(rev.strip())
    return None


def is_legacy_revision(rev: Any) -> bool:
    """True for the checksum-like string revisions written by the old schema."""
    return rev is not None and coerce_revision(rev) is None
