import hashlib
import os
from pathlib import PurePosixPath, PureWindowsPath
from urllib.parse import unquote, urlparse

ONLYOFFICE_FILES_PREFIX = "/api/onlyoffice/files/"
WINDOWS_PATHS = os.name == "nt"


def fingerprint(path: str) -> str:
    """Stable 32-char hex key for a source path.

    Derived from the path string only, never from file contents or mtime, so
    the same document always maps to the same working directory.
    """
    return hashlib.md5(path.encode("utf-8")).hexdigest()


def is_absolute_path(path: str | None) -> bool:
    """Absolute for the host: drive/UNC paths on Windows, rooted paths elsewhere."""
    if not path:
        return False
    if WINDOWS_PATHS:
        return PureWindowsPath(path).is_absolute()
    return PurePosixPath(path).is_absolute()


def extract_file_path_from_url(url: str | None) -> str | None:
    """Map ``http://host/api/onlyoffice/files/<abs path>`` back to ``/<abs path>``."""
    if not url or not url.startswith(("http://", "https://")):
        return None
    parsed = urlparse(url)
    if not parsed.path.startswith(ONLYOFFICE_FILES_PREFIX):
        return None
    rest = parsed.path[len(ONLYOFFICE_FILES_PREFIX):]
    if not rest:
        return None
    return "/" + "/".join(unquote(part) for part in rest.split("/"))


def safe_filename(name: str | None) -> str:
    """Reduce a client supplied file name to its basename."""
    base = os.path.basename((name or "").replace("\\", "/"))
    if base in ("", ".", ".."):
        return ""
    return base


def resolve_within(base_dir: str, relative: str) -> str | None:
    """Join ``relative`` onto ``base_dir`` or return None if it escapes it."""
    base = os.path.realpath(base_dir)
    candidate = os.path.realpath(os.path.join(base, relative.lstrip("/\\")))
    if candidate != base and not candidate.startswith(base + os.sep):
        return None
    return candidate


def is_fingerprint(value: str | None) -> bool:
    return bool(value) and len(value) == 32 and all(c in "0123456789abcdef" for c in value)
