"""
Utilities for turning remote names into safe local paths.
"""

import os
from collections import defaultdict
from datetime import date
from pathlib import Path, PurePosixPath
from pathvalidate import sanitize_filename

from lumisync.exceptions import PathSafetyError
from lumisync.models.tree import DiscoveredFile

_SEPARATORS = ("/", "\\", "\0")
_FORBIDDEN_SEGMENTS = ("", ".", "..")

# Reserved for in-progress downloads; no sanitised remote name starts with it
TEMP_PREFIX = "~!"


def create_dir(directory_path: Path) -> None:
    """Creates a directory if it does not already exist."""
    directory_path.mkdir(parents=True, exist_ok=True)


def sanitize_segment(name: str) -> str:
    """
    Makes a single remote name usable as one local path component.

    Path separators and NUL become ``-`` before the platform rules of
    ``pathvalidate`` are applied, so a name can never introduce extra levels.
    A leading ``~!`` becomes ``~-`` so remote files never collide with the
    temporary siblings of other downloads.

    Raises:
        PathSafetyError: If nothing usable is left, or the name is ``.``/``..``.
    """
    cleaned = name
    for separator in _SEPARATORS:
        cleaned = cleaned.replace(separator, "-")
    cleaned = cleaned.strip()
    if cleaned in _FORBIDDEN_SEGMENTS:
        raise PathSafetyError(f"Refusing unusable path segment {name!r}")

    cleaned = sanitize_filename(cleaned, replacement_text="-", platform="auto").strip()
    if cleaned in _FORBIDDEN_SEGMENTS:
        raise PathSafetyError(f"Refusing unusable path segment {name!r}")
    if cleaned.startswith(TEMP_PREFIX):
        cleaned = "~-" + cleaned[len(TEMP_PREFIX) :]
    return cleaned


def join_under_root(root: Path, relative_path: PurePosixPath) -> Path:
    """
    Joins ``relative_path`` onto ``root`` without touching the disk.

    Raises:
        PathSafetyError: If the lexical result is not strictly below ``root``.
    """
    if relative_path.is_absolute() or ".." in relative_path.parts:
        raise PathSafetyError(f"Path '{relative_path}' escapes the sync root")

    base = os.path.normpath(os.path.abspath(root))
    candidate = os.path.normpath(os.path.join(base, *relative_path.parts))
    if os.path.commonpath([base, candidate]) != base or candidate == base:
        raise PathSafetyError(f"Path '{relative_path}' escapes the sync root")
    return Path(candidate)


def ensure_within_root(root: Path, destination: Path) -> Path:
    """
    Resolves symlinks on both sides and checks containment again.

    Raises:
        PathSafetyError: If the resolved destination lies outside the resolved root.
    """
    resolved_root = root.resolve()
    resolved = destination.resolve()
    if resolved == resolved_root or not resolved.is_relative_to(resolved_root):
        raise PathSafetyError(f"Destination '{destination}' resolves outside the sync root")
    return resolved


def split_name(name: str) -> tuple[str, str]:
    """
    Splits a file name at its first dot, so ``notes.tar.gz`` gives
    ``("notes", ".tar.gz")``. Leading dots belong to the stem.
    """
    stripped = name.lstrip(".")
    prefix = name[: len(name) - len(stripped)]
    stem, dot, extension = stripped.partition(".")
    return prefix + stem, (dot + extension) if dot else ""


def with_stem_suffix(path: PurePosixPath, suffix: str) -> PurePosixPath:
    """Appends ``suffix`` to the stem of the last component, before its extensions."""
    stem, extension = split_name(path.name)
    return path.with_name(f"{stem}{suffix}{extension}")


def make_paths_unique(entries: list[DiscoveredFile]) -> list[DiscoveredFile]:
    """
    Renames entries that share a relative path so every path is unique.

    Within a clash the most recently updated file keeps the name; the others
    get ``_<id>`` appended to their stem. Unknown timestamps sort last. The
    result is ordered by path.
    """
    groups: dict[PurePosixPath, list[DiscoveredFile]] = defaultdict(list)
    for entry in entries:
        groups[entry.relative_path].append(entry)

    unique = []
    for path, clashing in groups.items():
        if len(clashing) == 1:
            unique.append(clashing[0])
            continue

        clashing.sort(
            key=lambda e: (
                e.file.last_updated_timestamp is not None,
                e.file.last_updated_timestamp or 0.0,
            ),
            reverse=True,
        )
        unique.append(clashing[0])
        for entry in clashing[1:]:
            renamed = with_stem_suffix(path, f"_{sanitize_segment(entry.file.id)}")
            unique.append(DiscoveredFile(entry.file, renamed))

    unique.sort(key=lambda e: str(e.relative_path))
    return unique


def autorename_path(path: Path, previous_date: date) -> Path:
    """
    Finds a free sibling name for an outdated copy:
    ``<stem>_autorename_<YYYY-MM-DD>[_n]<ext>``.
    """
    stem, extension = split_name(path.name)
    base = f"{stem}_autorename_{previous_date.isoformat()}"
    candidate = path.with_name(f"{base}{extension}")
    counter = 0
    while candidate.exists():
        counter += 1
        candidate = path.with_name(f"{base}_{counter}{extension}")
    return candidate


def temporary_path(destination: Path) -> Path:
    """The sibling file a download is streamed into before it is moved in place."""
    return destination.with_name(f"{TEMP_PREFIX}{destination.name}")
