"""
Album Fingerprint Store - Tracks which source files have been mirrored.

Stores: relative file path → {size_bytes, time_modified, time_created}

Location: one hidden state file per source album directory,
    <library>/<artist>/<album>/.librarymirror.state.json

Format:
    {
      "version": 1,
      "files": {
        "01 - Intro.flac": {"size_bytes": 31337, "time_modified": 1700000000123456789, "time_created": null}
      }
    }

Timestamps are integer nanoseconds. Two fingerprints are considered equal
when their sizes match and each timestamp is either absent on both sides or
equal on both sides after truncation to a tenth of a second.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from .errors import ManifestCorrupt

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = ".librarymirror.state.json"
MANIFEST_TEMP_SUFFIX = ".tmp"
MANIFEST_VERSION = 1

# 1 decisecond in nanoseconds
_TRUNCATION_NS = 100_000_000


def _truncate(timestamp_ns: Optional[int]) -> Optional[int]:
    if timestamp_ns is None:
        return None
    return timestamp_ns // _TRUNCATION_NS


@dataclass(frozen=True, eq=False)
class Fingerprint:
    """Size and timestamps of a tracked file at the time it was mirrored."""

    size_bytes: int
    time_modified: Optional[int] = None  # ns since epoch
    time_created: Optional[int] = None  # ns since epoch, not available on every platform

    @classmethod
    def from_stat(cls, stat: os.stat_result) -> "Fingerprint":
        """Build a fingerprint from an ``os.stat`` result."""
        return cls(
            size_bytes=stat.st_size,
            time_modified=stat.st_mtime_ns,
            time_created=getattr(stat, "st_birthtime_ns", None),
        )

    @classmethod
    def from_path(cls, path: str | Path) -> "Fingerprint":
        return cls.from_stat(os.stat(path))

    def _key(self) -> tuple:
        return (self.size_bytes, _truncate(self.time_modified), _truncate(self.time_created))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Fingerprint):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def to_dict(self) -> dict:
        return {
            "size_bytes": self.size_bytes,
            "time_modified": self.time_modified,
            "time_created": self.time_created,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Fingerprint":
        """Parse one manifest entry. Raises ValueError on malformed input."""
        if not isinstance(data, dict):
            raise ValueError("entry is not an object")

        size = data.get("size_bytes")
        if not _is_uint(size):
            raise ValueError(f"invalid size_bytes: {size!r}")

        times = {}
        for key in ("time_modified", "time_created"):
            value = data.get(key)
            if value is not None and not _is_uint(value):
                raise ValueError(f"invalid {key}: {value!r}")
            times[key] = value

        return cls(size_bytes=size, **times)


def _is_uint(value) -> bool:
    # bool is an int subclass, reject it explicitly
    return isinstance(value, int) and not isinstance(value, bool) and value >= 0


@dataclass
class AlbumFingerprintManifest:
    """All fingerprints recorded for one album directory."""

    files: dict[str, Fingerprint] = field(default_factory=dict)

    def get(self, relative_path: str) -> Optional[Fingerprint]:
        return self.files.get(relative_path)

    def set(self, relative_path: str, fingerprint: Fingerprint) -> None:
        self.files[relative_path] = fingerprint

    def remove(self, relative_path: str) -> bool:
        """Remove an entry. Returns True if it existed."""
        return self.files.pop(relative_path, None) is not None

    def is_unchanged(self, relative_path: str, current: Fingerprint) -> bool:
        """A missing entry always counts as changed."""
        stored = self.files.get(relative_path)
        return stored is not None and stored == current

    @property
    def file_count(self) -> int:
        return len(self.files)

    def __len__(self) -> int:
        return len(self.files)

    def to_dict(self) -> dict:
        return {
            "version": MANIFEST_VERSION,
            "files": {path: fp.to_dict() for path, fp in sorted(self.files.items())},
        }

    @classmethod
    def from_dict(cls, data) -> "AlbumFingerprintManifest":
        """Parse a manifest document. Raises ValueError on malformed input."""
        if not isinstance(data, dict):
            raise ValueError("manifest is not a JSON object")

        version = data.get("version", MANIFEST_VERSION)
        if not _is_uint(version) or version > MANIFEST_VERSION:
            raise ValueError(f"unsupported manifest version: {version!r}")

        raw_files = data.get("files", {})
        if not isinstance(raw_files, dict):
            raise ValueError("'files' is not an object")

        files = {}
        for path, entry in raw_files.items():
            try:
                files[path] = Fingerprint.from_dict(entry)
            except ValueError as e:
                raise ValueError(f"entry '{path}': {e}") from e
        return cls(files=files)

    def serialize(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=False) + "\n"


class ManifestStore:
    """
    Loads and commits album manifests.

    Usage:
        store = ManifestStore()
        manifest = store.load(album_dir)
        manifest.set("01 - Intro.flac", Fingerprint.from_path(path))
        store.commit(album_dir, manifest)
    """

    def __init__(self, filename: str = MANIFEST_FILENAME):
        self.filename = filename

    def manifest_path(self, album_path: str | Path) -> Path:
        return Path(album_path) / self.filename

    def exists(self, album_path: str | Path) -> bool:
        return self.manifest_path(album_path).is_file()

    def load(self, album_path: str | Path) -> AlbumFingerprintManifest:
        """
        Load the manifest of an album.

        Returns:
            The manifest, or an empty one if the album has never been synced.

        Raises:
            ManifestCorrupt: the file exists but cannot be read or parsed.
        """
        path = self.manifest_path(album_path)
        if not path.exists():
            return AlbumFingerprintManifest()

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ManifestCorrupt(path, f"invalid JSON: {e}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise ManifestCorrupt(path, str(e)) from e

        try:
            manifest = AlbumFingerprintManifest.from_dict(data)
        except ValueError as e:
            raise ManifestCorrupt(path, str(e)) from e

        logger.debug(f"Loaded manifest with {manifest.file_count} files from {path}")
        return manifest

    def commit(self, album_path: str | Path, manifest: AlbumFingerprintManifest) -> None:
        """
        Atomically replace the manifest of an album.

        The document is written to a temporary sibling, flushed to disk and
        renamed over the old manifest, so a crash leaves either the old or
        the new manifest and never a truncated one.

        Raises:
            OSError: the manifest could not be written.
        """
        path = self.manifest_path(album_path)
        temp_path = path.with_name(path.name + MANIFEST_TEMP_SUFFIX)

        try:
            with open(temp_path, "w", encoding="utf-8", newline="\n") as f:
                f.write(manifest.serialize())
                f.flush()
                os.fsync(f.fileno())
            temp_path.replace(path)
        except OSError:
            temp_path.unlink(missing_ok=True)
            raise

        logger.debug(f"Committed manifest with {manifest.file_count} files to {path}")
