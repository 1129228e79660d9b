"""
Library Scanner - Walks a source library and classifies its files.

Expected layout:
    <library root>/
        <artist>/
            <album>/
                01 - Track.flac
                cover.jpg
                Disc 1/...        (only visible with an override, see below)
        <ignored directory>/      (ignored_directories_in_base_directory)
        <allowed other file>      (e.g. desktop.ini)

Each album may contain an optional override file
(.librarymirror.override.toml):

    [scan]
    depth = 1

depth = 0 (the default) scans the album directory only. Deeper
subdirectories are never descended into and their files are invisible to
the rest of the pipeline.

A directory or file inside the scan depth that cannot be read is recorded in
AlbumInventory.read_errors. Such an inventory is incomplete and the album is
not synced.

Classification of every file found:
    not allowed by the library's validation rules  → FORBIDDEN
    allowed, extension in tracked audio extensions → TRACKED_AUDIO
    allowed, extension in tracked other extensions → TRACKED_OTHER
    allowed, otherwise                             → IGNORED
"""

import logging
import os
import tomllib
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional

from .configuration import LibraryDescriptor, file_extension
from .errors import OverrideInvalid, StructuralError
from .fingerprint_store import MANIFEST_FILENAME, MANIFEST_TEMP_SUFFIX, Fingerprint

logger = logging.getLogger(__name__)

OVERRIDE_FILENAME = ".librarymirror.override.toml"
DEFAULT_SCAN_DEPTH = 0

# Files this tool keeps inside album directories
INTERNAL_FILENAMES = frozenset({
    MANIFEST_FILENAME,
    MANIFEST_FILENAME + MANIFEST_TEMP_SUFFIX,
    OVERRIDE_FILENAME,
})


def output_relative_path(relative_path: str, is_audio: bool, output_extension: str) -> str:
    """Path of a file's output relative to its album in the aggregated library."""
    path = PurePosixPath(relative_path)
    if is_audio:
        path = path.with_suffix(f".{output_extension.lower().lstrip('.')}")
    return path.as_posix()


class FileClass(Enum):
    """How a scanned file is treated by the rest of the pipeline."""

    TRACKED_AUDIO = "tracked_audio"  # transcoded
    TRACKED_OTHER = "tracked_other"  # copied
    IGNORED = "ignored"  # allowed, not mirrored
    FORBIDDEN = "forbidden"  # validation error, excluded


@dataclass(frozen=True)
class FileEntry:
    """A single file inside an album directory."""

    relative_path: str  # POSIX-style, relative to the album directory
    size_bytes: int
    time_modified: Optional[int]
    time_created: Optional[int]
    file_class: FileClass

    @property
    def fingerprint(self) -> Fingerprint:
        return Fingerprint(
            size_bytes=self.size_bytes,
            time_modified=self.time_modified,
            time_created=self.time_created,
        )

    @property
    def is_tracked(self) -> bool:
        return self.file_class in (FileClass.TRACKED_AUDIO, FileClass.TRACKED_OTHER)


@dataclass(frozen=True)
class ScanOverride:
    """Per-album scan options loaded from the override file."""

    depth: int = DEFAULT_SCAN_DEPTH

    @classmethod
    def load(cls, album_path: str | Path) -> "ScanOverride":
        """
        Load the override file of an album.

        Returns:
            The override, or the defaults if the album has no override file.

        Raises:
            OverrideInvalid: the file exists but is not valid TOML or has bad values.
        """
        path = Path(album_path) / OVERRIDE_FILENAME
        if not path.is_file():
            return cls()

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise OverrideInvalid(path, f"invalid TOML: {e}") from e
        except OSError as e:
            raise OverrideInvalid(path, str(e)) from e

        scan = data.get("scan", {})
        if not isinstance(scan, dict):
            raise OverrideInvalid(path, "[scan] must be a table")

        depth = scan.get("depth", DEFAULT_SCAN_DEPTH)
        if isinstance(depth, bool) or not isinstance(depth, int) or depth < 0:
            raise OverrideInvalid(path, f"scan.depth must be a non-negative integer, got {depth!r}")

        return cls(depth=depth)


@dataclass
class AlbumInventory:
    """Everything the scanner found in one album directory during this run."""

    library_name: str
    artist: str
    album: str
    path: Path  # absolute album directory
    files: list[FileEntry] = field(default_factory=list)
    scan_depth: int = DEFAULT_SCAN_DEPTH
    override_error: Optional[str] = None

    # Directories or files inside the scan depth that could not be read;
    # the inventory is incomplete when this is non-empty
    read_errors: list[str] = field(default_factory=list)

    @property
    def key(self) -> tuple[str, str]:
        """(artist, album) identity used for collision detection."""
        return (self.artist, self.album)

    @property
    def display_name(self) -> str:
        return f"{self.artist} - {self.album}"

    @property
    def tracked_files(self) -> list[FileEntry]:
        return [f for f in self.files if f.is_tracked]

    @property
    def forbidden_files(self) -> list[FileEntry]:
        return [f for f in self.files if f.file_class is FileClass.FORBIDDEN]

    @property
    def is_complete(self) -> bool:
        return not self.read_errors

    def count(self, file_class: FileClass) -> int:
        return sum(1 for f in self.files if f.file_class is file_class)

    def target_conflicts(self, output_extension: str) -> list[tuple[str, ...]]:
        """
        Groups of tracked files that would be written to the same output path,
        e.g. "01.flac" and "01.mp3" when both are transcoded to mp3.
        """
        claims: dict[str, list[str]] = {}
        for entry in self.tracked_files:
            is_audio = entry.file_class is FileClass.TRACKED_AUDIO
            output = output_relative_path(entry.relative_path, is_audio, output_extension)
            claims.setdefault(output, []).append(entry.relative_path)
        return [tuple(paths) for _, paths in sorted(claims.items()) if len(paths) > 1]


@dataclass
class LibraryScan:
    """Result of scanning one library."""

    library: LibraryDescriptor
    albums: list[AlbumInventory] = field(default_factory=list)

    # Artist directories without a single album directory (informational)
    empty_artists: list[str] = field(default_factory=list)

    # Set when the library does not follow the expected layout; albums is then empty
    structural_error: Optional[StructuralError] = None

    @property
    def ok(self) -> bool:
        return self.structural_error is None

    @property
    def album_count(self) -> int:
        return len(self.albums)

    @property
    def file_count(self) -> int:
        return sum(len(album.files) for album in self.albums)


class DirectoryScanner:
    """
    Scanner for one source library.

    Usage:
        scanner = DirectoryScanner(library)
        scan = scanner.scan()   # raises StructuralError

        for album in scan.albums:
            print(album.display_name, len(album.tracked_files))
    """

    def __init__(self, library: LibraryDescriptor):
        self.library = library

    def scan(self) -> LibraryScan:
        """
        Scan the whole library. Read-only.

        Raises:
            StructuralError: the root is missing or contains unexpected files.
        """
        root = self.library.path
        if not root.exists():
            raise StructuralError(self.library.name, [f"library root does not exist: {root}"])
        if not root.is_dir():
            raise StructuralError(self.library.name, [f"library root is not a directory: {root}"])

        result = LibraryScan(library=self.library)
        problems: list[str] = []

        for entry in self._list_directory(root, problems):
            if entry.is_dir():
                if entry.name in self.library.ignored_directories:
                    logger.debug(f"[{self.library.name}] Skipping ignored directory {entry.name}")
                    continue
                self._scan_artist(Path(entry.path), result, problems)
            elif not self.library.is_allowed_other_file(entry.name):
                problems.append(f"unexpected file in library root: {entry.name}")

        if problems:
            raise StructuralError(self.library.name, problems)

        logger.info(
            f"[{self.library.name}] Scanned {result.album_count} albums, {result.file_count} files"
        )
        return result

    def scan_album(self, artist: str, album_path: Path) -> AlbumInventory:
        """Scan a single album directory, honouring its override file."""
        override_error = None
        try:
            override = ScanOverride.load(album_path)
        except OverrideInvalid as e:
            logger.warning(f"[{self.library.name}] {e}; using default scan depth")
            override = ScanOverride()
            override_error = e.reason

        inventory = AlbumInventory(
            library_name=self.library.name,
            artist=artist,
            album=album_path.name,
            path=album_path,
            scan_depth=override.depth,
            override_error=override_error,
        )
        inventory.files = self._collect_files(album_path, override.depth, inventory.read_errors)
        return inventory

    def classify(self, filename: str) -> FileClass:
        """Classify a file by name/extension against this library's rules."""
        if not self.library.is_allowed_file(filename):
            return FileClass.FORBIDDEN

        extension = file_extension(filename)
        if extension in self.library.tracked_audio_extensions:
            return FileClass.TRACKED_AUDIO
        if extension in self.library.tracked_other_extensions:
            return FileClass.TRACKED_OTHER
        return FileClass.IGNORED

    # ── Internals ───────────────────────────────────────────────────────────

    def _scan_artist(self, artist_path: Path, result: LibraryScan, problems: list[str]) -> None:
        album_count = 0
        for entry in self._list_directory(artist_path, problems):
            if entry.is_dir():
                result.albums.append(self.scan_album(artist_path.name, Path(entry.path)))
                album_count += 1
            elif not self.library.is_allowed_other_file(entry.name):
                problems.append(f"unexpected file in artist directory: {artist_path.name}/{entry.name}")

        if album_count == 0:
            result.empty_artists.append(artist_path.name)

    def _collect_files(self, album_path: Path, max_depth: int, read_errors: list[str]) -> list[FileEntry]:
        files: list[FileEntry] = []
        pending: list[tuple[Path, int]] = [(album_path, 0)]

        while pending:
            directory, depth = pending.pop()
            try:
                entries = sorted(os.scandir(directory), key=lambda e: e.name)
            except OSError as e:
                logger.warning(f"[{self.library.name}] Cannot read {directory}: {e}")
                read_errors.append(f"cannot read directory '{self._album_relative(directory, album_path)}': {e}")
                continue

            for entry in entries:
                if entry.is_dir():
                    if depth < max_depth:
                        pending.append((Path(entry.path), depth + 1))
                    continue

                if depth == 0 and entry.name in INTERNAL_FILENAMES:
                    continue

                try:
                    stat = entry.stat()
                except OSError as e:
                    logger.warning(f"[{self.library.name}] Cannot stat {entry.path}: {e}")
                    read_errors.append(
                        f"cannot read file '{self._album_relative(Path(entry.path), album_path)}': {e}"
                    )
                    continue

                fingerprint = Fingerprint.from_stat(stat)
                files.append(FileEntry(
                    relative_path=Path(entry.path).relative_to(album_path).as_posix(),
                    size_bytes=fingerprint.size_bytes,
                    time_modified=fingerprint.time_modified,
                    time_created=fingerprint.time_created,
                    file_class=self.classify(entry.name),
                ))

        files.sort(key=lambda f: f.relative_path)
        return files

    @staticmethod
    def _album_relative(path: Path, album_path: Path) -> str:
        return path.relative_to(album_path).as_posix()

    def _list_directory(self, directory: Path, problems: list[str]) -> list[os.DirEntry]:
        try:
            return sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as e:
            problems.append(f"cannot read directory {directory}: {e}")
            return []


def scan_library(library: LibraryDescriptor) -> LibraryScan:
    """Scan a library, turning a StructuralError into a failed LibraryScan."""
    try:
        return DirectoryScanner(library).scan()
    except StructuralError as e:
        logger.error(str(e))
        return LibraryScan(library=library, structural_error=e)
