"""
Library Validator - Checks scans against library rules and against each other.

Per library:
  - forbidden files (already classified by the scanner)
  - structural errors (library root not in artist/album layout)
  - artist directories without albums (informational)
  - unusable album override files (warning, album uses defaults)
  - album directories that could not be read completely
  - tracked files of one album that map to the same output path

Across libraries:
  - collisions: the same (artist, album) directory names in more than one
    library. Matching is exact and case-sensitive; "Abbey Road" and
    "abbey road" are NOT reported.

Nothing here touches the filesystem or any persisted state.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from .scanner import LibraryScan

logger = logging.getLogger(__name__)


class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class ValidationIssue:
    """A single finding, with enough context to act on it."""

    severity: Severity
    library_name: str
    path: str  # relative to the library root
    message: str

    def __str__(self) -> str:
        location = f"{self.library_name}:{self.path}" if self.path else self.library_name
        return f"[{self.severity.value}] {location}: {self.message}"


@dataclass(frozen=True)
class CollisionRecord:
    """An (artist, album) identity owned by two or more libraries."""

    artist: str
    album: str
    library_names: tuple[str, ...]
    album_paths: tuple[Path, ...]

    @property
    def key(self) -> tuple[str, str]:
        return (self.artist, self.album)

    def __str__(self) -> str:
        libraries = ", ".join(self.library_names)
        return f"album '{self.artist} - {self.album}' exists in multiple libraries: {libraries}"


@dataclass
class LibraryValidationReport:
    library_name: str
    issues: list[ValidationIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity is Severity.ERROR]

    @property
    def has_errors(self) -> bool:
        return any(i.severity is Severity.ERROR for i in self.issues)


@dataclass
class ValidationReport:
    """Validation result for one or more libraries."""

    libraries: dict[str, LibraryValidationReport] = field(default_factory=dict)
    collisions: list[CollisionRecord] = field(default_factory=list)

    @property
    def error_count(self) -> int:
        return sum(len(r.errors) for r in self.libraries.values()) + len(self.collisions)

    @property
    def is_valid(self) -> bool:
        return self.error_count == 0

    @property
    def colliding_keys(self) -> set[tuple[str, str]]:
        return {c.key for c in self.collisions}

    @property
    def issues(self) -> list[ValidationIssue]:
        return [issue for report in self.libraries.values() for issue in report.issues]

    @property
    def summary(self) -> str:
        if self.is_valid:
            warnings = sum(
                1 for i in self.issues if i.severity is not Severity.ERROR
            )
            suffix = f" ({warnings} notices)" if warnings else ""
            return f"Validation passed for {len(self.libraries)} libraries{suffix}."

        lines = [f"Validation found {self.error_count} problems:"]
        for name, report in sorted(self.libraries.items()):
            if report.errors:
                lines.append(f"  {name}: {len(report.errors)} errors")
        if self.collisions:
            lines.append(f"  {len(self.collisions)} albums collide across libraries")
        return "\n".join(lines)


def validate_library(scan: LibraryScan, output_extension: Optional[str] = None) -> LibraryValidationReport:
    """
    Collect all single-library findings for a scan.

    With ``output_extension`` set, tracked files of one album that would be
    written to the same output path are reported as well.
    """
    library_name = scan.library.name
    report = LibraryValidationReport(library_name=library_name)

    if scan.structural_error is not None:
        for problem in scan.structural_error.problems:
            report.issues.append(ValidationIssue(Severity.ERROR, library_name, "", problem))
        return report

    for artist in scan.empty_artists:
        report.issues.append(ValidationIssue(
            Severity.INFO, library_name, artist, "artist directory contains no albums",
        ))

    for album in scan.albums:
        album_dir = f"{album.artist}/{album.album}"
        if album.override_error:
            report.issues.append(ValidationIssue(
                Severity.WARNING, library_name, album_dir,
                f"album override ignored: {album.override_error}",
            ))
        for entry in album.forbidden_files:
            report.issues.append(ValidationIssue(
                Severity.ERROR, library_name, f"{album_dir}/{entry.relative_path}",
                "forbidden file (extension or name not allowed in this library)",
            ))
        for problem in album.read_errors:
            report.issues.append(ValidationIssue(
                Severity.ERROR, library_name, album_dir, f"album skipped, {problem}",
            ))
        if output_extension is not None:
            for paths in album.target_conflicts(output_extension):
                report.issues.append(ValidationIssue(
                    Severity.ERROR, library_name, album_dir,
                    f"album skipped, files share one output path: {', '.join(paths)}",
                ))

    return report


def find_collisions(scans: Iterable[LibraryScan]) -> list[CollisionRecord]:
    """
    Build the (artist, album) index across all scans and report every key
    owned by more than one library.
    """
    index: dict[tuple[str, str], dict[str, Path]] = defaultdict(dict)
    for scan in scans:
        for album in scan.albums:
            index[album.key].setdefault(scan.library.name, album.path)

    collisions = []
    for (artist, album), owners in sorted(index.items()):
        if len(owners) < 2:
            continue
        names = tuple(sorted(owners))
        collisions.append(CollisionRecord(
            artist=artist,
            album=album,
            library_names=names,
            album_paths=tuple(owners[name] for name in names),
        ))

    if collisions:
        logger.warning(f"Found {len(collisions)} albums present in more than one library")
    return collisions


def validate_scans(
    scans: Iterable[LibraryScan],
    check_collisions: bool = True,
    output_extension: Optional[str] = None,
) -> ValidationReport:
    """Validate a set of scans; the collision pass runs only if requested."""
    scans = list(scans)
    report = ValidationReport()
    for scan in scans:
        report.libraries[scan.library.name] = validate_library(scan, output_extension)
    if check_collisions:
        report.collisions = find_collisions(scans)
    return report
