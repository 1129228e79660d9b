"""
Aggregated Library Integrity - finds albums in the output that no source owns.

An album directory <aggregated root>/<artist>/<album> is orphaned when no
scanned library contains <artist>/<album> any more, e.g. because the album
was renamed or removed from its source library. Per-file deletes cannot
catch this because the album's manifest went away together with the album.

Orphans are always reported. They are deleted only when asked to and only
if every library scanned cleanly: a library skipped for a structural error
contributes no albums, so all of its output would look orphaned.
"""

import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from .scanner import LibraryScan

logger = logging.getLogger(__name__)


@dataclass
class OrphanReport:
    """Summary of what the orphan check found and removed."""

    orphan_albums: list[Path] = field(default_factory=list)
    removed_albums: list[Path] = field(default_factory=list)

    # Set when removal was requested but a library failed to scan
    pruning_skipped: bool = False

    errors: list[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.orphan_albums

    @property
    def summary(self) -> str:
        if self.is_clean:
            return "No orphaned albums in the aggregated library."
        parts = [f"{len(self.orphan_albums)} orphaned albums in the aggregated library"]
        if self.removed_albums:
            parts.append(f"{len(self.removed_albums)} removed")
        if self.pruning_skipped:
            parts.append("not removed because a library could not be scanned")
        if self.errors:
            parts.append(f"{len(self.errors)} errors")
        return ", ".join(parts)


def find_orphaned_albums(aggregated_root: str | Path, scans: Iterable[LibraryScan]) -> list[Path]:
    """Album directories in the aggregated library without a source album."""
    root = Path(aggregated_root)
    if not root.is_dir():
        return []

    expected = {album.key for scan in scans for album in scan.albums}
    orphans = []
    for artist_dir in sorted(p for p in root.iterdir() if p.is_dir()):
        for album_dir in sorted(p for p in artist_dir.iterdir() if p.is_dir()):
            if (artist_dir.name, album_dir.name) not in expected:
                orphans.append(album_dir)
    return orphans


def check_orphans(
    aggregated_root: str | Path,
    scans: Iterable[LibraryScan],
    *,
    delete_orphans: bool = False,
) -> OrphanReport:
    """
    Report (and optionally delete) orphaned album directories.

    Args:
        aggregated_root: Root of the aggregated library.
        scans: This run's scans of every configured library.
        delete_orphans: Remove orphaned albums (and artist directories left empty).
    """
    scans = list(scans)
    report = OrphanReport()
    try:
        report.orphan_albums = find_orphaned_albums(aggregated_root, scans)
    except OSError as e:
        report.errors.append(f"Could not list aggregated library: {e}")
        return report

    if report.orphan_albums:
        logger.warning(f"Found {len(report.orphan_albums)} orphaned albums in {aggregated_root}")

    if not delete_orphans or not report.orphan_albums:
        return report

    if not all(scan.ok for scan in scans):
        logger.warning("Not removing orphaned albums: at least one library failed to scan")
        report.pruning_skipped = True
        return report

    for album_dir in report.orphan_albums:
        try:
            shutil.rmtree(album_dir)
        except OSError as e:
            report.errors.append(f"Could not remove {album_dir}: {e}")
            continue
        report.removed_albums.append(album_dir)
        logger.info(f"Removed orphaned album: {album_dir}")

        artist_dir = album_dir.parent
        try:
            artist_dir.rmdir()
            logger.debug(f"Removed empty artist directory: {artist_dir}")
        except OSError:
            pass  # other albums remain

    return report
