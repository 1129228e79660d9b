"""
Diff Engine - Computes the sync plan for the aggregated library.

For every album the engine compares the files found by the scanner with the
album's manifest:

  TRACKED_AUDIO, fingerprint changed or missing  → TRANSCODE
  TRACKED_OTHER, fingerprint changed or missing  → COPY
  tracked, fingerprint unchanged                 → NO_OP
  manifest entry without a tracked file          → DELETE

Target paths mirror the source layout:
    <aggregated root>/<artist>/<album>/<relative path>
with the extension of transcoded files replaced by the codec's extension.

A file whose fingerprint is unchanged but whose target has disappeared from
the aggregated library is treated as changed, so a committed manifest never
lists a file that is missing from the output.

Albums are skipped entirely (no actions, manifest untouched) when they collide
across libraries, when the scanner could not read all of them, or when two
tracked files would be written to the same output path.

Actions are grouped per album so the executor can commit each album's
manifest once all of that album's actions have an outcome.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional

from .configuration import LibraryDescriptor, file_extension
from .errors import ManifestCorrupt
from .fingerprint_store import AlbumFingerprintManifest, Fingerprint, ManifestStore
from .scanner import AlbumInventory, FileClass, LibraryScan, output_relative_path
from .validator import CollisionRecord

logger = logging.getLogger(__name__)


# ─── Enums & Data Classes ─────────────────────────────────────────────────────


class ActionKind(Enum):
    """Type of sync action needed for one file."""

    TRANSCODE = auto()  # audio file new/changed, run the external tool
    COPY = auto()  # other tracked file new/changed, byte copy
    DELETE = auto()  # source file gone, remove the mirrored file
    NO_OP = auto()  # in sync


@dataclass(frozen=True)
class SyncAction:
    """A single file-level action. Consumed exactly once by the executor."""

    kind: ActionKind
    library_name: str
    artist: str
    album: str
    relative_path: str  # key in the album manifest

    source: Optional[Path] = None  # TRANSCODE / COPY / NO_OP
    # DELETE with no target only drops the manifest entry (the target path
    # is being rewritten by another action of the same album)
    target: Optional[Path] = None

    # Current fingerprint of the source file (TRANSCODE / COPY / NO_OP)
    fingerprint: Optional[Fingerprint] = None

    @property
    def album_key(self) -> tuple[str, str, str]:
        return (self.library_name, self.artist, self.album)

    @property
    def description(self) -> str:
        return f"{self.library_name}: {self.artist}/{self.album}/{self.relative_path}"


@dataclass
class AlbumPlan:
    """All actions for one album, plus the manifest they were computed from."""

    library_name: str
    artist: str
    album: str
    album_path: Path  # source album directory, holds the manifest
    previous_manifest: AlbumFingerprintManifest = field(default_factory=AlbumFingerprintManifest)
    actions: list[SyncAction] = field(default_factory=list)

    # Set when the stored manifest was unreadable and an empty one was used
    manifest_error: Optional[str] = None

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.library_name, self.artist, self.album)

    @property
    def display_name(self) -> str:
        return f"{self.library_name}: {self.artist} - {self.album}"

    @property
    def pending_actions(self) -> list[SyncAction]:
        """Actions that need a worker (everything except NO_OP)."""
        return [a for a in self.actions if a.kind is not ActionKind.NO_OP]

    @property
    def has_changes(self) -> bool:
        return self.manifest_error is not None or any(
            a.kind is not ActionKind.NO_OP for a in self.actions
        )

    def count(self, kind: ActionKind) -> int:
        return sum(1 for a in self.actions if a.kind is kind)


@dataclass
class SkippedAlbum:
    library_name: str
    artist: str
    album: str
    reason: str


@dataclass
class SyncPlan:
    """Complete sync plan across all libraries."""

    albums: list[AlbumPlan] = field(default_factory=list)

    # Albums excluded from the plan (collisions, unreadable, output conflicts)
    skipped_albums: list[SkippedAlbum] = field(default_factory=list)

    # (manifest path, reason) for manifests that could not be read
    manifest_errors: list[tuple[str, str]] = field(default_factory=list)

    @property
    def actions(self) -> list[SyncAction]:
        return [action for album in self.albums for action in album.actions]

    def count(self, kind: ActionKind, library_name: Optional[str] = None) -> int:
        return sum(
            album.count(kind)
            for album in self.albums
            if library_name is None or album.library_name == library_name
        )

    @property
    def library_names(self) -> list[str]:
        return sorted({album.library_name for album in self.albums})

    @property
    def has_changes(self) -> bool:
        return any(album.has_changes for album in self.albums)

    @property
    def summary(self) -> str:
        lines = []
        for name in self.library_names:
            lines.append(
                f"  {name}: {self.count(ActionKind.TRANSCODE, name)} to transcode, "
                f"{self.count(ActionKind.COPY, name)} to copy, "
                f"{self.count(ActionKind.DELETE, name)} to delete, "
                f"{self.count(ActionKind.NO_OP, name)} unchanged"
            )
        if self.skipped_albums:
            lines.append(f"  {len(self.skipped_albums)} albums skipped")
        if self.manifest_errors:
            lines.append(f"  {len(self.manifest_errors)} corrupt manifests (albums fully resynced)")

        if not lines:
            return "Nothing to sync."
        header = "Sync plan:" if self.has_changes else "Everything is up to date:"
        return header + "\n" + "\n".join(lines)


# ─── Diff Engine ─────────────────────────────────────────────────────────────


class DiffEngine:
    """
    Computes a SyncPlan from library scans and album manifests.

    Usage:
        engine = DiffEngine(aggregated_root, "mp3")
        plan = engine.plan(scans, collisions)
        print(plan.summary)
    """

    def __init__(
        self,
        aggregated_root: str | Path,
        output_extension: str,
        store: Optional[ManifestStore] = None,
        check_targets: bool = True,
    ):
        self.aggregated_root = Path(aggregated_root)
        self.output_extension = output_extension.lower().lstrip(".")
        self.store = store or ManifestStore()
        self.check_targets = check_targets

    def target_path(self, artist: str, album: str, relative_path: str, is_audio: bool) -> Path:
        """Where a source file ends up in the aggregated library."""
        relative = PurePosixPath(output_relative_path(relative_path, is_audio, self.output_extension))
        return self.aggregated_root.joinpath(artist, album, *relative.parts)

    def plan(
        self,
        scans: Iterable[LibraryScan],
        collisions: Iterable[CollisionRecord] = (),
    ) -> SyncPlan:
        """
        Build the plan for every album of every successfully scanned library.

        Albums whose (artist, album) key appears in ``collisions`` are
        excluded in every owning library. See skip_reason() for the other
        albums that are left out.
        """
        colliding = {c.key for c in collisions}
        plan = SyncPlan()

        for scan in scans:
            if not scan.ok:
                continue
            for inventory in scan.albums:
                reason = self.skip_reason(inventory, colliding)
                if reason is not None:
                    logger.warning(f"[{scan.library.name}] Skipping '{inventory.display_name}': {reason}")
                    plan.skipped_albums.append(SkippedAlbum(
                        library_name=scan.library.name,
                        artist=inventory.artist,
                        album=inventory.album,
                        reason=reason,
                    ))
                    continue

                album_plan = self.plan_album(scan.library, inventory)
                if album_plan.manifest_error:
                    plan.manifest_errors.append((
                        str(self.store.manifest_path(inventory.path)), album_plan.manifest_error,
                    ))
                plan.albums.append(album_plan)

        logger.info(
            f"Sync plan: {plan.count(ActionKind.TRANSCODE)} transcode, "
            f"{plan.count(ActionKind.COPY)} copy, {plan.count(ActionKind.DELETE)} delete, "
            f"{plan.count(ActionKind.NO_OP)} unchanged"
        )
        return plan

    def skip_reason(self, inventory: AlbumInventory, colliding: set[tuple[str, str]]) -> Optional[str]:
        """
        Why an album must not be synced this run, or None.

        An incomplete inventory would turn every unreadable file into a
        DELETE, and files sharing an output path would overwrite each other.
        """
        if inventory.key in colliding:
            return "album exists in more than one library"
        if not inventory.is_complete:
            return "album could not be read completely"
        conflicts = inventory.target_conflicts(self.output_extension)
        if conflicts:
            return "files share one output path: " + "; ".join(", ".join(paths) for paths in conflicts)
        return None

    def plan_album(self, library: LibraryDescriptor, inventory: AlbumInventory) -> AlbumPlan:
        """Load the album's manifest and diff it against the inventory."""
        manifest_error = None
        try:
            manifest = self.store.load(inventory.path)
        except ManifestCorrupt as e:
            logger.warning(f"{e}; treating '{inventory.display_name}' as never synced")
            manifest = AlbumFingerprintManifest()
            manifest_error = e.reason

        album_plan = self.diff_album(library, inventory, manifest)
        album_plan.manifest_error = manifest_error
        return album_plan

    def diff_album(
        self,
        library: LibraryDescriptor,
        inventory: AlbumInventory,
        manifest: AlbumFingerprintManifest,
    ) -> AlbumPlan:
        """Compute the actions for one album against a given manifest."""
        album_plan = AlbumPlan(
            library_name=library.name,
            artist=inventory.artist,
            album=inventory.album,
            album_path=inventory.path,
            previous_manifest=manifest,
        )

        current_paths: set[str] = set()
        claimed_targets: set[Path] = set()

        for entry in inventory.files:
            if not entry.is_tracked:
                continue

            is_audio = entry.file_class is FileClass.TRACKED_AUDIO
            source = inventory.path.joinpath(*PurePosixPath(entry.relative_path).parts)
            target = self.target_path(inventory.artist, inventory.album, entry.relative_path, is_audio)
            fingerprint = entry.fingerprint

            if manifest.is_unchanged(entry.relative_path, fingerprint) and self._target_present(target):
                kind = ActionKind.NO_OP
            elif is_audio:
                kind = ActionKind.TRANSCODE
            else:
                kind = ActionKind.COPY

            current_paths.add(entry.relative_path)
            claimed_targets.add(target)
            album_plan.actions.append(SyncAction(
                kind=kind,
                library_name=library.name,
                artist=inventory.artist,
                album=inventory.album,
                relative_path=entry.relative_path,
                source=source,
                target=target,
                fingerprint=fingerprint,
            ))

        for relative_path in sorted(manifest.files):
            if relative_path in current_paths:
                continue
            is_audio = file_extension(relative_path) in library.tracked_audio_extensions
            target = self.target_path(inventory.artist, inventory.album, relative_path, is_audio)
            album_plan.actions.append(SyncAction(
                kind=ActionKind.DELETE,
                library_name=library.name,
                artist=inventory.artist,
                album=inventory.album,
                relative_path=relative_path,
                target=None if target in claimed_targets else target,
            ))

        return album_plan

    def _target_present(self, target: Path) -> bool:
        if not self.check_targets:
            return True
        return target.is_file()
