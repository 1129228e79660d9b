"""
Sync Executor - Executes a sync plan against the aggregated library.

The executor takes a SyncPlan (from DiffEngine) and:
1. Checks that the tool and the aggregated library are usable (run-fatal)
2. Runs TRANSCODE / COPY / DELETE actions on a bounded thread pool
3. Waits until every action of an album has an outcome (per-album barrier)
4. Commits the album's new manifest from the main thread

A manifest only ever lists files whose action succeeded or was a NO_OP.
Failed actions are omitted (a failed DELETE keeps its old entry), so the
next run sees them as changed and tries again.

A run-fatal error or a cancellation stops dispatch: queued actions fail with
reason "cancelled", in-flight actions finish, and every album whose actions
all have outcomes is still committed.
"""

import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Optional

from .configuration import MAX_AUTO_THREADS
from .diff_engine import ActionKind, AlbumPlan, SyncAction, SyncPlan
from .errors import DestinationUnwritable, ExternalToolMissing, RunFatalError
from .fingerprint_store import AlbumFingerprintManifest, Fingerprint, ManifestStore
from .transcoder import Transcoder, copy_file

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"


# ─── Enums & Data Classes ─────────────────────────────────────────────────────


class OutcomeTag(Enum):
    SUCCEEDED = auto()
    FAILED = auto()


@dataclass
class JobOutcome:
    """What happened to one SyncAction."""

    action: SyncAction
    tag: OutcomeTag
    reason: str = ""
    attempts: int = 1

    @property
    def succeeded(self) -> bool:
        return self.tag is OutcomeTag.SUCCEEDED

    @classmethod
    def success(cls, action: SyncAction, attempts: int = 1) -> "JobOutcome":
        return cls(action=action, tag=OutcomeTag.SUCCEEDED, attempts=attempts)

    @classmethod
    def failure(cls, action: SyncAction, reason: str, attempts: int = 1) -> "JobOutcome":
        return cls(action=action, tag=OutcomeTag.FAILED, reason=reason, attempts=attempts)


@dataclass
class SyncProgress:
    """Progress info for sync callbacks."""

    stage: str  # "sync"
    current: int
    total: int
    current_item: Optional[SyncAction] = None
    message: str = ""


@dataclass
class LibrarySummary:
    """Per-library counts, the externally visible result of a transcode run."""

    library_name: str
    transcoded: int = 0
    copied: int = 0
    deleted: int = 0
    failed: int = 0
    unchanged: int = 0

    def record(self, outcome: JobOutcome) -> None:
        kind = outcome.action.kind
        if kind is ActionKind.NO_OP:
            self.unchanged += 1
        elif not outcome.succeeded:
            self.failed += 1
        elif kind is ActionKind.TRANSCODE:
            self.transcoded += 1
        elif kind is ActionKind.COPY:
            self.copied += 1
        elif kind is ActionKind.DELETE:
            self.deleted += 1

    def __str__(self) -> str:
        return (
            f"{self.library_name}: {self.transcoded} transcoded, {self.copied} copied, "
            f"{self.deleted} deleted, {self.failed} failed, {self.unchanged} unchanged"
        )


@dataclass
class SyncResult:
    """Result of executing a sync plan."""

    success: bool = True
    dry_run: bool = False
    libraries: dict[str, LibrarySummary] = field(default_factory=dict)
    outcomes: list[JobOutcome] = field(default_factory=list)
    committed_albums: int = 0
    cancelled: bool = False
    fatal_error: Optional[RunFatalError] = None

    # (context, message) for everything that went wrong
    errors: list[tuple[str, str]] = field(default_factory=list)

    def library(self, name: str) -> LibrarySummary:
        if name not in self.libraries:
            self.libraries[name] = LibrarySummary(library_name=name)
        return self.libraries[name]

    def record(self, outcome: JobOutcome) -> None:
        self.outcomes.append(outcome)
        self.library(outcome.action.library_name).record(outcome)
        if not outcome.succeeded:
            self.errors.append((outcome.action.description, outcome.reason))
            self.success = False

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.succeeded)

    @property
    def has_errors(self) -> bool:
        return len(self.errors) > 0

    @property
    def summary(self) -> str:
        lines = [f"  {summary}" for _, summary in sorted(self.libraries.items())]
        if self.fatal_error is not None:
            lines.append(f"  Stopped: {self.fatal_error}")
        elif self.cancelled:
            lines.append("  Stopped: cancelled")
        if self.errors:
            lines.append(f"  {len(self.errors)} errors occurred")
            lines.extend(f"    {context}: {message}" for context, message in self.errors)

        if not lines:
            return "No changes made."

        if self.dry_run:
            status = "Dry run (nothing was changed)"
        else:
            status = "Sync completed" if self.success else "Sync completed with errors"
        return f"{status}:\n" + "\n".join(lines)


# ─── Executor ────────────────────────────────────────────────────────────────


class SyncExecutor:
    """
    Executes a SyncPlan against the aggregated library.

    Usage:
        executor = SyncExecutor(aggregated_root, transcoder, max_workers=4)
        result = executor.execute(plan, progress_callback)
        print(result.summary)
    """

    def __init__(
        self,
        aggregated_root: str | Path,
        transcoder: Transcoder,
        store: Optional[ManifestStore] = None,
        max_workers: int = 0,
        max_retries: int = 0,
        retry_delay: float = 0.0,
    ):
        self.aggregated_root = Path(aggregated_root)
        self.transcoder = transcoder
        self.store = store or ManifestStore()
        self.max_retries = max(0, max_retries)
        self.retry_delay = max(0.0, retry_delay)

        # 0 = auto (CPU count, capped at 8), 1 = sequential
        if max_workers <= 0:
            self._max_workers = min(os.cpu_count() or 4, MAX_AUTO_THREADS)
        else:
            self._max_workers = max_workers

    # ── Public API ──────────────────────────────────────────────────────────

    def execute(
        self,
        plan: SyncPlan,
        progress_callback: Optional[Callable[[SyncProgress], None]] = None,
        dry_run: bool = False,
        is_cancelled: Optional[Callable[[], bool]] = None,
    ) -> SyncResult:
        """
        Execute the sync plan.

        Args:
            plan: The computed sync plan.
            progress_callback: Optional callback for progress updates.
            dry_run: If True, count what would happen without touching anything.
            is_cancelled: Optional callback returning True to stop dispatching jobs.
        """
        result = SyncResult(dry_run=dry_run)
        for album in plan.albums:
            result.library(album.library_name)

        if dry_run:
            for action in plan.actions:
                result.record(JobOutcome.success(action, attempts=0))
            return result

        try:
            self.preflight(plan)
        except RunFatalError as e:
            logger.error(f"Sync aborted before dispatch: {e}")
            result.fatal_error = e
            result.success = False
            result.errors.append(("preflight", str(e)))
            return result

        run = _AlbumTracker(plan)
        for album in plan.albums:
            for action in album.actions:
                if action.kind is ActionKind.NO_OP:
                    self._record(run, result, JobOutcome.success(action, attempts=0))
            if run.is_complete(album.key):
                self._finish_album(album, run, result)

        pending = [action for album in plan.albums for action in album.pending_actions]
        if pending:
            self._run_pending(pending, run, result, progress_callback, is_cancelled)

        # Other albums of the same artist may still be written until the pool has drained
        for artist_dir in sorted(run.artist_dirs):
            self._prune_empty_dirs(artist_dir, stop=self.aggregated_root)

        logger.info(
            f"Sync finished: {len(result.outcomes)} actions, {result.failed_count} failed, "
            f"{result.committed_albums} manifests committed"
        )
        return result

    def preflight(self, plan: SyncPlan) -> None:
        """
        Check run-level prerequisites before any job starts.

        Raises:
            ExternalToolMissing: TRANSCODE actions are pending and the tool is unavailable.
            DestinationUnwritable: the aggregated root cannot be created or written.
        """
        pending = [a for a in plan.actions if a.kind is not ActionKind.NO_OP]
        if not pending:
            return

        if any(a.kind is ActionKind.TRANSCODE for a in pending) and not self.transcoder.is_available():
            raise ExternalToolMissing(self.transcoder.config.binary_path)

        try:
            self.aggregated_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise DestinationUnwritable(self.aggregated_root, str(e)) from e
        if not os.access(self.aggregated_root, os.W_OK | os.X_OK):
            raise DestinationUnwritable(self.aggregated_root, "permission denied")

    # ── Dispatch ────────────────────────────────────────────────────────────

    def _run_pending(
        self,
        pending: list[SyncAction],
        run: "_AlbumTracker",
        result: SyncResult,
        progress_callback: Optional[Callable[[SyncProgress], None]],
        is_cancelled: Optional[Callable[[], bool]],
    ) -> None:
        total = len(pending)
        completed = 0
        stopped = False

        def _check_cancelled() -> bool:
            if is_cancelled and is_cancelled():
                if not result.cancelled:
                    logger.warning("Sync cancelled, waiting for running jobs to finish")
                result.cancelled = True
                return True
            return False

        def _cancel(action: SyncAction) -> None:
            self._complete(run, result, JobOutcome.failure(action, CANCELLED_REASON, attempts=0))

        if progress_callback:
            progress_callback(SyncProgress("sync", 0, total, message="Syncing files..."))

        logger.info(f"Running {total} actions with {self._max_workers} workers")

        futures: dict[Future, SyncAction] = {}

        def _cancel_queued() -> None:
            # Futures that have not started yet never will
            for future, action in list(futures.items()):
                if future.cancel():
                    futures.pop(future)
                    _cancel(action)

        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            for index, action in enumerate(pending):
                if _check_cancelled():
                    for skipped in pending[index:]:
                        _cancel(skipped)
                    _cancel_queued()
                    stopped = True
                    break
                futures[pool.submit(self._run_action, action)] = action

            while futures:
                done, _ = wait(futures, return_when=FIRST_COMPLETED)
                for future in done:
                    action = futures.pop(future)
                    outcome = self._collect(future, action, result)
                    self._complete(run, result, outcome)

                    completed += 1
                    if progress_callback:
                        progress_callback(SyncProgress("sync", completed, total, action, action.description))

                if not stopped and (result.fatal_error is not None or _check_cancelled()):
                    stopped = True
                    _cancel_queued()

    def _collect(self, future: Future, action: SyncAction, result: SyncResult) -> JobOutcome:
        try:
            return future.result()
        except RunFatalError as e:
            if result.fatal_error is None:
                logger.error(f"Fatal error, no further jobs will be started: {e}")
                result.fatal_error = e
            return JobOutcome.failure(action, str(e))
        except Exception as e:
            logger.error(f"Worker exception for {action.description}: {e}")
            return JobOutcome.failure(action, f"Worker error: {e}")

    def _complete(self, run: "_AlbumTracker", result: SyncResult, outcome: JobOutcome) -> None:
        key = outcome.action.album_key
        self._record(run, result, outcome)
        if run.is_complete(key):
            self._finish_album(run.albums[key], run, result)

    @staticmethod
    def _record(run: "_AlbumTracker", result: SyncResult, outcome: JobOutcome) -> None:
        run.add(outcome)
        result.record(outcome)
        if not outcome.succeeded and outcome.reason != CANCELLED_REASON:
            logger.warning(f"Failed: {outcome.action.description}: {outcome.reason}")

    # ── Jobs (worker threads) ───────────────────────────────────────────────

    def _run_action(self, action: SyncAction) -> JobOutcome:
        """Run one action, retrying failures. Runs in a worker thread."""
        attempts = 0
        while True:
            attempts += 1
            error = self._perform(action)
            if error is None:
                return JobOutcome.success(action, attempts=attempts)
            if attempts > self.max_retries:
                return JobOutcome.failure(action, error, attempts=attempts)

            logger.info(
                f"Attempt {attempts} failed for {action.description}: {error}; "
                f"retrying in {self.retry_delay:g}s"
            )
            if self.retry_delay:
                time.sleep(self.retry_delay)

    def _perform(self, action: SyncAction) -> Optional[str]:
        """Apply one action to the aggregated library. Returns an error message or None."""
        if action.kind is ActionKind.TRANSCODE:
            return self.transcoder.transcode(action.source, action.target).error_message
        if action.kind is ActionKind.COPY:
            return copy_file(action.source, action.target).error_message
        if action.kind is ActionKind.DELETE:
            return self._delete(action.target)
        return None

    def _delete(self, target: Optional[Path]) -> Optional[str]:
        if target is None:
            return None
        try:
            target.unlink(missing_ok=True)
        except OSError as e:
            return f"Delete failed: {e}"
        logger.debug(f"Deleted: {target}")
        return None

    # ── Album commit (main thread) ──────────────────────────────────────────

    def _finish_album(self, album: AlbumPlan, run: "_AlbumTracker", result: SyncResult) -> None:
        outcomes = run.outcomes[album.key]
        artist_dir = self.aggregated_root / album.artist
        for outcome in outcomes:
            action = outcome.action
            if action.kind is ActionKind.DELETE and outcome.succeeded and action.target is not None:
                # Up to the album directory only; artist directories are pruned after the run
                self._prune_empty_dirs(action.target.parent, stop=artist_dir)
                run.artist_dirs.add(artist_dir)

        manifest = build_manifest(album, outcomes)
        if manifest.to_dict() == album.previous_manifest.to_dict() and album.manifest_error is None:
            return

        try:
            self.store.commit(album.album_path, manifest)
        except OSError as e:
            logger.error(f"Could not write manifest for {album.display_name}: {e}")
            result.errors.append((album.display_name, f"Could not write manifest: {e}"))
            result.success = False
            return

        result.committed_albums += 1
        logger.debug(f"Committed {album.display_name} ({manifest.file_count} files)")

    def _prune_empty_dirs(self, directory: Path, stop: Path) -> None:
        """Remove empty directories from ``directory`` up to (not including) ``stop``."""
        root = self.aggregated_root
        while directory != stop and stop in directory.parents and root in directory.parents:
            try:
                directory.rmdir()
            except OSError:
                return
            logger.debug(f"Removed empty directory: {directory}")
            directory = directory.parent


def build_manifest(album: AlbumPlan, outcomes: list[JobOutcome]) -> AlbumFingerprintManifest:
    """
    New manifest for an album whose actions all have outcomes.

    NO_OP keeps the stored fingerprint, successful TRANSCODE / COPY record the
    scanned fingerprint, failed ones are omitted. A failed DELETE keeps the
    old entry because its output is still there.
    """
    previous = album.previous_manifest
    files: dict[str, Fingerprint] = {}

    for outcome in outcomes:
        action = outcome.action
        path = action.relative_path
        if action.kind is ActionKind.NO_OP:
            files[path] = previous.get(path) or action.fingerprint
        elif action.kind is ActionKind.DELETE:
            if not outcome.succeeded and previous.get(path) is not None:
                files[path] = previous.get(path)
        elif outcome.succeeded:
            files[path] = action.fingerprint

    return AlbumFingerprintManifest(files=files)


class _AlbumTracker:
    """Per-album outcome collection (the join barrier for manifest commits)."""

    def __init__(self, plan: SyncPlan):
        self.albums: dict[tuple[str, str, str], AlbumPlan] = {a.key: a for a in plan.albums}
        self.outcomes: dict[tuple[str, str, str], list[JobOutcome]] = {a.key: [] for a in plan.albums}
        self._expected = {a.key: len(a.actions) for a in plan.albums}

        # Artist directories that may be empty once every job has finished
        self.artist_dirs: set[Path] = set()

    def add(self, outcome: JobOutcome) -> None:
        self.outcomes[outcome.action.album_key].append(outcome)

    def is_complete(self, key: tuple[str, str, str]) -> bool:
        return len(self.outcomes[key]) == self._expected[key]
