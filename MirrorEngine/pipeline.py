"""
Pipeline - the command-level operations of LibraryMirror.

    validate          scan_libraries → validate_scans (with collisions)
    validate-library  scan one library → validate_scans (no collision pass)
    transcode         scan → validate → DiffEngine.plan → SyncExecutor.execute
                      → orphan check

Everything a run needs is passed in explicitly (configuration, tool runner,
callbacks); nothing is kept between calls.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from .configuration import Configuration, LibraryDescriptor
from .diff_engine import DiffEngine, SyncPlan
from .errors import ConfigurationError
from .fingerprint_store import ManifestStore
from .integrity import OrphanReport, check_orphans
from .scanner import LibraryScan, scan_library
from .sync_executor import SyncExecutor, SyncProgress, SyncResult
from .transcoder import SubprocessToolRunner, ToolRunner, Transcoder
from .validator import Severity, ValidationReport, validate_scans

logger = logging.getLogger(__name__)


def scan_libraries(libraries: Iterable[LibraryDescriptor], max_workers: int = 0) -> list[LibraryScan]:
    """
    Scan libraries concurrently. Results keep the order of ``libraries``.

    A library with a structural error comes back as a failed LibraryScan;
    the other libraries are unaffected.
    """
    libraries = list(libraries)
    if not libraries:
        return []

    workers = max_workers if max_workers > 0 else len(libraries)
    with ThreadPoolExecutor(max_workers=min(workers, len(libraries))) as pool:
        return list(pool.map(scan_library, libraries))


def validate_all(config: Configuration) -> ValidationReport:
    """Validate every configured library, including the collision pass."""
    scans = scan_libraries(config.library_list)
    report = validate_scans(
        scans, check_collisions=True, output_extension=config.transcoder.audio_transcoding_output_extension,
    )
    _log_validation(report)
    return report


def validate_library(config: Configuration, library_name: str) -> ValidationReport:
    """
    Validate a single library by display name. No collision pass.

    Raises:
        ConfigurationError: no library with that name is configured.
    """
    library = config.get_library_by_name(library_name)
    if library is None:
        raise ConfigurationError(f"no library named '{library_name}'", config.configuration_file_path)

    report = validate_scans(
        [scan_library(library)],
        check_collisions=False,
        output_extension=config.transcoder.audio_transcoding_output_extension,
    )
    _log_validation(report)
    return report


@dataclass
class TranscodeReport:
    """Everything a transcode run produced."""

    validation: ValidationReport
    plan: SyncPlan
    result: SyncResult
    orphans: Optional[OrphanReport] = None
    scans: list[LibraryScan] = field(default_factory=list)

    def exit_code(self, strict: bool = False) -> int:
        """
        0 on success. 1 if the run hit a fatal error or any validation
        failure was present; in strict mode also if any action failed.
        """
        if self.result.fatal_error is not None or not self.validation.is_valid:
            return 1
        if strict and self.result.has_errors:
            return 1
        return 0

    @property
    def summary(self) -> str:
        lines = []
        if not self.validation.is_valid:
            lines.append(self.validation.summary)
        if self.plan.skipped_albums:
            lines.append(f"Skipped {len(self.plan.skipped_albums)} albums:")
            lines.extend(
                f"  {s.library_name}: {s.artist} - {s.album} ({s.reason})" for s in self.plan.skipped_albums
            )
        if self.plan.manifest_errors:
            lines.append("Unreadable manifests (albums fully resynced):")
            lines.extend(f"  {path}: {reason}" for path, reason in self.plan.manifest_errors)
        lines.append(self.result.summary)
        if self.orphans is not None and not self.orphans.is_clean:
            lines.append(self.orphans.summary)
        return "\n".join(lines)


def transcode_all(
    config: Configuration,
    runner: Optional[ToolRunner] = None,
    dry_run: bool = False,
    progress_callback: Optional[Callable[[SyncProgress], None]] = None,
    is_cancelled: Optional[Callable[[], bool]] = None,
) -> TranscodeReport:
    """
    Bring the aggregated library in sync with every configured library.

    Libraries with structural errors are skipped, and so are albums that
    collide across libraries, could not be read completely or have two files
    sharing one output path. Everything else is synced.

    Args:
        config: The resolved configuration.
        runner: Tool runner (default: run the configured binary as a subprocess).
        dry_run: Plan and count without touching any file or manifest.
        progress_callback: Optional callback for job progress.
        is_cancelled: Optional callback returning True to stop dispatching jobs.
    """
    aggregated = config.aggregated_library
    store = ManifestStore()

    scans = scan_libraries(config.library_list)
    validation = validate_scans(
        scans, check_collisions=True, output_extension=config.transcoder.audio_transcoding_output_extension,
    )
    _log_validation(validation)

    engine = DiffEngine(
        aggregated.path,
        config.transcoder.audio_transcoding_output_extension,
        store=store,
    )
    plan = engine.plan(scans, validation.collisions)

    if runner is None:
        runner = SubprocessToolRunner(config.transcoder.binary_path)
    executor = SyncExecutor(
        aggregated.path,
        Transcoder(config.transcoder, runner),
        store=store,
        max_workers=aggregated.worker_count,
        max_retries=aggregated.failure_max_retries,
        retry_delay=aggregated.failure_delay_seconds,
    )
    result = executor.execute(
        plan,
        progress_callback=progress_callback,
        dry_run=dry_run,
        is_cancelled=is_cancelled,
    )

    orphans = None
    if result.fatal_error is None and not result.cancelled:
        orphans = check_orphans(
            aggregated.path,
            scans,
            delete_orphans=aggregated.prune_orphaned_albums and not dry_run,
        )

    return TranscodeReport(
        validation=validation,
        plan=plan,
        result=result,
        orphans=orphans,
        scans=scans,
    )


def _log_validation(report: ValidationReport) -> None:
    for issue in report.issues:
        if issue.severity is Severity.ERROR:
            logger.error(str(issue))
        elif issue.severity is Severity.WARNING:
            logger.warning(str(issue))
        else:
            logger.info(str(issue))
    for collision in report.collisions:
        logger.error(str(collision))
