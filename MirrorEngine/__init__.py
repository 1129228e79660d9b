"""
MirrorEngine - Incremental sync of several music libraries into one transcoded mirror

Core components:
- DirectoryScanner: Walks a library's artist/album layout, classifies files
- Validator: Forbidden files per library, album collisions across libraries
- ManifestStore: Per-album fingerprint manifests (what was mirrored, and when)
- DiffEngine: Computes the sync plan (transcode / copy / delete / no-op)
- SyncExecutor: Runs the plan on a worker pool, commits manifests per album
- Transcoder: Runs the external conversion tool through a ToolRunner
"""

from .configuration import (
    Configuration,
    LibraryDescriptor,
    TranscoderConfiguration,
    AggregatedLibraryConfiguration,
    load_configuration,
    parse_configuration,
)
from .errors import (
    LibraryMirrorError,
    ConfigurationError,
    StructuralError,
    OverrideInvalid,
    ManifestCorrupt,
    RunFatalError,
    ExternalToolMissing,
    DestinationUnwritable,
)
from .fingerprint_store import Fingerprint, AlbumFingerprintManifest, ManifestStore
from .scanner import (
    DirectoryScanner,
    FileClass,
    FileEntry,
    ScanOverride,
    AlbumInventory,
    LibraryScan,
    scan_library,
)
from .validator import (
    Severity,
    ValidationIssue,
    CollisionRecord,
    ValidationReport,
    validate_scans,
    find_collisions,
)
from .diff_engine import DiffEngine, ActionKind, SyncAction, AlbumPlan, SyncPlan
from .sync_executor import SyncExecutor, SyncResult, SyncProgress, JobOutcome, LibrarySummary
from .transcoder import (
    Transcoder,
    ToolRunner,
    ToolResult,
    SubprocessToolRunner,
    TranscodeResult,
)
from .integrity import OrphanReport, check_orphans
from .pipeline import scan_libraries, validate_all, validate_library, transcode_all, TranscodeReport

__all__ = [
    # Configuration
    "Configuration",
    "LibraryDescriptor",
    "TranscoderConfiguration",
    "AggregatedLibraryConfiguration",
    "load_configuration",
    "parse_configuration",
    # Errors
    "LibraryMirrorError",
    "ConfigurationError",
    "StructuralError",
    "OverrideInvalid",
    "ManifestCorrupt",
    "RunFatalError",
    "ExternalToolMissing",
    "DestinationUnwritable",
    # Fingerprints
    "Fingerprint",
    "AlbumFingerprintManifest",
    "ManifestStore",
    # Scanning and validation
    "DirectoryScanner",
    "FileClass",
    "FileEntry",
    "ScanOverride",
    "AlbumInventory",
    "LibraryScan",
    "scan_library",
    "Severity",
    "ValidationIssue",
    "CollisionRecord",
    "ValidationReport",
    "validate_scans",
    "find_collisions",
    # Sync
    "DiffEngine",
    "ActionKind",
    "SyncAction",
    "AlbumPlan",
    "SyncPlan",
    "SyncExecutor",
    "SyncResult",
    "SyncProgress",
    "JobOutcome",
    "LibrarySummary",
    # Transcoding
    "Transcoder",
    "ToolRunner",
    "ToolResult",
    "SubprocessToolRunner",
    "TranscodeResult",
    # Aggregated library
    "OrphanReport",
    "check_orphans",
    # Commands
    "scan_libraries",
    "validate_all",
    "validate_library",
    "transcode_all",
    "TranscodeReport",
]
