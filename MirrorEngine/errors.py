"""
Error taxonomy for LibraryMirror.

Scopes, smallest first:
- file:    forbidden files (recorded as ValidationIssue, not raised)
- album:   collisions, ManifestCorrupt
- library: StructuralError
- run:     RunFatalError (ExternalToolMissing, DestinationUnwritable)

Per-job failures are never raised past the worker pool; they become
JobOutcome values and end up in the run summary.
"""

from pathlib import Path
from typing import Optional


class LibraryMirrorError(Exception):
    """Base class for all LibraryMirror errors."""


class ConfigurationError(LibraryMirrorError):
    """The configuration file is missing, unparsable or has invalid values."""

    def __init__(self, message: str, file_path: Optional[Path] = None):
        self.file_path = file_path
        if file_path is not None:
            message = f"{file_path}: {message}"
        super().__init__(message)


class StructuralError(LibraryMirrorError):
    """A library root does not follow the artist/album layout.

    Library-scoped: the library is skipped, the run continues.
    """

    def __init__(self, library_name: str, problems: list[str]):
        self.library_name = library_name
        self.problems = list(problems)
        joined = "; ".join(self.problems)
        super().__init__(f"library '{library_name}' has an invalid structure: {joined}")


class OverrideInvalid(LibraryMirrorError):
    """A per-album override file exists but cannot be used. Album falls back to defaults."""

    def __init__(self, override_path: Path, reason: str):
        self.override_path = override_path
        self.reason = reason
        super().__init__(f"invalid album override {override_path}: {reason}")


class ManifestCorrupt(LibraryMirrorError):
    """An album manifest exists but cannot be parsed."""

    def __init__(self, manifest_path: Path, reason: str):
        self.manifest_path = manifest_path
        self.reason = reason
        super().__init__(f"corrupt manifest {manifest_path}: {reason}")


class RunFatalError(LibraryMirrorError):
    """Stops dispatch of new jobs for the whole run."""


class ExternalToolMissing(RunFatalError):
    """The transcoding tool cannot be located or executed."""

    def __init__(self, tool_path: str, detail: str = ""):
        self.tool_path = tool_path
        message = f"transcoding tool not found: {tool_path}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)


class DestinationUnwritable(RunFatalError):
    """The aggregated library root cannot be created or written to."""

    def __init__(self, path: Path, detail: str = ""):
        self.path = path
        message = f"aggregated library is not writable: {path}"
        if detail:
            message += f" ({detail})"
        super().__init__(message)
