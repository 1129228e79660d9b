"""
Configuration - TOML configuration file for LibraryMirror.

Default location: ./data/configuration.toml (override with -c/--config).

Path-valued options may use these placeholders:
    {LIBRARY_BASE}             [paths].base_library_path
    {TOOLS_BASE}               [paths].base_tools_path
    {CONFIGURATION_DIRECTORY}  directory containing the configuration file

Relative paths are resolved against the configuration directory.
"""

import logging
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIGURATION_PATH = Path("data") / "configuration.toml"

# 0 = auto
DEFAULT_TRANSCODE_THREADS = 0
MAX_AUTO_THREADS = 8


@dataclass(frozen=True)
class LibraryDescriptor:
    """One registered source library. Immutable for the duration of a run."""

    name: str
    path: Path

    # Validation: anything not allowed here is a forbidden file
    allowed_audio_extensions: frozenset[str] = frozenset()
    allowed_other_extensions: frozenset[str] = frozenset()
    allowed_other_names: frozenset[str] = frozenset()

    # Top-level directories that are neither artists nor errors
    ignored_directories: frozenset[str] = frozenset()

    # Transcoding: audio files are converted, other files are copied
    tracked_audio_extensions: frozenset[str] = frozenset()
    tracked_other_extensions: frozenset[str] = frozenset()

    # Key of the [libraries.<key>] table this was loaded from
    key: str = ""

    @property
    def tracked_extensions(self) -> frozenset[str]:
        return self.tracked_audio_extensions | self.tracked_other_extensions

    def is_allowed_other_file(self, filename: str) -> bool:
        """True for non-audio files that may sit anywhere in the library."""
        return (
            filename in self.allowed_other_names
            or file_extension(filename) in self.allowed_other_extensions
        )

    def is_allowed_file(self, filename: str) -> bool:
        return (
            file_extension(filename) in self.allowed_audio_extensions
            or self.is_allowed_other_file(filename)
        )


@dataclass(frozen=True)
class TranscoderConfiguration:
    """The external conversion tool ([tools.ffmpeg])."""

    binary_path: str
    audio_transcoding_args: tuple[str, ...]
    audio_transcoding_output_extension: str
    verify_output: bool = True
    copy_tags: bool = False


@dataclass(frozen=True)
class AggregatedLibraryConfiguration:
    """The single transcoded output library ([aggregated_library])."""

    path: Path
    transcode_threads: int = DEFAULT_TRANSCODE_THREADS
    failure_max_retries: int = 0
    failure_delay_seconds: float = 0.0
    strict: bool = False
    prune_orphaned_albums: bool = False

    @property
    def worker_count(self) -> int:
        """Number of concurrent jobs. 0 = auto (CPU count, capped at 8)."""
        if self.transcode_threads <= 0:
            return min(os.cpu_count() or 4, MAX_AUTO_THREADS)
        return self.transcode_threads


@dataclass(frozen=True)
class LoggingConfiguration:
    default_log_output_path: Optional[Path] = None


@dataclass(frozen=True)
class Configuration:
    """The whole resolved configuration. Passed explicitly through the pipeline."""

    configuration_file_path: Path
    transcoder: TranscoderConfiguration
    aggregated_library: AggregatedLibraryConfiguration
    libraries: dict[str, LibraryDescriptor] = field(default_factory=dict)
    logging: LoggingConfiguration = field(default_factory=LoggingConfiguration)
    placeholders: dict[str, str] = field(default_factory=dict)

    def get_library_by_name(self, name: str) -> Optional[LibraryDescriptor]:
        """Find a library by its display name."""
        for library in self.libraries.values():
            if library.name == name:
                return library
        return None

    @property
    def library_list(self) -> list[LibraryDescriptor]:
        """Libraries sorted by display name."""
        return sorted(self.libraries.values(), key=lambda lib: lib.name)


def file_extension(filename: str) -> str:
    """Lower-cased extension without the dot ("" if none)."""
    suffix = Path(filename).suffix
    return suffix[1:].lower() if suffix else ""


# ── Loading ──────────────────────────────────────────────────────────────────


def load_configuration(path: str | Path | None = None) -> Configuration:
    """
    Load and resolve a configuration file.

    Args:
        path: Path to the TOML file (default: ./data/configuration.toml)

    Raises:
        ConfigurationError: file missing, not valid TOML, or invalid values.
    """
    config_path = Path(path) if path is not None else DEFAULT_CONFIGURATION_PATH
    config_path = config_path.expanduser().absolute()

    try:
        with open(config_path, "rb") as f:
            data = tomllib.load(f)
    except FileNotFoundError as e:
        raise ConfigurationError("configuration file not found", config_path) from e
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"invalid TOML: {e}", config_path) from e
    except OSError as e:
        raise ConfigurationError(f"could not read file: {e}", config_path) from e

    try:
        configuration = parse_configuration(data, config_path)
    except ConfigurationError as e:
        if e.file_path is None:
            raise ConfigurationError(str(e), config_path) from e
        raise

    logger.debug(
        f"Loaded configuration from {config_path}: {len(configuration.libraries)} libraries"
    )
    return configuration


def parse_configuration(data: dict, config_path: Path) -> Configuration:
    """Resolve an already-parsed TOML document into a Configuration."""
    config_dir = config_path.parent

    paths_table = _table(data, "paths", required=False)
    placeholders = {"{CONFIGURATION_DIRECTORY}": str(config_dir)}
    for option, placeholder in (
        ("base_library_path", "{LIBRARY_BASE}"),
        ("base_tools_path", "{TOOLS_BASE}"),
    ):
        value = _get(paths_table, option, str, "paths", required=False)
        if value is not None:
            placeholders[placeholder] = str(_resolve_path(value, placeholders, config_dir))

    logging_table = _table(data, "logging", required=False)
    log_path = _get(logging_table, "default_log_output_path", str, "logging", required=False)
    logging_config = LoggingConfiguration(
        default_log_output_path=_resolve_path(log_path, placeholders, config_dir) if log_path else None,
    )

    tools_table = _table(data, "tools")
    transcoder = _parse_transcoder(_table(tools_table, "ffmpeg", context="tools"), placeholders, config_dir)

    aggregated = _parse_aggregated_library(_table(data, "aggregated_library"), placeholders, config_dir)

    libraries: dict[str, LibraryDescriptor] = {}
    seen_names: set[str] = set()
    for key, library_table in _table(data, "libraries").items():
        if not isinstance(library_table, dict):
            raise ConfigurationError(f"libraries.{key}: expected a table")
        library = _parse_library(key, library_table, placeholders, config_dir)
        if library.name in seen_names:
            raise ConfigurationError(
                f"library display name conflict: two libraries are named '{library.name}'"
            )
        seen_names.add(library.name)
        libraries[key] = library

    return Configuration(
        configuration_file_path=config_path,
        transcoder=transcoder,
        aggregated_library=aggregated,
        libraries=libraries,
        logging=logging_config,
        placeholders=placeholders,
    )


def _parse_transcoder(table: dict, placeholders: dict[str, str], config_dir: Path) -> TranscoderConfiguration:
    context = "tools.ffmpeg"
    binary = _get(table, "binary_path", str, context)
    binary = _replace_placeholders(binary, placeholders)
    # Bare program names are looked up on PATH at run time
    if os.sep in binary or (os.altsep and os.altsep in binary) or binary.startswith("~"):
        binary = str(_resolve_path(binary, placeholders, config_dir))

    args = _get(table, "audio_transcoding_args", list, context)
    if not all(isinstance(arg, str) for arg in args):
        raise ConfigurationError(f"{context}.audio_transcoding_args: expected a list of strings")
    if "{INPUT_FILE}" not in args or "{OUTPUT_FILE}" not in args:
        raise ConfigurationError(
            f"{context}.audio_transcoding_args: must contain {{INPUT_FILE}} and {{OUTPUT_FILE}}"
        )

    extension = _get(table, "audio_transcoding_output_extension", str, context).lower().lstrip(".")
    if not extension:
        raise ConfigurationError(f"{context}.audio_transcoding_output_extension: must not be empty")

    return TranscoderConfiguration(
        binary_path=binary,
        audio_transcoding_args=tuple(args),
        audio_transcoding_output_extension=extension,
        verify_output=_get(table, "verify_output", bool, context, required=False, default=True),
        copy_tags=_get(table, "copy_tags", bool, context, required=False, default=False),
    )


def _parse_aggregated_library(
    table: dict, placeholders: dict[str, str], config_dir: Path
) -> AggregatedLibraryConfiguration:
    context = "aggregated_library"
    threads = _get(table, "transcode_threads", int, context, required=False, default=DEFAULT_TRANSCODE_THREADS)
    retries = _get(table, "failure_max_retries", int, context, required=False, default=0)
    delay = _get(table, "failure_delay_seconds", (int, float), context, required=False, default=0)

    for option, value in (
        ("transcode_threads", threads),
        ("failure_max_retries", retries),
        ("failure_delay_seconds", delay),
    ):
        if value < 0:
            raise ConfigurationError(f"{context}.{option}: must not be negative")

    return AggregatedLibraryConfiguration(
        path=_resolve_path(_get(table, "path", str, context), placeholders, config_dir),
        transcode_threads=threads,
        failure_max_retries=retries,
        failure_delay_seconds=float(delay),
        strict=_get(table, "strict", bool, context, required=False, default=False),
        prune_orphaned_albums=_get(table, "prune_orphaned_albums", bool, context, required=False, default=False),
    )


def _parse_library(
    key: str, table: dict, placeholders: dict[str, str], config_dir: Path
) -> LibraryDescriptor:
    context = f"libraries.{key}"
    validation = _table(table, "validation", context=context)
    transcoding = _table(table, "transcoding", context=context)
    validation_ctx = f"{context}.validation"
    transcoding_ctx = f"{context}.transcoding"

    ignored = _get(table, "ignored_directories_in_base_directory", list, context, required=False, default=[])

    return LibraryDescriptor(
        key=key,
        name=_get(table, "name", str, context),
        path=_resolve_path(_get(table, "path", str, context), placeholders, config_dir),
        allowed_audio_extensions=_extensions(validation, "allowed_audio_file_extensions", validation_ctx),
        allowed_other_extensions=_extensions(validation, "allowed_other_file_extensions", validation_ctx),
        allowed_other_names=frozenset(_strings(validation, "allowed_other_files_by_name", validation_ctx)),
        ignored_directories=frozenset(_check_strings(ignored, f"{context}.ignored_directories_in_base_directory")),
        tracked_audio_extensions=_extensions(transcoding, "audio_file_extensions", transcoding_ctx),
        tracked_other_extensions=_extensions(transcoding, "other_file_extensions", transcoding_ctx),
    )


# ── Helpers ──────────────────────────────────────────────────────────────────

_MISSING = object()


def _table(data: dict, key: str, context: str = "", required: bool = True) -> dict:
    name = f"{context}.{key}" if context else key
    value = data.get(key, _MISSING)
    if value is _MISSING:
        if required:
            raise ConfigurationError(f"missing table [{name}]")
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{name}: expected a table")
    return value


def _get(table: dict, key: str, expected: Any, context: str, required: bool = True, default: Any = None) -> Any:
    value = table.get(key, _MISSING)
    if value is _MISSING:
        if required:
            raise ConfigurationError(f"{context}.{key}: missing required option")
        return default
    # TOML booleans are ints in Python; keep them apart
    if expected is not bool and isinstance(value, bool):
        raise ConfigurationError(f"{context}.{key}: expected {_type_name(expected)}, got a boolean")
    if not isinstance(value, expected):
        raise ConfigurationError(f"{context}.{key}: expected {_type_name(expected)}, got {type(value).__name__}")
    return value


def _type_name(expected: Any) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _check_strings(values: list, name: str) -> list[str]:
    if not all(isinstance(v, str) for v in values):
        raise ConfigurationError(f"{name}: expected a list of strings")
    return values


def _strings(table: dict, key: str, context: str) -> list[str]:
    return _check_strings(_get(table, key, list, context), f"{context}.{key}")


def _extensions(table: dict, key: str, context: str) -> frozenset[str]:
    return frozenset(ext.lower().lstrip(".") for ext in _strings(table, key, context))


def _replace_placeholders(value: str, placeholders: dict[str, str]) -> str:
    for placeholder, replacement in placeholders.items():
        value = value.replace(placeholder, replacement)
    return value


def _resolve_path(value: str, placeholders: dict[str, str], config_dir: Path) -> Path:
    path = Path(_replace_placeholders(value, placeholders)).expanduser()
    if not path.is_absolute():
        path = config_dir / path
    return Path(os.path.normpath(path))
