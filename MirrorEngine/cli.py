"""Command-line interface for LibraryMirror.

    librarymirror [-c CONFIG] [-v] [--bare-terminal] <command>

Commands:
    transcode         sync the aggregated library with every source library
    validate          validate all libraries, including cross-library collisions
    validate-library  validate a single library (no collision pass)
    list-libraries    list configured libraries without scanning them
    show-config       print the resolved configuration

Exit codes: 0 success, 1 fatal error or validation failure (or per-file
failures with ``strict = true``), 2 usage or configuration problem.
"""

import argparse
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Optional

from .configuration import DEFAULT_CONFIGURATION_PATH, Configuration, load_configuration
from .errors import ConfigurationError
from .pipeline import transcode_all, validate_all, validate_library
from .sync_executor import SyncProgress
from .validator import Severity, ValidationReport

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"
BARE_LOG_FORMAT = "%(levelname)s: %(message)s"

# Log job progress every N completed jobs (and on the last one)
PROGRESS_LOG_INTERVAL = 25


def configure_logging(verbose: bool = False, bare_terminal: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=BARE_LOG_FORMAT if bare_terminal else LOG_FORMAT,
        force=True,
    )


def add_log_file(path: Path) -> None:
    """Also write all log records to ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(handler)
    logger.debug(f"Logging to {path}")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="librarymirror",
        description="Keep a single transcoded mirror of several music libraries in sync.",
    )
    p.add_argument(
        "-c",
        "--config",
        default=str(DEFAULT_CONFIGURATION_PATH),
        help=f"Path to the configuration file (default: {DEFAULT_CONFIGURATION_PATH})",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    p.add_argument(
        "--bare-terminal",
        action="store_true",
        help="Plain log output without timestamps (for dumb terminals and pipes)",
    )

    log_file = argparse.ArgumentParser(add_help=False)
    log_file.add_argument("--log-to-file", metavar="PATH", help="Also write the log to this file")

    sub = p.add_subparsers(dest="cmd", required=True)

    transcode = sub.add_parser(
        "transcode",
        parents=[log_file],
        help="Transcode and copy new or changed files into the aggregated library",
    )
    transcode.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without touching any file",
    )

    sub.add_parser(
        "validate",
        parents=[log_file],
        help="Validate all libraries, including cross-library album collisions",
    )

    single = sub.add_parser("validate-library", help="Validate one library (no collision check)")
    single.add_argument("name", help="Display name of the library")

    sub.add_parser("list-libraries", help="List configured libraries")
    sub.add_parser("show-config", help="Print the resolved configuration")

    return p


def main(argv: Optional[list[str]] = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)

    configure_logging(verbose=args.verbose, bare_terminal=args.bare_terminal)

    try:
        config = load_configuration(args.config)
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_USAGE

    log_path = getattr(args, "log_to_file", None)
    if log_path:
        add_log_file(Path(log_path))
    elif config.logging.default_log_output_path is not None and args.cmd in ("transcode", "validate"):
        add_log_file(config.logging.default_log_output_path)

    try:
        if args.cmd == "transcode":
            return cmd_transcode(config, dry_run=args.dry_run)
        if args.cmd == "validate":
            return cmd_validate(config)
        if args.cmd == "validate-library":
            return cmd_validate_library(config, args.name)
        if args.cmd == "list-libraries":
            return cmd_list_libraries(config)
        if args.cmd == "show-config":
            return cmd_show_config(config)
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_USAGE

    p.error(f"unknown command: {args.cmd}")
    return EXIT_USAGE


# ── Commands ─────────────────────────────────────────────────────────────────


def cmd_transcode(config: Configuration, dry_run: bool = False) -> int:
    cancel_requested = threading.Event()

    def _request_cancel(signum, frame):
        if not cancel_requested.is_set():
            logger.warning("Interrupted: finishing running jobs, press Ctrl+C again to abort")
            cancel_requested.set()
        else:
            raise KeyboardInterrupt

    previous_handler = signal.signal(signal.SIGINT, _request_cancel)
    try:
        report = transcode_all(
            config,
            dry_run=dry_run,
            progress_callback=_log_progress,
            is_cancelled=cancel_requested.is_set,
        )
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    if dry_run:
        print(report.plan.summary)
    print(report.summary)
    return report.exit_code(strict=config.aggregated_library.strict)


def cmd_validate(config: Configuration) -> int:
    report = validate_all(config)
    _print_validation(report)
    return EXIT_OK if report.is_valid else EXIT_FAILURE


def cmd_validate_library(config: Configuration, name: str) -> int:
    report = validate_library(config, name)
    _print_validation(report)
    return EXIT_OK if report.is_valid else EXIT_FAILURE


def cmd_list_libraries(config: Configuration) -> int:
    if not config.libraries:
        print("No libraries configured.")
        return EXIT_OK

    print(f"{len(config.libraries)} libraries:")
    for library in config.library_list:
        print(f"  {library.name} ({library.key}): {library.path}")
    return EXIT_OK


def cmd_show_config(config: Configuration) -> int:
    print(format_configuration(config))
    return EXIT_OK


def format_configuration(config: Configuration) -> str:
    transcoder = config.transcoder
    aggregated = config.aggregated_library
    lines = [
        f"Configuration file: {config.configuration_file_path}",
        "",
        "Placeholders:",
        *(f"  {name} = {value}" for name, value in sorted(config.placeholders.items())),
        "",
        "Logging:",
        f"  default_log_output_path = {config.logging.default_log_output_path or '(none)'}",
        "",
        "Transcoding tool:",
        f"  binary_path = {transcoder.binary_path}",
        f"  audio_transcoding_args = {' '.join(transcoder.audio_transcoding_args)}",
        f"  audio_transcoding_output_extension = {transcoder.audio_transcoding_output_extension}",
        f"  verify_output = {transcoder.verify_output}",
        f"  copy_tags = {transcoder.copy_tags}",
        "",
        "Aggregated library:",
        f"  path = {aggregated.path}",
        f"  transcode_threads = {aggregated.transcode_threads} (using {aggregated.worker_count})",
        f"  failure_max_retries = {aggregated.failure_max_retries}",
        f"  failure_delay_seconds = {aggregated.failure_delay_seconds:g}",
        f"  strict = {aggregated.strict}",
        f"  prune_orphaned_albums = {aggregated.prune_orphaned_albums}",
    ]
    for library in config.library_list:
        lines += [
            "",
            f"Library '{library.name}' [{library.key}]:",
            f"  path = {library.path}",
            f"  ignored directories = {_join(library.ignored_directories)}",
            f"  allowed audio extensions = {_join(library.allowed_audio_extensions)}",
            f"  allowed other extensions = {_join(library.allowed_other_extensions)}",
            f"  allowed other files = {_join(library.allowed_other_names)}",
            f"  transcoded extensions = {_join(library.tracked_audio_extensions)}",
            f"  copied extensions = {_join(library.tracked_other_extensions)}",
        ]
    return "\n".join(lines)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _join(values) -> str:
    return ", ".join(sorted(values)) or "(none)"


def _log_progress(progress: SyncProgress) -> None:
    if progress.current == 0:
        logger.info(f"{progress.message} ({progress.total} jobs)")
    elif progress.current == progress.total or progress.current % PROGRESS_LOG_INTERVAL == 0:
        logger.info(f"[{progress.current}/{progress.total}] {progress.message}")
    else:
        logger.debug(f"[{progress.current}/{progress.total}] {progress.message}")


def _print_validation(report: ValidationReport) -> None:
    for issue in report.issues:
        if issue.severity is not Severity.INFO:
            print(f"  {issue}")
    for collision in report.collisions:
        print(f"  [error] {collision}")
    print(report.summary)


if __name__ == "__main__":
    sys.exit(main())
