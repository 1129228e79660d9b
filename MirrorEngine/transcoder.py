"""
Transcoder - Converts audio files with an external tool (usually FFmpeg).

The tool is reached through the ToolRunner capability so the sync logic can
be exercised with a fake runner:

    class ToolRunner(Protocol):
        def is_available(self) -> bool: ...
        def run(self, args: Sequence[str]) -> ToolResult: ...

The argument template comes from the configuration; {INPUT_FILE} and
{OUTPUT_FILE} are replaced with absolute paths for each job:

    ["-i", "{INPUT_FILE}", "-vn", "-codec:a", "libmp3lame", "-q:a", "0", "-y", "{OUTPUT_FILE}"]

Outputs are written to a hidden ".<name>.partial.<ext>" sibling and renamed
into place only after the tool succeeded, so the target path never holds a
half-written file.
"""

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Sequence

import mutagen

from .configuration import TranscoderConfiguration
from .errors import ExternalToolMissing

logger = logging.getLogger(__name__)

INPUT_PLACEHOLDER = "{INPUT_FILE}"
OUTPUT_PLACEHOLDER = "{OUTPUT_FILE}"

# Tags copied from source to output when copy_tags is enabled
COPIED_TAGS = ["title", "artist", "album", "albumartist", "genre", "date", "tracknumber", "discnumber"]


@dataclass
class ToolResult:
    """Exit status and captured output of one tool invocation."""

    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class ToolRunner(Protocol):
    """Capability for running the external conversion tool."""

    def is_available(self) -> bool:
        ...

    def run(self, args: Sequence[str]) -> ToolResult:
        ...


@dataclass
class TranscodeResult:
    """Result of a transcode or copy operation."""

    success: bool
    source_path: Path
    output_path: Optional[Path]
    was_transcoded: bool  # False if the file was copied
    error_message: Optional[str] = None


class SubprocessToolRunner:
    """Runs the tool binary as a child process and waits for it."""

    def __init__(self, binary_path: str, timeout: Optional[float] = None):
        """
        Args:
            binary_path: Absolute path, or a program name looked up on PATH
            timeout: Optional per-invocation timeout in seconds (None = wait forever)
        """
        self.binary_path = binary_path
        self.timeout = timeout

    def resolve(self) -> Optional[str]:
        """Return the executable path, or None if it cannot be found."""
        path = Path(self.binary_path)
        if path.is_file():
            return str(path)
        return shutil.which(self.binary_path)

    def is_available(self) -> bool:
        return self.resolve() is not None

    def run(self, args: Sequence[str]) -> ToolResult:
        binary = self.resolve()
        if binary is None:
            raise ExternalToolMissing(self.binary_path)

        cmd = [binary, *args]
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",  # tool output is not always valid UTF-8
                timeout=self.timeout,
            )
        except (FileNotFoundError, PermissionError) as e:
            raise ExternalToolMissing(self.binary_path, str(e)) from e
        except subprocess.TimeoutExpired:
            return ToolResult(exit_code=-1, stderr=f"timed out after {self.timeout} seconds")

        return ToolResult(exit_code=result.returncode, stdout=result.stdout, stderr=result.stderr)


def build_transcode_args(template: Sequence[str], input_file: Path, output_file: Path) -> list[str]:
    """Fill the {INPUT_FILE} / {OUTPUT_FILE} placeholders of an argument template."""
    return [
        arg.replace(INPUT_PLACEHOLDER, str(input_file)).replace(OUTPUT_PLACEHOLDER, str(output_file))
        for arg in template
    ]


def partial_output_path(target: Path) -> Path:
    """Hidden temporary sibling used while a file is being written."""
    return target.with_name(f".{target.stem}.partial{target.suffix}")


def is_readable_audio(path: str | Path) -> bool:
    """True if mutagen recognizes the file as an audio file."""
    try:
        return mutagen.File(path) is not None
    except (mutagen.MutagenError, OSError) as e:
        logger.debug(f"mutagen could not read {path}: {e}")
        return False


def copy_metadata(source_path: str | Path, dest_path: str | Path) -> bool:
    """
    Copy common tags from source to destination file.

    The conversion tool doesn't always preserve all tags,
    so this can be used to ensure they are copied.

    Returns:
        True if successful
    """
    try:
        source = mutagen.File(source_path, easy=True)
        dest = mutagen.File(dest_path, easy=True)
    except (mutagen.MutagenError, OSError) as e:
        logger.warning(f"Could not read tags for {source_path}: {e}")
        return False

    if source is None or dest is None:
        return False

    for tag in COPIED_TAGS:
        if tag in source:
            dest[tag] = source[tag]

    try:
        dest.save()
    except (mutagen.MutagenError, OSError) as e:
        logger.warning(f"Could not copy metadata: {e}")
        return False
    return True


class Transcoder:
    """
    Converts one audio file per call using the configured tool.

    Usage:
        transcoder = Transcoder(config.transcoder, SubprocessToolRunner(config.transcoder.binary_path))
        result = transcoder.transcode(source, target)
    """

    def __init__(self, config: TranscoderConfiguration, runner: ToolRunner):
        self.config = config
        self.runner = runner

    @property
    def output_extension(self) -> str:
        return self.config.audio_transcoding_output_extension

    def is_available(self) -> bool:
        return self.runner.is_available()

    def transcode(self, source_path: Path, target_path: Path) -> TranscodeResult:
        """
        Transcode ``source_path`` to ``target_path``.

        Raises:
            ExternalToolMissing: the tool could not be executed at all.
        """
        if not source_path.is_file():
            return TranscodeResult(
                success=False,
                source_path=source_path,
                output_path=None,
                was_transcoded=True,
                error_message=f"Source file not found: {source_path}",
            )

        target_path.parent.mkdir(parents=True, exist_ok=True)
        partial = partial_output_path(target_path)
        partial.unlink(missing_ok=True)

        args = build_transcode_args(self.config.audio_transcoding_args, source_path, partial)
        try:
            error = self._run_tool(source_path, partial, args)
            if error is None:
                partial.replace(target_path)
        finally:
            partial.unlink(missing_ok=True)

        if error is not None:
            return TranscodeResult(
                success=False,
                source_path=source_path,
                output_path=None,
                was_transcoded=True,
                error_message=error,
            )

        logger.info(f"Transcoded {source_path.name} → {target_path.name}")
        return TranscodeResult(
            success=True,
            source_path=source_path,
            output_path=target_path,
            was_transcoded=True,
        )

    def _run_tool(self, source_path: Path, partial: Path, args: list[str]) -> Optional[str]:
        """Run the tool into ``partial``. Returns an error message or None."""
        result = self.runner.run(args)
        if not result.success:
            detail = result.stderr.strip()[-500:]
            return f"tool exited with code {result.exit_code}: {detail}" if detail else (
                f"tool exited with code {result.exit_code}"
            )

        if not partial.is_file():
            return "Output file not created"

        if self.config.verify_output and not is_readable_audio(partial):
            return "output is not a readable audio file"

        if self.config.copy_tags:
            copy_metadata(source_path, partial)

        return None


def copy_file(source_path: Path, target_path: Path) -> TranscodeResult:
    """Byte-identical copy that keeps the source timestamps (shutil.copy2)."""
    partial = partial_output_path(target_path)
    try:
        target_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source_path, partial)
        partial.replace(target_path)
    except OSError as e:
        partial.unlink(missing_ok=True)
        return TranscodeResult(
            success=False,
            source_path=source_path,
            output_path=None,
            was_transcoded=False,
            error_message=str(e),
        )

    logger.debug(f"Copied {source_path.name} → {target_path}")
    return TranscodeResult(
        success=True,
        source_path=source_path,
        output_path=target_path,
        was_transcoded=False,
    )
