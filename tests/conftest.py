"""Shared pytest fixtures for LibraryMirror tests."""

import os
import threading
import wave
from pathlib import Path
from typing import Iterable, Optional, Sequence

import pytest

from MirrorEngine.configuration import (
    AggregatedLibraryConfiguration,
    Configuration,
    LibraryDescriptor,
    TranscoderConfiguration,
)
from MirrorEngine.errors import ExternalToolMissing
from MirrorEngine.transcoder import ToolResult, Transcoder

FAKE_ARGS = ("-i", "{INPUT_FILE}", "-y", "{OUTPUT_FILE}")

LUNAR_LEXICON_TRACKS = [f"0{n} - Track {n}.flac" for n in range(1, 8)]


class FakeToolRunner:
    """ToolRunner that "transcodes" by writing a small file, and records every call.

    Outputs ending in .wav are valid WAVE files so that mutagen can read them.
    """

    def __init__(
        self,
        available: bool = True,
        fail_for: Iterable[str] = (),
        fail_times: Optional[dict[str, int]] = None,
        missing: bool = False,
        write_output: bool = True,
    ):
        self.available = available
        self.fail_for = set(fail_for)
        self.fail_times = dict(fail_times or {})
        self.missing = missing
        self.write_output = write_output
        self.calls: list[list[str]] = []
        self._lock = threading.Lock()

    def is_available(self) -> bool:
        return self.available

    def run(self, args: Sequence[str]) -> ToolResult:
        with self._lock:
            self.calls.append(list(args))
        if self.missing:
            raise ExternalToolMissing("fake-ffmpeg")

        source = Path(args[args.index("-i") + 1])
        output = Path(args[-1])

        if source.name in self.fail_for:
            return ToolResult(exit_code=1, stderr=f"could not convert {source.name}")
        with self._lock:
            remaining = self.fail_times.get(source.name, 0)
            if remaining:
                self.fail_times[source.name] = remaining - 1
                return ToolResult(exit_code=1, stderr="temporary failure")

        if self.write_output:
            if output.suffix == ".wav":
                write_wav(output)
            else:
                output.write_bytes(b"converted:" + source.read_bytes())
        return ToolResult(exit_code=0)

    @property
    def converted(self) -> list[str]:
        """Source file names of every invocation."""
        return [Path(call[call.index("-i") + 1]).name for call in self.calls]


def write_wav(path: Path, frames: int = 800) -> None:
    with wave.open(str(path), "wb") as w:
        w.setnchannels(1)
        w.setsampwidth(2)
        w.setframerate(8000)
        w.writeframes(b"\x00\x00" * frames)


def write_file(path: Path, content: bytes | str = b"data") -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, str):
        content = content.encode("utf-8")
    path.write_bytes(content)
    return path


def create_album(library_root: Path, artist: str, album: str, files: Iterable[str]) -> Path:
    """Create an album directory; each file's content is its own name."""
    album_path = library_root / artist / album
    album_path.mkdir(parents=True, exist_ok=True)
    for name in files:
        write_file(album_path / name, name)
    return album_path


def make_library(root: Path, name: str = "Main", **overrides) -> LibraryDescriptor:
    values = dict(
        name=name,
        path=root,
        key=name.lower(),
        allowed_audio_extensions=frozenset({"flac", "mp3"}),
        allowed_other_extensions=frozenset({"jpg", "png", "txt"}),
        allowed_other_names=frozenset({"desktop.ini"}),
        ignored_directories=frozenset({"_other"}),
        tracked_audio_extensions=frozenset({"flac"}),
        tracked_other_extensions=frozenset({"jpg", "png"}),
    )
    values.update(overrides)
    root.mkdir(parents=True, exist_ok=True)
    return LibraryDescriptor(**values)


def make_config(
    tmp_path: Path,
    libraries: Iterable[LibraryDescriptor],
    output_extension: str = "mp3",
    verify_output: bool = False,
    **aggregated,
) -> Configuration:
    aggregated.setdefault("transcode_threads", 2)
    return Configuration(
        configuration_file_path=tmp_path / "configuration.toml",
        transcoder=TranscoderConfiguration(
            binary_path="fake-ffmpeg",
            audio_transcoding_args=FAKE_ARGS,
            audio_transcoding_output_extension=output_extension,
            verify_output=verify_output,
        ),
        aggregated_library=AggregatedLibraryConfiguration(
            path=tmp_path / "aggregated",
            **aggregated,
        ),
        libraries={library.key: library for library in libraries},
    )


@pytest.fixture
def library_root(tmp_path: Path) -> Path:
    root = tmp_path / "libraries" / "Main"
    root.mkdir(parents=True)
    return root


@pytest.fixture
def library(library_root: Path) -> LibraryDescriptor:
    return make_library(library_root)


@pytest.fixture
def lunar_lexicon(library_root: Path) -> Path:
    """Aindulmedir / The Lunar Lexicon: 7 FLAC tracks and a cover."""
    return create_album(
        library_root,
        "Aindulmedir",
        "The Lunar Lexicon",
        [*LUNAR_LEXICON_TRACKS, "cover.jpg"],
    )


@pytest.fixture
def aggregated_root(tmp_path: Path) -> Path:
    return tmp_path / "aggregated"


@pytest.fixture
def fake_runner() -> FakeToolRunner:
    return FakeToolRunner()


def make_transcoder(runner, extension: str = "mp3", verify_output: bool = False) -> Transcoder:
    config = TranscoderConfiguration(
        binary_path="fake-ffmpeg",
        audio_transcoding_args=FAKE_ARGS,
        audio_transcoding_output_extension=extension,
        verify_output=verify_output,
    )
    return Transcoder(config, runner)


def make_unreadable(monkeypatch, *directories: Path) -> None:
    """Make os.scandir fail with PermissionError for the given directories."""
    blocked = {Path(d) for d in directories}
    real_scandir = os.scandir

    def scandir(path="."):
        if isinstance(path, (str, os.PathLike)) and Path(path) in blocked:
            raise PermissionError(13, "Permission denied", str(path))
        return real_scandir(path)

    monkeypatch.setattr(os, "scandir", scandir)
