"""Tests for the tool runner, transcoder and file copy."""

import os
import sys
from pathlib import Path

import pytest

from conftest import FakeToolRunner, make_transcoder, write_file, write_wav
from MirrorEngine.errors import ExternalToolMissing
from MirrorEngine.transcoder import (
    SubprocessToolRunner,
    build_transcode_args,
    copy_file,
    copy_metadata,
    is_readable_audio,
    partial_output_path,
)


def test_build_transcode_args():
    template = ["-i", "{INPUT_FILE}", "-codec:a", "libmp3lame", "-metadata", "comment=from {INPUT_FILE}", "{OUTPUT_FILE}"]
    args = build_transcode_args(template, Path("/in/a.flac"), Path("/out/a.mp3"))
    assert args == [
        "-i", str(Path("/in/a.flac")), "-codec:a", "libmp3lame",
        "-metadata", f"comment=from {Path('/in/a.flac')}", str(Path("/out/a.mp3")),
    ]


def test_partial_output_path_is_hidden_sibling():
    assert partial_output_path(Path("/out/Artist/Album/01 - Intro.mp3")) == Path(
        "/out/Artist/Album/.01 - Intro.partial.mp3"
    )


class TestTranscoder:
    def test_success_moves_output_into_place(self, tmp_path):
        source = write_file(tmp_path / "src" / "01.flac", "audio")
        target = tmp_path / "out" / "Artist" / "Album" / "01.mp3"
        runner = FakeToolRunner()

        result = make_transcoder(runner).transcode(source, target)

        assert result.success
        assert result.output_path == target
        assert target.read_bytes() == b"converted:audio"
        assert not partial_output_path(target).exists()
        assert runner.calls == [["-i", str(source), "-y", str(partial_output_path(target))]]

    def test_tool_failure_leaves_no_output(self, tmp_path):
        source = write_file(tmp_path / "01.flac")
        target = tmp_path / "out" / "01.mp3"

        result = make_transcoder(FakeToolRunner(fail_for={"01.flac"})).transcode(source, target)

        assert not result.success
        assert "exited with code 1" in result.error_message
        assert "could not convert 01.flac" in result.error_message
        assert not target.exists()
        assert not partial_output_path(target).exists()

    def test_failure_keeps_previous_output(self, tmp_path):
        source = write_file(tmp_path / "01.flac")
        target = write_file(tmp_path / "out" / "01.mp3", "previous version")

        make_transcoder(FakeToolRunner(fail_for={"01.flac"})).transcode(source, target)

        assert target.read_bytes() == b"previous version"

    def test_missing_output_is_a_failure(self, tmp_path):
        source = write_file(tmp_path / "01.flac")
        result = make_transcoder(FakeToolRunner(write_output=False)).transcode(source, tmp_path / "01.mp3")
        assert result.error_message == "Output file not created"

    def test_missing_source(self, tmp_path):
        runner = FakeToolRunner()
        result = make_transcoder(runner).transcode(tmp_path / "nope.flac", tmp_path / "nope.mp3")
        assert not result.success
        assert runner.calls == []

    def test_tool_missing_propagates(self, tmp_path):
        source = write_file(tmp_path / "01.flac")
        with pytest.raises(ExternalToolMissing):
            make_transcoder(FakeToolRunner(missing=True)).transcode(source, tmp_path / "01.mp3")

    def test_verified_output(self, tmp_path):
        source = write_file(tmp_path / "01.flac")
        target = tmp_path / "01.wav"

        result = make_transcoder(FakeToolRunner(), extension="wav", verify_output=True).transcode(source, target)

        assert result.success
        assert is_readable_audio(target)

    def test_unreadable_output_fails_verification(self, tmp_path):
        source = write_file(tmp_path / "01.flac")
        target = tmp_path / "01.bin"

        result = make_transcoder(FakeToolRunner(), extension="bin", verify_output=True).transcode(source, target)

        assert result.error_message == "output is not a readable audio file"
        assert not target.exists()


def test_is_readable_audio(tmp_path):
    wav = tmp_path / "ok.wav"
    write_wav(wav)
    assert is_readable_audio(wav)
    assert not is_readable_audio(write_file(tmp_path / "junk.bin", "not audio"))
    assert not is_readable_audio(tmp_path / "missing.wav")


def test_copy_metadata_needs_readable_files(tmp_path):
    junk = write_file(tmp_path / "junk.bin", "not audio")
    assert not copy_metadata(junk, junk)


def test_copy_file_preserves_content_and_mtime(tmp_path):
    source = write_file(tmp_path / "cover.jpg", "jpeg bytes")
    os.utime(source, ns=(1_600_000_000_000_000_000, 1_600_000_000_000_000_000))
    target = tmp_path / "out" / "A" / "B" / "cover.jpg"

    result = copy_file(source, target)

    assert result.success
    assert not result.was_transcoded
    assert target.read_bytes() == b"jpeg bytes"
    assert target.stat().st_mtime_ns == 1_600_000_000_000_000_000
    assert not partial_output_path(target).exists()


def test_copy_file_failure(tmp_path):
    result = copy_file(tmp_path / "missing.jpg", tmp_path / "out" / "missing.jpg")
    assert not result.success
    assert result.error_message


class TestSubprocessToolRunner:
    def test_missing_binary(self, tmp_path):
        runner = SubprocessToolRunner(str(tmp_path / "no-such-ffmpeg"))
        assert not runner.is_available()
        with pytest.raises(ExternalToolMissing):
            runner.run(["-version"])

    def test_runs_binary_and_captures_exit_code(self):
        runner = SubprocessToolRunner(sys.executable)
        assert runner.is_available()

        result = runner.run(["-c", "import sys; sys.stderr.write('boom'); sys.exit(3)"])

        assert result.exit_code == 3
        assert not result.success
        assert "boom" in result.stderr
