"""Tests for the command-line interface."""

import logging
from pathlib import Path

import pytest

from conftest import LUNAR_LEXICON_TRACKS, FakeToolRunner, create_album, write_file
from MirrorEngine import cli, pipeline

CONFIG = """
[paths]
base_library_path = "{CONFIGURATION_DIRECTORY}/libraries"

[tools.ffmpeg]
binary_path = "fake-ffmpeg"
audio_transcoding_args = ["-i", "{INPUT_FILE}", "-y", "{OUTPUT_FILE}"]
audio_transcoding_output_extension = "mp3"
verify_output = false

[aggregated_library]
path = "{CONFIGURATION_DIRECTORY}/aggregated"
transcode_threads = 2

[libraries.main]
name = "Main"
path = "{LIBRARY_BASE}/Main"

[libraries.main.validation]
allowed_audio_file_extensions = ["flac"]
allowed_other_file_extensions = ["jpg"]
allowed_other_files_by_name = []

[libraries.main.transcoding]
audio_file_extensions = ["flac"]
other_file_extensions = ["jpg"]
"""


@pytest.fixture(autouse=True)
def restore_logging():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
            handler.close()
    for handler in handlers:
        if handler not in root.handlers:
            root.addHandler(handler)
    root.setLevel(level)


@pytest.fixture
def config_path(tmp_path) -> Path:
    path = tmp_path / "configuration.toml"
    path.write_text(CONFIG, encoding="utf-8")
    create_album(
        tmp_path / "libraries" / "Main",
        "Aindulmedir",
        "The Lunar Lexicon",
        [*LUNAR_LEXICON_TRACKS, "cover.jpg"],
    )
    return path


@pytest.fixture
def fake_runner(monkeypatch) -> FakeToolRunner:
    runner = FakeToolRunner()
    monkeypatch.setattr(pipeline, "SubprocessToolRunner", lambda binary_path: runner)
    return runner


def test_list_libraries(config_path, tmp_path, capsys):
    assert cli.main(["-c", str(config_path), "list-libraries"]) == 0
    out = capsys.readouterr().out
    assert "Main (main)" in out
    assert str(tmp_path / "libraries" / "Main") in out


def test_show_config(config_path, capsys):
    assert cli.main(["-c", str(config_path), "show-config"]) == 0
    out = capsys.readouterr().out
    assert "audio_transcoding_output_extension = mp3" in out
    assert "Library 'Main' [main]" in out


def test_missing_config_is_usage_error(tmp_path, capsys):
    assert cli.main(["-c", str(tmp_path / "missing.toml"), "list-libraries"]) == 2
    assert "configuration file not found" in capsys.readouterr().err


def test_unknown_library_is_usage_error(config_path, capsys):
    assert cli.main(["-c", str(config_path), "validate-library", "Nope"]) == 2
    assert "no library named 'Nope'" in capsys.readouterr().err


def test_validate(config_path, tmp_path, capsys):
    assert cli.main(["-c", str(config_path), "validate"]) == 0
    assert "Validation passed" in capsys.readouterr().out

    write_file(tmp_path / "libraries" / "Main" / "Aindulmedir" / "The Lunar Lexicon" / "notes.txt")
    assert cli.main(["-c", str(config_path), "validate-library", "Main"]) == 1
    assert "notes.txt" in capsys.readouterr().out


def test_transcode(config_path, tmp_path, fake_runner, capsys):
    assert cli.main(["-c", str(config_path), "transcode"]) == 0

    assert len(fake_runner.calls) == 7
    assert (tmp_path / "aggregated" / "Aindulmedir" / "The Lunar Lexicon" / "cover.jpg").is_file()
    assert "Main: 7 transcoded, 1 copied" in capsys.readouterr().out


def test_transcode_dry_run_with_log_file(config_path, tmp_path, fake_runner, capsys):
    log_file = tmp_path / "logs" / "run.log"

    assert cli.main(["-c", str(config_path), "transcode", "--dry-run", "--log-to-file", str(log_file)]) == 0

    assert fake_runner.calls == []
    assert "Sync plan:" in capsys.readouterr().out
    assert log_file.is_file()


def test_requires_a_command(capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli.main([])
    assert exc_info.value.code == 2
