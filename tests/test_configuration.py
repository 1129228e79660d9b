"""Tests for loading the TOML configuration."""

from pathlib import Path

import pytest

from MirrorEngine.configuration import load_configuration
from MirrorEngine.errors import ConfigurationError

VALID = """
[paths]
base_library_path = "{CONFIGURATION_DIRECTORY}/music"
base_tools_path = "tools"

[logging]
default_log_output_path = "logs/run.log"

[tools.ffmpeg]
binary_path = "{TOOLS_BASE}/ffmpeg"
audio_transcoding_args = ["-i", "{INPUT_FILE}", "-q:a", "0", "{OUTPUT_FILE}"]
audio_transcoding_output_extension = ".MP3"

[aggregated_library]
path = "{LIBRARY_BASE}/_aggregated"
transcode_threads = 4
failure_max_retries = 2
failure_delay_seconds = 1.5

[libraries.lossless]
name = "Lossless"
path = "{LIBRARY_BASE}/Lossless"
ignored_directories_in_base_directory = ["_other"]

[libraries.lossless.validation]
allowed_audio_file_extensions = ["FLAC"]
allowed_other_file_extensions = ["jpg", "txt"]
allowed_other_files_by_name = ["desktop.ini"]

[libraries.lossless.transcoding]
audio_file_extensions = ["flac"]
other_file_extensions = ["jpg"]
"""


def write_config(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "configuration.toml"
    path.write_text(text, encoding="utf-8")
    return path


def test_load_valid_configuration(tmp_path):
    config = load_configuration(write_config(tmp_path, VALID))

    music = tmp_path / "music"
    assert config.aggregated_library.path == music / "_aggregated"
    assert config.aggregated_library.worker_count == 4
    assert config.aggregated_library.failure_max_retries == 2
    assert config.aggregated_library.failure_delay_seconds == 1.5
    assert not config.aggregated_library.strict

    assert config.transcoder.binary_path == str(tmp_path / "tools" / "ffmpeg")
    assert config.transcoder.audio_transcoding_output_extension == "mp3"
    assert config.transcoder.verify_output
    assert config.logging.default_log_output_path == tmp_path / "logs" / "run.log"

    library = config.get_library_by_name("Lossless")
    assert library.key == "lossless"
    assert library.path == music / "Lossless"
    assert library.allowed_audio_extensions == {"flac"}
    assert library.ignored_directories == {"_other"}
    assert library.is_allowed_file("Desktop.ini") is False
    assert library.is_allowed_file("desktop.ini")
    assert config.get_library_by_name("Missing") is None


def test_bare_binary_name_is_left_for_path_lookup(tmp_path):
    config = load_configuration(write_config(tmp_path, VALID.replace('"{TOOLS_BASE}/ffmpeg"', '"ffmpeg"')))
    assert config.transcoder.binary_path == "ffmpeg"


def test_auto_thread_count(tmp_path):
    config = load_configuration(write_config(tmp_path, VALID.replace("transcode_threads = 4", "transcode_threads = 0")))
    assert 1 <= config.aggregated_library.worker_count <= 8


def test_missing_file(tmp_path):
    with pytest.raises(ConfigurationError) as exc_info:
        load_configuration(tmp_path / "nope.toml")
    assert exc_info.value.file_path == tmp_path / "nope.toml"


def test_invalid_toml(tmp_path):
    with pytest.raises(ConfigurationError, match="invalid TOML"):
        load_configuration(write_config(tmp_path, "[paths\n"))


@pytest.mark.parametrize("old, new, message", [
    ('"{INPUT_FILE}", ', "", "INPUT_FILE"),
    ("transcode_threads = 4", "transcode_threads = -1", "transcode_threads"),
    ("transcode_threads = 4", "transcode_threads = true", "transcode_threads"),
    ('name = "Lossless"\n', "", "libraries.lossless.name"),
    ("[aggregated_library]", "[not_aggregated_library]", "aggregated_library"),
    ('audio_file_extensions = ["flac"]', 'audio_file_extensions = "flac"', "audio_file_extensions"),
])
def test_invalid_values(tmp_path, old, new, message):
    assert old in VALID
    with pytest.raises(ConfigurationError, match=message):
        load_configuration(write_config(tmp_path, VALID.replace(old, new, 1)))


def test_duplicate_library_names(tmp_path):
    second = VALID[VALID.index("[libraries.lossless]"):].replace("libraries.lossless", "libraries.copy")
    with pytest.raises(ConfigurationError, match="Lossless"):
        load_configuration(write_config(tmp_path, VALID + "\n" + second))


def test_missing_library_root_is_not_a_configuration_error(tmp_path):
    config = load_configuration(write_config(tmp_path, VALID))
    assert not config.get_library_by_name("Lossless").path.exists()
