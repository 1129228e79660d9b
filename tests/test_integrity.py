"""Tests for orphaned album detection in the aggregated library."""

from conftest import create_album, make_library, write_file
from MirrorEngine.integrity import check_orphans, find_orphaned_albums
from MirrorEngine.scanner import scan_library


def test_no_aggregated_library_yet(library, lunar_lexicon, aggregated_root):
    assert find_orphaned_albums(aggregated_root, [scan_library(library)]) == []


def test_reports_albums_without_source(library, lunar_lexicon, aggregated_root):
    write_file(aggregated_root / "Aindulmedir" / "The Lunar Lexicon" / "01.mp3")
    write_file(aggregated_root / "Aindulmedir" / "Renamed Album" / "01.mp3")

    report = check_orphans(aggregated_root, [scan_library(library)])

    assert report.orphan_albums == [aggregated_root / "Aindulmedir" / "Renamed Album"]
    assert report.removed_albums == []
    assert (aggregated_root / "Aindulmedir" / "Renamed Album").is_dir()
    assert "1 orphaned albums" in report.summary


def test_prunes_when_requested(library, lunar_lexicon, aggregated_root):
    write_file(aggregated_root / "Aindulmedir" / "The Lunar Lexicon" / "01.mp3")
    write_file(aggregated_root / "Gone Artist" / "Gone Album" / "01.mp3")

    report = check_orphans(aggregated_root, [scan_library(library)], delete_orphans=True)

    assert report.removed_albums == [aggregated_root / "Gone Artist" / "Gone Album"]
    assert not (aggregated_root / "Gone Artist").exists()
    assert (aggregated_root / "Aindulmedir" / "The Lunar Lexicon" / "01.mp3").is_file()


def test_no_pruning_when_a_library_failed_to_scan(tmp_path, library, lunar_lexicon, aggregated_root):
    broken = make_library(tmp_path / "broken", name="Broken")
    write_file(broken.path / "stray.flac")
    create_album(broken.path, "Other", "Album", ["01.flac"])
    write_file(aggregated_root / "Other" / "Album" / "01.mp3")

    report = check_orphans(
        aggregated_root,
        [scan_library(library), scan_library(broken)],
        delete_orphans=True,
    )

    assert report.pruning_skipped
    assert (aggregated_root / "Other" / "Album" / "01.mp3").is_file()
