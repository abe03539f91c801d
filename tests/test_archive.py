"""
Tests for ZIP unpacking, output naming and packing.
"""

import zipfile

import pytest

from doc_translator_backend.archive import output_member_name, pack, unique_member_name, unpack
from doc_translator_backend.errors import EmptyArchive, InvalidArchive
from doc_translator_backend.formats import Format


class TestUnpack:
    """Tests for archive.unpack."""

    def test_reads_entries_with_formats(self, make_zip):
        path = make_zip("bundle.zip", {"a.txt": b"Hello", "docs/b.TXT": b"World", "image.png": b"\x89PNG"})
        entries = {entry.name: entry for entry in unpack(path)}

        assert set(entries) == {"a.txt", "docs/b.TXT", "image.png"}
        assert entries["a.txt"].format is Format.TEXT
        assert entries["a.txt"].data == b"Hello"
        assert entries["docs/b.TXT"].eligible
        assert not entries["image.png"].eligible
        assert entries["image.png"].data == b""

    def test_directory_entries_are_skipped(self, make_zip):
        path = make_zip("bundle.zip", {"docs/": None, "docs/a.txt": b"Hello"})
        assert [entry.name for entry in unpack(path)] == ["docs/a.txt"]

    def test_zero_byte_file_is_empty_archive(self, tmp_path):
        path = tmp_path / "empty.zip"
        path.write_bytes(b"")
        with pytest.raises(EmptyArchive, match="ZIP file is empty"):
            unpack(path)

    def test_archive_without_files_is_empty(self, make_zip):
        """Only directory entries counts as empty."""
        path = make_zip("dirs.zip", {"a/": None, "a/b/": None})
        with pytest.raises(EmptyArchive, match="only directories"):
            unpack(path)

    def test_empty_archive_is_an_invalid_archive(self, make_zip):
        with pytest.raises(InvalidArchive):
            unpack(make_zip("nothing.zip", {}))

    def test_not_a_zip_file(self, tmp_path):
        path = tmp_path / "fake.zip"
        path.write_bytes(b"this is plain text pretending to be a zip")
        with pytest.raises(InvalidArchive, match="Invalid ZIP file format"):
            unpack(path)

    def test_corrupted_member_reports_read_error(self, corrupt_zip):
        """A damaged member is returned with read_error instead of aborting the unpack."""
        path = corrupt_zip(
            "damaged.zip",
            {"good.txt": b"Hello there " * 20, "bad.txt": b"General Kenobi " * 20},
            corrupted={"bad.txt"},
        )
        entries = {entry.name: entry for entry in unpack(path)}

        assert entries["good.txt"].read_error is None
        assert entries["good.txt"].data.startswith(b"Hello there")
        assert entries["bad.txt"].read_error
        assert entries["bad.txt"].data == b""


class TestOutputMemberName:
    @pytest.mark.parametrize(
        "entry_name, expected",
        [
            ("a.txt", "translated/a_translated_to_es.txt"),
            ("docs/report.DOCX", "translated/docs/report_translated_to_es.docx"),
            ("../../etc/notes.txt", "translated/etc/notes_translated_to_es.txt"),
            ("/abs/path/file.pdf", "translated/abs/path/file_translated_to_es.pdf"),
        ],
    )
    def test_names_stay_inside_translated_prefix(self, entry_name, expected):
        assert output_member_name(entry_name, "es") == expected


class TestUniqueMemberName:
    """Tests for de-duplicating output member names inside one archive."""

    def test_first_use_keeps_name(self):
        taken = set()
        assert unique_member_name("translated/a_translated_to_es.txt", taken) == "translated/a_translated_to_es.txt"

    def test_collisions_get_numbered_suffix(self):
        taken = set()
        names = [unique_member_name("translated/docs/a_translated_to_es.txt", taken) for _ in range(3)]
        assert names == [
            "translated/docs/a_translated_to_es.txt",
            "translated/docs/a_translated_to_es_2.txt",
            "translated/docs/a_translated_to_es_3.txt",
        ]

    def test_comparison_ignores_case(self):
        taken = set()
        unique_member_name("translated/Notes_translated_to_es.txt", taken)
        assert unique_member_name("translated/notes_translated_to_es.txt", taken) == "translated/notes_translated_to_es_2.txt"

    def test_names_from_colliding_entries_are_distinct(self):
        taken = set()
        names = {unique_member_name(output_member_name(name, "es"), taken) for name in ["a.txt", "a.TXT", "../a.txt"]}
        assert len(names) == 3


class TestPack:
    def test_writes_members_from_bytes_and_paths(self, tmp_path):
        source = tmp_path / "work.txt"
        source.write_bytes(b"from disk")
        destination = tmp_path / "out" / "result.zip"

        pack([("translated/a.txt", b"from memory"), ("translated/b.txt", source)], destination)

        with zipfile.ZipFile(destination) as archive:
            assert archive.read("translated/a.txt") == b"from memory"
            assert archive.read("translated/b.txt") == b"from disk"
            assert all(info.compress_type == zipfile.ZIP_DEFLATED for info in archive.infolist())

    def test_repack_replaces_previous_archive(self, tmp_path):
        destination = tmp_path / "result.zip"
        pack([("first.txt", b"1")], destination)
        pack([("second.txt", b"2")], destination)

        with zipfile.ZipFile(destination) as archive:
            assert archive.namelist() == ["second.txt"]
        assert [p.name for p in tmp_path.iterdir()] == ["result.zip"]
