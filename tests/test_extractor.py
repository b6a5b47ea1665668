import io
import zipfile

import py7zr
import pytest

from modman_core.extractor import (
    ExtractionError,
    detect_archive_type,
    extract_archive,
    is_archive,
    verify_archive,
)

from tests.conftest import make_zip


def write(path, data):
    path.write_bytes(data)
    return path


def test_detect_by_magic_bytes(tmp_path):
    archive = write(tmp_path / "mod.bin", make_zip({"identity": "a"}))
    assert detect_archive_type(archive) == "zip"


def test_detect_by_extension(tmp_path):
    assert detect_archive_type(write(tmp_path / "mod.7z", b"")) == "7z"
    assert not is_archive(write(tmp_path / "readme.txt", b"hello"))


def test_verify_and_extract_zip(tmp_path):
    archive = write(tmp_path / "mod.zip", make_zip({"identity": "a"}, {"data/file.txt": "x"}))
    assert verify_archive(archive) == "zip"

    extracted = extract_archive(archive, tmp_path / "out")
    assert (tmp_path / "out" / "manifest.json").is_file()
    assert (tmp_path / "out" / "data" / "file.txt").read_text() == "x"
    assert len(extracted) == 2


def test_verify_and_extract_7z(tmp_path):
    archive = tmp_path / "mod.7z"
    with py7zr.SevenZipFile(archive, "w") as szf:
        szf.writestr('{"identity": "a"}', "manifest.json")
    assert verify_archive(archive) == "7z"
    extract_archive(archive, tmp_path / "out")
    assert (tmp_path / "out" / "manifest.json").is_file()


def test_truncated_zip_is_corrupt(tmp_path):
    data = make_zip({"identity": "a"}, {"big.bin": b"x" * 5000})
    archive = write(tmp_path / "mod.zip", data[: len(data) // 2])
    with pytest.raises(ExtractionError):
        verify_archive(archive)


def test_unknown_type(tmp_path):
    with pytest.raises(ExtractionError):
        verify_archive(write(tmp_path / "mod.txt", b"plain text"))


def test_empty_archive(tmp_path):
    with pytest.raises(ExtractionError):
        verify_archive(write(tmp_path / "mod.zip", make_zip()))


@pytest.mark.parametrize("name", ["../evil.txt", "/abs/evil.txt", "a/../../evil.txt", "C:/evil.txt"])
def test_unsafe_member_paths(tmp_path, name):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        zf.writestr(name, "boom")
    archive = write(tmp_path / "mod.zip", buffer.getvalue())

    with pytest.raises(ExtractionError):
        verify_archive(archive)
    with pytest.raises(ExtractionError):
        extract_archive(archive, tmp_path / "out")
    assert not (tmp_path / "evil.txt").exists()
