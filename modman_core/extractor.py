"""Archive verification and extraction for mod files."""

import logging
import shutil
import subprocess
import zipfile
import zlib
from pathlib import Path, PurePosixPath

import py7zr
import rarfile
from py7zr.exceptions import ArchiveError

from .errors import ModManagerError

logger = logging.getLogger(__name__)

# (archive type, magic bytes)
SIGNATURES = (
    ("zip", b"PK"),
    ("7z", b"7z\xbc\xaf'\x1c"),
    ("rar", b"Rar!"),
)
EXTENSIONS = {".zip": "zip", ".7z": "7z", ".rar": "rar"}

CORRUPT_ERRORS = (zipfile.BadZipFile, zlib.error, ArchiveError, rarfile.Error, OSError, EOFError)


class ExtractionError(ModManagerError):
    """Raised when an archive is corrupt or cannot be extracted."""

    pass


def detect_archive_type(filepath: Path) -> str | None:
    """
    Detect archive type by magic bytes, then fall back to extension.

    Returns: 'zip', '7z', 'rar', or None if not an archive.
    """
    try:
        with open(filepath, "rb") as f:
            header = f.read(8)
    except OSError:
        header = b""

    for archive_type, magic in SIGNATURES:
        if header.startswith(magic):
            return archive_type
    return EXTENSIONS.get(filepath.suffix.lower())


def is_archive(filepath: Path) -> bool:
    return detect_archive_type(filepath) is not None


def _check_member_names(names: list[str], archive_path: Path) -> None:
    """Reject members that would land outside the extraction directory."""
    for name in names:
        path = PurePosixPath(name.replace("\\", "/"))
        if path.is_absolute() or ".." in path.parts or (path.parts and path.parts[0].endswith(":")):
            raise ExtractionError(f"Unsafe path {name!r} in {archive_path.name}")


def _test_zip(archive_path: Path) -> tuple[list[str], str | None]:
    with zipfile.ZipFile(archive_path, "r") as zf:
        return zf.namelist(), zf.testzip()


def _test_7z(archive_path: Path) -> tuple[list[str], str | None]:
    with py7zr.SevenZipFile(archive_path, "r") as szf:
        names = szf.getnames()
        try:
            return names, szf.testzip()
        except py7zr.UnsupportedCompressionMethodError:
            # Codec (e.g. BCJ2) left to the system 7z fallback during extraction
            return names, None


def _test_rar(archive_path: Path) -> tuple[list[str], str | None]:
    with rarfile.RarFile(archive_path, "r") as rf:
        names = rf.namelist()
        rf.testrar()
        return names, None


_TESTERS = {"zip": _test_zip, "7z": _test_7z, "rar": _test_rar}


def verify_archive(archive_path: Path) -> str:
    """
    Check that a file is a well-formed archive before anything is extracted.

    Returns the archive type. Raises ExtractionError for unknown types,
    corrupt or empty archives, and member paths escaping the target.
    """
    archive_type = detect_archive_type(archive_path)
    if archive_type is None:
        raise ExtractionError(f"Unknown archive type: {archive_path.name}")

    try:
        names, bad_member = _TESTERS[archive_type](archive_path)
    except CORRUPT_ERRORS as e:
        raise ExtractionError(f"Corrupt archive {archive_path.name}: {e}")

    if bad_member is not None:
        raise ExtractionError(f"Corrupt member {bad_member!r} in {archive_path.name}")
    if not names:
        raise ExtractionError(f"Archive {archive_path.name} is empty")
    _check_member_names(names, archive_path)
    return archive_type


def _extract_zip(archive_path: Path, target_dir: Path) -> None:
    with zipfile.ZipFile(archive_path, "r") as zf:
        _check_member_names(zf.namelist(), archive_path)
        zf.extractall(target_dir)


def _extract_7z(archive_path: Path, target_dir: Path) -> None:
    try:
        with py7zr.SevenZipFile(archive_path, "r") as szf:
            _check_member_names(szf.getnames(), archive_path)
            szf.extractall(target_dir)
    except py7zr.UnsupportedCompressionMethodError:
        _extract_7z_system(archive_path, target_dir)


def _extract_7z_system(archive_path: Path, target_dir: Path) -> None:
    """Extract with the system 7z binary, for codecs py7zr cannot handle."""
    sz_bin = shutil.which("7z") or shutil.which("7zz")
    if not sz_bin:
        raise ExtractionError(
            f"py7zr cannot extract {archive_path.name} (unsupported compression). "
            "Install p7zip-full for broader 7z support."
        )

    logger.info("Falling back to %s for %s", sz_bin, archive_path.name)
    result = subprocess.run(
        [sz_bin, "x", str(archive_path), f"-o{target_dir}", "-y"],
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        raise ExtractionError(f"7z extraction failed for {archive_path.name}: {result.stderr.strip()}")


def _extract_rar(archive_path: Path, target_dir: Path) -> None:
    with rarfile.RarFile(archive_path, "r") as rf:
        _check_member_names(rf.namelist(), archive_path)
        rf.extractall(target_dir)


_EXTRACTORS = {"zip": _extract_zip, "7z": _extract_7z, "rar": _extract_rar}


def extract_archive(archive_path: Path, target_dir: Path) -> list[Path]:
    """
    Extract an archive to the target directory.

    Returns the extracted file paths.
    """
    archive_type = detect_archive_type(archive_path)
    if archive_type is None:
        raise ExtractionError(f"Unknown archive type: {archive_path}")

    target_dir.mkdir(parents=True, exist_ok=True)
    try:
        _EXTRACTORS[archive_type](archive_path, target_dir)
    except CORRUPT_ERRORS as e:
        raise ExtractionError(f"Failed to extract {archive_path.name}: {e}")

    return sorted(p for p in target_dir.rglob("*") if p.is_file())
