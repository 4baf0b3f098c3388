"""
Archive extraction for runtime release bundles.

Release bundles come as gzip-compressed tarballs, zip files or
zstd-compressed tarballs depending on the platform. The format is chosen from
the file name.
"""

import os
import tarfile
import zipfile
from enum import Enum
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse
import zstandard

from .errors import RuntimeUnavailableError
from .logging import get_logger


logger = get_logger("archive")

PathLike = Union[str, os.PathLike]


class ArchiveFormat(str, Enum):
    GZIP_TAR = "gzip-tar"
    ZIP = "zip"
    ZSTD_TAR = "zstd-tar"


_SUFFIXES = [
    (".tar.gz", ArchiveFormat.GZIP_TAR),
    (".tgz", ArchiveFormat.GZIP_TAR),
    (".zip", ArchiveFormat.ZIP),
    (".tar.zst", ArchiveFormat.ZSTD_TAR),
    (".tzst", ArchiveFormat.ZSTD_TAR),
]


def archive_suffix(name: str) -> str:
    """Return the archive suffix of a file name or URL (e.g. ``.tar.zst``)."""
    path = urlparse(name).path if "://" in name else name
    lower = path.lower()
    for suffix, _ in _SUFFIXES:
        if lower.endswith(suffix):
            return suffix
    raise RuntimeUnavailableError(f"Unsupported archive type: {name}")


def detect_format(name: str) -> ArchiveFormat:
    """Pick the archive format implied by a file name or URL."""
    suffix = archive_suffix(name)
    return dict(_SUFFIXES)[suffix]


def extract_archive(archive_path: PathLike, dest_dir: PathLike,
                    archive_format: Optional[ArchiveFormat] = None) -> None:
    """Extract ``archive_path`` into ``dest_dir``.

    Members that would land outside ``dest_dir`` are rejected.
    """
    archive_path = Path(archive_path)
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    archive_format = archive_format or detect_format(archive_path.name)

    logger.debug(f"Extracting {archive_path.name} ({archive_format.value}) to {dest_dir}")
    try:
        if archive_format == ArchiveFormat.GZIP_TAR:
            with tarfile.open(archive_path, mode="r:gz") as tar:
                tar.extractall(dest_dir, filter="data")
        elif archive_format == ArchiveFormat.ZSTD_TAR:
            _extract_zstd_tar(archive_path, dest_dir)
        else:
            _extract_zip(archive_path, dest_dir)
    except (tarfile.TarError, zipfile.BadZipFile, zstandard.ZstdError, EOFError) as e:
        raise RuntimeUnavailableError(f"Failed to extract {archive_path.name}: {e}")


def _extract_zstd_tar(archive_path: Path, dest_dir: Path) -> None:
    decompressor = zstandard.ZstdDecompressor()
    with open(archive_path, "rb") as fh:
        with decompressor.stream_reader(fh) as reader:
            with tarfile.open(fileobj=reader, mode="r|") as tar:
                tar.extractall(dest_dir, filter="data")


def _extract_zip(archive_path: Path, dest_dir: Path) -> None:
    root = dest_dir.resolve()
    with zipfile.ZipFile(archive_path) as archive:
        for info in archive.infolist():
            target = (root / info.filename).resolve()
            if target != root and root not in target.parents:
                raise RuntimeUnavailableError(f"Archive member escapes destination: {info.filename}")
            archive.extract(info, root)
            # zipfile drops permission bits; restore them from the Unix attributes
            mode = (info.external_attr >> 16) & 0o777
            if mode and os.name != "nt" and not info.is_dir():
                os.chmod(target, mode)


def find_file(root: PathLike, name: str) -> Optional[Path]:
    """Find the shallowest regular file called ``name`` below ``root``."""
    root = Path(root)
    if not root.is_dir():
        return None
    matches = [p for p in root.rglob(name) if p.is_file() and not p.is_symlink()]
    if not matches:
        return None
    return min(matches, key=lambda p: (len(p.relative_to(root).parts), str(p)))
