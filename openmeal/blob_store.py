"""
Managed image storage.

Copies photos into the store's ``images/`` directory under collision
resistant names. Blobs are never deleted here; records own the references
and the record store deliberately leaves images behind on delete.
"""

import logging
import os
import shutil
import time
from pathlib import Path
from typing import Union

from .errors import BlobCopyError

logger = logging.getLogger(__name__)

DEFAULT_EXTENSION = "jpg"

BlobSource = Union[str, os.PathLike]


def _source_path(source: BlobSource) -> Path:
    """Accept plain paths and file:// URIs."""
    s = os.fspath(source)
    if s.startswith("file://"):
        s = s[len("file://"):]
    return Path(s).expanduser()


def _extension(path: Path) -> str:
    ext = path.suffix.lstrip(".").lower()
    return ext or DEFAULT_EXTENSION


class BlobStore:
    """
    File-backed store for meal photos.

    Filenames are ``<record_id>[_<suffix>]_<epoch millis>.<ext>`` so repeated
    edits of the same record never overwrite an earlier photo.
    """

    def __init__(self, images_dir: Path):
        """
        Args:
            images_dir: Directory that holds managed images
        """
        self._images_dir = Path(images_dir)

    @property
    def images_dir(self) -> Path:
        return self._images_dir

    def ensure_dir(self) -> None:
        self._images_dir.mkdir(parents=True, exist_ok=True)

    def is_managed(self, ref: BlobSource | None) -> bool:
        """True if ``ref`` already points inside managed storage."""
        if not ref:
            return False
        try:
            path = _source_path(ref).resolve()
            return path.parent == self._images_dir.resolve()
        except (OSError, ValueError):
            return False

    def _destination(self, record_id: str, suffix: str, extension: str) -> Path:
        stem = f"{record_id}_{suffix}" if suffix else record_id
        millis = int(time.time() * 1000)
        dest = self._images_dir / f"{stem}_{millis}.{extension}"
        n = 1
        while dest.exists():
            dest = self._images_dir / f"{stem}_{millis}-{n}.{extension}"
            n += 1
        return dest

    def copy_blob(self, source: BlobSource, record_id: str, suffix: str = "") -> str:
        """
        Copy an external image into managed storage.

        Every call creates a new file; callers must not lose track of the
        returned reference.

        Args:
            source: Path or file:// URI of the image
            record_id: Owning record id (embedded in the filename)
            suffix: Optional role marker such as "after"

        Returns:
            Path of the stored copy, as a string

        Raises:
            BlobCopyError: If the source cannot be read or the copy fails
        """
        src = _source_path(source)
        if not src.is_file():
            raise BlobCopyError(f"Image not found or not a file: {src}")
        self.ensure_dir()
        dest = self._destination(record_id, suffix, _extension(src))
        try:
            shutil.copyfile(src, dest)
        except OSError as e:
            raise BlobCopyError(f"Failed to copy image {src}: {e}") from e
        logger.debug("Copied image %s -> %s", src, dest.name)
        return str(dest)

    def write_blob(
        self,
        data: bytes,
        record_id: str,
        suffix: str = "",
        extension: str = DEFAULT_EXTENSION,
    ) -> str:
        """Store raw image bytes (e.g. decoded from an import bundle)."""
        self.ensure_dir()
        dest = self._destination(record_id, suffix, extension.lstrip(".").lower() or DEFAULT_EXTENSION)
        try:
            dest.write_bytes(data)
        except OSError as e:
            raise BlobCopyError(f"Failed to write image for {record_id}: {e}") from e
        return str(dest)

    def read_blob(self, ref: BlobSource) -> bytes:
        """Read an image's bytes.

        Raises:
            BlobCopyError: If the image is missing or unreadable
        """
        path = _source_path(ref)
        try:
            return path.read_bytes()
        except OSError as e:
            raise BlobCopyError(f"Failed to read image {path}: {e}") from e

    def exists(self, ref: BlobSource | None) -> bool:
        if not ref:
            return False
        return _source_path(ref).is_file()
