"""Unwrap .gz, .zip and .tar.gz/.tgz inputs into a temporary directory."""

from __future__ import annotations

import dataclasses
import gzip
import logging
import os
import shutil
import tarfile
import tempfile
import zipfile
from typing import Callable

from .models import ImportPhase, ImportProgress

logger = logging.getLogger(__name__)

TEMP_PREFIX = "decentdb-import-"


@dataclasses.dataclass(frozen=True)
class DecompressResult:
    extracted_path: str
    temp_directory: str | None
    original_path: str


def _kind(path: str) -> str | None:
    lower = path.lower()
    if lower.endswith((".tar.gz", ".tgz")):
        return "tar"
    if lower.endswith(".gz"):
        return "gzip"
    if lower.endswith(".zip"):
        return "zip"
    return None


def is_compressed(path: str) -> bool:
    return _kind(path) is not None


def decompress(
    path: str,
    temp_base: str | None = None,
    progress: Callable[[ImportProgress], None] | None = None,
) -> DecompressResult:
    """Extract ``path`` into a fresh temp directory under ``temp_base``.

    Uncompressed inputs are returned as-is with ``temp_directory=None``.
    The caller owns the temp directory and must pass it to :func:`cleanup`.
    """
    kind = _kind(path)
    if kind is None:
        return DecompressResult(extracted_path=path, temp_directory=None, original_path=path)

    name = os.path.basename(path)
    if progress is not None:
        try:
            progress(ImportProgress(phase=ImportPhase.ANALYZING, message=f"Decompressing {name}..."))
        except Exception:
            logger.warning("Progress callback failed", exc_info=True)

    if temp_base is not None:
        os.makedirs(temp_base, exist_ok=True)
    temp_dir = tempfile.mkdtemp(prefix=TEMP_PREFIX, dir=temp_base)
    logger.info("Decompressing %s into %s", path, temp_dir)

    try:
        if kind == "gzip":
            out_path = os.path.join(temp_dir, name[: -len(".gz")] or "data")
            with gzip.open(path, "rb") as src, open(out_path, "wb") as dst:
                shutil.copyfileobj(src, dst, 1024 * 1024)
            extracted = out_path
        elif kind == "tar":
            with tarfile.open(path, "r:gz") as tf:
                tf.extractall(temp_dir, filter="data")
            extracted = _resolve_extracted(temp_dir)
        else:
            with zipfile.ZipFile(path) as zf:
                zf.extractall(temp_dir)
            extracted = _resolve_extracted(temp_dir)
    except BaseException:
        cleanup(temp_dir)
        raise

    return DecompressResult(extracted_path=extracted, temp_directory=temp_dir, original_path=path)


def _resolve_extracted(root: str) -> str:
    files: list[str] = []
    for dirpath, _dirs, names in os.walk(root):
        files.extend(os.path.join(dirpath, n) for n in names)
    if len(files) == 1:
        return files[0]

    entries = os.listdir(root)
    if len(entries) == 1 and os.path.isdir(os.path.join(root, entries[0])):
        return os.path.join(root, entries[0])
    return root


def cleanup(temp_directory: str | None) -> None:
    """Remove a temp directory created by :func:`decompress`. Never raises."""
    if not temp_directory or not os.path.exists(temp_directory):
        return
    try:
        shutil.rmtree(temp_directory)
    except OSError as exc:
        logger.warning("Failed to remove temp directory %s: %s", temp_directory, exc)
