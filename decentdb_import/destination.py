"""DecentDB destination file handling."""

from __future__ import annotations

import logging
import os
from typing import Any

from .errors import ConversionError

logger = logging.getLogger(__name__)


def check_destination(path: str, *, overwrite: bool) -> None:
    if os.path.exists(path) and not overwrite:
        raise ConversionError(f"Destination already exists: {path} (pass overwrite=True to replace)")


def prepare_destination(path: str, *, overwrite: bool) -> None:
    """Remove an existing destination (and its WAL) once overwriting is allowed."""
    check_destination(path, overwrite=overwrite)
    for p in (path, path + "-wal"):
        if os.path.exists(p):
            logger.info("Removing existing %s", p)
            os.remove(p)


def connect_decentdb(path: str, *, cache_pages: int | None = None, cache_mb: int | None = None) -> Any:
    # The driver loads the native library on import; keep it out of module import time.
    import decentdb

    connect_kwargs: dict[str, object] = {}
    if cache_pages is not None:
        connect_kwargs["cache_pages"] = int(cache_pages)
    if cache_mb is not None:
        connect_kwargs["cache_mb"] = int(cache_mb)
    return decentdb.connect(path, **connect_kwargs)
