from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .models import ImportReport


class ConversionError(RuntimeError):
    """Fatal import error: unsupported schema, name collision, FK cycle, etc.

    ``report`` holds the partial report accumulated before the failure, if any.
    """

    def __init__(self, message: str, *, report: ImportReport | None = None):
        super().__init__(message)
        self.report = report


class ImportCancelled(Exception):
    """Raised when an import run observes its cancel signal.

    Batches committed before cancellation are kept in the destination.
    """

    def __init__(self, message: str = "Import cancelled", *, report: ImportReport | None = None):
        super().__init__(message)
        self.report = report
