from __future__ import annotations

from typing import Any, Dict

# Local (non-fatal) error codes
E_DIRECTORY_UNMAPPED = "E_PE_DIRECTORY_UNMAPPED"
E_TABLE_TRUNCATED = "E_PE_TABLE_TRUNCATED"
E_NAME_UNREADABLE = "E_PE_NAME_UNREADABLE"
E_SECTION_COUNT_CLAMPED = "E_PE_SECTION_COUNT_CLAMPED"
E_LIMIT_REACHED = "E_PE_LIMIT_REACHED"

# Fatal error codes
E_NOT_A_PE_FILE = "E_PE_NOT_A_PE_FILE"
E_UNSUPPORTED_OPT_MAGIC = "E_PE_UNSUPPORTED_OPTIONAL_HEADER_MAGIC"


class PeFormatError(Exception):
    """Structural violation that makes the whole image unparsable."""

    code = "E_PE_FORMAT"

    def __init__(self, message: str, **context: Any):
        self.context = context
        super().__init__(message)

    def as_error(self) -> Dict[str, Any]:
        return err(self.code, str(self), **self.context)


class NotAPeFile(PeFormatError):
    code = E_NOT_A_PE_FILE


class UnsupportedOptionalHeaderMagic(PeFormatError):
    code = E_UNSUPPORTED_OPT_MAGIC


def err(code: str, message: str, **extra: Any) -> Dict[str, Any]:
    d = {"code": code, "message": message}
    d.update(extra)
    return d
