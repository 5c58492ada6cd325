"""
Pumpsheet — Error Types

Backend-integration failures travel as these exceptions up to the edit
session and HTTP layers, which turn them into status flags and banner text.
The calculation engine never raises them.
"""
from __future__ import annotations

from typing import Any, Optional

DUPLICATE_DOCUMENT_MESSAGE = (
    "Document No already exists. Please change the Document No field to a unique value, "
    "or use the Excel/PDF export to download the existing calculation."
)

DUPLICATE_DOCUMENT_REMEDIATION = (
    "Document No already exists. Please:\n"
    "1. Change the Document No field, OR\n"
    "2. Submit the calculation first, then try the {fmt} export again"
)


class PumpsheetError(Exception):
    """Base class for service errors."""


class PersistenceError(PumpsheetError):
    """The datasheet backend rejected or failed a save."""

    def __init__(self, message: str, field_errors: Optional[dict[str, Any]] = None, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.field_errors = field_errors or {}
        self.status_code = status_code

    @classmethod
    def from_response(cls, status_code: int, body: Any) -> "PersistenceError":
        if isinstance(body, dict):
            if is_duplicate_document(body):
                return DuplicateDocumentError(DUPLICATE_DOCUMENT_MESSAGE, body, status_code)
            if body.get("error"):
                return cls(str(body["error"]), body, status_code)
            return cls(_join_field_errors(body), body, status_code)
        text = str(body).strip() if body else ""
        return cls(text or f"Backend returned HTTP {status_code}", None, status_code)

    def user_message(self) -> str:
        return self.message


class DuplicateDocumentError(PersistenceError):
    """`document_no` collides with an existing calculation."""


class ExportError(PumpsheetError):
    """Excel/PDF datasheet generation failed."""

    def __init__(self, fmt: str, message: str, remediation: str | None = None):
        super().__init__(message)
        self.fmt = fmt
        self.message = message
        self.remediation = remediation


class CalculatedFieldEditError(PumpsheetError):
    """A user edit targeted a field only the engine may write."""

    def __init__(self, field_name: str):
        super().__init__(f"'{field_name}' is calculated and cannot be edited directly")
        self.field_name = field_name


class UnknownFieldError(PumpsheetError):
    def __init__(self, field_name: str):
        super().__init__(f"Unknown field '{field_name}'")
        self.field_name = field_name


def is_duplicate_document(body: dict) -> bool:
    messages = body.get("document_no")
    if isinstance(messages, str):
        messages = [messages]
    if not isinstance(messages, list):
        return False
    return any("already exists" in str(m) for m in messages)


def _join_field_errors(body: dict) -> str:
    lines = []
    for field_name, messages in body.items():
        if isinstance(messages, list):
            messages = ", ".join(str(m) for m in messages)
        lines.append(f"{field_name}: {messages}")
    return "\n".join(lines) or "Validation failed"
