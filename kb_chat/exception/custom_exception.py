import sys
import traceback
from typing import Optional


class KnowledgeChatException(Exception):
    """
    Base exception for the project.

    Accepts the error message and, optionally, the underlying exception (or the
    ``sys`` module, in which case the exception currently being handled is
    used). The file and line where the cause was raised are captured so the
    server logs point at the real origin.
    """

    def __init__(self, error_message: str, error_details: object = None):
        super().__init__(error_message)
        self.error_message = str(error_message)
        self.file_name: Optional[str] = None
        self.lineno: Optional[int] = None
        self.traceback_str = ""

        exc_type = exc_value = exc_tb = None
        if error_details is sys:
            exc_type, exc_value, exc_tb = sys.exc_info()
        elif isinstance(error_details, BaseException):
            exc_type = type(error_details)
            exc_value = error_details
            exc_tb = error_details.__traceback__

        if exc_tb is not None:
            # walk to the deepest frame
            last_tb = exc_tb
            while last_tb.tb_next is not None:
                last_tb = last_tb.tb_next
            self.file_name = last_tb.tb_frame.f_code.co_filename
            self.lineno = last_tb.tb_lineno
            self.traceback_str = "".join(
                traceback.format_exception(exc_type, exc_value, exc_tb)
            )

    def __str__(self) -> str:
        if self.file_name:
            return (
                f"{self.error_message} "
                f"[file={self.file_name} | line={self.lineno}]"
            )
        return self.error_message


class ValidationError(KnowledgeChatException):
    """Malformed input caught before any I/O happens."""

    def __init__(self, field: str, message: str):
        super().__init__(message)
        self.field = field

    def to_dict(self) -> dict:
        return {"field": self.field, "message": self.error_message}


class NotFoundError(KnowledgeChatException):
    """Token has no live knowledge base, session or collection."""


class SourceProcessingError(KnowledgeChatException):
    """A single source loader failed; carries the modality that failed."""

    def __init__(self, source: str, message: str, error_details: object = None):
        super().__init__(message, error_details)
        self.source = source


class TransientServiceError(KnowledgeChatException):
    """Embedding / vector store / LLM / store failure the caller may retry."""
