"""Exception hierarchy for elibconv.

Every error carries an optional context dict (archive path, record index,
member name, ...) which is folded into the message so that a per-item
report is readable on its own.

Per-item errors (everything except ``BatchAborted``) are captured into the
item's ``ConversionReport`` by the batch coordinator and never stop sibling
items.
"""

from typing import Any, Optional


class ElibConvError(Exception):
    """Base class for all elibconv errors."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        if not self.context:
            return self.message
        details = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({details})"


class UnrecognizedContainer(ElibConvError):
    """The file opened as a zip but carries neither known descriptor."""


class CorruptArchive(ElibConvError):
    """The file could not be opened or read as a zip container."""


class MalformedRecord(ElibConvError):
    """A legacy primitive record could not be parsed."""


class MalformedEvent(ElibConvError):
    """An event-log record could not be parsed."""


class UnsupportedGraphic(ElibConvError):
    """A graphic has nothing exportable for the requested output kind."""


class WriteFailure(ElibConvError):
    """A library file or model file could not be persisted."""


class BatchAborted(ElibConvError):
    """A resource-level failure that stops the whole batch."""
