"""
Exception types raised across the bulk add pipeline.

Most failures are recorded on the item (or chunk) that caused them and never
reach the caller. Only empty input and out-of-order pipeline calls are raised.
"""
from typing import Optional


class BulkAddError(Exception):
    """Base class for all pipeline errors."""


class ParseError(BulkAddError):
    """Input text is empty or contains nothing to process."""


class ResolutionError(BulkAddError):
    """Place search or geography lookup failed for one item."""


class ClassificationServiceError(BulkAddError):
    """The batched duplicate check call failed."""


class SubmissionItemError(BulkAddError):
    """The backend response for a single submitted item is unusable."""

    def __init__(self, message: str, line_number: Optional[int] = None):
        super().__init__(message)
        self.line_number = line_number


class SubmissionTransportError(BulkAddError):
    """A whole chunk submission failed before per-item results came back."""

    def __init__(self, message: str, status: Optional[int] = None, systemic: bool = False):
        super().__init__(message)
        self.status = status
        # Auth failures affect every later chunk as well
        self.systemic = systemic


class PipelineStateError(BulkAddError):
    """A pipeline operation was called while the run is in the wrong state."""


class InvalidTransitionError(PipelineStateError):
    """An item was moved along a transition the state machine does not allow."""


class UnknownItemError(PipelineStateError, KeyError):
    """No item with the requested line number exists in the current run."""
