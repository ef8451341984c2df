"""Exception taxonomy for the reconciliation engine and its collaborators."""

from __future__ import annotations


class InputError(ValueError):
    """Raised when a caller supplies a malformed amount, quantity, or id."""


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced product, stock item, or transaction is unknown."""


class SessionClosedError(BusinessRuleViolation):
    """Raised when a confirmed or cancelled session receives another operation."""


class PersistenceFailure(Exception):
    """Raised by a document store when a write cannot be completed."""


class BackendUnavailable(Exception):
    """Base class for external collaborators that are unconfigured or failing."""


class TranscriptionUnavailable(BackendUnavailable):
    """No transcription backend is configured."""


class TranscriptionFailed(BackendUnavailable):
    """The transcription backend raised or returned an unusable payload."""


class SuggestionUnavailable(BackendUnavailable):
    """The external suggestion source could not produce candidates."""


class ChatUnavailable(BackendUnavailable):
    """No chat backend is configured or it failed to answer."""


__all__ = [
    "InputError",
    "BusinessRuleViolation",
    "MissingReferenceError",
    "SessionClosedError",
    "PersistenceFailure",
    "BackendUnavailable",
    "TranscriptionUnavailable",
    "TranscriptionFailed",
    "SuggestionUnavailable",
    "ChatUnavailable",
]
