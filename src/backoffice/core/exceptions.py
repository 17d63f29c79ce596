"""Exception hierarchy for the back-office sync service.

Webhook boundaries translate these into 400 responses; job execution never
lets them escape the queue processor (failures become AdapterResult values).
"""

from __future__ import annotations


class BackofficeError(Exception):
    """Base class for all domain errors raised by this service."""


class SignatureVerificationError(BackofficeError):
    """Inbound webhook failed signature verification.

    ``code`` is one of MISSING_SIGNATURE, MISSING_BODY, INVALID_SIGNATURE.
    """

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.message = message


class MalformedPayloadError(BackofficeError):
    """Webhook body is not valid JSON or lacks required fields."""

    code = "MALFORMED_PAYLOAD"


class RemoteAccessError(BackofficeError):
    """A Notion read (page retrieve / collection query) failed."""


class JobNotFoundError(BackofficeError):
    """Sync job id does not exist."""


class JobStateError(BackofficeError):
    """Operator action is not valid for the job's current status."""
