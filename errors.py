"""
errors.py
---------
RecordVerify - Patient-Verified Health Records - Error taxonomy
----------------------------------------------------------------
Exception classes shared by the services, the pipeline and the HTTP layer.

Only InvalidInputError, AuthorizationError and RecordNotFoundError ever reach
an API caller as a client error. Upstream failures are caught inside the
pipeline and turned into fallback values; they exist as types so the
degradation can be logged and recorded precisely.

Project: RecordVerify - Patient-Verified Health Records
"""


class RecordVerifyError(Exception):
    """Base class for all domain errors."""


class InvalidInputError(RecordVerifyError):
    """Bad or missing upload, unsupported type, or missing phone when required."""


class AuthorizationError(RecordVerifyError):
    """The record exists but the requesting user does not own it."""


class RecordNotFoundError(RecordVerifyError):
    """Unknown record id."""

    def __init__(self, record_id: str, message: str = "") -> None:
        self.record_id = record_id
        super().__init__(message or f"Health record not found: {record_id}")


class UpstreamDegradedError(RecordVerifyError):
    """Extraction, structuring or transcript analysis failed; a fallback is used."""


class UpstreamFatalError(RecordVerifyError):
    """Verification call could not be configured or started."""


class CallPlatformError(RecordVerifyError):
    """A call platform request (status lookup) returned an error."""

    def __init__(self, message: str, status_code: int = 0) -> None:
        self.status_code = status_code
        super().__init__(message)


class StorageError(RecordVerifyError):
    """Archival store put/delete failed."""


class PayloadParseError(RecordVerifyError):
    """A model response did not contain a parseable JSON object."""
