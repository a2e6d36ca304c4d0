"""
Exception taxonomy for the course mapping pipeline.

Only NoCredentialAvailable (after retries) and batch-level I/O failures
reach the caller; the rest are caught by the pipeline and turned into a
per-record status.
"""

from typing import Optional


class MappingError(Exception):
    """Base class for all course mapping errors."""


class ValidationError(MappingError):
    """Malformed input record. Dropped and logged; the batch continues."""


class NoCredentialAvailable(MappingError):
    """
    Every credential is exhausted, inactive or deleted.

    When raised out of a pipeline run, report holds the partial
    BatchReport that was persisted before the semantic stage aborted.
    """

    def __init__(self, message: str = "No credential available", report=None):
        self.report = report
        self.partial_results = []
        super().__init__(message)


class TemporarilyExhausted(NoCredentialAvailable):
    """Provider rate-limited every credential we could try."""


class QuotaExceeded(MappingError):
    """A reservation did not fit the credential's remaining daily budget."""

    def __init__(self, credential_id: str, requested: int, remaining: int):
        self.credential_id = credential_id
        self.requested = requested
        self.remaining = remaining
        super().__init__(
            f"Credential {credential_id}: requested {requested}, {remaining} remaining"
        )


class ProviderError(MappingError):
    """Inference service call failed."""

    kind = "provider_error"

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class ProviderTransient(ProviderError):
    """Timeout, connection drop or 5xx. Retried with backoff."""

    kind = "transient"


class ProviderRateLimited(ProviderError):
    """Provider reported the credential is over its rate limit."""

    kind = "rate_limited"


class ProviderRequestError(ProviderError):
    """Provider rejected the request (validation, auth). Not retried."""

    kind = "request_rejected"

    def __init__(self, message: str, status_code: Optional[int] = None, code: Optional[str] = None):
        self.code = code
        super().__init__(message, status_code)


class ProviderNotSent(ProviderError):
    """The request never left this process (e.g. connection refused)."""

    kind = "not_sent"


class ProviderMalformed(MappingError):
    """Inference response could not be parsed into suggestions."""

    kind = "malformed"


class HallucinatedSuggestion(MappingError):
    """Suggested code is not in the master catalog."""

    def __init__(self, code: str):
        self.code = code
        super().__init__(f"Suggested code {code!r} not found in master catalog")
