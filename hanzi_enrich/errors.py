"""Exception taxonomy shared by the pipeline and the queue layer."""

from typing import List, Optional

from .models import FailureClass, ProviderCallAttempt, ValidationVerdict


class EnrichmentError(Exception):
    """Base class for every error the pipeline raises on purpose."""

    failure_class = FailureClass.TRANSIENT


class ProviderError(EnrichmentError):
    """A single provider could not deliver a usable answer."""


class ProviderUnavailable(ProviderError):
    """Provider is disabled, misconfigured or unreachable."""


class LowQualityResult(ProviderError):
    """Provider answered, but with a placeholder or degenerate value."""


class ProviderChainExhausted(EnrichmentError):
    """Every provider in a chain used up its retry budget."""

    def __init__(self, operation: str, attempts: List[ProviderCallAttempt],
                 last_error: Optional[BaseException] = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"All providers failed for {operation} after {len(attempts)} attempts: {last_error}"
        )


class ValidationRejected(EnrichmentError):
    """Generated image failed artifact checks."""

    def __init__(self, verdict: ValidationVerdict):
        self.verdict = verdict
        super().__init__(f"Image rejected: {', '.join(verdict.issues) or 'unspecified issues'}")


class StorageFailure(EnrichmentError):
    """Media or card storage is unreachable; nothing can be durably recorded."""


class MalformedInput(EnrichmentError):
    """Empty or non-character input. Never worth retrying."""

    failure_class = FailureClass.PERMANENT


class JobTimeout(EnrichmentError):
    """A job exceeded its wall-clock budget."""


def classify_failure(exc: BaseException, attempts_made: int, timeouts: int = 0) -> FailureClass:
    """Decide whether the queue should retry a failed job.

    ``attempts_made`` counts the attempt that just failed, so the first
    failure arrives with ``attempts_made == 1``.
    """
    if isinstance(exc, MalformedInput):
        return FailureClass.PERMANENT
    if isinstance(exc, StorageFailure):
        return FailureClass.PERMANENT if attempts_made > 1 else FailureClass.TRANSIENT
    if isinstance(exc, JobTimeout):
        return FailureClass.PERMANENT if timeouts > 1 else FailureClass.TRANSIENT
    if isinstance(exc, EnrichmentError):
        return exc.failure_class
    return FailureClass.TRANSIENT
