"""Error taxonomy for the sync engine.

Transient errors are retried with backoff and, once retries are exhausted,
fail a stage without touching the watermark. Fatal errors abort the run and
propagate to the caller.
"""

from requests.exceptions import ConnectionError, RequestException, Timeout


class SyncError(Exception):
    """Base class for sync engine errors."""


class TransientSyncError(SyncError):
    """Error that may succeed on retry."""


class RateLimitedError(TransientSyncError):
    """Provider answered 429."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class ProviderTimeoutError(TransientSyncError):
    """Provider request timed out."""


class ProviderUnavailableError(TransientSyncError):
    """Provider returned a 5xx or the connection failed."""


class StorageTransientError(TransientSyncError):
    """Storage commit failed in a way that may succeed on retry."""


class FatalSyncError(SyncError):
    """Error that retrying cannot fix."""


class AuthenticationError(FatalSyncError):
    """Provider rejected the credentials."""


class SchemaMismatchError(FatalSyncError):
    """Provider or storage data does not have the expected shape."""


class SyncAlreadyRunningError(SyncError):
    """Another run for the same source is still in progress."""

    def __init__(self, source_id: str, run_id: str | None = None):
        super().__init__(f"sync already in progress for source {source_id!r} (run {run_id})")
        self.source_id = source_id
        self.run_id = run_id


class RunStateError(SyncError):
    """Attempt to mutate a run that is unknown or already terminal."""


def classify_http_status(
    status_code: int, body: str = "", retry_after: float | None = None
) -> SyncError | None:
    """Map an HTTP status to the matching sync error, or None for success codes."""
    if status_code < 400:
        return None
    detail = f"provider returned HTTP {status_code}: {body[:200]}"
    if status_code == 429:
        return RateLimitedError(detail, retry_after=retry_after)
    if status_code in (401, 403):
        return AuthenticationError(detail)
    if status_code == 408:
        return ProviderTimeoutError(detail)
    if status_code >= 500:
        return ProviderUnavailableError(detail)
    return SchemaMismatchError(detail)


def classify_request_exception(exc: RequestException) -> SyncError:
    """Map a ``requests`` transport exception to a sync error."""
    if isinstance(exc, Timeout):
        return ProviderTimeoutError(f"provider request timed out: {exc}")
    if isinstance(exc, ConnectionError):
        return ProviderUnavailableError(f"provider connection failed: {exc}")
    return ProviderUnavailableError(f"provider request failed: {exc}")
