from typing import Dict, Optional

class SoundingsError(Exception):
    """Base exception for acquisition, correction and distribution errors."""
    pass

class ProviderUnavailableError(SoundingsError):
    """Raised when a single upstream provider fails or is rate limited."""

    def __init__(self, provider_id: str, reason: str):
        self.provider_id = provider_id
        self.reason = reason
        super().__init__(f"{provider_id}: {reason}")

class AllProvidersFailedError(SoundingsError):
    """Raised when every configured provider was skipped or failed."""

    def __init__(self, operation: str, errors: Dict[str, str]):
        self.operation = operation
        self.errors = dict(errors)
        details = "; ".join(f"{provider_id}: {reason}" for provider_id, reason in self.errors.items())
        super().__init__(f"All weather providers failed for {operation}: {details or 'no providers configured'}")

class UpstreamDataError(SoundingsError):
    """Raised when an upstream API answers with an error or an unusable payload."""
    pass

class CacheUnavailableError(SoundingsError):
    """Raised when the local store cannot be read or written."""
    pass

class ConnectionFailedError(SoundingsError):
    """Raised when the realtime connection cannot be (re)established."""

    def __init__(self, message: str, attempts: Optional[int] = None):
        self.attempts = attempts
        super().__init__(message)

class InvalidSubscriptionError(SoundingsError, ValueError):
    """Raised synchronously for malformed subscription requests."""
    pass

class SyncFailureError(SoundingsError):
    """Raised when a queued mutation is rejected by the remote API."""
    pass
