"""Error hierarchy for maildex.

Remote errors are transient and retried; configuration errors fail fast
before any work starts. Cancellation is reported through RunStatus and is
never raised as an error.
"""


class MaildexError(Exception):
    """Base exception for all maildex errors."""


class ConfigurationError(MaildexError):
    """Raised for missing paths, unknown accounts, or incomplete settings."""


class AuthenticationError(ConfigurationError):
    """Raised when the mail server rejects the configured credentials."""

    def __init__(self, host: str, message: str = "Authentication failed"):
        super().__init__(f"{message} ({host})")
        self.host = host


class RemoteError(MaildexError):
    """Raised when a network or protocol operation fails.

    These are considered transient and go through the retry policy.
    """


class CircuitOpenError(MaildexError):
    """Raised instead of contacting the server while the circuit is open."""

    def __init__(self, retry_after: float):
        super().__init__(f"Circuit open, retry in {retry_after:.0f}s")
        self.retry_after = retry_after


class RetryError(MaildexError):
    """Raised when all retry attempts fail."""

    def __init__(self, message: str, attempts: int, last_error: Exception | None):
        """
        Args:
            message: Error message
            attempts: Number of attempts made
            last_error: The last exception that occurred
        """
        super().__init__(message)
        self.attempts = attempts
        self.last_error = last_error


class MessageParseError(MaildexError):
    """Raised when a single message cannot be read or parsed."""

    def __init__(self, path, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class IndexCorruptionError(MaildexError):
    """Raised when the search store fails its integrity or schema check.

    Recovery is an explicit rebuild.
    """


class LockError(MaildexError):
    """Raised when another process holds the run lock."""


class UidValidityChangedError(MaildexError):
    """Raised when a folder's UIDVALIDITY changes in the middle of a run."""

    def __init__(self, folder: str, expected: int, actual: int):
        super().__init__(f"UIDVALIDITY of {folder} changed during sync ({expected} → {actual})")
        self.folder = folder
        self.expected = expected
        self.actual = actual
