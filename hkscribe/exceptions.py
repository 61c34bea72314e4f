"""
hkscribe.exceptions - Custom exception classes.

All hkscribe-specific exceptions inherit from HkscribeError.
"""


class HkscribeError(Exception):
    """Base exception for all hkscribe errors."""

    pass


class ConfigError(HkscribeError):
    """Configuration loading or validation error."""

    pass


class ConfigurationError(ConfigError):
    """Missing or rejected credentials for the transcription service. Never retried."""

    pass


class TranscriptionError(HkscribeError):
    """Transcription error."""

    pass


class RetryableTranscriptionError(TranscriptionError):
    """Failure of a single transcription attempt that may succeed on retry."""

    pass


class StreamTimeout(RetryableTranscriptionError):
    """The response stream produced no data within the watchdog window."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        super().__init__(f"No response from the transcription service for {seconds:g} seconds")


class TransportError(RetryableTranscriptionError):
    """Network or service failure talking to the transcription backend."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class UploadProcessingFailed(RetryableTranscriptionError):
    """The uploaded file was rejected by the service during processing."""

    pass


class UploadTimeout(RetryableTranscriptionError):
    """The uploaded file did not become ready within the polling ceiling."""

    pass


class QuotaExceeded(HkscribeError):
    """Unlicensed usage would exceed the free allowance."""

    def __init__(self, duration_minutes: float | None, limit_minutes: float):
        self.duration_minutes = duration_minutes
        self.limit_minutes = limit_minutes
        if duration_minutes is None:
            length = "Media of unknown length is too large"
        else:
            length = f"Media length {duration_minutes:.1f} min exceeds"
        super().__init__(f"{length} for the free limit of {limit_minutes:g} min")


class UserAborted(HkscribeError):
    """The job was cancelled by the user."""

    def __init__(self, message: str = "Aborted by user"):
        super().__init__(message)


class LicenseError(HkscribeError):
    """License key lookup or activation error."""

    pass


class DependencyError(HkscribeError):
    """Required dependency missing or misconfigured."""

    def __init__(self, dependency: str, message: str, install_hint: str | None = None):
        self.dependency = dependency
        self.message = message
        self.install_hint = install_hint
        super().__init__(f"{dependency}: {message}")
