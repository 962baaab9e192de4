"""Error handling framework for vidopt.

Provides the exception hierarchy, a context manager that logs and wraps
low-level failures, and normalization of raw encoder errors into short
user-facing messages.
"""

import logging
import re

logger = logging.getLogger(__name__)


# Custom Exception Hierarchy
class VidOptError(Exception):
    """Base exception for all vidopt-specific errors."""

    pass


class EncoderError(VidOptError):
    """Encoder operation failed.

    Raised when an FFmpeg operation fails (probing, converting, cancelling).
    """

    pass


class EncoderInvocationError(EncoderError):
    """The encoder process could not be started at all.

    Typical causes: missing binary, unreadable input, bad working directory.
    """

    pass


class MetadataError(VidOptError):
    """Metadata provider lookup failed.

    Never surfaced to the user as a hard failure; the matcher turns it into
    "no match".
    """

    pass


class ConfigurationError(VidOptError):
    """Configuration validation failed."""

    pass


class JobNotFoundError(VidOptError):
    """No job exists with the requested identifier."""

    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class DuplicateJobError(VidOptError):
    """A non-terminal job already exists for the same source file."""

    def __init__(self, source_path: str, existing_id: str):
        super().__init__(f"{source_path} is already queued as job {existing_id}")
        self.source_path = source_path
        self.existing_id = existing_id


class InvalidTransitionError(VidOptError):
    """A job status transition is not allowed by the state machine."""

    def __init__(self, job_id: str, from_status, to_status):
        super().__init__(
            f"Invalid transition for job {job_id}: {from_status.value} -> {to_status.value}"
        )
        self.job_id = job_id
        self.from_status = from_status
        self.to_status = to_status


# Error message normalization
UNKNOWN_ERROR_MESSAGE = "Unknown error"

# First match wins. The missing-binary entry must precede the missing-file
# entry: spawning an absent ffmpeg reports "No such file or directory".
_ERROR_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(
            r"ffmpeg not found|ffmpeg: not found|command not found|failed to start ffmpeg"
            r"|ffmpeg is not installed"
        ),
        "FFmpeg is not installed or not accessible",
    ),
    (
        re.compile(r"permission denied|access denied|access is denied|eacces|eperm"),
        "Access denied - check the file permissions",
    ),
    (
        re.compile(r"no such file|file not found|cannot find the file|enoent|does not exist"),
        "File not found - it may have been moved or deleted",
    ),
    (
        re.compile(r"no space left|disk full|not enough space|enospc"),
        "Not enough disk space to finish the conversion",
    ),
    (
        re.compile(r"invalid codec|unknown encoder|codec not supported|unsupported codec"),
        "Unsupported codec - try another output format",
    ),
    (re.compile(r"timeout|timed out"), "The conversion took too long and was interrupted"),
    (re.compile(r"cancel"), "Conversion cancelled by the user"),
]

_TIMEOUT_PATTERN = re.compile(r"timeout|timed out")


def normalize_error_message(raw: object, max_length: int = 100) -> str:
    """Turn a raw encoder error into a short, user-readable message.

    Args:
        raw: Exception, string or None as produced by the encoder boundary
        max_length: Hard cap for unrecognized messages (ellipsis appended)

    Returns:
        A message safe to show in the job list
    """
    if raw is None:
        return UNKNOWN_ERROR_MESSAGE

    text = str(raw).strip()
    if not text:
        return UNKNOWN_ERROR_MESSAGE

    lowered = text.lower()
    for pattern, message in _ERROR_PATTERNS:
        if pattern.search(lowered):
            return message

    if len(text) > max_length:
        return text[:max_length] + "..."
    return text


def is_timeout_error(raw: object) -> bool:
    """Return True if a raw error belongs to the timeout class."""
    return raw is not None and bool(_TIMEOUT_PATTERN.search(str(raw).lower()))


# Context Manager for Error Handling
class error_context:
    """Log and optionally wrap low-level errors raised inside a block.

    Used at the subprocess and filesystem seams, where OSError and friends
    must surface as VidOptError subclasses the callers already handle.

    Example:
        with error_context(
            error_types=(OSError,),
            default_message="Failed to start ffmpeg",
            wrap_as=EncoderInvocationError,
        ):
            process = subprocess.Popen(cmd)
    """

    def __init__(
        self,
        *,
        error_types: tuple[type[BaseException], ...],
        default_message: str,
        log_level: str = "error",
        wrap_as: type[VidOptError] | None = None,
    ):
        self.error_types = error_types
        self.default_message = default_message
        self.log_level = log_level
        self.wrap_as = wrap_as

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if exc_type is None or not issubclass(exc_type, self.error_types):
            return False

        message = f"{self.default_message}: {exc_val}"
        getattr(logger, self.log_level)(message)
        if self.wrap_as is not None:
            raise self.wrap_as(message) from exc_val
        return False
