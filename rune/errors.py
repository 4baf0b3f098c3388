"""
Error taxonomy for the Rune library core.

Every error carries a machine-readable ``code`` and a ``user_message`` that is
safe to show to an end user. The exception text itself may contain diagnostic
detail and is meant for the log.
"""

from typing import Optional


class RuneError(Exception):
    """Base class for all library core errors."""

    code = "error"
    user_message = "Something went wrong."

    def __init__(self, message: str = "", user_message: Optional[str] = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class ValidationError(RuneError):
    """Malformed input, such as a search query or continuation cursor."""

    code = "invalid_input"
    user_message = "Invalid request."


class NotFoundError(RuneError):
    """The requested image or model does not exist."""

    code = "not_found"
    user_message = "Not found."


class PathSafetyError(RuneError):
    """A resolved file path escapes the library root."""

    code = "unsafe_path"
    user_message = "Invalid image path."


class StorageError(RuneError):
    """The index engine is missing required features or is too old."""

    code = "storage"
    user_message = "The library index cannot be opened."


class RuntimeUnavailableError(RuneError):
    """The inference runtime cannot be used or installed."""

    code = "runtime_unavailable"
    user_message = "The AI runtime is unavailable."


class BinaryNotInstalledError(RuntimeUnavailableError):
    code = "binary_not_installed"
    user_message = "The AI runtime is not installed."


class ServerUnreachableError(RuntimeUnavailableError):
    code = "server_unreachable"
    user_message = "The AI runtime is not responding."


class GenerationError(RuneError):
    """The model call failed or answered with an explicit error."""

    code = "generation_failed"
    user_message = "Tag generation failed."


class CancellationError(RuneError):
    """A download was cancelled by the user."""

    code = "cancelled"
    user_message = "Download cancelled."
