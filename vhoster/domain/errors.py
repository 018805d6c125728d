from typing import List, Optional


class VhosterError(Exception):
    """Base class for all errors raised by vhoster components."""


class NotFound(VhosterError):
    """Unknown id, or the record's backing file no longer exists."""


class InvalidRange(VhosterError):
    """Malformed or unsatisfiable Range header."""

    def __init__(self, header: str, size: int):
        super().__init__(f"Unsatisfiable range {header!r} for {size} bytes")
        self.header = header
        self.size = size


class UploadError(VhosterError):
    """Request carried no usable file part."""


class TranscodeError(VhosterError):
    """External encoder failed; carries the tail of its diagnostic output."""

    def __init__(self, message: str, returncode: Optional[int] = None, output: Optional[List[str]] = None):
        super().__init__(message)
        self.returncode = returncode
        self.output = list(output or [])

    @property
    def diagnostics(self) -> str:
        return "\n".join(self.output)


class AlreadyExists(VhosterError):
    """A non-terminal job already exists for this id."""


class InvalidTransition(VhosterError):
    """Job state change not allowed from its current status."""


class RegistryCorruption(VhosterError):
    """Persisted metadata could not be parsed."""


class WebhookDeliveryError(VhosterError):
    """Upstream webhook rejected the payload or could not be reached.

    ``status`` is None for network-level failures.
    """

    def __init__(self, message: str, status: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


class StorageInitError(VhosterError):
    """Storage directory or metadata file could not be created at startup."""
