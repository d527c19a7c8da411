"""Installer exception hierarchy.

All installer-specific exceptions inherit from InstallerError, so callers can
surface ``str(exc)`` verbatim to the end user or catch the whole family.
"""


class InstallerError(Exception):
    """Base exception for all installer errors."""

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class InstallIOError(InstallerError):
    """Filesystem operation failed (open, read, copy, remove)."""


class DigestError(InstallerError):
    """Source stream could not be read through while hashing."""


class ExtractionError(InstallerError):
    """Archive is corrupt, too large, or contains unsafe entries."""


class CloneError(InstallerError):
    """Git clone, checkout, or commit resolution failed."""

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)


class SubpathNotFoundError(InstallerError):
    """Requested sub-path does not exist in the checked-out repository."""


class ManifestError(InstallerError):
    """Bundle manifest is missing or invalid."""

    def __init__(self, message: str = "", *, problems: list[str] | None = None) -> None:
        super().__init__(message)
        self.problems = list(problems or [])


class ActivationError(InstallerError):
    """The ``current`` pointer could not be swapped."""


class ProvisioningError(InstallerError):
    """Runtime environment setup failed or the toolchain is missing."""


class InvalidRequestError(InstallerError):
    """Install request is malformed."""


class MissingFieldError(InvalidRequestError):
    """Install request lacks a field required by its source type."""


class UnsupportedSourceError(InvalidRequestError):
    """Install request names a source type other than local or git."""
