"""Exception taxonomy for certificate generation."""

from __future__ import annotations


class CertificateError(Exception):
    """Base class for all certificate generation errors."""


class InputError(CertificateError):
    """Raised when a submitted payload is malformed; the job is never created."""


class ResourceLoadError(CertificateError):
    """Raised when a template or font cannot be fetched or decoded."""


class RenderError(CertificateError):
    """Raised when a single certificate fails to render."""


class ArchiveError(CertificateError):
    """Raised when the output archive cannot be written or finalized."""


class DuplicateEntryError(ArchiveError):
    """Raised when an archive entry name is appended twice."""

    def __init__(self, entry_name: str) -> None:
        super().__init__(f"Archive already contains an entry named {entry_name!r}.")
        self.entry_name = entry_name


class CancellationError(CertificateError):
    """Raised when a job is stopped before or while generating."""


class DependencyError(RuntimeError):
    """Raised when a required runtime dependency is missing."""
