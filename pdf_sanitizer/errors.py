"""
Exception hierarchy for the sanitization run.

Only BootstrapError and DiscoveryError abort a run. Everything else is
contained to the work item that raised it.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any


class SanitizerError(Exception):
    """Base exception for all sanitizer errors."""

    def __init__(
        self,
        message: str,
        *,
        item: Path | None = None,
        stage: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.item = item
        self.stage = stage
        self.details = details or {}
        super().__init__(message)


class BootstrapError(SanitizerError):
    """The configuration could not be created, read or validated."""


class DiscoveryError(SanitizerError):
    """Batch discovery found nothing to process."""


class EncryptionError(SanitizerError):
    """No password arrived in time, or the password did not unlock the input."""


class StageError(SanitizerError):
    """A mandatory external transform reported a failure."""


class SideActionWarning(SanitizerError):
    """A best-effort side action failed; logged only."""


class DisposalWarning(SideActionWarning):
    pass


class RelockWarning(SideActionWarning):
    pass


class SnapshotWarning(SideActionWarning):
    pass
