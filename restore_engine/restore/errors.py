from __future__ import annotations

from restore_engine.errors import RestoreEngineError


class RestoreError(RestoreEngineError):
    """Base class for restore-domain errors."""


class RestoreModeError(RestoreError):
    """Raised when a restore mode string is not one of incremental/overwrite/complete."""


class InstanceBusyError(RestoreError):
    """Raised when a restore is already executing against the same instance."""


class RestoreArtifactError(RestoreError):
    """Raised when plan/result artifacts cannot be written."""
