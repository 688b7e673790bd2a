"""
Domain exceptions for the restore engine.

Notes
-----
Core engine logic does not raise generic exceptions. Every expected failure
mode maps to a domain exception with a clear meaning so callers (CLI, HTTP
layers) can decide how to report it.
"""

from __future__ import annotations


class RestoreEngineError(RuntimeError):
    """Base exception for all restore engine failures."""


class SnapshotNotFoundError(RestoreEngineError):
    """Raised when a backup run id has no manifest."""


class ManifestError(RestoreEngineError):
    """Raised for manifest-related failures."""


class ManifestValidationError(ManifestError):
    """Raised when a manifest fails validation (missing keys, duplicate hashes)."""


class ManifestIOError(ManifestError):
    """Raised when a manifest cannot be read or written."""


class LiveStateUnavailableError(RestoreEngineError):
    """
    Raised when the live client cannot enumerate its current state.

    This is transient from the caller's perspective: retrying later may succeed.
    """


class SettingsError(RestoreEngineError):
    """Raised when the settings file is malformed."""
