from __future__ import annotations


class DependencyError(RuntimeError):
    """A backing service (store, directory, generation endpoint) failed for the current event."""


class SessionTransitionError(ValueError):
    """Raised when a session would move backwards through the flow."""
