"""Exceptions raised by the orchestration engine."""

from __future__ import annotations


class EngineError(Exception):
    """Base class for engine failures."""


class MediaNotFoundError(EngineError, LookupError):
    """The media item or its file could not be found."""


class ProfileNotFoundError(EngineError, LookupError):
    """No active destination profile is configured."""


class NoCurrentItemError(EngineError, LookupError):
    """The status store has no current media item selected."""


class RuntimeUnavailableError(EngineError):
    """Subprocesses cannot be spawned in this environment."""
