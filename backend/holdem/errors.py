"""Engine error taxonomy."""

from __future__ import annotations


class EngineError(Exception):
    """Base class for everything the round controller can complain about."""


class InvalidActor(EngineError):
    """An action arrived from a seat that is not the active one."""


class IllegalAction(EngineError):
    """The action breaks a betting rule in the current context."""


class MalformedState(EngineError):
    """An invariant of the game state has already been broken.

    This means a programming defect, not a bad client request.
    """
