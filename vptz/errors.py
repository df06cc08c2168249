"""
Error taxonomy shared by the control surface, the session manager and the
persistence layer.
"""

from __future__ import annotations


class ControlError(RuntimeError):
    """Base class for control related errors."""


class ValidationError(ControlError):
    """Raised when an identifier or argument combination is not acceptable."""


class GeometryError(ValidationError):
    """Raised when a geometry request cannot be satisfied."""


class StoreError(ControlError):
    """Raised when the framing store fails."""


class StoreBusyError(StoreError):
    """Raised when the store stays contended after all retry attempts."""


class ProtocolError(ControlError):
    """Raised when an inbound mixer payload cannot be parsed."""
