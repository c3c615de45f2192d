"""Exceptions raised while cross matching contest logs."""

from __future__ import annotations


class CrossMatchError(Exception):
    """Base class for every error raised by this package."""


class ConfigurationError(CrossMatchError, ValueError):
    """Settings or contest scope that make a run impossible. Fatal."""


class InvalidTransition(CrossMatchError):
    """A match state change the state machine does not allow."""


class StructuralError(CrossMatchError):
    """A received exchange is missing a required field."""


class IdentityError(CrossMatchError):
    """A received callsign is unknown or cannot be attributed to a participant."""


class ConcurrencyConflict(CrossMatchError):
    """A conditional update found its row already claimed."""
