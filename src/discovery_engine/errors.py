"""
Error taxonomy for the discovery engine.
"""

from __future__ import annotations


class DiscoveryError(Exception):
    """Base class for engine errors."""


class InvalidRequestError(DiscoveryError, ValueError):
    """Raised for malformed requests before any retrieval work starts."""


class InvariantViolationError(DiscoveryError, RuntimeError):
    """Raised when an in-memory pipeline stage sees data it must never see."""


class BackendUnavailableError(DiscoveryError):
    """Raised by adapters when an external store cannot serve a call."""
