"""Error taxonomy shared across layers."""

from __future__ import annotations


class NotFoundError(LookupError):
    """A tenant, job, tool or timezone could not be resolved."""


class ValidationError(ValueError):
    """Tool arguments did not match the tool's parameter model."""


class TransportError(RuntimeError):
    """The chat transport failed to deliver a message."""


class UpstreamError(RuntimeError):
    """The model API returned an error or an unreadable response."""
