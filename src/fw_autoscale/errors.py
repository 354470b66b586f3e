"""Exception hierarchy for the autoscale core."""

from __future__ import annotations


class AutoscaleError(Exception):
    """Base class for autoscale failures."""


class RecordConflictError(AutoscaleError):
    """A conditional write was rejected because the stored record changed."""


class PersistenceError(AutoscaleError):
    """A record store read or write failed."""


class UnknownVmError(AutoscaleError):
    """The request refers to a vm the platform cannot find."""


class ElectionError(AutoscaleError):
    """A primary election could not reach a consistent result."""


class WaitTimeoutError(AutoscaleError):
    """Polling gave up before the awaited condition was met."""


class RouteUpdateError(AutoscaleError):
    """Egress traffic could not be routed through the primary."""
