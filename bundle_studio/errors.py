"""
bundle_studio/errors.py
-----------------------------------------------------------------------------
Exception hierarchy for bundle packing, unpacking, and remote transport.

``CorruptArchiveError`` and ``MalformedModelError`` subclass ``ValueError``
so callers that only care about "bad input" can keep catching ``ValueError``
the same way the zip import path always has.

Absent archive members are never an error: they mean "no change".
"""

from __future__ import annotations


class BundleError(Exception):
    """Base class for every bundle-layer failure."""


class CorruptArchiveError(BundleError, ValueError):
    """The archive bytes cannot be opened, or a member cannot be decoded."""


class MalformedModelError(BundleError, ValueError):
    """The example-model JSON is not valid JSON."""


class TransportFailureError(BundleError):
    """A list / fetch / store call against the remote bundle directory failed."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ReconcilerBusyError(BundleError):
    """Another load / save / import is already running on the bound session."""
