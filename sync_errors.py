#!/usr/bin/python3
# -*- coding: utf-8 -*-
"""
Exception classes shared by the group membership tooling.

Drift (a group deleted outside of this tool) is deliberately absent from this
module: it is reported as a read result, not raised.
"""


class SyncError(Exception):
    """Base exception for all membership synchronization errors."""
    pass


class TransportError(SyncError):
    """Custom exception for API calls that could not be completed."""
    pass


class UpstreamRejected(SyncError):
    """
    Custom exception for API calls the management server answered with a failure.

    Attributes:
        command (str): The Web API command that failed (e.g. 'set-group').
        code (str): The error code reported by the server, if any.
    """
    def __init__(self, message, command=None, code=None):
        super().__init__(message)
        self.command = command
        self.code = code


class AmbiguousOrMissingMember(SyncError):
    """Custom exception for a new member that cannot be found in the set-group response."""
    pass


class PayloadError(SyncError):
    """Custom exception for API responses missing required fields or carrying wrong types."""
    pass


class InvalidIdentifier(SyncError):
    """Custom exception for composite identifiers that cannot be built or parsed."""
    pass


class ValidationError(SyncError):
    """Custom exception for invalid desired membership states."""
    pass
