from __future__ import annotations


class GradrError(RuntimeError):
    pass


class StoreUnavailable(GradrError):
    """The backing store could not be reached; retry later."""


class InvalidTransition(GradrError):
    """A status change the queue contract does not allow.

    Raised for commits without a live claim, resets of entries that are not
    stuck, and conditional updates that touched more than one row. None of
    these are retried.
    """


class ExecutorFault(GradrError):
    """The build executor could not produce any result."""
