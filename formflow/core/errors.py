from __future__ import annotations


class FormflowError(Exception):
    """Base class for errors raised by the workflow and permission core."""


class NotFoundError(FormflowError):
    """A referenced submission, user or workflow does not exist."""


class InvalidStateError(FormflowError):
    """The recorded workflow state does not fit the current definition."""


class ForbiddenError(FormflowError):
    """The acting user may not perform the requested action."""


class ConcurrentUpdateError(FormflowError):
    """The record changed between load and save (revision mismatch)."""


class ValidationError(FormflowError, ValueError):
    """A stored or submitted blob does not match the expected shape."""
