"""Exception types raised by the dispatch engine."""
from __future__ import annotations


class SendValidationError(Exception):
    """A send request is malformed; nothing was sent or stored."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class StoreConflict(Exception):
    """A store write lost a unique-constraint race and may be retried."""

    pass
