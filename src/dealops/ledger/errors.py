"""Exception hierarchy for ledger operations.

Raised by services and the repository; the API layer maps them onto the
``{"success": false, "error": ...}`` envelope with a matching status code.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Base class for ledger failures."""

    status_code: int = 500


class InvalidInputError(LedgerError):
    """Request data is missing or malformed; nothing was written."""

    status_code = 400


class NotFoundError(LedgerError):
    """A referenced ledger record does not exist."""

    status_code = 404


class DealNotFoundError(NotFoundError):
    def __init__(self, deal_id: str) -> None:
        super().__init__(f"Deal not found: {deal_id}")
        self.deal_id = deal_id
