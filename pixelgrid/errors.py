"""Error taxonomy shared by the store, authorities and workflow."""

from enum import Enum


class Rejection(str, Enum):
    """Why the authority (or a local precondition) refused an action."""

    ALREADY_CLAIMED = "already_claimed"
    NOT_OWNER = "not_owner"
    INSUFFICIENT_FEE_CONFIRMATION = "insufficient_fee_confirmation"
    UNKNOWN_CELL = "unknown_cell"
    MINT_LIMIT = "mint_limit"
    PENDING = "pending"
    INVALID_REQUEST = "invalid_request"


class PixelGridError(Exception):
    """Base class. Every error here is recoverable by the next sync cycle."""

    reason: Rejection | None = None

    def __init__(self, message: str, reason: Rejection | None = None, cell_id=None):
        super().__init__(message)
        if reason is not None:
            self.reason = reason
        self.cell_id = cell_id


class ValidationError(PixelGridError):
    """Malformed coordinates, unknown cell, bad request. Nothing was changed."""

    reason = Rejection.INVALID_REQUEST


class ConflictError(PixelGridError):
    """Cell already claimed, not owned by the requester, or busy."""

    reason = Rejection.ALREADY_CLAIMED


class FeeConfirmationError(PixelGridError):
    """The authority did not accept the payment proof for the action."""

    reason = Rejection.INSUFFICIENT_FEE_CONFIRMATION


class TransientNetworkError(PixelGridError):
    """Poll, push or submission channel unreachable."""


class AuthorityTimeout(PixelGridError):
    """Submission sent but not confirmed in time; the outcome is unknown."""
