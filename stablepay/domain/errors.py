from __future__ import annotations

from typing import Optional


class PaymentRequestError(Exception):
    """Base class for payment-request lifecycle errors."""

    kind = "error"

    def __init__(self, message: str = "", *, request_id: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.kind)
        self.request_id = request_id

    @property
    def message(self) -> str:
        return str(self.args[0]) if self.args else ""


class ValidationError(PaymentRequestError):
    """Invalid amount, currency or merchant data."""

    kind = "validation_error"


class PaymentMismatchError(ValidationError):
    """Paid amount or currency does not match the request."""

    kind = "payment_mismatch"


class NotFoundError(PaymentRequestError):
    """Invalid code."""

    kind = "not_found"


class ForbiddenError(PaymentRequestError):
    """Only the merchant who created the request may cancel it."""

    kind = "forbidden"


class ConflictError(PaymentRequestError):
    """
    The stored status differs from the expected one.
    Store-level signal; the engine translates it into a RequestClosedError.
    """

    kind = "conflict"

    def __init__(self, message: str = "", *, request_id: Optional[str] = None, current_status=None) -> None:
        super().__init__(message, request_id=request_id)
        self.current_status = current_status


class RequestClosedError(ConflictError):
    """The request is no longer pending."""

    kind = "request_closed"


class AlreadySettledError(RequestClosedError):
    """This code was already paid."""

    kind = "already_settled"


class RequestExpiredError(RequestClosedError):
    """This code has expired, request a new one."""

    kind = "expired"


class RequestCancelledError(RequestClosedError):
    """This code was cancelled by the merchant."""

    kind = "cancelled"


class DuplicateIdError(PaymentRequestError):
    """Request id already present in the store."""

    kind = "duplicate_id"


class InvalidTransitionError(PaymentRequestError):
    """Mutation would break the lifecycle invariants."""

    kind = "invalid_transition"


class MalformedPayloadError(PaymentRequestError):
    """Payment code could not be read."""

    kind = "malformed_payload"
