"""
Error taxonomy shared by the API and the customer client.

The API renders a TableOrderError as
``{"success": false, "error": {"code": ..., "message": ..., "details": ...}}``
and the client rebuilds the same exception class from ``code``.
"""


class TableOrderError(Exception):
    code = "ERROR"
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str | None = None, details: dict | None = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class InvalidTokenError(TableOrderError):
    code = "INVALID_TOKEN"
    status_code = 404
    default_message = "QR code is not recognized"


class InvalidSessionError(TableOrderError):
    """Session missing or cleared by staff; the diner has to rescan."""
    code = "NO_SESSION"
    status_code = 401
    default_message = "No active table session"


class SessionClearedError(InvalidSessionError):
    code = "SESSION_CLEARED"
    default_message = "Session has been cleared by staff"


class ExpiredSessionError(InvalidSessionError):
    code = "SESSION_EXPIRED"
    default_message = "Table session has expired"


class ItemUnavailableError(TableOrderError):
    code = "ITEM_UNAVAILABLE"
    status_code = 409
    default_message = "Menu item is currently unavailable"


class ValidationError(TableOrderError):
    code = "VALIDATION_ERROR"
    status_code = 400
    default_message = "Invalid request"


class EmptyCartError(ValidationError):
    code = "EMPTY_CART"
    default_message = "Cart is empty"


class NotFoundError(TableOrderError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found"


class UnauthorizedError(TableOrderError):
    code = "UNAUTHORIZED"
    status_code = 401
    default_message = "Could not validate credentials"


class NetworkError(TableOrderError):
    """Transport failure on the client side; never produced by the API."""
    code = "NETWORK_ERROR"
    status_code = 503
    default_message = "Network error"


class PaymentTimeoutError(TableOrderError):
    code = "PAYMENT_TIMEOUT"
    status_code = 410
    default_message = "Payment time expired"


class PaymentFailedError(TableOrderError):
    code = "PAYMENT_FAILED"
    status_code = 402
    default_message = "Payment failed"


_ERRORS_BY_CODE: dict[str, type[TableOrderError]] = {
    cls.code: cls
    for cls in (
        InvalidTokenError,
        InvalidSessionError,
        SessionClearedError,
        ExpiredSessionError,
        ItemUnavailableError,
        ValidationError,
        EmptyCartError,
        NotFoundError,
        UnauthorizedError,
        NetworkError,
        PaymentTimeoutError,
        PaymentFailedError,
    )
}


def error_from_payload(payload: dict | None, status_code: int | None = None) -> TableOrderError:
    """Rebuild the exception described by an error envelope."""
    payload = payload or {}
    code = payload.get("code")
    cls = _ERRORS_BY_CODE.get(code or "")
    if cls is None:
        if status_code == 401:
            cls = InvalidSessionError
        elif status_code == 404:
            cls = NotFoundError
        else:
            cls = TableOrderError
    return cls(payload.get("message"), payload.get("details"))


# Screen identifiers and messages shown to the diner, one per failure class
USER_MESSAGES: list[tuple[type[TableOrderError], str, str]] = [
    (InvalidTokenError, "invalid-qr", "This QR code is not valid. Please ask staff for help."),
    (ExpiredSessionError, "session-expired", "Your table session has expired. Please scan the QR code again."),
    (SessionClearedError, "session-cleared", "This table has been closed. Please scan the QR code again."),
    (InvalidSessionError, "no-session", "Please scan the QR code on your table to start ordering."),
    (ItemUnavailableError, "item-unavailable", "Sorry, an item in your cart is no longer available."),
    (EmptyCartError, "empty-cart", "Your cart is empty."),
    (ValidationError, "validation", "Please check your selection and try again."),
    (PaymentTimeoutError, "payment-timeout", "The payment time has run out. Please start the payment again."),
    (PaymentFailedError, "payment-failed", "The payment did not go through. Please try again."),
    (NetworkError, "network-error", "Connection problem. Check your network and try again."),
    (NotFoundError, "not-found", "We couldn't find what you were looking for."),
]


def user_message(exc: Exception) -> tuple[str, str]:
    """(screen, message) for an error; the most specific class wins."""
    for cls, screen, message in USER_MESSAGES:
        if isinstance(exc, cls):
            return screen, message
    return "error", "Something went wrong. Please try again."


def rescan_reason(exc: Exception) -> str:
    """`reason` query value of the rescan entry point (/invalid-qr)."""
    if isinstance(exc, InvalidTokenError):
        return "invalid-token"
    if isinstance(exc, ExpiredSessionError):
        return "expired"
    if isinstance(exc, SessionClearedError):
        return "cleared"
    return "no-session"
