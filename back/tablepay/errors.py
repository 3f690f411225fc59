class PaymentError(Exception):
    """Base error for the payment core. Carries the HTTP status it maps to."""
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)


class InvalidRequestError(PaymentError):
    """Missing or invalid input, or a resource that is not ready yet."""
    status_code = 400


class NotFoundError(PaymentError):
    status_code = 404


class RateLimitedError(PaymentError):
    status_code = 429


class UpstreamError(PaymentError):
    """Gateway or database failure; the message is passed through as-is."""
    status_code = 500


def describe_validation_errors(errors: list) -> str:
    """First pydantic error as a user-facing message, e.g. 'Requête invalide : cart.0.quantity ...'"""
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    return " ".join(part for part in ("Requête invalide :", field, first.get("msg", "")) if part)
