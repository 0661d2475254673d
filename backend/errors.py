"""
Checkout error taxonomy.

Every error carries the HTTP status the API layer answers with. Messages are
safe to return to the caller.
"""


class CheckoutError(Exception):
    """Base class for all checkout backend errors"""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConfigurationError(CheckoutError):
    """A required credential or setting is absent. Never retried."""


class CheckoutValidationError(CheckoutError):
    status_code = 400


class PersistenceError(CheckoutError):
    """The data store rejected or failed a read/write."""


class PaymentProviderError(CheckoutError):
    """Stripe returned an error or could not be reached."""


class SignatureMissingError(CheckoutError):
    status_code = 400


class SignatureInvalidError(CheckoutError):
    status_code = 400


class WebhookPayloadError(CheckoutError):
    status_code = 400


class OrderNotFoundError(CheckoutError):
    status_code = 404


class InvalidTransitionError(CheckoutError):
    status_code = 409
