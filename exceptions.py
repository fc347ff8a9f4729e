# marketplace_workflow/exceptions.py

class MarketplaceError(Exception):
    """Base for every error the core raises on purpose. Carries the HTTP status the API answers with."""
    status_code = 500

    def __init__(self, message: str, *, data: dict | None = None):
        super().__init__(message)
        self.message = message
        self.data = data or {}


class ValidationError(MarketplaceError):
    """Bad input shape or missing fields. Client-correctable, no side effects."""
    status_code = 400


class SignatureError(MarketplaceError):
    """Webhook body did not match its HMAC signature."""
    status_code = 400


class NotAuthorizedError(MarketplaceError):
    status_code = 403


class NotFoundError(MarketplaceError):
    status_code = 404


class PreconditionError(MarketplaceError):
    """Wrong state for the requested operation (stale client or lost race)."""
    status_code = 409


class CapacityError(PreconditionError):
    """Order has no free vendor slots for the requested solicitation."""


class WindowExpiredError(PreconditionError):
    """Response or payment window closed."""


class DuplicateEventError(MarketplaceError):
    """At-least-once webhook delivered again. Expected; log at info, never alert."""
    status_code = 409


class IntegrityViolation(MarketplaceError):
    """Detected mid-transaction; the whole unit of work rolls back."""
    status_code = 500


class PaymentFinalizationError(MarketplaceError):
    """
    A captured payment could not be applied to its order. The transaction was
    rolled back and a refund attempted; `refunded` says whether it went through.
    refunded=False means money is stuck and someone has to look at it.
    """
    status_code = 500

    def __init__(self, message: str, *, payment_id: str, refunded: bool, cause: str | None = None):
        super().__init__(message, data={"paymentId": payment_id, "refunded": refunded})
        self.payment_id = payment_id
        self.refunded = refunded
        self.cause = cause


class ExternalServiceError(MarketplaceError):
    """
    Raised when a gateway/carrier/push call fails and we want the caller (and
    the ops email) to see structured API details.
    """
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        api_entity: str | None = None,
        api_status: int | None = None,
        api_error_message: str | None = None,
        raw_response_text: str | None = None,
    ):
        super().__init__(message, data={"entity": api_entity, "apiStatus": api_status})
        self.api_entity = api_entity
        self.api_status = api_status
        self.api_error_message = api_error_message
        self.raw_response_text = raw_response_text
