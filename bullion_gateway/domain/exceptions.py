"""Domain-specific exceptions

Every exception carries a machine-readable ``code`` and the HTTP status the
API layer answers with. Callers catch by type, clients match on ``code``.
"""


class DomainException(Exception):
    """Base exception for domain layer"""

    code = "DOMAIN_ERROR"
    status_code = 400

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__)
        self.message = message or self.__class__.__doc__


# Validation


class ValidationError(DomainException):
    """Request failed validation"""

    code = "VALIDATION_ERROR"
    status_code = 422


class InvalidSipType(ValidationError):
    """Plan type must be FIXED or FLEXIBLE"""

    code = "INVALID_SIP_TYPE"


class UnknownMetal(ValidationError):
    """Metal is not traded"""

    code = "UNKNOWN_METAL"


# Authorization / lookup


class Unauthorized(DomainException):
    """Caller does not own this resource"""

    code = "UNAUTHORIZED"
    status_code = 403


class NotFound(DomainException):
    """Resource not found"""

    code = "NOT_FOUND"
    status_code = 404


class PlanNotFound(NotFound):
    """Plan not found"""

    code = "PLAN_NOT_FOUND"


class TemplateNotFound(NotFound):
    """Plan template not found or inactive"""

    code = "TEMPLATE_NOT_FOUND"


class TransactionNotFound(NotFound):
    """Transaction not found"""

    code = "TRANSACTION_NOT_FOUND"


# State conflicts (raised inside a unit of work, which rolls back)


class StateConflict(DomainException):
    """Operation conflicts with current state"""

    code = "STATE_CONFLICT"
    status_code = 409


class NotMature(StateConflict):
    """Plan has not completed its tenure"""

    code = "NOT_MATURE"


class SipAlreadyCompleted(StateConflict):
    """Plan no longer accepts installments"""

    code = "SIP_ALREADY_COMPLETED"


class DuplicateActivePlan(StateConflict):
    """An active plan already exists for this template"""

    code = "DUPLICATE_ACTIVE_PLAN"


class InsufficientHoldings(StateConflict):
    """Requested quantity exceeds current holdings"""

    code = "INSUFFICIENT_HOLDINGS"


class InvalidPlanTransition(StateConflict):
    """Plan status transition is not allowed"""

    code = "INVALID_PLAN_TRANSITION"


class DuplicateReference(StateConflict):
    """Payment reference was already used"""

    code = "DUPLICATE_REFERENCE"


class TransactionAlreadyFinal(StateConflict):
    """Transaction already reached a terminal status"""

    code = "TRANSACTION_FINAL"


# Market gate


class MarketClosed(DomainException):
    """Market is closed"""

    code = "MARKET_CLOSED"
    status_code = 403

    def __init__(self, message: str, reason_code: str):
        super().__init__(message)
        self.code = reason_code


# Dependencies


class PriceUnavailable(DomainException):
    """No price snapshot available for this metal"""

    code = "PRICE_UNAVAILABLE"
    status_code = 503


# Deferred (offline) channel: user-correctable, never alters the pending transaction


class DeferredPaymentError(DomainException):
    """Offline payment could not be confirmed"""

    code = "DEFERRED_PAYMENT_ERROR"
    status_code = 400


class WrongChannel(DeferredPaymentError):
    """Not an offline transaction"""

    code = "WRONG_CHANNEL"


class AlreadyVerified(DeferredPaymentError):
    """Transaction already verified"""

    code = "ALREADY_VERIFIED"


class InvalidCode(DeferredPaymentError):
    """Invalid one-time code"""

    code = "INVALID_CODE"


class Expired(DeferredPaymentError):
    """One-time code expired"""

    code = "CODE_EXPIRED"
