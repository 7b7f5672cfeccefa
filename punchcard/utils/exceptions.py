"""
Custom exceptions for Punchcard loyalty logic.

These exceptions provide more specific error handling than generic Exception,
allowing for better error messages and appropriate HTTP status codes.
"""


class PunchcardError(Exception):
    """Base exception for all loyalty business logic errors."""

    def __init__(self, message: str, code: str = "PUNCHCARD_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class NotFoundError(PunchcardError):
    """Resource not found."""

    def __init__(self, resource: str, identifier=None):
        self.resource = resource
        self.identifier = identifier
        message = f"{resource} not found"
        if identifier:
            message = f"{resource} with ID {identifier} not found"
        super().__init__(message, f"{resource.upper()}_NOT_FOUND")


class RewardNotFoundError(NotFoundError):
    """Reward not found."""

    def __init__(self, identifier=None):
        super().__init__("Reward", identifier)


class OfferNotFoundError(NotFoundError):
    """Offer not found."""

    def __init__(self, identifier=None):
        super().__init__("Offer", identifier)


class ValidationError(PunchcardError):
    """Invalid input data."""

    def __init__(self, message: str, field: str = None):
        self.field = field
        code = f"INVALID_{field.upper()}" if field else "VALIDATION_ERROR"
        super().__init__(message, code)


class StateError(PunchcardError):
    """Operation not allowed in the resource's current state."""

    def __init__(self, message: str, current_state: str = None):
        self.current_state = current_state
        super().__init__(message, "INVALID_STATE")


class InvalidStatusTransitionError(StateError):
    """Invalid status transition for a resource."""

    def __init__(self, resource: str, from_status: str, to_status: str):
        self.from_status = from_status
        self.to_status = to_status
        message = f"Cannot change {resource} status from '{from_status}' to '{to_status}'"
        super().__init__(message, from_status)
        self.code = "INVALID_STATUS_TRANSITION"


class ConflictError(PunchcardError):
    """Resource already exists or is claimed by another resource."""

    def __init__(self, message: str, conflicts: list = None):
        self.conflicts = conflicts or []
        super().__init__(message, "CONFLICT")


class ExternalServiceError(PunchcardError):
    """Error communicating with the POS platform."""

    def __init__(self, message: str, original_error: Exception = None, status_code: int = None):
        self.original_error = original_error
        self.status_code = status_code
        super().__init__(message, "EXTERNAL_SERVICE_ERROR")


class ConfigurationError(PunchcardError):
    """Application configuration error."""

    def __init__(self, message: str):
        super().__init__(message, "CONFIGURATION_ERROR")
