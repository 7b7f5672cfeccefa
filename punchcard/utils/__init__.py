"""
Utility modules for Punchcard.
"""
from .logging_config import setup_logging
from .errors import (
    ErrorCode,
    error_response,
    bad_request,
    unauthorized,
    not_found,
    conflict,
    internal_error,
    handle_loyalty_error,
)
from .exceptions import (
    PunchcardError,
    NotFoundError,
    RewardNotFoundError,
    OfferNotFoundError,
    ValidationError,
    StateError,
    InvalidStatusTransitionError,
    ConflictError,
    ExternalServiceError,
    ConfigurationError,
)
