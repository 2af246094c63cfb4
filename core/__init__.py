# Core module - error taxonomy and resilience primitives

from .errors import (
    ErrorHandler, ErrorKind, FieldError, ToolFailure, ToolgateError,
    InputValidationError, ToolTimeoutError, HandlerMissingError,
    InvalidTransitionError, AuthenticationError
)
from .resilience import RetryPolicy, AbandonedAttempts, run_with_timeout

__all__ = [
    "ErrorHandler", "ErrorKind", "FieldError", "ToolFailure", "ToolgateError",
    "InputValidationError", "ToolTimeoutError", "HandlerMissingError",
    "InvalidTransitionError", "AuthenticationError",
    "RetryPolicy", "AbandonedAttempts", "run_with_timeout",
]
