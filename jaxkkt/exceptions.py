"""Exception hierarchy for JAX-based KKT trajectory optimization.

Only programmer errors (malformed problems, bad warm starts, invalid options)
are raised. Numerical failures inside the solve loop are reported through
``ErrorCode`` results instead.
"""

from __future__ import annotations

from .types import ErrorCode


class KKTException(Exception):
    """Base exception class for KKT trajectory optimization errors."""

    def __init__(self, message: str, error_code: ErrorCode) -> None:
        super().__init__(message)
        self.error_code = error_code
        self.message = message

    def __str__(self) -> str:
        return f"KKT Error {self.error_code.value}: {self.message}"


class DimensionError(KKTException):
    """Exception for dimension-related errors."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.DIMENSION_MISMATCH) -> None:
        super().__init__(message, error_code)


class InitializationError(KKTException):
    """Exception for problem and model construction errors."""

    def __init__(
        self, message: str, error_code: ErrorCode = ErrorCode.SOLVER_NOT_INITIALIZED
    ) -> None:
        super().__init__(message, error_code)


class DomainError(KKTException):
    """Exception for model evaluations outside their valid domain."""

    def __init__(self, message: str, error_code: ErrorCode = ErrorCode.TRIAL_STEP_FAILED) -> None:
        super().__init__(message, error_code)


def _error_code_to_string(error_code: ErrorCode) -> str:
    """Convert error code to a descriptive string."""
    error_messages = {
        ErrorCode.NO_ERROR: "no error",
        ErrorCode.DIMENSION_MISMATCH: "dimension mismatch",
        ErrorCode.BAD_INDEX: "bad index",
        ErrorCode.SOLVER_NOT_INITIALIZED: "solver not initialized",
        ErrorCode.NON_POSITIVE: "expected a positive value",
        ErrorCode.DYNAMICS_FUN_NOT_SET: "dynamics function not set",
        ErrorCode.INVALID_OPT_AT_TERMINAL_KNOT_POINT: "invalid operation at terminal knot point",
        ErrorCode.CHOLESKY_FAILED: "Cholesky factorization failed. System not positive definite",
        ErrorCode.TRIAL_STEP_FAILED: "Trial step left the valid domain of the model",
    }
    return error_messages.get(error_code, "unknown error")


def _kkt_throw(message: str, error_code: ErrorCode) -> None:
    """Raise a KKT exception carrying the given error code."""
    if error_code == ErrorCode.DIMENSION_MISMATCH:
        raise DimensionError(message, error_code)
    raise KKTException(message, error_code)
