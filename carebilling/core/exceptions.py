"""
Custom Exception Hierarchy

Structured exceptions shared by the wallet, refund, checkout and subscription
services. Every local validation error is raised before any write; gateway
failures are raised as ExternalGatewayError so callers can tell them apart.
"""
from typing import Any
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes"""

    # General errors (1xxx)
    INTERNAL_ERROR = "ERR_1000"
    VALIDATION_ERROR = "ERR_1001"
    NOT_FOUND = "ERR_1002"
    FORBIDDEN = "ERR_1005"

    # Wallet errors (4xxx)
    WALLET_NOT_FOUND = "ERR_4001"
    INSUFFICIENT_BALANCE = "ERR_4002"
    INVALID_AMOUNT = "ERR_4003"

    # External service errors (5xxx)
    GATEWAY_ERROR = "ERR_5001"
    EXTERNAL_SERVICE_UNAVAILABLE = "ERR_5003"
    EXTERNAL_SERVICE_TIMEOUT = "ERR_5004"

    # State machine errors (6xxx)
    INVALID_STATE = "ERR_6003"


class AppException(Exception):
    """Base exception for all application errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode = ErrorCode.INTERNAL_ERROR,
        status_code: int = 500,
        details: dict[str, Any] | None = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.status_code = status_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for API response"""
        return {
            "error": {
                "code": self.error_code.value,
                "message": self.message,
                "details": self.details
            }
        }


class ValidationException(AppException):
    """Raised when input validation fails"""

    def __init__(
        self,
        message: str,
        field: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.VALIDATION_ERROR,
            status_code=400,
            details=details
        )
        if field:
            self.details["field"] = field


class NotFoundException(AppException):
    """Raised when a requested resource is not found"""

    def __init__(
        self,
        resource: str,
        identifier: Any,
        error_code: ErrorCode = ErrorCode.NOT_FOUND
    ):
        super().__init__(
            message=f"{resource} not found: {identifier}",
            error_code=error_code,
            status_code=404,
            details={"resource": resource, "identifier": str(identifier)}
        )


class ForbiddenError(AppException):
    """Raised when a user acts on a resource they do not own"""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(
            message=message,
            error_code=ErrorCode.FORBIDDEN,
            status_code=403,
            details=details
        )


class InvalidStateError(AppException):
    """Raised when an operation is not allowed in the current state"""

    def __init__(
        self,
        message: str,
        current_state: str | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=ErrorCode.INVALID_STATE,
            status_code=400,
            details=details
        )
        if current_state:
            self.details["current_state"] = current_state


class WalletException(AppException):
    """Base exception for wallet-related errors"""

    def __init__(
        self,
        message: str,
        error_code: ErrorCode,
        user_id: int | None = None,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=400,
            details=details
        )
        if user_id:
            self.details["user_id"] = user_id


class InvalidAmountError(WalletException):
    """Raised for non-positive ledger amounts"""

    def __init__(self, amount: int, user_id: int | None = None):
        super().__init__(
            message=f"Amount must be a positive integer of minor units, got {amount}",
            error_code=ErrorCode.INVALID_AMOUNT,
            user_id=user_id,
            details={"amount": amount}
        )


class InsufficientBalanceError(WalletException):
    """Raised when a debit exceeds the wallet balance"""

    def __init__(self, user_id: int, current_balance: int, required_amount: int):
        super().__init__(
            message=f"Insufficient wallet balance for user {user_id}",
            error_code=ErrorCode.INSUFFICIENT_BALANCE,
            user_id=user_id,
            details={
                "current_balance": current_balance,
                "required_amount": required_amount,
                "shortfall": required_amount - current_balance,
            }
        )


class ExternalServiceException(AppException):
    """Base exception for external service errors"""

    def __init__(
        self,
        service_name: str,
        message: str,
        error_code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_UNAVAILABLE,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            status_code=503,
            details=details
        )
        self.details["service"] = service_name


class ExternalGatewayError(ExternalServiceException):
    """Raised when the billing/payment gateway rejects a call or cannot be reached"""

    def __init__(
        self,
        message: str,
        service_name: str = "billing_gateway",
        error_code: ErrorCode = ErrorCode.GATEWAY_ERROR,
        details: dict[str, Any] | None = None
    ):
        super().__init__(
            service_name=service_name,
            message=f"Gateway error: {message}",
            error_code=error_code,
            details=details
        )

    @classmethod
    def from_response(
        cls,
        operation: str,
        response: Any,
        *,
        service_name: str = "billing_gateway",
        max_response_chars: int = 500
    ) -> "ExternalGatewayError":
        """Build an error from an HTTP response (for example an httpx.Response)."""
        status_code = getattr(response, "status_code", None)
        response_text = getattr(response, "text", "") or ""
        return cls(
            message=f"{operation} returned status {status_code}",
            service_name=service_name,
            details={
                "operation": operation,
                "status_code": status_code,
                "response_text": response_text[:max_response_chars],
            },
        )

    @classmethod
    def timeout(
        cls,
        operation: str,
        timeout_seconds: float,
        service_name: str = "billing_gateway",
    ) -> "ExternalGatewayError":
        return cls(
            message=f"{operation} timed out after {timeout_seconds}s",
            service_name=service_name,
            error_code=ErrorCode.EXTERNAL_SERVICE_TIMEOUT,
            details={"operation": operation, "timeout_seconds": timeout_seconds},
        )
