import enum

from fastapi import HTTPException, status
from typing import Optional, Dict, Any

class BaseAPIException(HTTPException):
    """Base exception for API errors"""
    def __init__(
        self,
        status_code: int,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}

        super().__init__(
            status_code=status_code,
            detail={
                "success": False,
                "error": {
                    "code": error_code,
                    "message": message,
                    "details": self.details
                }
            }
        )

    def __str__(self) -> str:  # Ensure str(e) returns the human message
        return self.message

class AuthenticationError(BaseAPIException):
    """Authentication related errors"""
    def __init__(self, message: str = "Authentication failed", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            error_code="AUTH_001",
            message=message,
            details=details
        )

class AuthorizationError(BaseAPIException):
    """Authorization related errors"""
    def __init__(self, message: str = "Access forbidden", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            error_code="AUTH_002",
            message=message,
            details=details
        )

class ValidationError(BaseAPIException):
    """Validation errors"""
    def __init__(self, message: str = "Validation failed", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            error_code="VALIDATION_001",
            message=message,
            details=details
        )

class BusinessLogicError(BaseAPIException):
    """Business logic errors"""
    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict] = None,
        status_code: int = status.HTTP_400_BAD_REQUEST,
    ):
        super().__init__(
            status_code=status_code,
            error_code=error_code,
            message=message,
            details=details
        )

class NotFoundError(BaseAPIException):
    """Resource not found errors"""
    def __init__(self, message: str = "Resource not found", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            error_code="NOT_FOUND_001",
            message=message,
            details=details
        )

class InternalServerError(BaseAPIException):
    """Internal server errors"""
    def __init__(self, message: str = "Internal server error", details: Optional[Dict] = None):
        super().__init__(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            error_code="INTERNAL_001",
            message=message,
            details=details
        )


# ==================== 메달 도메인 에러 ====================


class MedalErrorCode(str, enum.Enum):
    """호출자가 분기 처리할 수 있는 비즈니스 에러 종류"""

    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    EXCHANGE_ITEM_NOT_FOUND = "EXCHANGE_ITEM_NOT_FOUND"
    EXCHANGE_TRANSACTION_NOT_FOUND = "EXCHANGE_TRANSACTION_NOT_FOUND"
    EXCHANGE_PERIOD_EXPIRED = "EXCHANGE_PERIOD_EXPIRED"
    OUT_OF_STOCK = "OUT_OF_STOCK"
    DAILY_LIMIT_EXCEEDED = "DAILY_LIMIT_EXCEEDED"
    USER_LIMIT_EXCEEDED = "USER_LIMIT_EXCEEDED"
    INVALID_QUANTITY = "INVALID_QUANTITY"
    PAYMENT_NOT_CONFIRMED = "PAYMENT_NOT_CONFIRMED"
    PAYMENT_ALREADY_USED = "PAYMENT_ALREADY_USED"
    INVALID_DRAW_COUNT = "INVALID_DRAW_COUNT"
    INTEGRITY_VIOLATION = "INTEGRITY_VIOLATION"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"


# 결과값의 에러 코드를 HTTP 상태 코드로 변환 (나머지는 400)
ERROR_STATUS_CODES = {
    MedalErrorCode.EXCHANGE_ITEM_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    MedalErrorCode.EXCHANGE_TRANSACTION_NOT_FOUND: status.HTTP_404_NOT_FOUND,
    MedalErrorCode.PAYMENT_ALREADY_USED: status.HTTP_409_CONFLICT,
    MedalErrorCode.INTEGRITY_VIOLATION: status.HTTP_500_INTERNAL_SERVER_ERROR,
    MedalErrorCode.TRANSIENT_FAILURE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


class ServiceException(Exception):
    """Base exception for service layer errors"""

    code: MedalErrorCode = MedalErrorCode.TRANSIENT_FAILURE

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InsufficientMedalBalanceError(ServiceException):
    code = MedalErrorCode.INSUFFICIENT_BALANCE

    def __init__(self, required: int, available: int):
        super().__init__(
            f"Insufficient medal balance. Required: {required}, Available: {available}",
            {"required": required, "available": available},
        )


class InvalidMedalAmountError(ServiceException):
    code = MedalErrorCode.INVALID_AMOUNT

    def __init__(self, amount: int):
        super().__init__(f"Invalid medal amount: {amount}", {"amount": amount})


class ExchangeItemNotFoundError(ServiceException):
    code = MedalErrorCode.EXCHANGE_ITEM_NOT_FOUND

    def __init__(self, item_id: int):
        super().__init__(
            f"Exchange item with ID {item_id} not found", {"item_id": item_id}
        )


class ExchangeTransactionNotFoundError(ServiceException):
    code = MedalErrorCode.EXCHANGE_TRANSACTION_NOT_FOUND

    def __init__(self, transaction_id: int):
        super().__init__(
            f"Completed exchange transaction {transaction_id} not found",
            {"transaction_id": transaction_id},
        )


class ExchangePeriodExpiredError(ServiceException):
    code = MedalErrorCode.EXCHANGE_PERIOD_EXPIRED

    def __init__(self, item_id: int):
        super().__init__(
            f"Exchange period for item {item_id} has expired", {"item_id": item_id}
        )


class OutOfStockError(ServiceException):
    code = MedalErrorCode.OUT_OF_STOCK

    def __init__(self, item_id: int, requested: int, available: int):
        super().__init__(
            f"Exchange item {item_id} is out of stock",
            {"item_id": item_id, "requested": requested, "available": available},
        )


class InvalidExchangeQuantityError(ServiceException):
    code = MedalErrorCode.INVALID_QUANTITY

    def __init__(self, quantity: int):
        super().__init__(
            f"Exchange quantity must be at least 1, got {quantity}",
            {"quantity": quantity},
        )


class InvalidDrawCountError(ServiceException):
    code = MedalErrorCode.INVALID_DRAW_COUNT

    def __init__(self, count: int, allowed):
        super().__init__(
            f"Draw count {count} is not allowed",
            {"count": count, "allowed": list(allowed)},
        )


class ExchangeLimitExceededError(ServiceException):
    def __init__(self, limit_type: str, limit: int):
        self.code = (
            MedalErrorCode.DAILY_LIMIT_EXCEEDED
            if limit_type == "daily"
            else MedalErrorCode.USER_LIMIT_EXCEEDED
        )
        super().__init__(
            f"Exchange {limit_type} limit of {limit} exceeded",
            {"limit_type": limit_type, "limit": limit},
        )


class PaymentNotConfirmedError(ServiceException):
    code = MedalErrorCode.PAYMENT_NOT_CONFIRMED

    def __init__(self, payment_reference: str):
        super().__init__(
            f"Payment {payment_reference} could not be confirmed",
            {"payment_reference": payment_reference},
        )


class PaymentAlreadyUsedError(ServiceException):
    code = MedalErrorCode.PAYMENT_ALREADY_USED

    def __init__(self, payment_reference: str, draw_result_id: Optional[int] = None):
        super().__init__(
            f"Payment {payment_reference} has already been settled",
            {"payment_reference": payment_reference, "draw_result_id": draw_result_id},
        )


class IntegrityViolationError(ServiceException):
    """정합성 검증 배치에서만 발생 - 자동 복구하지 않음"""

    code = MedalErrorCode.INTEGRITY_VIOLATION

    def __init__(self, discrepancy_count: int, details: Optional[Dict] = None):
        super().__init__(
            f"Ledger integrity violation: {discrepancy_count} balance(s) diverge from ledger",
            details,
        )


class TransientStorageError(ServiceException):
    code = MedalErrorCode.TRANSIENT_FAILURE


class PaymentGatewayUnavailableError(ServiceException):
    """결제 시스템 장애 (통신 실패 또는 비정상 응답) - 재시도 가능"""

    code = MedalErrorCode.TRANSIENT_FAILURE

    def __init__(self, payment_reference: str, reason: str):
        super().__init__(
            f"Payment gateway unavailable while confirming {payment_reference}",
            {"payment_reference": payment_reference, "reason": reason},
        )


def raise_for_result(result) -> None:
    """실패한 결과값을 표준 API 에러 응답으로 변환"""
    if getattr(result, "success", True):
        return

    code = result.error_code or MedalErrorCode.TRANSIENT_FAILURE
    raise BusinessLogicError(
        error_code=code.value,
        message=result.message,
        details=getattr(result, "details", None) or {},
        status_code=ERROR_STATUS_CODES.get(code, status.HTTP_400_BAD_REQUEST),
    )


def failure_result(result_cls, error: ServiceException, **payload):
    """ServiceException을 서비스 결과값(success=False)으로 변환"""
    return result_cls(
        success=False,
        error_code=error.code,
        message=error.message,
        details=error.details,
        **payload,
    )
