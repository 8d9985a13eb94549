"""
broker/exceptions.py - 자격증명 브로커 예외 계층 구조

브로커 전체에서 사용되는 예외 클래스들을 정의합니다.
모든 예외는 반환되기 전에 TRANSIENT / PERMANENT 로 분류되어
조정(reconciliation) 루프가 일관된 requeue 정책을 적용할 수 있습니다.

예외 계층 구조:
    BrokerError (베이스)
    ├── ConfigurationError (매핑 누락/오류, 미매핑 계정) - PERMANENT
    │   └── BaseIdentityError (컨트롤러 기본 자격증명 오류)
    ├── TrustDeniedError (AssumeRole 거부) - PERMANENT, 느린 requeue
    └── TransientCredentialError (일시적 실패) - TRANSIENT
        ├── ThrottledError
        ├── NetworkError
        ├── MalformedResponseError
        └── CredentialTimeoutError

Usage:
    from broker.exceptions import BrokerError, ErrorClass

    try:
        credential = adapter.resolve_credentials("marketing", obj)
    except BrokerError as e:
        if e.error_class == ErrorClass.PERMANENT:
            requeue_slowly()
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

# 기본 자격증명 자체가 잘못된 경우의 STS 에러 코드
BASE_IDENTITY_ERROR_CODES = {
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "UnrecognizedClientException",
    "MissingAuthenticationToken",
}

ACCESS_DENIED_ERROR_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedAccess",
}

THROTTLING_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "TooManyRequestsException",
    "RateExceeded",
}


class ErrorClass(Enum):
    """실패 분류

    조정 루프는 이 값만 보고 requeue 간격을 결정합니다.
    """

    TRANSIENT = "transient"  # 재시도하면 회복될 수 있음
    PERMANENT = "permanent"  # 설정/신뢰 관계 변경 전까지 계속 실패

    def __str__(self) -> str:
        return self.value


# =============================================================================
# 베이스 예외
# =============================================================================


class BrokerError(Exception):
    """자격증명 브로커 기본 예외 클래스

    Attributes:
        message: 에러 메시지
        cause: 원인 예외 (체이닝용)
        details: 추가 상세 정보 (비밀 값은 절대 포함하지 않음)
    """

    error_class: ErrorClass = ErrorClass.TRANSIENT

    def __init__(
        self,
        message: str,
        cause: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.cause = cause
        self.details = details or {}

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message}: {self.cause}"
        return self.message

    @property
    def is_transient(self) -> bool:
        """일시적 실패 여부"""
        return self.error_class == ErrorClass.TRANSIENT

    def to_dict(self) -> Dict[str, Any]:
        """예외 정보를 딕셔너리로 반환"""
        return {
            "error_type": self.__class__.__name__,
            "error_class": self.error_class.value,
            "message": self.message,
            "cause": str(self.cause) if self.cause else None,
            "details": self.details,
        }


# =============================================================================
# 설정 관련 예외
# =============================================================================


class ConfigurationError(BrokerError):
    """매핑 설정 누락/오류

    사람이 설정을 고쳐야 하는 문제이므로 브로커는 재시도하지 않습니다.

    Attributes:
        config_key: 문제가 된 설정 키 (옵션)
    """

    error_class = ErrorClass.PERMANENT

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        super().__init__(message, cause)
        self.config_key = config_key
        if config_key:
            self.details["config_key"] = config_key


class BaseIdentityError(ConfigurationError):
    """컨트롤러 기본 자격증명을 사용할 수 없음"""

    def __init__(self, message: str = "기본 자격증명을 사용할 수 없습니다", cause: Optional[Exception] = None):
        super().__init__(message, config_key="base_identity", cause=cause)


# =============================================================================
# 신뢰 관계 관련 예외
# =============================================================================


class TrustDeniedError(BrokerError):
    """AssumeRole 이 거부됨 (신뢰 관계 누락 또는 정책 거부)

    매핑이나 신뢰 정책이 바뀌기 전까지 계속 실패하므로
    느린 backoff 로 requeue 해야 합니다.

    Attributes:
        role_arn: 거부된 역할 ARN
        tenant: 테넌트 키 문자열
    """

    error_class = ErrorClass.PERMANENT

    def __init__(
        self,
        role_arn: str,
        tenant: str = "",
        error_code: Optional[str] = None,
        cause: Optional[Exception] = None,
    ):
        message = f"역할 위임 거부 [{tenant}]: {role_arn}"
        if error_code:
            message = f"{message} ({error_code})"
        super().__init__(message, cause)
        self.role_arn = role_arn
        self.tenant = tenant
        self.error_code = error_code
        self.details.update({"role_arn": role_arn, "tenant": tenant, "error_code": error_code})


# =============================================================================
# 일시적 실패
# =============================================================================


class TransientCredentialError(BrokerError):
    """일시적 실패 - 표준 requeue 대상"""

    error_class = ErrorClass.TRANSIENT


class ThrottledError(TransientCredentialError):
    """재시도 예산을 모두 소진한 쓰로틀링"""

    def __init__(self, operation: str, attempts: int, cause: Optional[Exception] = None):
        super().__init__(f"{operation} 쓰로틀링 ({attempts}회 시도)", cause)
        self.operation = operation
        self.attempts = attempts
        self.details.update({"operation": operation, "attempts": attempts})


class NetworkError(TransientCredentialError):
    """재시도 예산을 모두 소진한 네트워크/서비스 오류"""

    def __init__(self, operation: str, attempts: int, cause: Optional[Exception] = None):
        super().__init__(f"{operation} 네트워크 오류 ({attempts}회 시도)", cause)
        self.operation = operation
        self.attempts = attempts
        self.details.update({"operation": operation, "attempts": attempts})


class MalformedResponseError(TransientCredentialError):
    """STS 응답 형식이 올바르지 않음 (해당 호출은 재시도하지 않음)"""

    def __init__(self, operation: str, missing: str):
        super().__init__(f"{operation} 응답 형식 오류: '{missing}' 없음")
        self.operation = operation
        self.details.update({"operation": operation, "missing": missing})


class CredentialTimeoutError(TransientCredentialError):
    """호출자의 대기 시간 초과 (진행 중인 갱신은 취소되지 않음)"""

    def __init__(self, tenant: str, timeout: float):
        super().__init__(f"자격증명 대기 시간 초과 [{tenant}]: {timeout:.1f}초")
        self.tenant = tenant
        self.timeout = timeout
        self.details.update({"tenant": tenant, "timeout": timeout})


# =============================================================================
# 예외 유틸리티 함수
# =============================================================================


def _error_code(error: Exception) -> str:
    if isinstance(error, TrustDeniedError):
        return error.error_code or ""
    response = getattr(error, "response", None)
    if isinstance(response, dict):
        return response.get("Error", {}).get("Code", "")
    return ""


def is_access_denied(error: Exception) -> bool:
    """액세스 거부 오류인지 확인

    Args:
        error: 확인할 예외

    Returns:
        액세스 거부 오류이면 True
    """
    if isinstance(error, TrustDeniedError):
        return True
    return _error_code(error) in ACCESS_DENIED_ERROR_CODES


def is_throttling(error: Exception) -> bool:
    """스로틀링 오류인지 확인"""
    if isinstance(error, ThrottledError):
        return True
    return _error_code(error) in THROTTLING_ERROR_CODES


def is_base_identity_error(error: Exception) -> bool:
    """기본 자격증명 오류인지 확인"""
    if isinstance(error, BaseIdentityError):
        return True
    return _error_code(error) in BASE_IDENTITY_ERROR_CODES


def format_error_for_user(error: Exception) -> str:
    """사용자에게 표시할 에러 메시지 포맷팅

    Args:
        error: 예외

    Returns:
        사용자 친화적인 에러 메시지
    """
    if isinstance(error, BrokerError):
        return f"[{error.error_class}] {error}"

    code = _error_code(error)
    if code:
        friendly_messages = {
            "AccessDenied": "역할 위임 권한이 없습니다. 신뢰 정책을 확인하세요.",
            "ExpiredToken": "기본 자격증명 토큰이 만료되었습니다.",
            "InvalidClientTokenId": "잘못된 기본 자격증명입니다.",
            "Throttling": "요청이 너무 많습니다. 잠시 후 다시 시도하세요.",
        }
        return friendly_messages.get(code, code)

    return str(error)
