"""
broker/sts/retry.py - STS 호출 에러 분류 및 재시도 정책

AssumeRole / GetCallerIdentity 호출의 에러 분류, 재시도 가능 여부 판단,
지수 백오프 재시도 정책을 제공합니다.

주요 구성 요소:
- RetryPolicy: 재시도 정책 (지수 백오프 + 지터, 주입 가능한 sleep / retryable)
- categorize_error: 예외를 ErrorCategory로 분류
- get_error_code: 예외에서 에러 코드 추출
- is_retryable: 재시도 가능 여부 판단

botocore 자체 재시도는 비활성화(max_attempts=1)하고 이 정책 하나만 적용합니다.
"""

from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from botocore.exceptions import (
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from broker.exceptions import (
    ACCESS_DENIED_ERROR_CODES,
    BASE_IDENTITY_ERROR_CODES,
    THROTTLING_ERROR_CODES,
)

if TYPE_CHECKING:
    from broker.config import Settings

logger = logging.getLogger(__name__)


class ErrorCategory(Enum):
    """STS 에러 카테고리"""

    THROTTLING = "throttling"
    NETWORK = "network"
    SERVICE = "service"  # 5xx
    ACCESS_DENIED = "access_denied"
    BASE_IDENTITY = "base_identity"
    CONFIGURATION = "configuration"
    UNKNOWN = "unknown"


# 요청 자체가 잘못된 경우 (재시도 무의미)
CONFIGURATION_ERROR_CODES: set[str] = {
    "ValidationError",
    "MalformedPolicyDocument",
    "PackedPolicyTooLarge",
    "RegionDisabledException",
}

# 서비스 측 일시적 오류
SERVICE_ERROR_CODES: set[str] = {
    "ServiceUnavailable",
    "ServiceUnavailableException",
    "InternalError",
    "InternalFailure",
    "InternalServiceError",
    "RequestTimeout",
    "RequestTimeoutException",
    "IDPCommunicationError",
}

# 재시도 가능한 AWS 에러 코드
RETRYABLE_ERROR_CODES: set[str] = THROTTLING_ERROR_CODES | SERVICE_ERROR_CODES

NETWORK_EXCEPTIONS: tuple[type[BaseException], ...] = (
    EndpointConnectionError,
    ConnectionClosedError,
    ReadTimeoutError,
    ConnectTimeoutError,
    ConnectionError,
    TimeoutError,
)


def get_error_code(error: Exception) -> str:
    """예외 객체에서 에러 코드 문자열 추출

    ClientError의 경우 response에서 Code를 추출하고,
    그 외에는 예외 클래스명을 반환합니다.
    """
    response = getattr(error, "response", None)
    if isinstance(response, dict):
        code: str = response.get("Error", {}).get("Code", "Unknown")
        return code
    return error.__class__.__name__


def _http_status(error: Exception) -> int:
    response = getattr(error, "response", None)
    if isinstance(response, dict):
        return int(response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)
    return 0


def categorize_error(error: Exception) -> ErrorCategory:
    """예외 객체를 분석하여 ErrorCategory로 분류

    Args:
        error: 분류할 예외

    Returns:
        에러 카테고리
    """
    if isinstance(error, NETWORK_EXCEPTIONS):
        return ErrorCategory.NETWORK

    response = getattr(error, "response", None)
    if not isinstance(response, dict):
        return ErrorCategory.UNKNOWN

    code = get_error_code(error)
    if code in THROTTLING_ERROR_CODES:
        return ErrorCategory.THROTTLING
    if code in ACCESS_DENIED_ERROR_CODES:
        return ErrorCategory.ACCESS_DENIED
    if code in BASE_IDENTITY_ERROR_CODES:
        return ErrorCategory.BASE_IDENTITY
    if code in CONFIGURATION_ERROR_CODES:
        return ErrorCategory.CONFIGURATION
    if code in SERVICE_ERROR_CODES or _http_status(error) >= 500:
        return ErrorCategory.SERVICE
    return ErrorCategory.UNKNOWN


def is_retryable(error: Exception) -> bool:
    """재시도 가능한 에러인지 확인

    쓰로틀링, 서비스 5xx, 네트워크/타임아웃 에러인 경우 True
    """
    return categorize_error(error) in (ErrorCategory.THROTTLING, ErrorCategory.NETWORK, ErrorCategory.SERVICE)


@dataclass
class RetryPolicy:
    """재시도 정책

    Attributes:
        max_retries: 최대 재시도 횟수 (0이면 재시도 안함)
        base_delay: 기본 대기 시간 (초)
        max_delay: 최대 대기 시간 (초)
        exponential_base: 지수 백오프 밑수
        jitter: 지터 사용 여부 (대기 시간에 랜덤성 추가)
        retryable: 재시도 여부 판단 함수
        sleep: 대기 함수 (테스트에서 교체)
    """

    max_retries: int = 3
    base_delay: float = 0.5
    max_delay: float = 8.0
    exponential_base: float = 2.0
    jitter: bool = True
    retryable: Callable[[Exception], bool] = field(default=is_retryable, repr=False)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def get_delay(self, attempt: int) -> float:
        """재시도 대기 시간 계산

        Exponential backoff with optional jitter.

        Args:
            attempt: 현재 시도 횟수 (0부터 시작)

        Returns:
            대기 시간 (초)
        """
        delay = self.base_delay * (self.exponential_base**attempt)
        delay = min(delay, self.max_delay)

        if self.jitter:
            # Full jitter: [0, delay]
            delay = random.uniform(0, delay)

        return delay

    def should_retry(self, error: Exception, attempt: int) -> bool:
        """attempt 번째(0부터) 실패 후 다시 시도할지"""
        return attempt < self.max_retries and self.retryable(error)

    def wait(self, attempt: int) -> float:
        """재시도 전 대기 후 대기 시간 반환"""
        delay = self.get_delay(attempt)
        if delay > 0:
            self.sleep(delay)
        return delay

    @classmethod
    def from_settings(cls, settings: Settings) -> RetryPolicy:
        return cls(
            max_retries=settings.RETRY_MAX,
            base_delay=settings.RETRY_BASE_DELAY,
            max_delay=settings.RETRY_MAX_DELAY,
        )


# 기본 재시도 정책
DEFAULT_RETRY_POLICY = RetryPolicy()

# 재시도 없음 (테스트/CLI 단발 호출용)
NO_RETRY_POLICY = RetryPolicy(max_retries=0, jitter=False)
