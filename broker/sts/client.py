"""
broker/sts/client.py - 역할 위임(AssumeRole) 클라이언트

기본 자격증명으로 STS AssumeRole 을 호출해 테넌트 계정의 임시 자격증명을 얻습니다.
재시도/백오프는 주입된 RetryPolicy 하나로만 처리하고 (botocore 재시도 비활성화),
모든 실패는 BrokerError 계층으로 분류해 반환합니다.

주요 구성 요소:
- get_client: 타임아웃/연결 풀이 설정된 boto3 client 생성
- session_name_for: TenantKey 에서 결정적인 RoleSessionName 생성
- RoleAssumptionClient: AssumeRole 호출 + 에러 분류

Example:
    client = RoleAssumptionClient(base_provider, retry_policy=RetryPolicy(max_retries=3))
    credential = client.assume_for_tenant(TenantKey("222222222222", "marketing"), role)
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional, cast

from botocore.exceptions import BotoCoreError, ClientError

from broker.config import STS_MIN_DURATION_SECONDS
from broker.exceptions import (
    BaseIdentityError,
    ConfigurationError,
    MalformedResponseError,
    NetworkError,
    ThrottledError,
    TransientCredentialError,
    TrustDeniedError,
)
from broker.types.types import Credential, RoleReference, TenantKey

from .retry import DEFAULT_RETRY_POLICY, ErrorCategory, RetryPolicy, categorize_error, get_error_code

if TYPE_CHECKING:
    import boto3

    from broker.config import Settings

    from .identity import BaseCredentialProvider

logger = logging.getLogger(__name__)

# 기본 client 설정
DEFAULT_MAX_ATTEMPTS = 1  # 재시도는 RetryPolicy 가 담당
DEFAULT_CONNECT_TIMEOUT = 5  # 초
DEFAULT_READ_TIMEOUT = 10  # 초
DEFAULT_MAX_POOL_CONNECTIONS = 25

# RoleSessionName 제약
SESSION_NAME_MAX_LENGTH = 64
_SESSION_NAME_INVALID = re.compile(r"[^\w+=,.@-]")

ASSUME_ROLE_OPERATION = "AssumeRole"


def get_client(
    session: boto3.Session,
    service_name: str,
    region_name: str | None = None,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    connect_timeout: int = DEFAULT_CONNECT_TIMEOUT,
    read_timeout: int = DEFAULT_READ_TIMEOUT,
    max_pool_connections: int = DEFAULT_MAX_POOL_CONNECTIONS,
    **kwargs: Any,
) -> Any:
    """타임아웃이 적용된 boto3 client 생성

    Args:
        session: boto3 Session
        service_name: AWS 서비스 이름 (sts, s3 등)
        region_name: 리전 (None이면 세션 기본값)
        max_attempts: 최대 시도 횟수 (기본: 1, 재시도 없음)
        connect_timeout: 연결 타임아웃 (초)
        read_timeout: 읽기 타임아웃 (초)
        max_pool_connections: HTTP 연결 풀 크기
        **kwargs: session.client()에 전달할 추가 인자 (endpoint_url 등)

    Returns:
        boto3 client
    """
    from botocore.config import Config

    config = Config(
        retries={"max_attempts": max_attempts, "mode": "standard"},  # pyright: ignore[reportArgumentType]
        connect_timeout=connect_timeout,
        read_timeout=read_timeout,
        max_pool_connections=max_pool_connections,
    )

    # 기존 config가 있으면 병합
    if "config" in kwargs:
        existing = kwargs.pop("config")
        config = config.merge(existing)

    if kwargs.get("endpoint_url") is None:
        kwargs.pop("endpoint_url", None)

    return session.client(  # pyright: ignore[reportCallIssue]
        cast(Any, service_name),
        region_name=region_name,
        config=config,
        **kwargs,
    )


def session_name_for(tenant_key: TenantKey, prefix: str = "ack") -> str:
    """TenantKey 에서 결정적인 RoleSessionName 생성

    CloudTrail 에서 어떤 테넌트의 호출인지 추적할 수 있도록
    ``<prefix>-<account>-<namespace>`` 형식을 사용합니다.
    64자를 넘으면 잘라내고 원본 해시 8자를 붙입니다.
    """
    parts = [prefix, tenant_key.account_id]
    if tenant_key.namespace:
        parts.append(tenant_key.namespace)
    name = _SESSION_NAME_INVALID.sub("-", "-".join(parts))

    if len(name) <= SESSION_NAME_MAX_LENGTH:
        return name

    digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
    return f"{name[: SESSION_NAME_MAX_LENGTH - len(digest) - 1]}-{digest}"


def _as_utc(value: Any) -> datetime:
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if not isinstance(value, datetime):
        raise TypeError(f"datetime 이 아닙니다: {type(value).__name__}")
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RoleAssumptionClient:
    """STS AssumeRole 클라이언트

    호출은 멱등이므로 재시도해도 안전합니다.
    Thread-safe 구현 (boto3 client 는 스레드 간 공유 가능).
    """

    def __init__(
        self,
        base_provider: BaseCredentialProvider,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        partition: str = "aws",
        session_name_prefix: str = "ack",
        duration_seconds: int = 1800,
        max_duration_seconds: int = 3600,
        sts_client_factory: Optional[Callable[[], Any]] = None,
    ):
        """RoleAssumptionClient 초기화

        Args:
            base_provider: 기본 자격증명 공급자 (STS 호출 주체)
            retry_policy: 쓰로틀링/네트워크 재시도 정책
            partition: 축약형 역할 참조를 ARN 으로 만들 때 사용할 파티션
            session_name_prefix: RoleSessionName 접두사
            duration_seconds: 요청 세션 시간
            max_duration_seconds: 요청 세션 시간 상한
            sts_client_factory: STS client 생성 함수 (테스트용)
        """
        self.base_provider = base_provider
        self.retry_policy = retry_policy
        self.partition = partition
        self.session_name_prefix = session_name_prefix
        self.max_duration_seconds = max(STS_MIN_DURATION_SECONDS, max_duration_seconds)
        self.duration_seconds = self.clamp_duration(duration_seconds)
        self._sts_client_factory = sts_client_factory or base_provider.sts_client
        self._sts_client: Any = None

    @classmethod
    def from_settings(cls, base_provider: BaseCredentialProvider, settings: Settings) -> RoleAssumptionClient:
        return cls(
            base_provider,
            retry_policy=RetryPolicy.from_settings(settings),
            partition=settings.PARTITION,
            session_name_prefix=settings.SESSION_NAME_PREFIX,
            duration_seconds=settings.SESSION_DURATION_SECONDS,
            max_duration_seconds=settings.MAX_SESSION_DURATION_SECONDS,
        )

    @property
    def sts(self) -> Any:
        if self._sts_client is None:
            self._sts_client = self._sts_client_factory()
        return self._sts_client

    def clamp_duration(self, duration_seconds: Optional[int]) -> int:
        """요청 세션 시간을 [900, 상한] 범위로 보정"""
        if duration_seconds is None:
            return self.duration_seconds
        return max(STS_MIN_DURATION_SECONDS, min(int(duration_seconds), self.max_duration_seconds))

    def assume_for_tenant(self, tenant_key: TenantKey, role: RoleReference) -> Credential:
        """테넌트 역할 위임

        Args:
            tenant_key: 테넌트 키 (세션 이름, 축약형 ARN 계정)
            role: 매핑된 역할 (BASE_IDENTITY 는 허용되지 않음)
        """
        if role.is_base_identity:
            raise ValueError("BASE_IDENTITY 는 역할 위임 대상이 아닙니다")
        role_arn = role.to_arn(tenant_key.account_id, self.partition)
        session_name = session_name_for(tenant_key, self.session_name_prefix)
        return self.assume_role(role_arn, session_name, tenant=str(tenant_key))

    def assume_role(
        self,
        role_arn: str,
        session_name: str,
        duration_seconds: Optional[int] = None,
        tenant: str = "",
    ) -> Credential:
        """AssumeRole 호출

        Args:
            role_arn: 위임할 역할 ARN
            session_name: RoleSessionName
            duration_seconds: 요청 세션 시간 (None 이면 기본값)
            tenant: 로그/에러용 테넌트 문자열

        Returns:
            임시 자격증명

        Raises:
            TrustDeniedError: 신뢰 관계 거부
            BaseIdentityError: 기본 자격증명 오류
            ConfigurationError: 잘못된 요청 (역할 ARN 형식 등)
            ThrottledError: 재시도 후에도 쓰로틀링
            NetworkError: 재시도 후에도 네트워크/서비스 오류
            MalformedResponseError: 응답에 자격증명 필드 없음
        """
        duration = self.clamp_duration(duration_seconds)
        attempt = 0

        while True:
            try:
                response = self.sts.assume_role(
                    RoleArn=role_arn,
                    RoleSessionName=session_name,
                    DurationSeconds=duration,
                )
                break
            except (ClientError, BotoCoreError, ConnectionError, TimeoutError) as e:
                category = categorize_error(e)
                if category == ErrorCategory.ACCESS_DENIED:
                    logger.warning(f"[{tenant}] 역할 위임 거부: {role_arn} ({get_error_code(e)})")
                    raise TrustDeniedError(role_arn, tenant=tenant, error_code=get_error_code(e), cause=e) from e
                if category == ErrorCategory.BASE_IDENTITY:
                    raise BaseIdentityError(cause=e) from e
                if category == ErrorCategory.CONFIGURATION:
                    raise ConfigurationError(
                        f"AssumeRole 요청 오류: {role_arn} ({get_error_code(e)})",
                        config_key="role",
                        cause=e,
                    ) from e

                if self.retry_policy.should_retry(e, attempt):
                    delay = self.retry_policy.wait(attempt)
                    logger.debug(
                        f"[{tenant}] AssumeRole 재시도 {attempt + 1}/{self.retry_policy.max_retries} "
                        f"({get_error_code(e)}, {delay:.2f}초 대기)"
                    )
                    attempt += 1
                    continue

                attempts = attempt + 1
                if category == ErrorCategory.THROTTLING:
                    raise ThrottledError(ASSUME_ROLE_OPERATION, attempts, cause=e) from e
                if category in (ErrorCategory.NETWORK, ErrorCategory.SERVICE):
                    raise NetworkError(ASSUME_ROLE_OPERATION, attempts, cause=e) from e
                raise TransientCredentialError(f"AssumeRole 실패: {role_arn} ({get_error_code(e)})", cause=e) from e

        credential = self._parse_response(response, role_arn)
        logger.info(
            f"[{tenant}] 역할 위임 성공: {role_arn} "
            f"(key={credential.masked_access_key()}, expires={credential.expires_at})"
        )
        return credential

    @staticmethod
    def _parse_response(response: Any, role_arn: str) -> Credential:
        credentials = response.get("Credentials") if isinstance(response, dict) else None
        if not isinstance(credentials, dict):
            raise MalformedResponseError(ASSUME_ROLE_OPERATION, "Credentials")

        for name in ("AccessKeyId", "SecretAccessKey", "SessionToken", "Expiration"):
            if not credentials.get(name):
                raise MalformedResponseError(ASSUME_ROLE_OPERATION, name)

        try:
            expires_at = _as_utc(credentials["Expiration"])
        except (TypeError, ValueError) as e:
            raise MalformedResponseError(ASSUME_ROLE_OPERATION, "Expiration") from e

        return Credential(
            access_key_id=credentials["AccessKeyId"],
            secret_access_key=credentials["SecretAccessKey"],
            session_token=credentials["SessionToken"],
            expires_at=expires_at,
            role_arn=role_arn,
        )
