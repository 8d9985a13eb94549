"""
broker/config.py - 중앙 설정 관리

환경변수(프로세스 설정 주입)에서 브로커 설정을 읽어 불변 Settings 로 제공합니다.
비밀 값(액세스 키 등)은 이 모듈에서 다루지 않고 boto3 자격증명 체인 또는
BROKER_CREDENTIALS_FILE 시크릿 마운트에서 읽습니다.

Usage:
    from broker.config import Settings, get_default_region

    region = get_default_region()
    settings = Settings.from_env()  # 잘못된 값이면 ConfigurationError
    margin = settings.REFRESH_MARGIN_SECONDS

    # 테스트/임베딩: 명시적 생성
    custom = Settings.from_env({"BROKER_HOME_ACCOUNT_ID": "111111111111"})
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from importlib import metadata
from typing import Mapping, Optional

from broker.exceptions import ConfigurationError
from broker.types.types import is_valid_account_id

DEFAULT_REGION = "us-west-2"

UNMAPPED_POLICY_BLOCK = "block"
UNMAPPED_POLICY_FALLBACK = "fallback"
VALID_UNMAPPED_POLICIES = (UNMAPPED_POLICY_BLOCK, UNMAPPED_POLICY_FALLBACK)

# STS AssumeRole DurationSeconds 하한/상한
STS_MIN_DURATION_SECONDS = 900
STS_MAX_DURATION_SECONDS = 43200

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


# =============================================================================
# 환경변수 헬퍼
# =============================================================================


def get_env_str(name: str, default: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> Optional[str]:
    """문자열 환경변수 (빈 문자열은 미설정으로 취급)"""
    source = os.environ if env is None else env
    value = source.get(name)
    if value is None or not value.strip():
        return default
    return value.strip()


def get_env_int(name: str, default: int, env: Optional[Mapping[str, str]] = None) -> int:
    """정수 환경변수

    Raises:
        ConfigurationError: 정수로 변환할 수 없는 경우
    """
    raw = get_env_str(name, env=env)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"정수 값이 필요합니다: '{raw}'", config_key=name, cause=e) from e


def get_env_float(name: str, default: float, env: Optional[Mapping[str, str]] = None) -> float:
    """실수 환경변수"""
    raw = get_env_str(name, env=env)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ConfigurationError(f"숫자 값이 필요합니다: '{raw}'", config_key=name, cause=e) from e


def get_env_bool(name: str, default: bool, env: Optional[Mapping[str, str]] = None) -> bool:
    """불리언 환경변수 (1/true/yes/on, 0/false/no/off)"""
    raw = get_env_str(name, env=env)
    if raw is None:
        return default
    lowered = raw.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ConfigurationError(f"불리언 값이 필요합니다: '{raw}'", config_key=name)


def get_default_region(env: Optional[Mapping[str, str]] = None) -> str:
    """기본 리전 (AWS_REGION → AWS_DEFAULT_REGION → us-west-2)"""
    return get_env_str("AWS_REGION", env=env) or get_env_str("AWS_DEFAULT_REGION", env=env) or DEFAULT_REGION


def get_version() -> str:
    """패키지 버전, 설치되지 않은 경우 dev"""
    try:
        return metadata.version("aws-tenant-broker")
    except metadata.PackageNotFoundError:  # pragma: no cover - 소스 체크아웃
        return "0.0.0-dev"


# =============================================================================
# 로깅 설정
# =============================================================================


@dataclass(frozen=True)
class LogConfig:
    """로깅 설정

    Attributes:
        level: 로그 레벨 이름 (WARNING 기본 - INFO 로그가 CLI 출력에 섞이지 않도록)
        format: basicConfig 포맷 (시간/레벨은 RichHandler 가 표시)
        datefmt: 날짜 포맷
        rich: RichHandler 사용 여부
    """

    level: str = "WARNING"
    format: str = "%(message)s"
    datefmt: str = "%Y-%m-%d %H:%M:%S"
    rich: bool = True

    @property
    def level_number(self) -> int:
        """로그 레벨 숫자 (알 수 없는 이름이면 WARNING)"""
        level = logging.getLevelName(self.level.upper())
        return level if isinstance(level, int) else logging.WARNING


# =============================================================================
# Settings
# =============================================================================


@dataclass(frozen=True)
class Settings:
    """브로커 설정 (불변)

    Attributes:
        HOME_ACCOUNT_ID: 컨트롤러 자체 계정 (None 이면 GetCallerIdentity 로 확인)
        DEFAULT_REGION: 기본 리전
        ENDPOINT_URL: 커스텀 STS/서비스 엔드포인트
        PARTITION: AWS 파티션
        CREDENTIALS_FILE: 기본 자격증명 시크릿 마운트 (shared credentials 형식)
        CREDENTIALS_PROFILE: CREDENTIALS_FILE 내 프로파일
        SESSION_NAME_PREFIX: RoleSessionName 접두사
        SESSION_DURATION_SECONDS: 요청 세션 시간
        MAX_SESSION_DURATION_SECONDS: 요청 세션 시간 상한
        REFRESH_MARGIN_SECONDS: 만료 전 갱신 시작 여유
        MIN_REMAINING_SECONDS: 갱신 실패 시 이전 자격증명을 계속 제공할 최소 잔여 시간
        TRUST_DENIED_BACKOFF_SECONDS: AccessDenied 이후 STS 재호출 억제 시간
        RETRY_MAX: 쓰로틀링/네트워크 재시도 횟수
        RETRY_BASE_DELAY: 지수 백오프 기본 대기 (초)
        RETRY_MAX_DELAY: 지수 백오프 최대 대기 (초)
        REFRESH_WORKERS: 갱신 스레드 풀 크기
        MAPPING_FILE: 역할 매핑 ConfigMap 파일 경로
        MAPPING_POLL_SECONDS: 매핑 파일 폴링 주기
        UNMAPPED_ACCOUNT_POLICY: 매핑 없는 외부 계정 처리 (block / fallback)
        REQUEUE_TRANSIENT_SECONDS: 일시적 실패 requeue 간격
        REQUEUE_PERMANENT_SECONDS: 영구 실패 requeue 간격 (느린 backoff)
        LOG: 로깅 설정
    """

    HOME_ACCOUNT_ID: Optional[str] = None
    DEFAULT_REGION: str = DEFAULT_REGION
    ENDPOINT_URL: Optional[str] = None
    PARTITION: str = "aws"
    CREDENTIALS_FILE: Optional[str] = None
    CREDENTIALS_PROFILE: Optional[str] = None
    SESSION_NAME_PREFIX: str = "ack"
    SESSION_DURATION_SECONDS: int = 1800
    MAX_SESSION_DURATION_SECONDS: int = 3600
    REFRESH_MARGIN_SECONDS: int = 300
    MIN_REMAINING_SECONDS: int = 60
    TRUST_DENIED_BACKOFF_SECONDS: int = 300
    RETRY_MAX: int = 3
    RETRY_BASE_DELAY: float = 0.5
    RETRY_MAX_DELAY: float = 8.0
    REFRESH_WORKERS: int = 8
    MAPPING_FILE: Optional[str] = None
    MAPPING_POLL_SECONDS: int = 30
    UNMAPPED_ACCOUNT_POLICY: str = UNMAPPED_POLICY_BLOCK
    REQUEUE_TRANSIENT_SECONDS: int = 15
    REQUEUE_PERMANENT_SECONDS: int = 300
    LOG: LogConfig = field(default_factory=LogConfig)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """설정값 검증

        Raises:
            ConfigurationError: 잘못된 설정값
        """
        if self.HOME_ACCOUNT_ID is not None and not is_valid_account_id(self.HOME_ACCOUNT_ID):
            raise ConfigurationError(
                f"12자리 계정 ID 가 필요합니다: '{self.HOME_ACCOUNT_ID}'",
                config_key="BROKER_HOME_ACCOUNT_ID",
            )
        if self.UNMAPPED_ACCOUNT_POLICY not in VALID_UNMAPPED_POLICIES:
            raise ConfigurationError(
                f"허용되지 않는 정책: '{self.UNMAPPED_ACCOUNT_POLICY}' ({', '.join(VALID_UNMAPPED_POLICIES)})",
                config_key="BROKER_UNMAPPED_ACCOUNT_POLICY",
            )
        if not STS_MIN_DURATION_SECONDS <= self.MAX_SESSION_DURATION_SECONDS <= STS_MAX_DURATION_SECONDS:
            raise ConfigurationError(
                f"세션 시간 상한은 {STS_MIN_DURATION_SECONDS}~{STS_MAX_DURATION_SECONDS}초여야 합니다",
                config_key="BROKER_MAX_SESSION_DURATION_SECONDS",
            )
        non_negative = {
            "BROKER_SESSION_DURATION_SECONDS": self.SESSION_DURATION_SECONDS,
            "BROKER_REFRESH_MARGIN_SECONDS": self.REFRESH_MARGIN_SECONDS,
            "BROKER_MIN_REMAINING_SECONDS": self.MIN_REMAINING_SECONDS,
            "BROKER_TRUST_DENIED_BACKOFF_SECONDS": self.TRUST_DENIED_BACKOFF_SECONDS,
            "BROKER_RETRY_MAX": self.RETRY_MAX,
            "BROKER_RETRY_BASE_DELAY": self.RETRY_BASE_DELAY,
            "BROKER_RETRY_MAX_DELAY": self.RETRY_MAX_DELAY,
            "BROKER_REQUEUE_TRANSIENT_SECONDS": self.REQUEUE_TRANSIENT_SECONDS,
            "BROKER_REQUEUE_PERMANENT_SECONDS": self.REQUEUE_PERMANENT_SECONDS,
        }
        for key, value in non_negative.items():
            if value < 0:
                raise ConfigurationError(f"음수는 허용되지 않습니다: {value}", config_key=key)
        if self.REFRESH_WORKERS < 1:
            raise ConfigurationError("갱신 워커 수는 1 이상이어야 합니다", config_key="BROKER_REFRESH_WORKERS")
        if self.MAPPING_POLL_SECONDS < 1:
            raise ConfigurationError("폴링 주기는 1초 이상이어야 합니다", config_key="BROKER_MAPPING_POLL_SECONDS")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> Settings:
        """환경변수에서 설정 생성

        Args:
            env: 환경변수 매핑 (None 이면 os.environ)
        """
        return cls(
            HOME_ACCOUNT_ID=get_env_str("BROKER_HOME_ACCOUNT_ID", env=env),
            DEFAULT_REGION=get_default_region(env),
            ENDPOINT_URL=get_env_str("AWS_ENDPOINT_URL", env=env),
            PARTITION=get_env_str("BROKER_PARTITION", "aws", env=env) or "aws",
            CREDENTIALS_FILE=get_env_str("BROKER_CREDENTIALS_FILE", env=env),
            CREDENTIALS_PROFILE=get_env_str("BROKER_CREDENTIALS_PROFILE", env=env),
            SESSION_NAME_PREFIX=get_env_str("BROKER_SESSION_NAME_PREFIX", "ack", env=env) or "ack",
            SESSION_DURATION_SECONDS=get_env_int("BROKER_SESSION_DURATION_SECONDS", 1800, env=env),
            MAX_SESSION_DURATION_SECONDS=get_env_int("BROKER_MAX_SESSION_DURATION_SECONDS", 3600, env=env),
            REFRESH_MARGIN_SECONDS=get_env_int("BROKER_REFRESH_MARGIN_SECONDS", 300, env=env),
            MIN_REMAINING_SECONDS=get_env_int("BROKER_MIN_REMAINING_SECONDS", 60, env=env),
            TRUST_DENIED_BACKOFF_SECONDS=get_env_int("BROKER_TRUST_DENIED_BACKOFF_SECONDS", 300, env=env),
            RETRY_MAX=get_env_int("BROKER_RETRY_MAX", 3, env=env),
            RETRY_BASE_DELAY=get_env_float("BROKER_RETRY_BASE_DELAY", 0.5, env=env),
            RETRY_MAX_DELAY=get_env_float("BROKER_RETRY_MAX_DELAY", 8.0, env=env),
            REFRESH_WORKERS=get_env_int("BROKER_REFRESH_WORKERS", 8, env=env),
            MAPPING_FILE=get_env_str("BROKER_MAPPING_FILE", env=env),
            MAPPING_POLL_SECONDS=get_env_int("BROKER_MAPPING_POLL_SECONDS", 30, env=env),
            UNMAPPED_ACCOUNT_POLICY=(
                get_env_str("BROKER_UNMAPPED_ACCOUNT_POLICY", UNMAPPED_POLICY_BLOCK, env=env) or UNMAPPED_POLICY_BLOCK
            ).lower(),
            REQUEUE_TRANSIENT_SECONDS=get_env_int("BROKER_REQUEUE_TRANSIENT_SECONDS", 15, env=env),
            REQUEUE_PERMANENT_SECONDS=get_env_int("BROKER_REQUEUE_PERMANENT_SECONDS", 300, env=env),
            LOG=LogConfig(level=get_env_str("BROKER_LOG_LEVEL", "WARNING", env=env) or "WARNING"),
        )

