# broker/types/types.py
"""
broker/types/types.py - 자격증명 브로커의 핵심 타입 정의

포함 항목:
    - TenantKey: 테넌트 식별 키 (계정 ID + 네임스페이스)
    - RoleReference: 역할 참조 (불투명 문자열) 및 BASE_IDENTITY 센티널
    - Credential: 임시/기본 자격증명 (비밀 값은 repr 에서 제외)
    - RecordOrigin: 매핑 항목의 출처 (계정 전역 / 네임스페이스 한정)
    - MappingRecord: 매핑 테이블의 한 항목
    - RoleLookup: 매핑 조회 결과 (found / not_found 명시적 분기)
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

# 12자리 AWS 계정 ID
ACCOUNT_ID_PATTERN = re.compile(r"^\d{12}$")

# DNS-1123 label (Kubernetes 네임스페이스 이름)
NAMESPACE_PATTERN = re.compile(r"^[a-z0-9]([-a-z0-9]{0,61}[a-z0-9])?$")

# arn:<partition>:iam::<account>:role/<path/name>
ROLE_ARN_PATTERN = re.compile(r"^arn:(aws[a-zA-Z-]*):iam::(\d{12}):role/([\w+=,.@/-]+)$")

# role/<path/name> (계정은 TenantKey 에서 결정)
SHORT_ROLE_PATTERN = re.compile(r"^role/([\w+=,.@/-]+)$")

_BASE_IDENTITY_VALUE = "<base-identity>"


def is_valid_account_id(value: Optional[str]) -> bool:
    """12자리 숫자 계정 ID 인지 확인"""
    return bool(value) and bool(ACCOUNT_ID_PATTERN.match(value or ""))


def is_valid_namespace(value: Optional[str]) -> bool:
    """Kubernetes 네임스페이스 이름 형식인지 확인"""
    return bool(value) and bool(NAMESPACE_PATTERN.match(value or ""))


# =============================================================================
# Tenant Key
# =============================================================================


@dataclass(frozen=True)
class TenantKey:
    """과금/격리 경계를 나타내는 값 타입

    캐시와 매핑 테이블의 키로 사용됩니다. 구조적 동등성을 가집니다.

    Attributes:
        account_id: 대상 AWS 계정 ID (12자리)
        namespace: 네임스페이스 이름 (옵션)
    """

    account_id: str
    namespace: Optional[str] = None

    def is_home(self, home_account_id: Optional[str]) -> bool:
        """컨트롤러 자신의 계정인지 확인"""
        return home_account_id is not None and self.account_id == home_account_id

    def without_namespace(self) -> TenantKey:
        """계정 전역 키 반환"""
        if self.namespace is None:
            return self
        return TenantKey(self.account_id)

    def __str__(self) -> str:
        if self.namespace:
            return f"{self.account_id}/{self.namespace}"
        return self.account_id


# =============================================================================
# Role Reference
# =============================================================================


@dataclass(frozen=True)
class RoleReference:
    """프로바이더 고유 역할 식별자

    전체 IAM 역할 ARN 또는 ``role/<name>`` 축약형을 받습니다.
    축약형은 ARN 생성 시점에 TenantKey 의 계정에 묶입니다.

    BASE_IDENTITY 센티널은 "역할 위임 없이 컨트롤러 자체 자격증명 사용"을
    나타내며, resolver/cache/adapter 가 같은 코드 경로를 타도록 합니다.
    """

    value: str

    @classmethod
    def base_identity(cls) -> RoleReference:
        """기본 자격증명 센티널"""
        return BASE_IDENTITY

    @classmethod
    def parse(cls, raw: str) -> RoleReference:
        """문자열에서 RoleReference 생성

        Raises:
            ValueError: ARN 도 축약형도 아닌 경우
        """
        value = (raw or "").strip()
        if ROLE_ARN_PATTERN.match(value) or SHORT_ROLE_PATTERN.match(value):
            return cls(value)
        raise ValueError(f"역할 참조 형식이 올바르지 않습니다: '{value}'")

    @property
    def is_base_identity(self) -> bool:
        return self.value == _BASE_IDENTITY_VALUE

    @property
    def is_arn(self) -> bool:
        return bool(ROLE_ARN_PATTERN.match(self.value))

    @property
    def account_id(self) -> Optional[str]:
        """ARN 에 포함된 계정 ID (축약형이면 None)"""
        match = ROLE_ARN_PATTERN.match(self.value)
        return match.group(2) if match else None

    @property
    def role_name(self) -> str:
        """경로를 제외한 역할 이름"""
        match = ROLE_ARN_PATTERN.match(self.value)
        path = match.group(3) if match else self.value.removeprefix("role/")
        return path.rsplit("/", 1)[-1]

    def to_arn(self, account_id: str, partition: str = "aws") -> str:
        """STS 호출에 사용할 역할 ARN 생성

        Args:
            account_id: 축약형일 때 사용할 계정 ID
            partition: AWS 파티션 (aws, aws-cn, aws-us-gov)

        Raises:
            ValueError: BASE_IDENTITY 센티널인 경우
        """
        if self.is_base_identity:
            raise ValueError("BASE_IDENTITY 는 ARN 으로 변환할 수 없습니다")
        if self.is_arn:
            return self.value
        return f"arn:{partition}:iam::{account_id}:{self.value}"

    def __str__(self) -> str:
        return self.value


BASE_IDENTITY = RoleReference(_BASE_IDENTITY_VALUE)


# =============================================================================
# Credential
# =============================================================================


@dataclass(frozen=True)
class Credential:
    """자격증명 세트

    이를 생성한 캐시 항목이 독점 소유합니다. 프로세스 메모리 밖에
    저장하지 않으며 로그에 남기지 않습니다 (비밀 값은 repr 제외).

    Attributes:
        access_key_id: 액세스 키 ID
        secret_access_key: 시크릿 액세스 키
        session_token: 세션 토큰 (임시 자격증명일 때)
        expires_at: 만료 시간 (UTC, None 이면 만료 정보 없음)
        role_arn: 위임된 역할 ARN (기본 자격증명이면 None)
    """

    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: Optional[str] = field(default=None, repr=False)
    expires_at: Optional[datetime] = None
    role_arn: Optional[str] = None

    def is_expired(self, now: datetime, buffer_seconds: float = 0) -> bool:
        """만료(또는 버퍼 이내) 여부"""
        if self.expires_at is None:
            return False
        return now >= self.expires_at - timedelta(seconds=buffer_seconds)

    def remaining_seconds(self, now: datetime) -> Optional[int]:
        """남은 시간(초), 만료 정보가 없으면 None"""
        if self.expires_at is None:
            return None
        return max(0, int((self.expires_at - now).total_seconds()))

    def masked_access_key(self) -> str:
        """로그/출력용 마스킹된 액세스 키"""
        key = self.access_key_id or ""
        if len(key) <= 8:
            return "****"
        return f"{key[:4]}****{key[-4:]}"

    def to_client_kwargs(self) -> dict[str, Any]:
        """boto3 Session/client 생성 인자"""
        kwargs: dict[str, Any] = {
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
        }
        if self.session_token:
            kwargs["aws_session_token"] = self.session_token
        return kwargs


# =============================================================================
# Mapping
# =============================================================================


class RecordOrigin(Enum):
    """매핑 항목 출처

    - GLOBAL: 계정 전역 항목 (키: ``<account-id>``)
    - NAMESPACE: 네임스페이스 한정 항목 (키: ``<account-id>.<namespace>``)
    """

    GLOBAL = "global"
    NAMESPACE = "namespace"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class MappingRecord:
    """매핑 테이블의 한 항목 (브로커 입장에서는 읽기 전용)"""

    tenant_key: TenantKey
    role: RoleReference
    origin: RecordOrigin = RecordOrigin.GLOBAL
    source_key: str = ""


@dataclass(frozen=True)
class RoleLookup:
    """매핑 조회 결과

    nullable 문자열 대신 명시적인 found / not_found 분기를 강제합니다.

    Example:
        lookup = store.resolve_role(key)
        if lookup.is_found:
            role = lookup.role
        else:
            logger.warning(lookup.reason)
    """

    tenant_key: TenantKey
    record: Optional[MappingRecord] = None
    reason: str = ""

    @classmethod
    def found(cls, record: MappingRecord) -> RoleLookup:
        return cls(tenant_key=record.tenant_key, record=record)

    @classmethod
    def not_found(cls, tenant_key: TenantKey, reason: str = "") -> RoleLookup:
        return cls(tenant_key=tenant_key, reason=reason or f"매핑 없음: {tenant_key}")

    @property
    def is_found(self) -> bool:
        return self.record is not None

    @property
    def found_record(self) -> MappingRecord:
        """조회된 매핑 항목

        Raises:
            LookupError: not_found 결과에서 호출한 경우
        """
        if self.record is None:
            raise LookupError(self.reason)
        return self.record

    @property
    def role(self) -> RoleReference:
        """조회된 역할

        Raises:
            LookupError: not_found 결과에서 호출한 경우
        """
        if self.record is None:
            raise LookupError(self.reason)
        return self.record.role
