"""
tests/conftest.py - pytest 공통 픽스처

환경변수 격리, 가짜 시계, 가짜 STS(역할 위임) 헬퍼를 제공합니다.

Usage:
    def test_something(clock, fake_assumer):
        cache = CredentialCache(fake_assumer, base_credential_fn, clock=clock)
        ...
"""

import os
import sys
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest

# 프로젝트 루트를 sys.path에 추가
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

from broker.exceptions import TrustDeniedError  # noqa: E402
from broker.types.types import Credential, RoleReference, TenantKey  # noqa: E402


START_TIME = datetime(2025, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# 환경 설정
# =============================================================================


@pytest.fixture(autouse=True)
def setup_test_environment(monkeypatch):
    """테스트 환경 설정 (실제 AWS 자격증명/브로커 설정 격리)"""
    for name in list(os.environ):
        if name.startswith("BROKER_") or name in ("AWS_PROFILE", "AWS_ENDPOINT_URL", "AWS_REGION"):
            monkeypatch.delenv(name, raising=False)

    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-west-2")
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.delenv("AWS_SESSION_TOKEN", raising=False)
    monkeypatch.delenv("AWS_SECURITY_TOKEN", raising=False)

    yield


# =============================================================================
# 시계
# =============================================================================


class FakeClock:
    """수동으로 진행하는 시계"""

    def __init__(self, start: datetime = START_TIME):
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._now = self._now + timedelta(seconds=seconds)
            return self._now


@pytest.fixture
def clock():
    """테스트용 시계 (2025-01-01T00:00:00Z 시작)"""
    return FakeClock()


# =============================================================================
# 가짜 역할 위임 클라이언트
# =============================================================================


class FakeAssumer:
    """RoleAssumptionClient 대역

    - calls: (TenantKey, RoleReference) 호출 기록
    - errors: 다음 호출에서 순서대로 발생시킬 예외
    - gate: 설정하면 호출이 gate.set() 까지 대기
    """

    def __init__(self, clock: FakeClock, duration_seconds: int = 3600):
        self.clock = clock
        self.duration_seconds = duration_seconds
        self.calls: List[tuple] = []
        self.errors: List[Exception] = []
        self.deny: set = set()
        self.gate: Optional[threading.Event] = None
        self.started = threading.Event()
        self._lock = threading.Lock()

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.calls)

    def assume_for_tenant(self, tenant_key: TenantKey, role: RoleReference) -> Credential:
        with self._lock:
            self.calls.append((tenant_key, role))
            number = len(self.calls)
            error = self.errors.pop(0) if self.errors else None

        self.started.set()
        if self.gate is not None:
            self.gate.wait(5)

        role_arn = role.to_arn(tenant_key.account_id)
        if role in self.deny:
            raise TrustDeniedError(role_arn, tenant=str(tenant_key), error_code="AccessDenied")
        if error is not None:
            raise error

        return Credential(
            access_key_id=f"ASIA{tenant_key.account_id}{number:04d}",
            secret_access_key=f"secret-{number}",
            session_token=f"token-{number}",
            expires_at=self.clock() + timedelta(seconds=self.duration_seconds),
            role_arn=role_arn,
        )


@pytest.fixture
def fake_assumer(clock):
    """가짜 역할 위임 클라이언트"""
    return FakeAssumer(clock)


BASE_CREDENTIAL = Credential(
    access_key_id="AKIABASEIDENTITY0001",
    secret_access_key="base-secret",
)


@pytest.fixture
def base_credential():
    """기본 자격증명"""
    return BASE_CREDENTIAL


# =============================================================================
# botocore 에러 헬퍼
# =============================================================================


def create_mock_client_error(
    error_code: str,
    error_message: str = "Test error",
    operation_name: str = "AssumeRole",
    status_code: int = 400,
) -> Exception:
    """ClientError 생성 헬퍼"""
    from botocore.exceptions import ClientError

    response: Dict[str, Any] = {
        "Error": {
            "Code": error_code,
            "Message": error_message,
        },
        "ResponseMetadata": {"HTTPStatusCode": status_code},
    }
    return ClientError(response, operation_name)  # type: ignore[arg-type]


def create_assume_role_response(
    expiration: Optional[datetime] = None,
    access_key_id: str = "ASIAEXAMPLE000000001",
) -> Dict[str, Any]:
    """AssumeRole 응답 생성 헬퍼"""
    return {
        "Credentials": {
            "AccessKeyId": access_key_id,
            "SecretAccessKey": "secret",
            "SessionToken": "token",
            "Expiration": expiration or (START_TIME + timedelta(hours=1)),
        },
        "AssumedRoleUser": {
            "AssumedRoleId": "AROAEXAMPLE:ack-222222222222-marketing",
            "Arn": "arn:aws:sts::222222222222:assumed-role/ack-marketing-s3/ack-222222222222-marketing",
        },
    }


# =============================================================================
# 매핑 / 네임스페이스 파일
# =============================================================================

MAPPING_CONFIGMAP = """\
apiVersion: v1
kind: ConfigMap
metadata:
  name: ack-role-account-map
  namespace: ack-system
data:
  "222222222222": role/ack-marketing-s3
  "333333333333.payments": arn:aws:iam::333333333333:role/ack-payments
"""

NAMESPACES_LIST = """\
apiVersion: v1
kind: List
items:
  - apiVersion: v1
    kind: Namespace
    metadata:
      name: marketing
      annotations:
        services.k8s.aws/owner-account-id: "222222222222"
  - apiVersion: v1
    kind: Namespace
    metadata:
      name: payments
      annotations:
        services.k8s.aws/owner-account-id: "333333333333"
        services.k8s.aws/default-region: eu-west-1
  - apiVersion: v1
    kind: Namespace
    metadata:
      name: default
  - apiVersion: v1
    kind: Namespace
    metadata:
      name: rogue
      annotations:
        services.k8s.aws/owner-account-id: "444444444444"
"""


@pytest.fixture
def mapping_file(tmp_path):
    """ack-role-account-map ConfigMap 파일"""
    path = tmp_path / "ack-role-account-map.yaml"
    path.write_text(MAPPING_CONFIGMAP, encoding="utf-8")
    return path


@pytest.fixture
def namespaces_file(tmp_path):
    """Namespace 매니페스트 파일"""
    path = tmp_path / "namespaces.yaml"
    path.write_text(NAMESPACES_LIST, encoding="utf-8")
    return path


# =============================================================================
# moto 통합
# =============================================================================


@pytest.fixture
def aws_credentials(monkeypatch):
    """moto 사용 시 AWS 자격 증명 설정"""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-west-2")


@pytest.fixture
def moto_sts(aws_credentials):
    """moto를 사용한 STS 모킹"""
    import moto

    with moto.mock_aws():
        yield


@pytest.fixture
def make_client_error():
    """ClientError 생성 함수"""
    return create_mock_client_error


@pytest.fixture
def make_assume_response():
    """AssumeRole 응답 생성 함수"""
    return create_assume_role_response
