"""
broker/sts/identity.py - 컨트롤러 기본 자격증명

컨트롤러가 실행되는 고정 아이덴티티(기본 자격증명)를 다룹니다.

자격증명 출처 (우선순위):
    1. 명시적 키 (BaseIdentity(access_key_id=..., secret_access_key=...))
    2. 시크릿 마운트 파일 (BROKER_CREDENTIALS_FILE + BROKER_CREDENTIALS_PROFILE)
    3. boto3 기본 자격증명 체인 (환경변수, IRSA, 인스턴스 프로파일 등)
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import boto3
import botocore.session
from botocore.exceptions import BotoCoreError, ClientError, ProfileNotFound

from broker.exceptions import BaseIdentityError, ConfigurationError, is_base_identity_error
from broker.types.types import Credential

from .client import get_client
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy

if TYPE_CHECKING:
    from broker.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BaseIdentity:
    """기본 자격증명 설정

    Attributes:
        region: 기본 리전
        endpoint_url: 커스텀 엔드포인트 (STS 포함)
        access_key_id: 명시적 액세스 키 (옵션)
        secret_access_key: 명시적 시크릿 키 (repr 제외)
        session_token: 명시적 세션 토큰 (repr 제외)
        profile: 프로파일 이름
        credentials_file: shared credentials 형식의 시크릿 마운트 파일
    """

    region: str = "us-west-2"
    endpoint_url: Optional[str] = None
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = field(default=None, repr=False)
    session_token: Optional[str] = field(default=None, repr=False)
    profile: Optional[str] = None
    credentials_file: Optional[str] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> BaseIdentity:
        return cls(
            region=settings.DEFAULT_REGION,
            endpoint_url=settings.ENDPOINT_URL,
            profile=settings.CREDENTIALS_PROFILE,
            credentials_file=settings.CREDENTIALS_FILE,
        )

    def session(self) -> boto3.Session:
        """기본 자격증명 boto3 Session 생성

        Raises:
            ConfigurationError: 자격증명 파일/프로파일을 찾을 수 없는 경우
        """
        if self.access_key_id and self.secret_access_key:
            return boto3.Session(
                aws_access_key_id=self.access_key_id,
                aws_secret_access_key=self.secret_access_key,
                aws_session_token=self.session_token,
                region_name=self.region,
            )

        botocore_session = None
        if self.credentials_file:
            if not os.path.isfile(self.credentials_file):
                raise ConfigurationError(
                    f"자격증명 파일이 없습니다: {self.credentials_file}",
                    config_key="BROKER_CREDENTIALS_FILE",
                )
            botocore_session = botocore.session.Session()
            botocore_session.set_config_variable("credentials_file", self.credentials_file)

        try:
            return boto3.Session(
                profile_name=self.profile,
                region_name=self.region,
                botocore_session=botocore_session,
            )
        except ProfileNotFound as e:
            raise ConfigurationError(
                f"프로파일을 찾을 수 없습니다: {self.profile}",
                config_key="BROKER_CREDENTIALS_PROFILE",
                cause=e,
            ) from e


class BaseCredentialProvider:
    """기본 자격증명 공급자

    boto3 Session 은 한 번만 만들고 재사용합니다 (자격증명 갱신은 boto3 가 처리).

    Thread-safe 구현.
    """

    def __init__(self, identity: BaseIdentity, retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY):
        self.identity = identity
        self.retry_policy = retry_policy
        self._session: Optional[boto3.Session] = None
        self._account_id: Optional[str] = None
        self._lock = threading.Lock()
        # GetCallerIdentity 는 프로세스당 한 번만 실행
        self._account_lock = threading.Lock()

    def session(self) -> boto3.Session:
        with self._lock:
            if self._session is None:
                self._session = self.identity.session()
            return self._session

    def credential(self) -> Credential:
        """현재 기본 자격증명

        Raises:
            BaseIdentityError: 사용할 수 있는 자격증명이 없는 경우
        """
        try:
            credentials = self.session().get_credentials()
        except ProfileNotFound as e:
            raise BaseIdentityError(f"프로파일을 찾을 수 없습니다: {self.identity.profile}", cause=e) from e
        if credentials is None:
            raise BaseIdentityError("기본 자격증명을 찾을 수 없습니다 (환경변수/파일/인스턴스 프로파일 확인)")

        frozen = credentials.get_frozen_credentials()
        if not frozen.access_key or not frozen.secret_key:
            raise BaseIdentityError("기본 자격증명이 비어 있습니다")

        # 만료 관리는 boto3 의 refreshable credentials 가 담당
        return Credential(
            access_key_id=frozen.access_key,
            secret_access_key=frozen.secret_key,
            session_token=frozen.token,
        )

    def sts_client(self) -> Any:
        """기본 자격증명 STS 클라이언트 (botocore 재시도 비활성화)"""
        return get_client(
            self.session(),
            "sts",
            region_name=self.identity.region,
            endpoint_url=self.identity.endpoint_url,
        )

    def account_id(self) -> str:
        """컨트롤러 자체 계정 ID (GetCallerIdentity, 첫 성공 후 캐시)

        Raises:
            BaseIdentityError: 기본 자격증명이 유효하지 않은 경우
        """
        if self._account_id is not None:
            return self._account_id

        with self._account_lock:
            if self._account_id is None:
                self._account_id = self._discover_account_id()
            return self._account_id

    def _discover_account_id(self) -> str:
        client = self.sts_client()
        attempt = 0
        while True:
            try:
                response = client.get_caller_identity()
                break
            except (ClientError, BotoCoreError) as e:
                if is_base_identity_error(e):
                    raise BaseIdentityError("기본 자격증명이 유효하지 않습니다", cause=e) from e
                if not self.retry_policy.should_retry(e, attempt):
                    raise BaseIdentityError("GetCallerIdentity 실패", cause=e) from e
                self.retry_policy.wait(attempt)
                attempt += 1

        account_id = response.get("Account")
        if not account_id:
            raise BaseIdentityError("GetCallerIdentity 응답에 Account 가 없습니다")

        logger.info(f"기본 자격증명 계정 확인: {account_id}")
        return account_id
