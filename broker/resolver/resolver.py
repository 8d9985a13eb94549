"""
broker/resolver/resolver.py - 테넌트 해석기

조정 대상 객체의 네임스페이스 메타데이터(annotation)를 읽어 TenantKey 를 결정합니다.

해석 규칙:
    1. 네임스페이스에 owner-account-id annotation 이 있고 12자리 계정 ID 이면
       TenantKey(annotation 값, 네임스페이스)
    2. 없거나 비어 있으면 TenantKey(컨트롤러 자체 계정, 네임스페이스)
       → 역할 위임 없이 기본 자격증명 사용
    3. 형식이 잘못되었으면 경고 후 (2)와 동일하게 처리

리전 해석 (리소스 → 네임스페이스 → 컨트롤러 기본값):
    - 리소스 annotation: services.k8s.aws/region
    - 네임스페이스 annotation: services.k8s.aws/default-region
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import yaml  # type: ignore[import-untyped]

from broker.exceptions import ConfigurationError, TransientCredentialError
from broker.types.types import TenantKey, is_valid_account_id

logger = logging.getLogger(__name__)

OWNER_ACCOUNT_ANNOTATION = "services.k8s.aws/owner-account-id"
DEFAULT_REGION_ANNOTATION = "services.k8s.aws/default-region"
RESOURCE_REGION_ANNOTATION = "services.k8s.aws/region"


@runtime_checkable
class NamespaceMetadataProvider(Protocol):
    """네임스페이스 메타데이터 조회 인터페이스"""

    def get_annotations(self, namespace: str) -> Optional[Mapping[str, str]]:
        """네임스페이스 annotation 반환 (네임스페이스가 없으면 None)"""
        ...


class StaticNamespaceMetadata:
    """메모리 기반 네임스페이스 메타데이터

    Example:
        metadata = StaticNamespaceMetadata({
            "marketing": {OWNER_ACCOUNT_ANNOTATION: "222222222222"},
        })
    """

    def __init__(self, namespaces: Optional[Mapping[str, Mapping[str, str]]] = None):
        self._namespaces: dict[str, dict[str, str]] = {
            name: dict(annotations or {}) for name, annotations in (namespaces or {}).items()
        }

    def set_annotations(self, namespace: str, annotations: Mapping[str, str]) -> None:
        # 항목 단위 교체
        self._namespaces[namespace] = dict(annotations)

    def get_annotations(self, namespace: str) -> Optional[Mapping[str, str]]:
        return self._namespaces.get(namespace)


class NamespaceManifestProvider(StaticNamespaceMetadata):
    """Namespace 매니페스트 파일 기반 메타데이터

    ``kubectl get ns -o yaml`` 출력(List) 또는 여러 문서로 된 YAML 을 읽습니다.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        super().__init__(self._load())

    def _load(self) -> dict[str, dict[str, str]]:
        try:
            documents = list(yaml.safe_load_all(self.path.read_text(encoding="utf-8")))
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"네임스페이스 파일을 읽을 수 없습니다: {self.path}", cause=e) from e

        items: list[dict] = []
        for document in documents:
            if not isinstance(document, dict):
                continue
            if document.get("kind") == "List" or "items" in document:
                items.extend(item for item in document.get("items") or [] if isinstance(item, dict))
            else:
                items.append(document)

        namespaces: dict[str, dict[str, str]] = {}
        for item in items:
            metadata = item.get("metadata") or {}
            name = metadata.get("name")
            if not name:
                continue
            annotations = metadata.get("annotations") or {}
            namespaces[name] = {str(k): str(v) for k, v in annotations.items()}
        return namespaces


class TenantResolver:
    """조정 대상 → TenantKey 해석기"""

    def __init__(
        self,
        metadata: NamespaceMetadataProvider,
        home_account_id: Optional[str] | Callable[[], str],
        default_region: str,
    ):
        """TenantResolver 초기화

        Args:
            metadata: 네임스페이스 메타데이터 공급자
            home_account_id: 컨트롤러 자체 계정 ID 또는 이를 반환하는 함수
                (GetCallerIdentity 지연 조회용)
            default_region: 컨트롤러 기본 리전
        """
        self.metadata = metadata
        self._home_account_id = home_account_id
        self.default_region = default_region

    @property
    def home_account_id(self) -> str:
        """컨트롤러 자체 계정 ID"""
        value = self._home_account_id() if callable(self._home_account_id) else self._home_account_id
        if not value:
            raise ConfigurationError("컨트롤러 자체 계정 ID 를 알 수 없습니다", config_key="BROKER_HOME_ACCOUNT_ID")
        return value

    def _annotations(self, namespace: str) -> Mapping[str, str]:
        try:
            annotations = self.metadata.get_annotations(namespace)
        except Exception as e:
            raise TransientCredentialError(f"네임스페이스 메타데이터 조회 실패: {namespace}", cause=e) from e
        return annotations or {}

    def owner_account(self, namespace: str) -> Optional[str]:
        """네임스페이스의 owner-account-id annotation (유효한 경우만)"""
        value = (self._annotations(namespace).get(OWNER_ACCOUNT_ANNOTATION) or "").strip()
        if not value:
            return None
        if not is_valid_account_id(value):
            logger.warning(f"[{namespace}] 잘못된 {OWNER_ACCOUNT_ANNOTATION} 값 무시: '{value}'")
            return None
        return value

    def resolve(self, namespace: str) -> TenantKey:
        """네임스페이스에서 TenantKey 결정

        Args:
            namespace: 조정 대상 객체의 네임스페이스

        Returns:
            TenantKey (annotation 이 없으면 컨트롤러 자체 계정)
        """
        account_id = self.owner_account(namespace)
        if account_id is None:
            return TenantKey(self.home_account_id, namespace)
        return TenantKey(account_id, namespace)

    def resolve_region(self, namespace: str, object_annotations: Optional[Mapping[str, str]] = None) -> str:
        """리소스 → 네임스페이스 → 컨트롤러 기본값 순서로 리전 결정"""
        region = ((object_annotations or {}).get(RESOURCE_REGION_ANNOTATION) or "").strip()
        if region:
            return region
        region = (self._annotations(namespace).get(DEFAULT_REGION_ANNOTATION) or "").strip()
        return region or self.default_region
