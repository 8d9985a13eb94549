"""
broker/adapter.py - 조정(reconciliation) 어댑터

조정 루프와 리소스 로직 사이에서 자격증명 해석 전체 흐름을 담당합니다.

    이벤트 → TenantResolver → TenantKey → TenantMappingStore → RoleReference
           → CredentialCache (조회 또는 single-flight 갱신) → Credential
           → boto3 Session/client 주입 → 리소스 로직

실패는 모두 BrokerError 로 분류되어 RequeueDecision 으로 변환됩니다.
    - TRANSIENT: 표준 requeue (REQUEUE_TRANSIENT_SECONDS)
    - PERMANENT: 느린 requeue (REQUEUE_PERMANENT_SECONDS)

Example:
    adapter = build_adapter(settings)
    outcome = adapter.reconcile(bucket_manifest, handler=sync_bucket)
    if outcome.requeue.requeue:
        queue.add_after(key, outcome.requeue.after_seconds)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

import boto3

from broker.cache.cache import Clock, CredentialCache
from broker.config import UNMAPPED_POLICY_BLOCK, UNMAPPED_POLICY_FALLBACK, Settings
from broker.exceptions import BrokerError, ConfigurationError, ErrorClass
from broker.mapping.store import TenantMappingStore
from broker.mapping.watcher import ConfigMapFileProvider, MappingProvider, MappingWatcher
from broker.resolver.resolver import NamespaceMetadataProvider, StaticNamespaceMetadata, TenantResolver
from broker.sts.client import RoleAssumptionClient, get_client
from broker.sts.identity import BaseCredentialProvider, BaseIdentity
from broker.types.types import BASE_IDENTITY, Credential, RoleReference, TenantKey

logger = logging.getLogger(__name__)

# 리소스 로직용 client 는 botocore 재시도 사용
DOWNSTREAM_MAX_ATTEMPTS = 5

ReconcileHandler = Callable[["ResolvedCredentials", boto3.Session], Any]


# =============================================================================
# 데이터 타입
# =============================================================================


def _get(source: Any, name: str, default: Any = None) -> Any:
    if source is None:
        return default
    if isinstance(source, Mapping):
        return source.get(name, default)
    return getattr(source, name, default)


@dataclass(frozen=True)
class ReconcileTarget:
    """조정 대상 객체 요약

    Attributes:
        namespace: 네임스페이스
        name: 객체 이름
        kind: 객체 종류
        annotations: 객체 annotation
        previous_owner_account: 이전 조정 시 기록된 소유 계정
            (status.ackResourceMetadata.ownerAccountID)
    """

    namespace: str
    name: str = ""
    kind: str = ""
    annotations: Mapping[str, str] = field(default_factory=dict)
    previous_owner_account: Optional[str] = None

    @classmethod
    def from_object(cls, obj: Any, namespace: Optional[str] = None) -> ReconcileTarget:
        """Kubernetes 형식 dict 또는 metadata 속성을 가진 객체에서 생성

        Args:
            obj: 조정 대상 객체
            namespace: 네임스페이스 (지정하면 obj 의 값보다 우선)

        Raises:
            ConfigurationError: 네임스페이스를 알 수 없는 경우
        """
        if isinstance(obj, ReconcileTarget):
            return obj

        metadata = _get(obj, "metadata")
        if metadata is None:
            metadata = obj

        resolved_namespace = namespace or _get(metadata, "namespace")
        if not resolved_namespace:
            raise ConfigurationError("조정 대상의 네임스페이스를 알 수 없습니다", config_key="metadata.namespace")

        status = _get(obj, "status")
        resource_metadata = _get(status, "ackResourceMetadata")
        previous_owner = _get(resource_metadata, "ownerAccountID")

        return cls(
            namespace=resolved_namespace,
            name=_get(metadata, "name") or "",
            kind=_get(obj, "kind") or "",
            annotations=dict(_get(metadata, "annotations") or {}),
            previous_owner_account=str(previous_owner) if previous_owner else None,
        )

    def __str__(self) -> str:
        label = f"{self.namespace}/{self.name}" if self.name else self.namespace
        return f"{self.kind} {label}" if self.kind else label


@dataclass(frozen=True)
class ResolvedCredentials:
    """해석 결과 (리소스 로직에 전달)"""

    tenant_key: TenantKey
    role: RoleReference
    credential: Credential
    region: str
    endpoint_url: Optional[str] = None

    @property
    def is_base_identity(self) -> bool:
        return self.role.is_base_identity


@dataclass(frozen=True)
class RequeueDecision:
    """조정 루프 requeue 결정"""

    requeue: bool = False
    after_seconds: float = 0.0
    error_class: Optional[ErrorClass] = None
    reason: str = ""

    @classmethod
    def done(cls) -> RequeueDecision:
        return cls()

    @classmethod
    def for_error(cls, error: BrokerError, transient_seconds: float, permanent_seconds: float) -> RequeueDecision:
        after = transient_seconds if error.is_transient else permanent_seconds
        return cls(requeue=True, after_seconds=after, error_class=error.error_class, reason=str(error))


@dataclass(frozen=True)
class ReconcileOutcome:
    """reconcile() 결과"""

    target: ReconcileTarget
    resolved: Optional[ResolvedCredentials] = None
    result: Any = None
    error: Optional[BrokerError] = None
    requeue: RequeueDecision = field(default_factory=RequeueDecision.done)

    @property
    def ok(self) -> bool:
        return self.error is None


# =============================================================================
# Adapter
# =============================================================================


class ReconciliationAdapter:
    """조정 어댑터

    조정마다 테넌트를 다시 해석하므로 namespace annotation 이나 매핑 변경이
    다음 조정부터 바로 반영됩니다.
    """

    def __init__(
        self,
        resolver: TenantResolver,
        store: TenantMappingStore,
        cache: CredentialCache,
        unmapped_policy: str = UNMAPPED_POLICY_BLOCK,
        endpoint_url: Optional[str] = None,
        requeue_transient_seconds: float = 15,
        requeue_permanent_seconds: float = 300,
        session_factory: Callable[..., boto3.Session] = boto3.Session,
    ):
        self.resolver = resolver
        self.store = store
        self.cache = cache
        self.unmapped_policy = unmapped_policy
        self.endpoint_url = endpoint_url
        self.requeue_transient_seconds = requeue_transient_seconds
        self.requeue_permanent_seconds = requeue_permanent_seconds
        self._session_factory = session_factory
        self.watcher: Optional[MappingWatcher] = None

    # -------------------------------------------------------------------------
    # 해석
    # -------------------------------------------------------------------------

    def resolve_role(self, tenant_key: TenantKey) -> RoleReference:
        """매핑 스냅샷에서 역할 결정 (미매핑 외부 계정 정책 적용)

        컨트롤러 자체 계정은 매핑 조회 전에 판정합니다 (필요하면 GetCallerIdentity).

        Raises:
            ConfigurationError: 미매핑 외부 계정 (block 정책)
            BaseIdentityError: 자체 계정 확인 실패
        """
        if tenant_key.is_home(self.resolver.home_account_id):
            return BASE_IDENTITY

        lookup = self.store.resolve_role(tenant_key, self.store.snapshot())
        if lookup.is_found:
            return lookup.role

        if self.unmapped_policy == UNMAPPED_POLICY_FALLBACK:
            logger.warning(f"[{tenant_key}] 역할 매핑 없음, 기본 자격증명 사용 (fallback 정책)")
            return BASE_IDENTITY

        raise ConfigurationError(f"[{tenant_key}] {lookup.reason}", config_key="mapping")

    def _check_owner_drift(self, target: ReconcileTarget, tenant_key: TenantKey) -> None:
        previous = target.previous_owner_account
        if previous and previous != tenant_key.account_id:
            logger.warning(
                f"[{target}] 소유 계정 변경 감지: {previous} → {tenant_key.account_id} "
                "(현재 annotation 기준으로 조정, 기존 리소스는 이전 계정에 남아 있음)"
            )

    def resolve(self, target: ReconcileTarget, timeout: Optional[float] = None) -> ResolvedCredentials:
        """조정 대상의 자격증명 해석

        Args:
            target: 조정 대상
            timeout: 자격증명 대기 시간 (초)

        Raises:
            BrokerError: 분류된 실패 (TRANSIENT / PERMANENT)
        """
        tenant_key = self.resolver.resolve(target.namespace)
        self._check_owner_drift(target, tenant_key)

        role = self.resolve_role(tenant_key)
        credential = self.cache.get(tenant_key, role, timeout=timeout)
        region = self.resolver.resolve_region(target.namespace, target.annotations)

        logger.debug(f"[{target}] 자격증명 해석: {tenant_key} → {role} ({region})")
        return ResolvedCredentials(
            tenant_key=tenant_key,
            role=role,
            credential=credential,
            region=region,
            endpoint_url=self.endpoint_url,
        )

    def resolve_credentials(self, namespace: str, obj: Any = None, timeout: Optional[float] = None) -> Credential:
        """리소스 로직용 자격증명 조회

        Args:
            namespace: 조정 대상 네임스페이스
            obj: 조정 대상 객체 (옵션)
            timeout: 자격증명 대기 시간 (초)
        """
        target = ReconcileTarget.from_object(obj or {}, namespace=namespace)
        return self.resolve(target, timeout=timeout).credential

    # -------------------------------------------------------------------------
    # 주입
    # -------------------------------------------------------------------------

    def session_for(self, resolved: ResolvedCredentials) -> boto3.Session:
        """해석된 자격증명으로 boto3 Session 생성"""
        return self._session_factory(region_name=resolved.region, **resolved.credential.to_client_kwargs())

    def client_for(self, resolved: ResolvedCredentials, service_name: str, **kwargs: Any) -> Any:
        """해석된 자격증명으로 boto3 client 생성 (커스텀 엔드포인트 적용)"""
        kwargs.setdefault("endpoint_url", resolved.endpoint_url)
        kwargs.setdefault("max_attempts", DOWNSTREAM_MAX_ATTEMPTS)
        return get_client(self.session_for(resolved), service_name, region_name=resolved.region, **kwargs)

    # -------------------------------------------------------------------------
    # 조정
    # -------------------------------------------------------------------------

    def requeue_for(self, error: BrokerError) -> RequeueDecision:
        return RequeueDecision.for_error(error, self.requeue_transient_seconds, self.requeue_permanent_seconds)

    def reconcile(self, obj: Any, handler: ReconcileHandler, timeout: Optional[float] = None) -> ReconcileOutcome:
        """자격증명을 해석해 handler 호출

        해석에 실패하면 handler 를 호출하지 않고 requeue 결정을 반환합니다.
        handler 에서 발생한 예외는 그대로 전파됩니다.

        Args:
            obj: 조정 대상 객체
            handler: (ResolvedCredentials, boto3.Session) → 결과
            timeout: 자격증명 대기 시간 (초)
        """
        try:
            target = ReconcileTarget.from_object(obj)
        except ConfigurationError as e:
            return ReconcileOutcome(target=ReconcileTarget(namespace=""), error=e, requeue=self.requeue_for(e))

        try:
            resolved = self.resolve(target, timeout=timeout)
        except BrokerError as e:
            decision = self.requeue_for(e)
            if e.is_transient:
                logger.info(f"[{target}] 자격증명 일시적 실패, {decision.after_seconds}초 후 재시도: {e}")
            else:
                logger.warning(f"[{target}] 자격증명 영구 실패, {decision.after_seconds}초 후 재시도: {e}")
            return ReconcileOutcome(target=target, error=e, requeue=decision)

        result = handler(resolved, self.session_for(resolved))
        return ReconcileOutcome(target=target, resolved=resolved, result=result)

    # -------------------------------------------------------------------------
    # 수명 주기
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """매핑 감시자와 캐시 종료"""
        if self.watcher is not None:
            self.watcher.stop()
        self.cache.close()

    def __enter__(self) -> ReconciliationAdapter:
        return self

    def __exit__(self, *args) -> None:
        self.close()


# =============================================================================
# 조립
# =============================================================================


def build_adapter(
    settings: Optional[Settings] = None,
    metadata: Optional[NamespaceMetadataProvider] = None,
    mapping_provider: Optional[MappingProvider] = None,
    base_provider: Optional[BaseCredentialProvider] = None,
    assumer: Optional[RoleAssumptionClient] = None,
    clock: Optional[Clock] = None,
    start_watcher: bool = True,
) -> ReconciliationAdapter:
    """설정에서 어댑터 조립

    settings → 기본 자격증명 → 역할 위임 클라이언트 → 캐시 → 매핑 저장소(+감시자)
    → 해석기 → 어댑터 순서로 연결하고, 매핑 교체 시 캐시 정리를 등록합니다.

    Args:
        settings: 설정 (None 이면 환경변수)
        metadata: 네임스페이스 메타데이터 공급자 (None 이면 빈 메타데이터)
        mapping_provider: 매핑 공급자 (None 이면 settings.MAPPING_FILE)
        base_provider: 기본 자격증명 공급자 (테스트용)
        assumer: 역할 위임 클라이언트 (테스트용)
        clock: 캐시 시계 (테스트용)
        start_watcher: 백그라운드 폴링 시작 여부 (False 면 한 번만 로드)
    """
    if settings is None:
        settings = Settings.from_env()

    if base_provider is None:
        base_provider = BaseCredentialProvider(BaseIdentity.from_settings(settings))
    if assumer is None:
        assumer = RoleAssumptionClient.from_settings(base_provider, settings)

    store = TenantMappingStore(home_account_id=settings.HOME_ACCOUNT_ID)

    def home_account_id() -> str:
        if store.home_account_id is None:
            store.set_home_account_id(base_provider.account_id())
        return store.home_account_id or ""

    cache = CredentialCache(
        assumer,
        base_provider.credential,
        refresh_margin_seconds=settings.REFRESH_MARGIN_SECONDS,
        min_remaining_seconds=settings.MIN_REMAINING_SECONDS,
        trust_denied_backoff_seconds=settings.TRUST_DENIED_BACKOFF_SECONDS,
        max_workers=settings.REFRESH_WORKERS,
        clock=clock,
    )
    store.add_listener(lambda old, new: cache.prune(store.is_current))

    resolver = TenantResolver(
        metadata if metadata is not None else StaticNamespaceMetadata(),
        home_account_id,
        settings.DEFAULT_REGION,
    )

    adapter = ReconciliationAdapter(
        resolver,
        store,
        cache,
        unmapped_policy=settings.UNMAPPED_ACCOUNT_POLICY,
        endpoint_url=settings.ENDPOINT_URL,
        requeue_transient_seconds=settings.REQUEUE_TRANSIENT_SECONDS,
        requeue_permanent_seconds=settings.REQUEUE_PERMANENT_SECONDS,
    )

    if mapping_provider is None and settings.MAPPING_FILE:
        mapping_provider = ConfigMapFileProvider(settings.MAPPING_FILE)
    if mapping_provider is not None:
        watcher = MappingWatcher(mapping_provider, store, interval=settings.MAPPING_POLL_SECONDS)
        if start_watcher:
            watcher.start()
        else:
            watcher.poll_once()
        adapter.watcher = watcher
    else:
        logger.warning("역할 매핑 설정이 없습니다 (BROKER_MAPPING_FILE 미설정), 외부 계정은 모두 미매핑으로 처리")

    return adapter
