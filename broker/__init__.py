# broker/__init__.py
"""
broker - 네임스페이스 단위 자격증명 브로커

하나의 컨트롤러 프로세스가 여러 테넌트 계정의 리소스를 관리할 때,
조정마다 어떤 계정의 어떤 역할을 사용할지 결정하고 단기 자격증명을
안전하게 발급/캐시해 리소스 로직에 전달합니다.

아키텍처:
    broker/
    ├── types/          # TenantKey, RoleReference, Credential, RoleLookup
    ├── mapping/        # 테넌트 매핑 저장소 + ConfigMap 감시자
    ├── resolver/       # 네임스페이스 annotation → TenantKey
    ├── sts/            # AssumeRole 클라이언트, 기본 자격증명, 재시도 정책
    ├── cache/          # single-flight 자격증명 캐시
    ├── adapter.py      # 조정 어댑터 (전체 흐름 + requeue 결정)
    ├── config.py       # 중앙 설정 관리
    └── exceptions.py   # TRANSIENT / PERMANENT 예외 계층

Usage:
    from broker import build_adapter

    adapter = build_adapter()
    credential = adapter.resolve_credentials("marketing", bucket_manifest)

Note:
    이 모듈은 Lazy Import 패턴을 사용합니다.
"""

__all__ = [
    # Adapter
    "ReconciliationAdapter",
    "ReconcileTarget",
    "ResolvedCredentials",
    "ReconcileOutcome",
    "RequeueDecision",
    "build_adapter",
    # Components
    "TenantMappingStore",
    "TenantResolver",
    "RoleAssumptionClient",
    "CredentialCache",
    # Types
    "TenantKey",
    "RoleReference",
    "Credential",
    "BASE_IDENTITY",
    # Config / Errors
    "Settings",
    "BrokerError",
    "ErrorClass",
]

_IMPORT_MAPPING = {
    "ReconciliationAdapter": ("broker.adapter", "ReconciliationAdapter"),
    "ReconcileTarget": ("broker.adapter", "ReconcileTarget"),
    "ResolvedCredentials": ("broker.adapter", "ResolvedCredentials"),
    "ReconcileOutcome": ("broker.adapter", "ReconcileOutcome"),
    "RequeueDecision": ("broker.adapter", "RequeueDecision"),
    "build_adapter": ("broker.adapter", "build_adapter"),
    "TenantMappingStore": ("broker.mapping.store", "TenantMappingStore"),
    "TenantResolver": ("broker.resolver.resolver", "TenantResolver"),
    "RoleAssumptionClient": ("broker.sts.client", "RoleAssumptionClient"),
    "CredentialCache": ("broker.cache.cache", "CredentialCache"),
    "TenantKey": ("broker.types.types", "TenantKey"),
    "RoleReference": ("broker.types.types", "RoleReference"),
    "Credential": ("broker.types.types", "Credential"),
    "BASE_IDENTITY": ("broker.types.types", "BASE_IDENTITY"),
    "Settings": ("broker.config", "Settings"),
    "BrokerError": ("broker.exceptions", "BrokerError"),
    "ErrorClass": ("broker.exceptions", "ErrorClass"),
}


def __getattr__(name: str):
    """Lazy import - 실제 사용 시점에만 모듈 로드"""
    if name in _IMPORT_MAPPING:
        module_name, attr_name = _IMPORT_MAPPING[name]
        import importlib

        module = importlib.import_module(module_name)
        return getattr(module, attr_name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
