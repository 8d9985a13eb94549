# broker/types/__init__.py
"""
자격증명 브로커의 공통 데이터 타입

Note:
    이 모듈은 Lazy Import 패턴을 사용합니다.
"""

__all__ = [
    # Keys
    "TenantKey",
    "RoleReference",
    "BASE_IDENTITY",
    # Data classes
    "Credential",
    "MappingRecord",
    "RoleLookup",
    # Enums
    "RecordOrigin",
    # Validators
    "is_valid_account_id",
    "is_valid_namespace",
]

_IMPORT_MAPPING = {
    "TenantKey": (".types", "TenantKey"),
    "RoleReference": (".types", "RoleReference"),
    "BASE_IDENTITY": (".types", "BASE_IDENTITY"),
    "Credential": (".types", "Credential"),
    "MappingRecord": (".types", "MappingRecord"),
    "RoleLookup": (".types", "RoleLookup"),
    "RecordOrigin": (".types", "RecordOrigin"),
    "is_valid_account_id": (".types", "is_valid_account_id"),
    "is_valid_namespace": (".types", "is_valid_namespace"),
}


def __getattr__(name: str):
    """Lazy import - 실제 사용 시점에만 모듈 로드"""
    if name in _IMPORT_MAPPING:
        module_name, attr_name = _IMPORT_MAPPING[name]
        import importlib

        module = importlib.import_module(module_name, __name__)
        return getattr(module, attr_name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
