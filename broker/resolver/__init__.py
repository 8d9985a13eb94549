# broker/resolver/__init__.py
"""
테넌트 해석 모듈

Note:
    이 모듈은 Lazy Import 패턴을 사용합니다.
"""

__all__ = [
    "TenantResolver",
    "NamespaceMetadataProvider",
    "StaticNamespaceMetadata",
    "NamespaceManifestProvider",
    "OWNER_ACCOUNT_ANNOTATION",
    "DEFAULT_REGION_ANNOTATION",
    "RESOURCE_REGION_ANNOTATION",
]

_IMPORT_MAPPING = {
    "TenantResolver": (".resolver", "TenantResolver"),
    "NamespaceMetadataProvider": (".resolver", "NamespaceMetadataProvider"),
    "StaticNamespaceMetadata": (".resolver", "StaticNamespaceMetadata"),
    "NamespaceManifestProvider": (".resolver", "NamespaceManifestProvider"),
    "OWNER_ACCOUNT_ANNOTATION": (".resolver", "OWNER_ACCOUNT_ANNOTATION"),
    "DEFAULT_REGION_ANNOTATION": (".resolver", "DEFAULT_REGION_ANNOTATION"),
    "RESOURCE_REGION_ANNOTATION": (".resolver", "RESOURCE_REGION_ANNOTATION"),
}


def __getattr__(name: str):
    """Lazy import - 실제 사용 시점에만 모듈 로드"""
    if name in _IMPORT_MAPPING:
        module_name, attr_name = _IMPORT_MAPPING[name]
        import importlib

        module = importlib.import_module(module_name, __name__)
        return getattr(module, attr_name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
