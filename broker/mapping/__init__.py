# broker/mapping/__init__.py
"""
테넌트 매핑 저장소 모듈

계정 → 역할 매핑을 불변 스냅샷으로 보관하고, 설정 객체 변경을 감시합니다.

Note:
    이 모듈은 Lazy Import 패턴을 사용합니다.
"""

__all__ = [
    # Store
    "TenantMappingStore",
    "MappingSnapshot",
    "parse_mapping_table",
    # Providers
    "MappingProvider",
    "StaticMappingProvider",
    "ConfigMapFileProvider",
    "MappingWatcher",
]

_IMPORT_MAPPING = {
    "TenantMappingStore": (".store", "TenantMappingStore"),
    "MappingSnapshot": (".store", "MappingSnapshot"),
    "parse_mapping_table": (".store", "parse_mapping_table"),
    "MappingProvider": (".watcher", "MappingProvider"),
    "StaticMappingProvider": (".watcher", "StaticMappingProvider"),
    "ConfigMapFileProvider": (".watcher", "ConfigMapFileProvider"),
    "MappingWatcher": (".watcher", "MappingWatcher"),
}


def __getattr__(name: str):
    """Lazy import - 실제 사용 시점에만 모듈 로드"""
    if name in _IMPORT_MAPPING:
        module_name, attr_name = _IMPORT_MAPPING[name]
        import importlib

        module = importlib.import_module(module_name, __name__)
        return getattr(module, attr_name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
