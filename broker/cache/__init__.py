# broker/cache/__init__.py
"""
자격증명 캐시 모듈

Note:
    이 모듈은 Lazy Import 패턴을 사용합니다.
"""

__all__ = [
    "CredentialCache",
    "CacheEntry",
    "DenialEntry",
    "CacheStats",
    "RoleAssumer",
]

_IMPORT_MAPPING = {
    "CredentialCache": (".cache", "CredentialCache"),
    "CacheEntry": (".cache", "CacheEntry"),
    "DenialEntry": (".cache", "DenialEntry"),
    "CacheStats": (".cache", "CacheStats"),
    "RoleAssumer": (".cache", "RoleAssumer"),
}


def __getattr__(name: str):
    """Lazy import - 실제 사용 시점에만 모듈 로드"""
    if name in _IMPORT_MAPPING:
        module_name, attr_name = _IMPORT_MAPPING[name]
        import importlib

        module = importlib.import_module(module_name, __name__)
        return getattr(module, attr_name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
