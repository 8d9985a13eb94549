# broker/sts/__init__.py
"""
STS 역할 위임 모듈

주요 구성 요소:
- RoleAssumptionClient: AssumeRole + 에러 분류
- BaseIdentity / BaseCredentialProvider: 컨트롤러 기본 자격증명
- RetryPolicy: 주입 가능한 재시도 정책

Note:
    이 모듈은 Lazy Import 패턴을 사용합니다.
"""

__all__ = [
    # Client
    "RoleAssumptionClient",
    "get_client",
    "session_name_for",
    # Identity
    "BaseIdentity",
    "BaseCredentialProvider",
    # Retry
    "RetryPolicy",
    "DEFAULT_RETRY_POLICY",
    "NO_RETRY_POLICY",
    "ErrorCategory",
    "categorize_error",
    "get_error_code",
    "is_retryable",
]

_IMPORT_MAPPING = {
    "RoleAssumptionClient": (".client", "RoleAssumptionClient"),
    "get_client": (".client", "get_client"),
    "session_name_for": (".client", "session_name_for"),
    "BaseIdentity": (".identity", "BaseIdentity"),
    "BaseCredentialProvider": (".identity", "BaseCredentialProvider"),
    "RetryPolicy": (".retry", "RetryPolicy"),
    "DEFAULT_RETRY_POLICY": (".retry", "DEFAULT_RETRY_POLICY"),
    "NO_RETRY_POLICY": (".retry", "NO_RETRY_POLICY"),
    "ErrorCategory": (".retry", "ErrorCategory"),
    "categorize_error": (".retry", "categorize_error"),
    "get_error_code": (".retry", "get_error_code"),
    "is_retryable": (".retry", "is_retryable"),
}


def __getattr__(name: str):
    """Lazy import - 실제 사용 시점에만 모듈 로드"""
    if name in _IMPORT_MAPPING:
        module_name, attr_name = _IMPORT_MAPPING[name]
        import importlib

        module = importlib.import_module(module_name, __name__)
        return getattr(module, attr_name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
