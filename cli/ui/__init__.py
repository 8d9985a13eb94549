# cli/ui - 콘솔 출력 컴포넌트 (rich)
"""
콘솔 출력 모듈

CLI 전용 출력 함수들 (테이블, 상태 메시지, Rich 로깅)
"""

# Direct imports (rich is commonly used, no lazy import needed)
from .console import (
    SYMBOL_ERROR,
    SYMBOL_INFO,
    SYMBOL_SUCCESS,
    SYMBOL_WARNING,
    console,
    get_console,
    get_log_handler,
    print_error,
    print_info,
    print_key_values,
    print_success,
    print_table,
    print_warning,
)

__all__ = [
    "SYMBOL_ERROR",
    "SYMBOL_INFO",
    "SYMBOL_SUCCESS",
    "SYMBOL_WARNING",
    "console",
    "get_console",
    "get_log_handler",
    "print_error",
    "print_info",
    "print_key_values",
    "print_success",
    "print_table",
    "print_warning",
]
