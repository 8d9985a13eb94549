# broker/cache/cache.py
"""
테넌트 자격증명 캐시

- CacheEntry: TenantKey 당 하나의 자격증명 항목 (생성한 역할 포함)
- DenialEntry: AccessDenied 결과의 부정 캐시 (느린 backoff)
- CacheStats: 히트/미스/갱신 통계 (스레드 안전)
- CredentialCache: single-flight 갱신 캐시

설계 원칙:
- 읽기 경로(fast path)는 락을 잡지 않음
- 락은 진행 중인 갱신(in-flight) 관리에만 사용하고 네트워크 호출 동안에는 잡지 않음
- TenantKey 당 진행 중인 AssumeRole 호출은 최대 1개
- 항목은 통째로 교체 (부분 수정 없음)
- 갱신 실패 시 이전 항목을 버리지 않음
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from broker.exceptions import (
    CredentialTimeoutError,
    TransientCredentialError,
    TrustDeniedError,
)
from broker.types.types import Credential, RoleReference, TenantKey

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RoleAssumer(Protocol):
    """캐시가 사용하는 역할 위임 인터페이스 (RoleAssumptionClient)"""

    def assume_for_tenant(self, tenant_key: TenantKey, role: RoleReference) -> Credential: ...


# =============================================================================
# Cache Entry
# =============================================================================


@dataclass(frozen=True)
class CacheEntry:
    """캐시 항목

    Attributes:
        tenant_key: 테넌트 키
        role: 이 자격증명을 만든 역할 (매핑 변경 감지용)
        credential: 자격증명
        installed_at: 설치 시간 (UTC)
    """

    tenant_key: TenantKey
    role: RoleReference
    credential: Credential
    installed_at: datetime = field(default_factory=utc_now)

    def is_expired(self, now: datetime, buffer_seconds: float = 0) -> bool:
        """만료(또는 버퍼 이내) 여부"""
        return self.credential.is_expired(now, buffer_seconds)

    def remaining_seconds(self, now: datetime) -> Optional[int]:
        return self.credential.remaining_seconds(now)


@dataclass(frozen=True)
class DenialEntry:
    """신뢰 관계 거부 기록"""

    role: RoleReference
    error: TrustDeniedError
    until: datetime

    def is_active(self, now: datetime) -> bool:
        return now < self.until


# =============================================================================
# Stats
# =============================================================================


@dataclass
class CacheStats:
    """캐시 통계 (스레드 안전)

    Attributes:
        hits: fast path 히트
        misses: fast path 미스
        refreshes: 새로 시작한 갱신
        joins: 진행 중인 갱신에 합류
        failures: 실패한 갱신
        stale_served: 갱신 실패로 이전 자격증명 제공
        denied: 부정 캐시로 STS 호출 없이 거부
    """

    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)
    hits: int = 0
    misses: int = 0
    refreshes: int = 0
    joins: int = 0
    failures: int = 0
    stale_served: int = 0
    denied: int = 0

    @property
    def hit_rate(self) -> float:
        """캐시 히트율 (0.0 ~ 1.0)"""
        total = self.hits + self.misses
        return self.hits / total if total > 0 else 0.0

    def add(self, name: str, count: int = 1) -> None:
        """카운터 증가 (스레드 안전)

        Args:
            name: 카운터 이름 (hits, misses, ...)
            count: 증가할 횟수 (기본 1)
        """
        with self._lock:
            setattr(self, name, getattr(self, name) + count)

    def summary(self) -> str:
        """통계 요약 문자열"""
        return (
            f"hits={self.hits}, misses={self.misses}, hit_rate={self.hit_rate:.1%}, "
            f"refreshes={self.refreshes}, joins={self.joins}, failures={self.failures}, "
            f"stale_served={self.stale_served}, denied={self.denied}"
        )


# =============================================================================
# Credential Cache
# =============================================================================


class CredentialCache:
    """TenantKey → 자격증명 캐시

    만료 여유(refresh margin) 이내로 들어온 항목은 갱신하며,
    같은 TenantKey 의 동시 요청은 하나의 갱신에 합류합니다 (single-flight).

    Thread-safe 구현.

    Example:
        cache = CredentialCache(assumption_client, base_provider.credential)
        credential = cache.get(TenantKey("222222222222", "marketing"), role, timeout=10)
    """

    def __init__(
        self,
        assumer: RoleAssumer,
        base_credentials: Callable[[], Credential],
        refresh_margin_seconds: int = 300,
        min_remaining_seconds: int = 60,
        trust_denied_backoff_seconds: int = 300,
        max_workers: int = 8,
        clock: Optional[Clock] = None,
    ):
        """CredentialCache 초기화

        Args:
            assumer: 역할 위임 클라이언트
            base_credentials: 기본 자격증명 함수 (BASE_IDENTITY 용)
            refresh_margin_seconds: 만료 전 갱신 시작 여유 (초)
            min_remaining_seconds: 갱신 실패 시 이전 자격증명을 제공할 최소 잔여 시간 (초)
            trust_denied_backoff_seconds: AccessDenied 후 STS 재호출 억제 시간 (초)
            max_workers: 갱신 스레드 풀 크기
            clock: 현재 시간 함수 (테스트용)
        """
        self._assumer = assumer
        self._base_credentials = base_credentials
        self.refresh_margin_seconds = refresh_margin_seconds
        self.min_remaining_seconds = min_remaining_seconds
        self.trust_denied_backoff_seconds = trust_denied_backoff_seconds
        self._clock: Clock = clock or utc_now

        self._entries: dict[TenantKey, CacheEntry] = {}
        self._inflight: dict[TenantKey, concurrent.futures.Future[CacheEntry]] = {}
        self._denials: dict[TenantKey, DenialEntry] = {}
        self._lock = threading.RLock()
        self._executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="credential-refresh",
        )
        self._closed = False
        self.stats = CacheStats()

    # -------------------------------------------------------------------------
    # 조회
    # -------------------------------------------------------------------------

    def get(self, tenant_key: TenantKey, role: RoleReference, timeout: Optional[float] = None) -> Credential:
        """자격증명 조회 (필요하면 갱신)

        Args:
            tenant_key: 테넌트 키
            role: 매핑 스냅샷에서 조회한 역할
            timeout: 최대 대기 시간 (초, None 이면 무제한)

        Returns:
            만료 여유 밖의 자격증명 (갱신 실패 시 잔여 시간이 충분한 이전 자격증명)

        Raises:
            TrustDeniedError: 신뢰 관계 거부 (부정 캐시 포함)
            CredentialTimeoutError: 대기 시간 초과 (갱신은 계속 진행)
            BrokerError: 갱신 실패
        """
        if role.is_base_identity:
            return self._base_credentials()

        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            entry = self._entries.get(tenant_key)
            if self._is_fresh(entry, role):
                self.stats.add("hits")
                return entry.credential

            self.stats.add("misses")
            future = self._submit_or_join(tenant_key, role)

            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            try:
                result = future.result(timeout=remaining)
            except concurrent.futures.TimeoutError as e:
                logger.warning(f"[{tenant_key}] 자격증명 대기 시간 초과 ({timeout}초), 갱신은 계속 진행")
                raise CredentialTimeoutError(str(tenant_key), timeout or 0.0) from e

            if result.role == role:
                return result.credential

            # 다른 역할로 진행 중이던 갱신에 합류한 경우 → 현재 역할로 다시 갱신
            logger.debug(f"[{tenant_key}] 갱신 중 역할 변경 감지: {result.role} → {role}")

    def _is_fresh(self, entry: Optional[CacheEntry], role: RoleReference) -> bool:
        if entry is None or entry.role != role:
            return False
        return not entry.is_expired(self._clock(), self.refresh_margin_seconds)

    def peek(self, tenant_key: TenantKey) -> Optional[CacheEntry]:
        """현재 항목 (갱신 없이)"""
        return self._entries.get(tenant_key)

    # -------------------------------------------------------------------------
    # 갱신
    # -------------------------------------------------------------------------

    def _submit_or_join(self, tenant_key: TenantKey, role: RoleReference) -> concurrent.futures.Future[CacheEntry]:
        with self._lock:
            # fast path 이후 다른 갱신이 끝나 새 항목이 설치되었을 수 있음
            entry = self._entries.get(tenant_key)
            if self._is_fresh(entry, role):
                completed: concurrent.futures.Future[CacheEntry] = concurrent.futures.Future()
                completed.set_result(entry)
                return completed

            future = self._inflight.get(tenant_key)
            if future is not None and not future.done():
                self.stats.add("joins")
                return future

            denial = self._denials.get(tenant_key)
            if denial is not None and denial.role == role and denial.is_active(self._clock()):
                self.stats.add("denied")
                raise TrustDeniedError(
                    denial.error.role_arn,
                    tenant=denial.error.tenant,
                    error_code=denial.error.error_code,
                    cause=denial.error.cause,
                )

            if self._closed:
                raise TransientCredentialError(f"[{tenant_key}] 자격증명 캐시가 종료되었습니다")

            future = self._executor.submit(self._refresh, tenant_key, role)
            self._inflight[tenant_key] = future
            self.stats.add("refreshes")
            future.add_done_callback(lambda f, key=tenant_key: self._clear_inflight(key, f))
            return future

    def _clear_inflight(self, tenant_key: TenantKey, future: concurrent.futures.Future[CacheEntry]) -> None:
        with self._lock:
            if self._inflight.get(tenant_key) is future:
                del self._inflight[tenant_key]

    def _refresh(self, tenant_key: TenantKey, role: RoleReference) -> CacheEntry:
        """갱신 작업 (갱신 스레드에서 실행, 시작 시점의 역할 사용)"""
        logger.debug(f"[{tenant_key}] 자격증명 갱신 시작: {role}")
        try:
            credential = self._assumer.assume_for_tenant(tenant_key, role)
        except TrustDeniedError as e:
            self.stats.add("failures")
            until = self._clock() + timedelta(seconds=self.trust_denied_backoff_seconds)
            with self._lock:
                self._denials[tenant_key] = DenialEntry(role=role, error=e, until=until)
            raise
        except TransientCredentialError as e:
            self.stats.add("failures")
            stale = self._entries.get(tenant_key)
            now = self._clock()
            if stale is not None and stale.role == role:
                remaining = stale.remaining_seconds(now)
                if remaining is None or remaining > self.min_remaining_seconds:
                    self.stats.add("stale_served")
                    logger.warning(f"[{tenant_key}] 갱신 실패, 이전 자격증명 사용 (잔여 {remaining}초): {e}")
                    return stale
            raise
        except Exception:
            self.stats.add("failures")
            raise

        entry = CacheEntry(tenant_key=tenant_key, role=role, credential=credential, installed_at=self._clock())
        with self._lock:
            self._entries[tenant_key] = entry
            self._denials.pop(tenant_key, None)
        logger.debug(f"[{tenant_key}] 자격증명 갱신 완료 (만료: {credential.expires_at})")
        return entry

    # -------------------------------------------------------------------------
    # 관리
    # -------------------------------------------------------------------------

    def invalidate(self, tenant_key: TenantKey) -> bool:
        """특정 테넌트 항목과 거부 기록 삭제"""
        with self._lock:
            self._denials.pop(tenant_key, None)
            return self._entries.pop(tenant_key, None) is not None

    def prune(self, is_current: Callable[[TenantKey, RoleReference], bool]) -> int:
        """현재 매핑과 맞지 않는 항목 삭제

        Args:
            is_current: (TenantKey, 역할) 이 여전히 유효한지 판단하는 함수

        Returns:
            삭제된 항목 수
        """
        with self._lock:
            stale_keys = [key for key, entry in self._entries.items() if not is_current(key, entry.role)]
            for key in stale_keys:
                del self._entries[key]
            for key in [key for key, denial in self._denials.items() if not is_current(key, denial.role)]:
                del self._denials[key]

        if stale_keys:
            logger.info(f"매핑 변경으로 자격증명 {len(stale_keys)}개 삭제")
        return len(stale_keys)

    def clear(self) -> None:
        """전체 캐시 삭제 (진행 중인 갱신은 유지)"""
        with self._lock:
            self._entries.clear()
            self._denials.clear()

    def close(self, wait: bool = True) -> None:
        """갱신 스레드 풀 종료"""
        with self._lock:
            self._closed = True
        self._executor.shutdown(wait=wait)
        logger.debug(f"CredentialCache 종료: {self.stats.summary()}")

    def __len__(self) -> int:
        return len(self._entries)

    def __enter__(self) -> CredentialCache:
        return self

    def __exit__(self, *args) -> None:
        self.close()
