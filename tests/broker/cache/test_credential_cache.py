# tests/broker/cache/test_credential_cache.py
"""
broker/cache/cache.py 단위 테스트

single-flight 갱신, 만료 여유, 이전 자격증명 제공, 부정 캐시, 타임아웃 테스트.
"""

import threading
import time
from datetime import timedelta

import pytest

from broker.cache.cache import CacheEntry, CacheStats, CredentialCache, DenialEntry
from broker.exceptions import (
    CredentialTimeoutError,
    NetworkError,
    ThrottledError,
    TransientCredentialError,
    TrustDeniedError,
)
from broker.types import BASE_IDENTITY, Credential, RoleReference, TenantKey

KEY = TenantKey("222222222222", "marketing")
OTHER_KEY = TenantKey("333333333333", "payments")
ROLE = RoleReference("role/ack-marketing-s3")
NEW_ROLE = RoleReference("role/ack-marketing-s3-v2")


@pytest.fixture
def cache(fake_assumer, base_credential, clock):
    cache = CredentialCache(
        fake_assumer,
        lambda: base_credential,
        refresh_margin_seconds=300,
        min_remaining_seconds=60,
        trust_denied_backoff_seconds=300,
        clock=clock,
    )
    yield cache
    if fake_assumer.gate is not None:
        fake_assumer.gate.set()
    cache.close()


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return False


# =============================================================================
# 기본 동작
# =============================================================================


class TestCacheBasics:
    """조회 / 히트 / 기본 자격증명"""

    def test_miss_then_hit(self, cache, fake_assumer):
        first = cache.get(KEY, ROLE)
        second = cache.get(KEY, ROLE)

        assert first is second
        assert fake_assumer.call_count == 1
        assert cache.stats.hits == 1
        assert cache.stats.misses == 1
        assert len(cache) == 1

    def test_entry_records_role(self, cache, clock):
        cache.get(KEY, ROLE)
        entry = cache.peek(KEY)
        assert entry.role == ROLE
        assert entry.installed_at == clock()

    def test_keys_isolated(self, cache, fake_assumer):
        marketing = cache.get(KEY, ROLE)
        payments = cache.get(OTHER_KEY, RoleReference("role/ack-payments"))

        assert marketing.access_key_id != payments.access_key_id
        assert fake_assumer.call_count == 2

    def test_base_identity_skips_sts(self, cache, fake_assumer, base_credential):
        assert cache.get(TenantKey("111111111111", "default"), BASE_IDENTITY) is base_credential
        assert fake_assumer.call_count == 0
        assert len(cache) == 0

    def test_role_change_refreshes(self, cache, fake_assumer):
        """매핑이 바뀌면 캐시된 자격증명을 쓰지 않는다"""
        old = cache.get(KEY, ROLE)
        new = cache.get(KEY, NEW_ROLE)

        assert old.access_key_id != new.access_key_id
        assert fake_assumer.calls[-1] == (KEY, NEW_ROLE)
        assert cache.peek(KEY).role == NEW_ROLE

    def test_unexpected_error_propagates(self, cache, fake_assumer):
        fake_assumer.errors.append(RuntimeError("boom"))
        with pytest.raises(RuntimeError):
            cache.get(KEY, ROLE)
        assert cache.stats.failures == 1

    def test_closed_cache(self, cache):
        cache.close()
        with pytest.raises(TransientCredentialError):
            cache.get(KEY, ROLE)


# =============================================================================
# 만료 / 갱신 여유
# =============================================================================


class TestExpiry:
    """만료 여유(refresh margin) 테스트"""

    def test_refresh_inside_margin(self, cache, fake_assumer, clock):
        first = cache.get(KEY, ROLE)

        clock.advance(3600 - 300 - 1)
        assert cache.get(KEY, ROLE) is first

        clock.advance(1)
        second = cache.get(KEY, ROLE)
        assert second is not first
        assert fake_assumer.call_count == 2

    def test_never_returns_credential_inside_margin_when_refresh_succeeds(self, cache, clock):
        for _ in range(5):
            credential = cache.get(KEY, ROLE)
            assert not credential.is_expired(clock(), 300)
            clock.advance(1000)

    def test_expired_entry_rapid_calls_one_refresh(self, cache, fake_assumer, clock):
        """만료된 항목에 대한 연속 호출은 한 번만 갱신한다"""
        cache.get(KEY, ROLE)
        clock.advance(4000)

        fake_assumer.gate = threading.Event()
        results = []
        threads = [threading.Thread(target=lambda: results.append(cache.get(KEY, ROLE))) for _ in range(10)]
        for thread in threads:
            thread.start()
        assert _wait_until(lambda: cache.stats.refreshes + cache.stats.joins >= 11)
        fake_assumer.gate.set()
        for thread in threads:
            thread.join(5)

        assert fake_assumer.call_count == 2
        assert len({credential.access_key_id for credential in results}) == 1
        assert all(not credential.is_expired(clock()) for credential in results)


# =============================================================================
# single-flight
# =============================================================================


class TestSingleFlight:
    """동시 요청 합류 테스트"""

    def test_concurrent_callers_share_one_call(self, cache, fake_assumer):
        fake_assumer.gate = threading.Event()
        results = []
        errors = []

        def worker():
            try:
                results.append(cache.get(KEY, ROLE, timeout=5))
            except Exception as e:  # pragma: no cover - 실패 시 기록
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for thread in threads:
            thread.start()

        assert _wait_until(lambda: cache.stats.refreshes + cache.stats.joins >= 20)
        assert fake_assumer.call_count == 1

        fake_assumer.gate.set()
        for thread in threads:
            thread.join(5)

        assert errors == []
        assert len(results) == 20
        assert len({credential.access_key_id for credential in results}) == 1
        assert fake_assumer.call_count == 1
        assert cache.stats.refreshes == 1
        assert cache.stats.joins == 19

    def test_refresh_finished_after_fast_path_miss(self, cache, fake_assumer):
        """fast path 미스 직후 다른 갱신이 끝나면 새 항목을 그대로 사용한다"""
        reached = threading.Event()
        resume = threading.Event()

        class PausingEntries(dict):
            """late 스레드의 첫 조회 결과를 돌려주기 전에 멈춤"""

            paused = False

            def get(self, key, default=None):
                value = super().get(key, default)
                if threading.current_thread().name == "late" and not self.paused:
                    self.paused = True
                    reached.set()
                    resume.wait(5)
                return value

        cache._entries = PausingEntries()
        results = []
        late = threading.Thread(target=lambda: results.append(cache.get(KEY, ROLE, timeout=5)), name="late")
        late.start()
        try:
            assert reached.wait(5)
            first = cache.get(KEY, ROLE, timeout=5)
        finally:
            resume.set()
            late.join(5)

        assert results == [first]
        assert fake_assumer.call_count == 1
        assert cache.stats.refreshes == 1

    def test_joiners_share_failure(self, cache, fake_assumer):
        fake_assumer.gate = threading.Event()
        fake_assumer.errors.append(ThrottledError("AssumeRole", 4))
        errors = []

        def worker():
            try:
                cache.get(KEY, ROLE)
            except ThrottledError as e:
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()
        assert _wait_until(lambda: cache.stats.refreshes + cache.stats.joins >= 5)
        fake_assumer.gate.set()
        for thread in threads:
            thread.join(5)

        assert len(errors) == 5
        assert fake_assumer.call_count == 1

    def test_other_keys_not_blocked(self, fake_assumer, base_credential, clock):
        """한 테넌트의 느린 갱신이 다른 테넌트를 막지 않는다"""
        blocked = threading.Event()

        class SlowMarketing:
            def assume_for_tenant(self, tenant_key, role):
                if tenant_key == KEY:
                    blocked.wait(5)
                return fake_assumer.assume_for_tenant(tenant_key, role)

        with CredentialCache(SlowMarketing(), lambda: base_credential, clock=clock) as cache:
            thread = threading.Thread(target=cache.get, args=(KEY, ROLE))
            thread.start()
            try:
                other = cache.get(OTHER_KEY, RoleReference("role/ack-payments"), timeout=2)
                assert cache.peek(KEY) is None
            finally:
                blocked.set()
                thread.join(5)

        assert other.access_key_id.startswith("ASIA333333333333")

    def test_role_change_while_in_flight(self, cache, fake_assumer):
        """이전 역할로 진행 중인 갱신에 합류한 호출자는 새 역할로 다시 갱신한다"""
        fake_assumer.gate = threading.Event()
        old_results = []
        thread = threading.Thread(target=lambda: old_results.append(cache.get(KEY, ROLE)))
        thread.start()
        assert fake_assumer.started.wait(5)

        new_results = []
        joiner = threading.Thread(target=lambda: new_results.append(cache.get(KEY, NEW_ROLE)))
        joiner.start()
        assert _wait_until(lambda: cache.stats.joins >= 1)

        fake_assumer.gate.set()
        thread.join(5)
        joiner.join(5)

        assert [role for _, role in fake_assumer.calls] == [ROLE, NEW_ROLE]
        assert old_results[0].role_arn.endswith("ack-marketing-s3")
        assert new_results[0].role_arn.endswith("ack-marketing-s3-v2")
        assert cache.peek(KEY).role == NEW_ROLE


# =============================================================================
# 타임아웃
# =============================================================================


class TestTimeout:
    """호출자 타임아웃 테스트"""

    def test_timeout_detaches_caller(self, cache, fake_assumer):
        fake_assumer.gate = threading.Event()

        with pytest.raises(CredentialTimeoutError) as exc_info:
            cache.get(KEY, ROLE, timeout=0.05)
        assert exc_info.value.is_transient

        # 갱신은 계속 진행되어 결과가 설치된다
        fake_assumer.gate.set()
        assert _wait_until(lambda: cache.peek(KEY) is not None)

        credential = cache.get(KEY, ROLE, timeout=1)
        assert credential is cache.peek(KEY).credential
        assert fake_assumer.call_count == 1


# =============================================================================
# 갱신 실패 시 이전 자격증명
# =============================================================================


class TestStaleOnFailure:
    """일시적 실패 시 이전 자격증명 제공"""

    def test_stale_served_when_enough_remaining(self, cache, fake_assumer, clock):
        first = cache.get(KEY, ROLE)
        clock.advance(3600 - 200)  # 잔여 200초 (여유 300초 이내, 최소 60초 초과)
        fake_assumer.errors.append(NetworkError("AssumeRole", 4))

        assert cache.get(KEY, ROLE) is first
        assert cache.stats.stale_served == 1
        assert cache.peek(KEY).credential is first

    def test_not_served_below_min_remaining(self, cache, fake_assumer, clock):
        cache.get(KEY, ROLE)
        clock.advance(3600 - 30)  # 잔여 30초
        fake_assumer.errors.append(ThrottledError("AssumeRole", 4))

        with pytest.raises(ThrottledError):
            cache.get(KEY, ROLE)
        assert cache.stats.stale_served == 0

    def test_expired_never_served(self, cache, fake_assumer, clock):
        cache.get(KEY, ROLE)
        clock.advance(4000)
        fake_assumer.errors.append(NetworkError("AssumeRole", 4))

        with pytest.raises(NetworkError):
            cache.get(KEY, ROLE)

    def test_previous_entry_kept_after_failure(self, cache, fake_assumer, clock):
        first = cache.get(KEY, ROLE)
        clock.advance(3600 - 30)
        fake_assumer.errors.append(NetworkError("AssumeRole", 4))
        with pytest.raises(NetworkError):
            cache.get(KEY, ROLE)

        assert cache.peek(KEY).credential is first
        # 다음 호출은 다시 갱신 시도
        assert cache.get(KEY, ROLE) is not first

    def test_stale_not_served_for_other_role(self, cache, fake_assumer, clock):
        cache.get(KEY, ROLE)
        clock.advance(100)
        fake_assumer.errors.append(NetworkError("AssumeRole", 4))

        with pytest.raises(NetworkError):
            cache.get(KEY, NEW_ROLE)


# =============================================================================
# 신뢰 관계 거부 (부정 캐시)
# =============================================================================


class TestTrustDenied:
    """AccessDenied 부정 캐시 테스트"""

    def test_denial_is_cached(self, cache, fake_assumer, clock):
        fake_assumer.deny.add(ROLE)

        with pytest.raises(TrustDeniedError) as first:
            cache.get(KEY, ROLE)
        with pytest.raises(TrustDeniedError) as second:
            cache.get(KEY, ROLE)

        assert first.value is not second.value
        assert second.value.role_arn == first.value.role_arn
        assert not second.value.is_transient
        assert fake_assumer.call_count == 1
        assert cache.stats.denied == 1

    def test_bounded_calls_during_window(self, cache, fake_assumer, clock):
        """거부 상태에서는 backoff 창마다 최대 1회만 STS 를 호출한다"""
        fake_assumer.deny.add(ROLE)

        for _ in range(100):
            with pytest.raises(TrustDeniedError):
                cache.get(KEY, ROLE)
            clock.advance(5)  # 총 500초

        assert fake_assumer.call_count == 2

    def test_denial_expires(self, cache, fake_assumer, clock):
        fake_assumer.deny.add(ROLE)
        with pytest.raises(TrustDeniedError):
            cache.get(KEY, ROLE)

        fake_assumer.deny.clear()
        clock.advance(301)
        assert cache.get(KEY, ROLE).access_key_id
        assert fake_assumer.call_count == 2

    def test_new_role_bypasses_denial(self, cache, fake_assumer):
        fake_assumer.deny.add(ROLE)
        with pytest.raises(TrustDeniedError):
            cache.get(KEY, ROLE)

        assert cache.get(KEY, NEW_ROLE).access_key_id
        assert fake_assumer.call_count == 2

    def test_invalidate_clears_denial(self, cache, fake_assumer):
        fake_assumer.deny.add(ROLE)
        with pytest.raises(TrustDeniedError):
            cache.get(KEY, ROLE)

        fake_assumer.deny.clear()
        assert not cache.invalidate(KEY)
        assert cache.get(KEY, ROLE).access_key_id


# =============================================================================
# 관리
# =============================================================================


class TestManagement:
    """invalidate / prune / clear / stats"""

    def test_invalidate(self, cache, fake_assumer):
        cache.get(KEY, ROLE)
        assert cache.invalidate(KEY)
        assert cache.peek(KEY) is None
        cache.get(KEY, ROLE)
        assert fake_assumer.call_count == 2

    def test_prune(self, cache):
        cache.get(KEY, ROLE)
        cache.get(OTHER_KEY, RoleReference("role/ack-payments"))

        removed = cache.prune(lambda key, role: key == OTHER_KEY)

        assert removed == 1
        assert cache.peek(KEY) is None
        assert cache.peek(OTHER_KEY) is not None

    def test_prune_removes_denials(self, cache, fake_assumer):
        fake_assumer.deny.add(ROLE)
        with pytest.raises(TrustDeniedError):
            cache.get(KEY, ROLE)

        cache.prune(lambda key, role: False)
        fake_assumer.deny.clear()
        assert cache.get(KEY, ROLE).access_key_id

    def test_clear(self, cache):
        cache.get(KEY, ROLE)
        cache.clear()
        assert len(cache) == 0

    def test_context_manager(self, fake_assumer, base_credential, clock):
        with CredentialCache(fake_assumer, lambda: base_credential, clock=clock) as cache:
            cache.get(KEY, ROLE)
        with pytest.raises(TransientCredentialError):
            cache.get(KEY, NEW_ROLE)


class TestCacheModels:
    """CacheEntry / DenialEntry / CacheStats"""

    def test_cache_entry_expiry(self, clock):
        credential = Credential("ASIA", "s", "t", expires_at=clock() + timedelta(seconds=100))
        entry = CacheEntry(KEY, ROLE, credential, installed_at=clock())
        assert entry.remaining_seconds(clock()) == 100
        assert entry.is_expired(clock(), buffer_seconds=100)
        assert not entry.is_expired(clock(), buffer_seconds=99)

    def test_denial_entry(self, clock):
        denial = DenialEntry(ROLE, TrustDeniedError("arn"), until=clock() + timedelta(seconds=10))
        assert denial.is_active(clock())
        assert not denial.is_active(clock() + timedelta(seconds=10))

    def test_stats(self):
        stats = CacheStats()
        stats.add("hits", 3)
        stats.add("misses")
        assert stats.hit_rate == 0.75
        assert "hits=3" in stats.summary()
        assert CacheStats().hit_rate == 0.0
