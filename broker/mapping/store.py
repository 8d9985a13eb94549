"""
broker/mapping/store.py - 테넌트 매핑 저장소

계정 ID (또는 계정 + 네임스페이스) → 역할 참조 매핑을 불변 스냅샷으로 보관합니다.

설계 원칙:
- 전체 테이블 단위로만 갱신 (ConfigMap full-table 업데이트)
- 새 스냅샷을 만든 뒤 참조만 교체 → 읽기 경로에 락 없음, 찢어진 상태 없음
- 잘못된 항목은 경고 로그 후 건너뜀 (전체 실패로 만들지 않음)

매핑 테이블 키 형식:
    "222222222222"            → 계정 전역 항목
    "222222222222.marketing"  → 네임스페이스 한정 항목 (우선 적용)

Example:
    store = TenantMappingStore(home_account_id="111111111111")
    store.apply({"222222222222": "role/ack-marketing-s3"})

    lookup = store.resolve_role(TenantKey("222222222222", "marketing"))
    if lookup.is_found:
        print(lookup.role)
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from broker.types.types import (
    BASE_IDENTITY,
    MappingRecord,
    RecordOrigin,
    RoleLookup,
    RoleReference,
    TenantKey,
    is_valid_account_id,
    is_valid_namespace,
)

logger = logging.getLogger(__name__)

SnapshotListener = Callable[["MappingSnapshot", "MappingSnapshot"], None]


# =============================================================================
# Snapshot
# =============================================================================


@dataclass(frozen=True)
class MappingSnapshot:
    """매핑 테이블의 불변 스냅샷

    Attributes:
        records: {TenantKey: MappingRecord}
        version: 원본 설정 버전 (ConfigMap resourceVersion, 파일 해시 등)
        loaded_at: 스냅샷 생성 시간 (UTC)
        skipped: 건너뛴 항목 {원본 키: 사유}
    """

    records: Mapping[TenantKey, MappingRecord] = field(default_factory=dict)
    version: Optional[str] = None
    loaded_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    skipped: Mapping[str, str] = field(default_factory=dict)

    def lookup(self, tenant_key: TenantKey) -> Optional[MappingRecord]:
        """네임스페이스 한정 항목 → 계정 전역 항목 순서로 조회"""
        if tenant_key.namespace is not None:
            record = self.records.get(tenant_key)
            if record is not None:
                return record
        return self.records.get(tenant_key.without_namespace())

    def accounts(self) -> set[str]:
        """매핑된 계정 ID 집합"""
        return {key.account_id for key in self.records}

    def __len__(self) -> int:
        return len(self.records)


EMPTY_SNAPSHOT = MappingSnapshot(version="empty")


def _parse_key(raw_key: str) -> TenantKey:
    """매핑 테이블 키를 TenantKey 로 변환

    Raises:
        ValueError: 형식 오류
    """
    key = raw_key.strip()
    account_id, _, namespace = key.partition(".")
    if not is_valid_account_id(account_id):
        raise ValueError(f"12자리 계정 ID 가 아닙니다: '{account_id}'")
    if not namespace:
        if key.endswith("."):
            raise ValueError("네임스페이스가 비어 있습니다")
        return TenantKey(account_id)
    if not is_valid_namespace(namespace):
        raise ValueError(f"네임스페이스 형식 오류: '{namespace}'")
    return TenantKey(account_id, namespace)


def parse_mapping_table(
    table: Mapping[str, object],
    version: Optional[str] = None,
    home_account_id: Optional[str] = None,
) -> MappingSnapshot:
    """원본 매핑 테이블을 스냅샷으로 변환

    잘못된 항목은 경고 로그를 남기고 건너뜁니다. 키는 정렬 순서로 처리되므로
    같은 입력에서는 항상 같은 스냅샷이 만들어집니다.

    Args:
        table: {키: 역할 참조 문자열}
        version: 원본 설정 버전
        home_account_id: 컨트롤러 자체 계정 (해당 항목은 무시)

    Returns:
        MappingSnapshot
    """
    records: dict[TenantKey, MappingRecord] = {}
    skipped: dict[str, str] = {}

    def skip(raw_key: str, reason: str) -> None:
        skipped[raw_key] = reason
        logger.warning(f"매핑 항목 무시 [{raw_key}]: {reason}")

    for raw_key in sorted(table, key=str):
        raw_value = table[raw_key]
        try:
            tenant_key = _parse_key(str(raw_key))
        except ValueError as e:
            skip(str(raw_key), str(e))
            continue

        if not isinstance(raw_value, str) or not raw_value.strip():
            skip(str(raw_key), "역할 참조가 비어 있습니다")
            continue

        try:
            role = RoleReference.parse(raw_value)
        except ValueError as e:
            skip(str(raw_key), str(e))
            continue

        # ARN 의 계정은 키의 계정과 같아야 함 → 서로 다른 계정이 같은 역할로 해석되지 않음
        if role.account_id is not None and role.account_id != tenant_key.account_id:
            skip(str(raw_key), f"역할 계정({role.account_id})이 키 계정과 다릅니다")
            continue

        if tenant_key.is_home(home_account_id):
            skip(str(raw_key), "컨트롤러 자체 계정은 기본 자격증명을 사용합니다")
            continue

        if tenant_key in records:
            skip(str(raw_key), f"중복 키 (기존: {records[tenant_key].source_key})")
            continue

        origin = RecordOrigin.NAMESPACE if tenant_key.namespace else RecordOrigin.GLOBAL
        records[tenant_key] = MappingRecord(
            tenant_key=tenant_key,
            role=role,
            origin=origin,
            source_key=str(raw_key),
        )

    return MappingSnapshot(records=records, version=version, skipped=skipped)


# =============================================================================
# Store
# =============================================================================


class TenantMappingStore:
    """읽기 전용 테넌트 매핑 저장소

    읽기 경로(resolve_role, snapshot)는 락을 잡지 않습니다.
    apply() 는 새 스냅샷을 만든 뒤 참조를 한 번에 교체합니다.

    Thread-safe 구현.
    """

    def __init__(self, home_account_id: Optional[str] = None):
        """TenantMappingStore 초기화

        Args:
            home_account_id: 컨트롤러 자체 계정 ID
        """
        self._home_account_id = home_account_id
        self._snapshot: MappingSnapshot = EMPTY_SNAPSHOT
        self._write_lock = threading.Lock()
        self._listeners: list[SnapshotListener] = []

    @property
    def home_account_id(self) -> Optional[str]:
        return self._home_account_id

    def snapshot(self) -> MappingSnapshot:
        """현재 스냅샷 (한 번의 해석 동안 이 참조를 유지)"""
        return self._snapshot

    def resolve_role(self, tenant_key: TenantKey, snapshot: Optional[MappingSnapshot] = None) -> RoleLookup:
        """TenantKey 에 해당하는 역할 조회

        컨트롤러 자체 계정은 항상 BASE_IDENTITY 로 해석됩니다.

        Args:
            tenant_key: 조회할 테넌트 키
            snapshot: 사용할 스냅샷 (None 이면 현재 스냅샷)

        Returns:
            RoleLookup (found / not_found)
        """
        if tenant_key.is_home(self._home_account_id):
            return RoleLookup.found(
                MappingRecord(tenant_key=tenant_key, role=BASE_IDENTITY, origin=RecordOrigin.GLOBAL)
            )

        current = snapshot if snapshot is not None else self._snapshot
        record = current.lookup(tenant_key)
        if record is None:
            return RoleLookup.not_found(tenant_key, f"계정 {tenant_key.account_id} 에 대한 역할 매핑이 없습니다")

        if record.tenant_key != tenant_key:
            # 계정 전역 항목을 네임스페이스 키로 돌려줌 (출처는 유지)
            record = MappingRecord(
                tenant_key=tenant_key,
                role=record.role,
                origin=record.origin,
                source_key=record.source_key,
            )
        return RoleLookup.found(record)

    def is_current(self, tenant_key: TenantKey, role: RoleReference) -> bool:
        """해당 테넌트가 여전히 같은 역할로 매핑되어 있는지"""
        lookup = self.resolve_role(tenant_key)
        return lookup.is_found and lookup.role == role

    def apply(self, table: Mapping[str, object], version: Optional[str] = None) -> MappingSnapshot:
        """전체 매핑 테이블 적용 (원자적 교체)

        Args:
            table: {키: 역할 참조 문자열}
            version: 원본 설정 버전

        Returns:
            새로 설치된 스냅샷
        """
        new_snapshot = parse_mapping_table(table, version=version, home_account_id=self._home_account_id)

        with self._write_lock:
            old_snapshot = self._snapshot
            self._snapshot = new_snapshot
            listeners = list(self._listeners)

        logger.info(
            f"매핑 스냅샷 교체: version={new_snapshot.version}, "
            f"항목 {len(new_snapshot)}개, 무시 {len(new_snapshot.skipped)}개"
        )

        for listener in listeners:
            try:
                listener(old_snapshot, new_snapshot)
            except Exception as e:
                logger.warning(f"매핑 리스너 실패: {e}")

        return new_snapshot

    def add_listener(self, listener: SnapshotListener) -> None:
        """스냅샷 교체 알림 등록"""
        with self._write_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener) -> bool:
        """스냅샷 교체 알림 해제"""
        with self._write_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)
                return True
            return False

    def set_home_account_id(self, home_account_id: str) -> None:
        """컨트롤러 자체 계정 설정 (GetCallerIdentity 로 늦게 확인된 경우)

        현재 스냅샷은 새 기준으로 다시 만들지 않습니다. 다음 apply() 부터 반영되며
        resolve_role 의 자체 계정 판정은 즉시 반영됩니다.
        """
        self._home_account_id = home_account_id
