"""
broker/mapping/watcher.py - 매핑 설정 공급자 및 감시자

오케스트레이션 플랫폼의 설정 객체(ConfigMap)를 full-table 단위로 읽어
TenantMappingStore 에 적용합니다.

주요 구성 요소:
- MappingProvider: 매핑 테이블 공급자 프로토콜 (load → (table, version))
- StaticMappingProvider: 메모리 테이블 (테스트/임베딩용)
- ConfigMapFileProvider: ConfigMap 매니페스트(YAML) 파일
- MappingWatcher: 백그라운드 폴링 스레드, 버전이 바뀔 때만 적용

Example:
    provider = ConfigMapFileProvider("/etc/broker/ack-role-account-map.yaml")
    with MappingWatcher(provider, store, interval=30):
        ...  # 매핑이 주기적으로 갱신됨
"""

from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Mapping
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

import yaml  # type: ignore[import-untyped]

from broker.exceptions import ConfigurationError

from .store import MappingSnapshot, TenantMappingStore

logger = logging.getLogger(__name__)


@runtime_checkable
class MappingProvider(Protocol):
    """매핑 테이블 공급자"""

    def load(self) -> tuple[dict[str, str], Optional[str]]:
        """전체 테이블과 버전을 반환합니다.

        Raises:
            ConfigurationError: 설정 객체를 읽을 수 없는 경우
        """
        ...


class StaticMappingProvider:
    """메모리 기반 매핑 공급자

    update() 로 테이블을 바꾸면 버전이 증가합니다.
    """

    def __init__(self, table: Optional[Mapping[str, str]] = None):
        self._lock = threading.Lock()
        self._table = dict(table or {})
        self._version = 1

    def update(self, table: Mapping[str, str]) -> None:
        with self._lock:
            self._table = dict(table)
            self._version += 1

    def load(self) -> tuple[dict[str, str], Optional[str]]:
        with self._lock:
            return dict(self._table), str(self._version)


class ConfigMapFileProvider:
    """ConfigMap 매니페스트 파일 공급자

    Kubernetes ConfigMap YAML (``data:`` 블록) 또는 단순 YAML 매핑을 읽습니다.
    버전은 파일 내용의 SHA1 해시입니다 (resourceVersion 이 있으면 함께 사용).

    Example (ack-role-account-map.yaml):
        apiVersion: v1
        kind: ConfigMap
        metadata:
          name: ack-role-account-map
        data:
          "222222222222": role/ack-marketing-s3
          "333333333333.payments": arn:aws:iam::333333333333:role/ack-payments
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> tuple[dict[str, str], Optional[str]]:
        try:
            raw = self.path.read_bytes()
        except OSError as e:
            raise ConfigurationError(f"매핑 파일을 읽을 수 없습니다: {self.path}", config_key="mapping_file", cause=e) from e

        try:
            document = yaml.safe_load(raw) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"매핑 파일 YAML 오류: {self.path}", config_key="mapping_file", cause=e) from e

        if not isinstance(document, dict):
            raise ConfigurationError(f"매핑 파일은 YAML 매핑이어야 합니다: {self.path}", config_key="mapping_file")

        table = document.get("data", {}) if document.get("kind") == "ConfigMap" else document
        if table is None:
            table = {}
        if not isinstance(table, dict):
            raise ConfigurationError(f"ConfigMap data 는 매핑이어야 합니다: {self.path}", config_key="mapping_file")

        digest = hashlib.sha1(raw).hexdigest()[:12]
        resource_version = (document.get("metadata") or {}).get("resourceVersion")
        version = f"{resource_version}-{digest}" if resource_version else digest

        # YAML 이 계정 ID 를 정수로 읽을 수 있으므로 키는 문자열로 정규화
        return {str(key): value for key, value in table.items()}, version


class MappingWatcher:
    """매핑 설정 감시자

    백그라운드 데몬 스레드에서 공급자를 주기적으로 폴링하고,
    버전이 바뀐 경우에만 저장소에 적용합니다.
    읽기 실패 시 마지막 정상 스냅샷을 그대로 유지합니다.
    """

    def __init__(self, provider: MappingProvider, store: TenantMappingStore, interval: float = 30.0):
        """MappingWatcher 초기화

        Args:
            provider: 매핑 공급자
            store: 적용 대상 저장소
            interval: 폴링 주기 (초)
        """
        self.provider = provider
        self.store = store
        self.interval = interval
        self._last_version: Optional[str] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._poll_lock = threading.Lock()

    @property
    def last_version(self) -> Optional[str]:
        return self._last_version

    def poll_once(self) -> Optional[MappingSnapshot]:
        """한 번 폴링

        Returns:
            새 스냅샷이 적용된 경우 해당 스냅샷, 변경 없음/실패 시 None
        """
        with self._poll_lock:
            try:
                table, version = self.provider.load()
            except ConfigurationError as e:
                logger.warning(f"매핑 설정 로드 실패 (이전 스냅샷 유지): {e}")
                return None

            if version is not None and version == self._last_version:
                return None

            snapshot = self.store.apply(table, version=version)
            self._last_version = version
            return snapshot

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.poll_once()
            except Exception:
                # 폴링 스레드는 공급자 오류 후에도 계속 동작
                logger.exception("매핑 폴링 실패 (이전 스냅샷 유지)")

    def start(self) -> None:
        """폴링 스레드 시작 (시작 전에 한 번 동기 폴링)"""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self.poll_once()
        self._thread = threading.Thread(target=self._run, name="mapping-watcher", daemon=True)
        self._thread.start()
        logger.debug(f"MappingWatcher: 시작 (interval={self.interval}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """폴링 스레드 종료"""
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.debug("MappingWatcher: 종료")

    def __enter__(self) -> MappingWatcher:
        self.start()
        return self

    def __exit__(self, *args) -> None:
        self.stop()
