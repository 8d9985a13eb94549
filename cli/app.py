"""
cli/app.py - 메인 CLI 엔트리포인트

Click 기반의 CLI 애플리케이션 진입점입니다.
브로커 구성 요소를 컨트롤러 밖에서 점검할 때 사용합니다.

명령어 구조:
    broker --version                         # 버전 표시
    broker mapping show --mapping-file FILE  # 매핑 스냅샷 표시
    broker resolve NAMESPACE ...             # 한 번의 자격증명 해석
    broker whoami                            # 기본 자격증명 계정 확인

종료 코드 (resolve / whoami):
    0: 성공
    2: 일시적 실패 (TRANSIENT)
    3: 영구 실패 (PERMANENT)

Usage:
    $ broker resolve marketing --mapping-file ack-role-account-map.yaml \\
        --namespaces-file namespaces.yaml

    # 모듈로 실행
    $ python -m cli.app
"""

import json
import logging
import sys
from pathlib import Path

# 프로젝트 루트를 sys.path에 추가 (broker 패키지 임포트를 위함)
_project_root = Path(__file__).resolve().parent.parent
if str(_project_root) not in sys.path:
    sys.path.insert(0, str(_project_root))

import click  # noqa: E402

from broker.config import LogConfig, get_version  # noqa: E402
from broker.exceptions import BrokerError, format_error_for_user  # noqa: E402
from cli.ui import (  # noqa: E402
    console,
    get_log_handler,
    print_error,
    print_key_values,
    print_success,
    print_table,
    print_warning,
)

# Keep lightweight, centralized logging config
# WARNING 레벨로 설정하여 INFO 로그가 명령 출력에 섞이지 않도록 함
_log_config = LogConfig()
logging.basicConfig(
    level=_log_config.level_number,
    format=_log_config.format,
    datefmt=_log_config.datefmt,
    handlers=[get_log_handler()] if _log_config.rich else None,
)

VERSION = get_version()

EXIT_TRANSIENT = 2
EXIT_PERMANENT = 3


def _exit_code_for(error: BrokerError) -> int:
    return EXIT_TRANSIENT if error.is_transient else EXIT_PERMANENT


def _fail(error: BrokerError) -> None:
    print_error(format_error_for_user(error))
    raise SystemExit(_exit_code_for(error))


@click.group()
@click.version_option(VERSION, prog_name="broker")
@click.option(
    "--log-level",
    envvar="BROKER_LOG_LEVEL",
    default="WARNING",
    show_default=True,
    help="로그 레벨 (DEBUG, INFO, WARNING, ERROR)",
)
def cli(log_level: str) -> None:
    """네임스페이스 단위 자격증명 브로커 CLI"""
    logging.getLogger().setLevel(LogConfig(level=log_level).level_number)


# =============================================================================
# mapping
# =============================================================================


@cli.group("mapping")
def mapping_cmd() -> None:
    """역할 매핑(ConfigMap) 점검"""


@mapping_cmd.command("show")
@click.option(
    "--mapping-file",
    envvar="BROKER_MAPPING_FILE",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="ack-role-account-map ConfigMap 파일",
)
@click.option("--home-account-id", envvar="BROKER_HOME_ACCOUNT_ID", default=None, help="컨트롤러 자체 계정 ID")
@click.option("--json", "as_json", is_flag=True, help="JSON 형식으로 출력")
def mapping_show(mapping_file: str, home_account_id: str | None, as_json: bool) -> None:
    """매핑 파일을 해석해 스냅샷을 표시"""
    from broker.mapping.store import parse_mapping_table
    from broker.mapping.watcher import ConfigMapFileProvider

    try:
        table, version = ConfigMapFileProvider(mapping_file).load()
    except BrokerError as e:
        _fail(e)
        return

    snapshot = parse_mapping_table(table, version=version, home_account_id=home_account_id)
    records = sorted(snapshot.records.values(), key=lambda r: (r.tenant_key.account_id, r.tenant_key.namespace or ""))

    if as_json:
        output = {
            "version": snapshot.version,
            "records": [
                {
                    "account_id": r.tenant_key.account_id,
                    "namespace": r.tenant_key.namespace,
                    "role": str(r.role),
                    "origin": str(r.origin),
                }
                for r in records
            ],
            "skipped": dict(snapshot.skipped),
        }
        click.echo(json.dumps(output, ensure_ascii=False, indent=2))
        return

    rows = [[r.tenant_key.account_id, r.tenant_key.namespace or "*", str(r.role), str(r.origin)] for r in records]
    print_table(f"역할 매핑 (version={snapshot.version})", ["계정", "네임스페이스", "역할", "출처"], rows)

    for raw_key, reason in snapshot.skipped.items():
        print_warning(f"무시된 항목 [{raw_key}]: {reason}")


# =============================================================================
# resolve
# =============================================================================


@cli.command("resolve")
@click.argument("namespace")
@click.option("--name", default="", help="조정 대상 객체 이름")
@click.option("--kind", default="", help="조정 대상 객체 종류")
@click.option(
    "--mapping-file",
    envvar="BROKER_MAPPING_FILE",
    required=True,
    type=click.Path(exists=True, dir_okay=False),
    help="ack-role-account-map ConfigMap 파일",
)
@click.option(
    "--namespaces-file",
    default=None,
    type=click.Path(exists=True, dir_okay=False),
    help="Namespace 매니페스트 파일 (kubectl get ns -o yaml)",
)
@click.option("--timeout", default=30.0, show_default=True, type=float, help="자격증명 대기 시간 (초)")
def resolve_cmd(
    namespace: str,
    name: str,
    kind: str,
    mapping_file: str,
    namespaces_file: str | None,
    timeout: float,
) -> None:
    """네임스페이스 하나에 대해 자격증명 해석 실행"""
    from broker.adapter import ReconcileTarget, build_adapter
    from broker.config import Settings
    from broker.mapping.watcher import ConfigMapFileProvider
    from broker.resolver.resolver import NamespaceManifestProvider, StaticNamespaceMetadata

    try:
        settings = Settings.from_env()
        metadata = NamespaceManifestProvider(namespaces_file) if namespaces_file else StaticNamespaceMetadata()
        with build_adapter(
            settings,
            metadata=metadata,
            mapping_provider=ConfigMapFileProvider(mapping_file),
            start_watcher=False,
        ) as adapter:
            resolved = adapter.resolve(ReconcileTarget(namespace=namespace, name=name, kind=kind), timeout=timeout)
    except BrokerError as e:
        _fail(e)
        return

    credential = resolved.credential
    print_key_values(
        "자격증명 해석 결과",
        [
            ("tenant", str(resolved.tenant_key)),
            ("role", "base-identity" if resolved.is_base_identity else str(resolved.role)),
            ("access_key", credential.masked_access_key()),
            ("expires_at", credential.expires_at.isoformat() if credential.expires_at else "-"),
            ("region", resolved.region),
        ],
    )
    print_success("해석 완료")


# =============================================================================
# whoami
# =============================================================================


@cli.command("whoami")
def whoami_cmd() -> None:
    """기본 자격증명의 계정 확인 (GetCallerIdentity)"""
    from broker.config import Settings
    from broker.sts.identity import BaseCredentialProvider, BaseIdentity

    try:
        settings = Settings.from_env()
        provider = BaseCredentialProvider(BaseIdentity.from_settings(settings))
        account_id = provider.account_id()
    except BrokerError as e:
        _fail(e)
        return

    console.print(account_id, markup=False)
    if settings.HOME_ACCOUNT_ID and settings.HOME_ACCOUNT_ID != account_id:
        print_warning(f"BROKER_HOME_ACCOUNT_ID({settings.HOME_ACCOUNT_ID})와 실제 계정이 다릅니다")


def main() -> None:
    """console_script 진입점"""
    cli()


if __name__ == "__main__":
    main()
