# tests/broker/sts/test_sts_client.py
"""
broker/sts/client.py 단위 테스트

RoleAssumptionClient 의 응답 파싱, 에러 분류, 재시도 테스트.
STS 호출은 MagicMock 으로 대체하고, 통합 테스트 1건은 moto 를 사용합니다.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import EndpointConnectionError

from broker.exceptions import (
    BaseIdentityError,
    ConfigurationError,
    MalformedResponseError,
    NetworkError,
    ThrottledError,
    TransientCredentialError,
    TrustDeniedError,
)
from broker.sts.client import SESSION_NAME_MAX_LENGTH, RoleAssumptionClient, get_client, session_name_for
from broker.sts.identity import BaseCredentialProvider, BaseIdentity
from broker.sts.retry import RetryPolicy
from broker.types import BASE_IDENTITY, RoleReference, TenantKey

MARKETING_KEY = TenantKey("222222222222", "marketing")
MARKETING_ROLE = RoleReference("role/ack-marketing-s3")
MARKETING_ARN = "arn:aws:iam::222222222222:role/ack-marketing-s3"


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def sts():
    """가짜 STS client"""
    return MagicMock()


@pytest.fixture
def client(sts, sleeps):
    policy = RetryPolicy(max_retries=2, base_delay=0.1, jitter=False, sleep=sleeps.append)
    return RoleAssumptionClient(MagicMock(), retry_policy=policy, sts_client_factory=lambda: sts)


# =============================================================================
# session_name_for 테스트
# =============================================================================


class TestSessionNameFor:
    """session_name_for 테스트"""

    def test_format(self):
        assert session_name_for(MARKETING_KEY) == "ack-222222222222-marketing"
        assert session_name_for(TenantKey("222222222222"), prefix="broker") == "broker-222222222222"

    def test_invalid_characters_replaced(self):
        assert session_name_for(TenantKey("222222222222", "a"), prefix="my prefix!") == "my-prefix--222222222222-a"

    def test_truncated_with_hash(self):
        key = TenantKey("222222222222", "n" * 63)
        name = session_name_for(key)
        assert len(name) == SESSION_NAME_MAX_LENGTH
        assert name == session_name_for(key)
        assert name != session_name_for(TenantKey("222222222222", "n" * 62 + "m"))


# =============================================================================
# 성공 경로 테스트
# =============================================================================


class TestAssumeForTenant:
    """assume_for_tenant 테스트"""

    def test_success(self, client, sts, make_assume_response):
        expiration = datetime(2025, 1, 1, 1, 0, tzinfo=timezone.utc)
        sts.assume_role.return_value = make_assume_response(expiration)

        credential = client.assume_for_tenant(MARKETING_KEY, MARKETING_ROLE)

        sts.assume_role.assert_called_once_with(
            RoleArn=MARKETING_ARN,
            RoleSessionName="ack-222222222222-marketing",
            DurationSeconds=1800,
        )
        assert credential.access_key_id == "ASIAEXAMPLE000000001"
        assert credential.session_token == "token"
        assert credential.expires_at == expiration
        assert credential.role_arn == MARKETING_ARN

    def test_full_arn_used_as_is(self, client, sts, make_assume_response):
        sts.assume_role.return_value = make_assume_response()
        arn = "arn:aws:iam::333333333333:role/ack-payments"
        client.assume_for_tenant(TenantKey("333333333333", "payments"), RoleReference(arn))
        assert sts.assume_role.call_args.kwargs["RoleArn"] == arn

    def test_partition(self, sts, make_assume_response):
        sts.assume_role.return_value = make_assume_response()
        client = RoleAssumptionClient(MagicMock(), partition="aws-cn", sts_client_factory=lambda: sts)
        client.assume_for_tenant(MARKETING_KEY, MARKETING_ROLE)
        assert sts.assume_role.call_args.kwargs["RoleArn"].startswith("arn:aws-cn:iam::")

    def test_base_identity_rejected(self, client):
        with pytest.raises(ValueError):
            client.assume_for_tenant(MARKETING_KEY, BASE_IDENTITY)

    def test_naive_and_string_expiration_are_utc(self, client, sts, make_assume_response):
        response = make_assume_response()
        response["Credentials"]["Expiration"] = "2025-01-01T01:00:00Z"
        sts.assume_role.return_value = response
        assert client.assume_role(MARKETING_ARN, "s").expires_at == datetime(2025, 1, 1, 1, tzinfo=timezone.utc)

        response["Credentials"]["Expiration"] = datetime(2025, 1, 1, 2, 0)
        assert client.assume_role(MARKETING_ARN, "s").expires_at == datetime(2025, 1, 1, 2, tzinfo=timezone.utc)


class TestDuration:
    """세션 시간 보정"""

    def test_clamp(self):
        client = RoleAssumptionClient(MagicMock(), duration_seconds=1800, max_duration_seconds=3600)
        assert client.clamp_duration(None) == 1800
        assert client.clamp_duration(60) == 900
        assert client.clamp_duration(7200) == 3600

    def test_default_clamped_to_max(self):
        client = RoleAssumptionClient(MagicMock(), duration_seconds=7200, max_duration_seconds=3600)
        assert client.duration_seconds == 3600

    def test_explicit_duration(self, client, sts, make_assume_response):
        sts.assume_role.return_value = make_assume_response()
        client.assume_role(MARKETING_ARN, "s", duration_seconds=100)
        assert sts.assume_role.call_args.kwargs["DurationSeconds"] == 900


# =============================================================================
# 에러 분류 테스트
# =============================================================================


class TestErrorHandling:
    """AssumeRole 실패 분류"""

    def test_access_denied_is_trust_denied(self, client, sts, sleeps, make_client_error):
        sts.assume_role.side_effect = make_client_error("AccessDenied", "not authorized")

        with pytest.raises(TrustDeniedError) as exc_info:
            client.assume_for_tenant(MARKETING_KEY, MARKETING_ROLE)

        assert exc_info.value.role_arn == MARKETING_ARN
        assert exc_info.value.tenant == "222222222222/marketing"
        assert sts.assume_role.call_count == 1
        assert sleeps == []

    def test_invalid_base_identity(self, client, sts, make_client_error):
        sts.assume_role.side_effect = make_client_error("InvalidClientTokenId", status_code=403)
        with pytest.raises(BaseIdentityError):
            client.assume_role(MARKETING_ARN, "s")
        assert sts.assume_role.call_count == 1

    def test_validation_error_is_configuration(self, client, sts, make_client_error):
        sts.assume_role.side_effect = make_client_error("ValidationError")
        with pytest.raises(ConfigurationError) as exc_info:
            client.assume_role(MARKETING_ARN, "s")
        assert not isinstance(exc_info.value, BaseIdentityError)
        assert exc_info.value.config_key == "role"

    def test_throttling_retried_then_succeeds(self, client, sts, sleeps, make_client_error, make_assume_response):
        sts.assume_role.side_effect = [
            make_client_error("Throttling", status_code=400),
            make_client_error("Throttling", status_code=400),
            make_assume_response(),
        ]
        credential = client.assume_role(MARKETING_ARN, "s")
        assert credential.access_key_id == "ASIAEXAMPLE000000001"
        assert sts.assume_role.call_count == 3
        assert sleeps == [0.1, 0.2]

    def test_throttling_exhausted(self, client, sts, make_client_error):
        sts.assume_role.side_effect = make_client_error("Throttling")
        with pytest.raises(ThrottledError) as exc_info:
            client.assume_role(MARKETING_ARN, "s")
        assert exc_info.value.attempts == 3
        assert exc_info.value.is_transient
        assert sts.assume_role.call_count == 3

    def test_network_exhausted(self, client, sts):
        sts.assume_role.side_effect = EndpointConnectionError(endpoint_url="https://sts.amazonaws.com")
        with pytest.raises(NetworkError):
            client.assume_role(MARKETING_ARN, "s")
        assert sts.assume_role.call_count == 3

    def test_service_error_exhausted(self, client, sts, make_client_error):
        sts.assume_role.side_effect = make_client_error("InternalError", status_code=500)
        with pytest.raises(NetworkError):
            client.assume_role(MARKETING_ARN, "s")

    def test_unknown_error_is_transient_without_retry(self, client, sts, make_client_error):
        sts.assume_role.side_effect = make_client_error("ExpiredToken")
        with pytest.raises(TransientCredentialError):
            client.assume_role(MARKETING_ARN, "s")
        assert sts.assume_role.call_count == 1

    @pytest.mark.parametrize("missing", ["AccessKeyId", "SecretAccessKey", "SessionToken", "Expiration"])
    def test_missing_credential_field(self, client, sts, make_assume_response, missing):
        response = make_assume_response()
        del response["Credentials"][missing]
        sts.assume_role.return_value = response
        with pytest.raises(MalformedResponseError) as exc_info:
            client.assume_role(MARKETING_ARN, "s")
        assert exc_info.value.details["missing"] == missing
        assert sts.assume_role.call_count == 1

    def test_missing_credentials_block(self, client, sts):
        sts.assume_role.return_value = {"AssumedRoleUser": {}}
        with pytest.raises(MalformedResponseError):
            client.assume_role(MARKETING_ARN, "s")

    def test_bad_expiration(self, client, sts, make_assume_response):
        response = make_assume_response()
        response["Credentials"]["Expiration"] = "tomorrow"
        sts.assume_role.return_value = response
        with pytest.raises(MalformedResponseError):
            client.assume_role(MARKETING_ARN, "s")


# =============================================================================
# get_client / moto 통합 테스트
# =============================================================================


class TestGetClient:
    """get_client 테스트"""

    def test_disables_botocore_retries(self):
        session = MagicMock()
        get_client(session, "sts", region_name="us-west-2", endpoint_url=None)

        args, kwargs = session.client.call_args
        assert args == ("sts",)
        assert "endpoint_url" not in kwargs
        assert kwargs["config"].retries == {"max_attempts": 1, "mode": "standard"}
        assert kwargs["config"].connect_timeout == 5

    def test_endpoint_url_passed(self):
        session = MagicMock()
        get_client(session, "sts", endpoint_url="http://localhost:4566")
        assert session.client.call_args.kwargs["endpoint_url"] == "http://localhost:4566"


class TestMotoIntegration:
    """moto STS 통합"""

    def test_assume_role_with_moto(self, moto_sts):
        provider = BaseCredentialProvider(BaseIdentity(region="us-west-2"))
        client = RoleAssumptionClient(provider)

        credential = client.assume_for_tenant(MARKETING_KEY, MARKETING_ROLE)

        assert credential.access_key_id
        assert credential.session_token
        assert credential.expires_at is not None
        assert credential.expires_at.tzinfo is not None
        assert credential.expires_at > datetime.now(timezone.utc) + timedelta(minutes=10)
