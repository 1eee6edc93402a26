"""AWS adapter: Cost Explorer, EC2, Lambda and STS through boto3."""
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from cloud_adapter import CloudAdapter, utc_timestamp
from config import CloudConfig
from errors import (
    ActionBlocked,
    AuthFailed,
    BillingDisabled,
    CloudError,
    CredentialExpired,
    ProviderUnavailable,
)
from logging_utils import logger
from models import ACTION_STOP_RESOURCE, CloudProvider
from vault import CredentialVault

EXPIRED_CODES = {"ExpiredToken", "ExpiredTokenException", "RequestExpired", "TokenRefreshRequired"}
AUTH_CODES = {
    "AccessDenied",
    "AccessDeniedException",
    "AuthFailure",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "UnauthorizedOperation",
    "UnrecognizedClientException",
}
BILLING_CODES = {"DataUnavailableException", "BillExpirationException", "OptInRequired", "SubscriptionRequiredException"}
REJECTED_PREFIXES = ("InvalidInstanceID", "IncorrectInstanceState", "InvalidParameter", "UnsupportedOperation")

# Cost Explorer is only served from us-east-1.
COST_EXPLORER_REGION = "us-east-1"

SessionFactory = Callable[..., Any]


def _session_name(prefix: str, user_id: Optional[str]) -> str:
    suffix = re.sub(r"[^\w+=,.@-]", "_", user_id or "ambient")
    return f"{prefix}_{suffix}"[:64]


class AWSAdapter(CloudAdapter):
    provider = CloudProvider.AWS

    def __init__(
        self,
        vault: CredentialVault,
        config: CloudConfig,
        session_factory: SessionFactory = boto3.session.Session,
    ) -> None:
        super().__init__(vault, config)
        self._session_factory = session_factory
        self._client_config = Config(
            connect_timeout=config.timeout_seconds,
            read_timeout=config.timeout_seconds,
            retries={"max_attempts": 2, "mode": "standard"},
        )

    # Credential resolution

    def resolve_session(self, user_id: Optional[str]) -> Tuple[Any, str]:
        """Return a boto3 session and the name of the credential source used."""
        connection = self.vault.get_connection(user_id, self.provider) if user_id else None
        connection = connection or {}
        region = connection.get("region") or self.config.aws_region

        access_key = connection.get("accessKeyId") or connection.get("accessKey") or connection.get("aws_access_key_id")
        secret_key = (
            connection.get("secretAccessKey") or connection.get("secretKey") or connection.get("aws_secret_access_key")
        )
        if access_key and secret_key:
            session = self._session_factory(
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                aws_session_token=connection.get("sessionToken"),
                region_name=region,
            )
            return session, "vault"

        role_arn = connection.get("roleArn") or connection.get("role_arn") or self.config.aws_role_arn
        if role_arn:
            return self._assume_role(role_arn, user_id, region, connection.get("externalId")), "assume_role"

        return self._session_factory(region_name=region), "ambient"

    def _assume_role(self, role_arn: str, user_id: Optional[str], region: str, external_id: Optional[str]) -> Any:
        logger.info("Assuming AWS role", extra={"extra": {"user_id": user_id, "role_arn": role_arn}})
        base = self._session_factory(region_name=region)
        sts = base.client("sts", config=self._client_config)
        request: Dict[str, Any] = {
            "RoleArn": role_arn,
            "RoleSessionName": _session_name(self.config.aws_role_session_prefix, user_id),
        }
        if external_id:
            request["ExternalId"] = external_id
        credentials = sts.assume_role(**request)["Credentials"]
        return self._session_factory(
            aws_access_key_id=credentials["AccessKeyId"],
            aws_secret_access_key=credentials["SecretAccessKey"],
            aws_session_token=credentials["SessionToken"],
            region_name=region,
        )

    def _session(self, user_id: Optional[str], operation: str) -> Any:
        session, source = self.resolve_session(user_id)
        logger.info(
            "AWS credentials resolved",
            extra={"extra": {"user_id": user_id, "operation": operation, "source": source}},
        )
        return session

    # Capabilities

    def get_billing(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        with self.provider_errors("get_billing"):
            session = self._session(user_id, "get_billing")
            ce = session.client("ce", region_name=COST_EXPLORER_REGION, config=self._client_config)

            today = datetime.now(timezone.utc).date()
            start = today.replace(day=1)
            # End is exclusive; tomorrow keeps the first of the month a valid range.
            end = today + timedelta(days=1)
            response = ce.get_cost_and_usage(
                TimePeriod={"Start": start.isoformat(), "End": end.isoformat()},
                Granularity="MONTHLY",
                Metrics=["UnblendedCost"],
                GroupBy=[{"Type": "DIMENSION", "Key": "SERVICE"}],
            )

        breakdown: Dict[str, float] = {}
        currency = "USD"
        for period in response.get("ResultsByTime", []):
            for group in period.get("Groups", []):
                cost = group.get("Metrics", {}).get("UnblendedCost", {})
                service = group.get("Keys", ["Unknown"])[0]
                breakdown[service] = breakdown.get(service, 0.0) + float(cost.get("Amount", 0) or 0)
                currency = cost.get("Unit", currency)

        if breakdown:
            total = sum(breakdown.values())
        else:
            periods = response.get("ResultsByTime") or [{}]
            total = float(periods[0].get("Total", {}).get("UnblendedCost", {}).get("Amount", 0) or 0)

        return {
            "success": True,
            "provider": self.provider.value,
            "currency": currency,
            "currentSpend": round(total, 2),
            "breakdown": breakdown,
            "period": {"start": start.isoformat(), "end": today.isoformat()},
            "timestamp": utc_timestamp(),
        }

    def list_resources(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        with self.provider_errors("list_resources"):
            session = self._session(user_id, "list_resources")
            # Clients are thread-safe; the session that builds them is not.
            lambda_client = session.client("lambda", config=self._client_config)
            ec2_client = session.client("ec2", config=self._client_config)
            results = self.run_concurrently(
                {
                    "lambda": lambda: self._list_functions(lambda_client),
                    "ec2": lambda: self._list_instances(ec2_client),
                }
            )

        return {
            "success": True,
            "provider": self.provider.value,
            "resources": results["lambda"] + results["ec2"],
            "timestamp": utc_timestamp(),
        }

    @staticmethod
    def _list_functions(client: Any) -> List[Dict[str, Any]]:
        resources = []
        for page in client.get_paginator("list_functions").paginate():
            for fn in page.get("Functions", []):
                resources.append(
                    {"id": fn.get("FunctionArn"), "name": fn.get("FunctionName"), "type": "lambda", "status": "active"}
                )
        return resources

    @staticmethod
    def _list_instances(client: Any) -> List[Dict[str, Any]]:
        resources = []
        for page in client.get_paginator("describe_instances").paginate():
            for reservation in page.get("Reservations", []):
                for instance in reservation.get("Instances", []):
                    tags = {t.get("Key"): t.get("Value") for t in instance.get("Tags", [])}
                    resources.append(
                        {
                            "id": instance.get("InstanceId"),
                            "name": tags.get("Name") or instance.get("InstanceId"),
                            "type": "ec2",
                            "status": instance.get("State", {}).get("Name"),
                        }
                    )
        return resources

    def required_params(self, action: str, params: Mapping[str, Any]) -> list[str]:
        if action == ACTION_STOP_RESOURCE and not params.get("resourceId"):
            return ["resourceId"]
        return []

    def _execute(self, action: str, params: Mapping[str, Any], user_id: Optional[str]) -> Dict[str, Any]:
        session = self._session(user_id, action)
        ec2 = session.client("ec2", config=self._client_config)
        response = ec2.stop_instances(InstanceIds=[params["resourceId"]])
        state = None
        for item in response.get("StoppingInstances", []):
            if item.get("InstanceId") == params["resourceId"]:
                state = item.get("CurrentState", {}).get("Name")
        return {
            "success": True,
            "provider": self.provider.value,
            "action": action,
            "resourceId": params["resourceId"],
            "state": state,
            "message": f"Stop command issued for AWS EC2 instance: {params['resourceId']}",
            "timestamp": utc_timestamp(),
        }

    def check_health(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        def ping() -> Dict[str, Any]:
            session, source = self.resolve_session(user_id)
            identity = session.client("sts", config=self._client_config).get_caller_identity()
            return {"account": identity.get("Account"), "credential_source": source}

        return self.timed_health(ping)

    def translate_error(self, exc: Exception) -> CloudError:
        provider = self.provider.value
        if isinstance(exc, ClientError):
            code = exc.response.get("Error", {}).get("Code", "Unknown")
            if code in EXPIRED_CODES:
                return CredentialExpired(f"AWS credentials expired ({code})", provider=provider)
            if code in AUTH_CODES:
                return AuthFailed(f"AWS rejected the credentials ({code})", provider=provider)
            if code in BILLING_CODES:
                return BillingDisabled(f"AWS billing data unavailable ({code})", provider=provider)
            if code.startswith(REJECTED_PREFIXES):
                return ActionBlocked(f"AWS rejected the request ({code})", provider=provider)
            return ProviderUnavailable(f"AWS request failed ({code})", provider=provider)
        if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
            return AuthFailed("No usable AWS credentials found", provider=provider)
        if isinstance(exc, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError)):
            return ProviderUnavailable("AWS endpoint unreachable or timed out", provider=provider)
        if isinstance(exc, BotoCoreError):
            return ProviderUnavailable(f"AWS SDK error ({type(exc).__name__})", provider=provider)
        return ProviderUnavailable(f"AWS request failed ({type(exc).__name__})", provider=provider)
