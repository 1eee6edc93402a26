"""GCP adapter: Cloud Run, Compute Engine and Cloud Billing over REST with google-auth."""
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import google.auth
import requests
from google.auth.exceptions import DefaultCredentialsError, GoogleAuthError, RefreshError, TransportError
from google.auth.transport.requests import AuthorizedSession, Request
from google.oauth2 import credentials as oauth2_credentials
from google.oauth2 import service_account

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

SCOPES = ["https://www.googleapis.com/auth/cloud-platform", "https://www.googleapis.com/auth/cloud-billing"]
TOKEN_URI = "https://oauth2.googleapis.com/token"
REFRESH_MARGIN_MS = 60_000

CLOUD_RUN_SERVICES_URL = "https://{region}-run.googleapis.com/apis/serving.knative.dev/v1/namespaces/{project}/services"
COMPUTE_URL = "https://compute.googleapis.com/compute/v1/projects/{project}"
BILLING_INFO_URL = "https://cloudbilling.googleapis.com/v1/projects/{project}/billingInfo"


def token_needs_refresh(expiry_ms: Optional[int], now_ms: Optional[int] = None) -> bool:
    """True when a stored OAuth2 token expires within the refresh margin."""
    if expiry_ms is None:
        return False
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    return int(expiry_ms) - now_ms < REFRESH_MARGIN_MS


def _expiry_datetime(expiry_ms: Optional[int]) -> Optional[datetime]:
    if expiry_ms is None:
        return None
    # google-auth compares against naive UTC datetimes.
    return datetime.fromtimestamp(int(expiry_ms) / 1000, tz=timezone.utc).replace(tzinfo=None)


def _expiry_ms(expiry: Optional[datetime]) -> Optional[int]:
    if expiry is None:
        return None
    return int(expiry.replace(tzinfo=timezone.utc).timestamp() * 1000)


class GCPAdapter(CloudAdapter):
    provider = CloudProvider.GCP

    def __init__(
        self,
        vault: CredentialVault,
        config: CloudConfig,
        session_factory: Callable[[Any], Any] = AuthorizedSession,
        request_factory: Callable[[], Any] = Request,
        default_credentials: Callable[..., Tuple[Any, Optional[str]]] = google.auth.default,
    ) -> None:
        super().__init__(vault, config)
        self._session_factory = session_factory
        self._request_factory = request_factory
        self._default_credentials = default_credentials

    # Credential resolution

    def resolve_credentials(self, user_id: Optional[str]) -> Tuple[Any, Optional[str], str]:
        """Return (credentials, project_id, source) following vault → federated → ambient."""
        connection = self.vault.get_connection(user_id, self.provider) if user_id else None
        if connection:
            project_id = connection.get("project_id") or connection.get("projectId") or self.config.gcp_project_id
            if connection.get("client_email") and connection.get("private_key"):
                try:
                    creds = service_account.Credentials.from_service_account_info(connection, scopes=SCOPES)
                except (ValueError, KeyError) as exc:
                    raise AuthFailed("Stored GCP service account is invalid", provider=self.provider.value) from exc
                return creds, project_id, "service_account"
            if connection.get("refreshToken") or connection.get("refresh_token"):
                return self._oauth_credentials(user_id, connection), project_id, "oauth2"

        creds, default_project = self._default_credentials(scopes=SCOPES)
        return creds, self.config.gcp_project_id or default_project, "ambient"

    def _oauth_credentials(self, user_id: Optional[str], connection: Dict[str, Any]) -> Any:
        refresh_token = connection.get("refreshToken") or connection.get("refresh_token")
        expiry_ms = connection.get("expiry")
        creds = oauth2_credentials.Credentials(
            token=connection.get("accessToken"),
            refresh_token=refresh_token,
            token_uri=TOKEN_URI,
            client_id=self.config.google_client_id,
            client_secret=self.config.google_client_secret,
            scopes=SCOPES,
        )
        creds.expiry = _expiry_datetime(expiry_ms)

        if not connection.get("accessToken") or token_needs_refresh(expiry_ms):
            logger.info("Refreshing GCP OAuth2 token", extra={"extra": {"user_id": user_id}})
            creds.refresh(self._request_factory())
            refreshed = dict(connection)
            refreshed.update(
                {
                    "accessToken": creds.token,
                    "refreshToken": creds.refresh_token or refresh_token,
                    "expiry": _expiry_ms(creds.expiry),
                }
            )
            if user_id:
                self.vault.store_connection(user_id, self.provider, refreshed)
        return creds

    def _session(self, user_id: Optional[str], operation: str) -> Tuple[Any, str]:
        creds, project_id, source = self.resolve_credentials(user_id)
        logger.info(
            "GCP credentials resolved",
            extra={"extra": {"user_id": user_id, "operation": operation, "source": source}},
        )
        if not project_id:
            raise AuthFailed("No GCP project is associated with these credentials", provider=self.provider.value)
        return creds, project_id

    def _call(self, creds: Any, method: str, url: str, **kwargs: Any) -> Dict[str, Any]:
        session = self._session_factory(creds)
        response = session.request(method, url, timeout=self.config.timeout_seconds, **kwargs)
        response.raise_for_status()
        return response.json() if response.content else {}

    # Capabilities

    def get_billing(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        with self.provider_errors("get_billing"):
            creds, project_id = self._session(user_id, "get_billing")
            info = self._call(creds, "GET", BILLING_INFO_URL.format(project=project_id))

        if not info.get("billingEnabled"):
            raise BillingDisabled(f"Billing is not enabled for project {project_id}", provider=self.provider.value)
        return {
            "success": True,
            "provider": self.provider.value,
            "currency": "USD",
            # Spend figures need a BigQuery billing export; billingInfo only reports linkage.
            "currentSpend": None,
            "billingAccountName": info.get("billingAccountName"),
            "billingEnabled": True,
            "projectId": project_id,
            "timestamp": utc_timestamp(),
        }

    def list_resources(self, user_id: Optional[str] = None, region: Optional[str] = None) -> Dict[str, Any]:
        region = region or self.config.gcp_region
        with self.provider_errors("list_resources"):
            creds, project_id = self._session(user_id, "list_resources")
            results = self.run_concurrently(
                {
                    "cloud_run": lambda: self._list_cloud_run(creds, project_id, region),
                    "compute": lambda: self._list_instances(creds, project_id),
                }
            )

        return {
            "success": True,
            "provider": self.provider.value,
            "projectId": project_id,
            "resources": results["cloud_run"] + results["compute"],
            "timestamp": utc_timestamp(),
        }

    def _list_cloud_run(self, creds: Any, project_id: str, region: str) -> List[Dict[str, Any]]:
        data = self._call(creds, "GET", CLOUD_RUN_SERVICES_URL.format(region=region, project=project_id))
        resources = []
        for item in data.get("items", []):
            metadata = item.get("metadata", {})
            conditions = item.get("status", {}).get("conditions", [])
            ready = next((c for c in conditions if c.get("type") == "Ready"), conditions[0] if conditions else {})
            resources.append(
                {
                    "id": metadata.get("uid"),
                    "name": metadata.get("name"),
                    "type": "cloud-run",
                    "region": region,
                    "status": "running" if ready.get("status") == "True" else "stopped",
                }
            )
        return resources

    def _list_instances(self, creds: Any, project_id: str) -> List[Dict[str, Any]]:
        url = f"{COMPUTE_URL.format(project=project_id)}/aggregated/instances"
        resources = []
        page_token = None
        while True:
            params = {"pageToken": page_token} if page_token else {}
            data = self._call(creds, "GET", url, params=params)
            for scope, scoped in data.get("items", {}).items():
                for instance in scoped.get("instances", []):
                    resources.append(
                        {
                            "id": instance.get("id"),
                            "name": instance.get("name"),
                            "type": "gce",
                            "zone": scope.replace("zones/", ""),
                            "status": str(instance.get("status", "")).lower(),
                        }
                    )
            page_token = data.get("nextPageToken")
            if not page_token:
                return resources

    def required_params(self, action: str, params: Mapping[str, Any]) -> list[str]:
        if action == ACTION_STOP_RESOURCE and not params.get("resourceName"):
            return ["resourceName"]
        return []

    def _execute(self, action: str, params: Mapping[str, Any], user_id: Optional[str]) -> Dict[str, Any]:
        creds, project_id = self._session(user_id, action)
        name = params["resourceName"]
        if params.get("type") == "cloud-run":
            region = params.get("region") or self.config.gcp_region
            url = f"{CLOUD_RUN_SERVICES_URL.format(region=region, project=project_id)}/{name}"
            service = self._call(creds, "GET", url)
            template_meta = service.setdefault("spec", {}).setdefault("template", {}).setdefault("metadata", {})
            annotations = template_meta.setdefault("annotations", {})
            annotations["autoscaling.knative.dev/maxScale"] = "0"
            annotations["autoscaling.knative.dev/minScale"] = "0"
            self._call(creds, "PUT", url, json=service)
            message = f"Cloud Run service {name} scaled to zero"
        else:
            zone = params.get("zone") or self.config.gcp_zone
            url = f"{COMPUTE_URL.format(project=project_id)}/zones/{zone}/instances/{name}/stop"
            self._call(creds, "POST", url)
            message = f"Stop requested for GCE instance {name} in {zone}"

        return {
            "success": True,
            "provider": self.provider.value,
            "action": action,
            "resourceName": name,
            "projectId": project_id,
            "message": message,
            "timestamp": utc_timestamp(),
        }

    def check_health(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        def ping() -> Dict[str, Any]:
            creds, project_id, source = self.resolve_credentials(user_id)
            if not creds.valid:
                creds.refresh(self._request_factory())
            return {"project_id": project_id, "credential_source": source}

        return self.timed_health(ping)

    def translate_error(self, exc: Exception) -> CloudError:
        provider = self.provider.value
        if isinstance(exc, RefreshError):
            return CredentialExpired("GCP token could not be refreshed; reconnect the provider", provider=provider)
        if isinstance(exc, DefaultCredentialsError):
            return AuthFailed("No usable GCP credentials found", provider=provider)
        if isinstance(exc, TransportError):
            return ProviderUnavailable("GCP auth endpoint unreachable", provider=provider)
        if isinstance(exc, GoogleAuthError):
            return AuthFailed(f"GCP authentication failed ({type(exc).__name__})", provider=provider)
        if isinstance(exc, requests.HTTPError):
            response = exc.response
            status = response.status_code if response is not None else 0
            body = response.text.lower() if response is not None else ""
            if status == 401:
                return CredentialExpired("GCP rejected the access token (401)", provider=provider)
            if status == 403 and "billing" in body:
                return BillingDisabled("GCP billing is disabled for this project", provider=provider)
            if status == 403:
                return AuthFailed("GCP denied the request (403)", provider=provider)
            if status in (400, 404, 409):
                return ActionBlocked(f"GCP rejected the request ({status})", provider=provider)
            return ProviderUnavailable(f"GCP request failed ({status})", provider=provider)
        if isinstance(exc, (requests.Timeout, requests.ConnectionError)):
            return ProviderUnavailable("GCP endpoint unreachable or timed out", provider=provider)
        return ProviderUnavailable(f"GCP request failed ({type(exc).__name__})", provider=provider)
