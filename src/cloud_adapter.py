"""Provider-agnostic cloud adapter interface with the read-only safety gate."""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, Mapping, Optional

from config import CloudConfig
from errors import ActionBlocked, CloudError
from logging_utils import logger
from models import ACTION_STOP_RESOURCE, CloudProvider
from vault import CredentialVault

SUPPORTED_ACTIONS: frozenset[str] = frozenset({ACTION_STOP_RESOURCE})


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class CloudAdapter(ABC):
    """Uniform capability set over one provider: billing, inventory, actions, health.

    Credentials are resolved on every call: vaulted credentials first, then the
    provider's federated fallback, then ambient credentials. Subclasses translate
    their SDK exceptions into the ``errors`` taxonomy via ``translate_error``.
    """

    provider: CloudProvider

    def __init__(self, vault: CredentialVault, config: CloudConfig) -> None:
        self.vault = vault
        self.config = config
        self.read_only = config.read_only

    @abstractmethod
    def get_billing(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Month-to-date spend for the user's account or project."""

    @abstractmethod
    def list_resources(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Resources across the provider's supported types, joined into one list."""

    @abstractmethod
    def check_health(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Report whether credentials resolve; never raises."""

    @abstractmethod
    def _execute(self, action: str, params: Mapping[str, Any], user_id: Optional[str]) -> Dict[str, Any]:
        """Issue the provider call for an already gated, validated action."""

    @abstractmethod
    def required_params(self, action: str, params: Mapping[str, Any]) -> list[str]:
        """Names of parameters missing for ``action``."""

    @abstractmethod
    def translate_error(self, exc: Exception) -> CloudError:
        """Map a provider SDK exception to the error taxonomy."""

    def execute_action(self, action: str, params: Optional[Mapping[str, Any]], user_id: Optional[str]) -> Dict[str, Any]:
        params = dict(params or {})
        if self.read_only:
            logger.warning(
                "Action blocked by read-only gate",
                extra={"extra": {"provider": self.provider.value, "action": action, "user_id": user_id}},
            )
            raise ActionBlocked(
                f"{action} is a write operation and the system is in READ-ONLY mode",
                provider=self.provider.value,
            )
        if action not in SUPPORTED_ACTIONS:
            raise ActionBlocked(f"Unsupported action: {action}", provider=self.provider.value)
        missing = self.required_params(action, params)
        if missing:
            raise ActionBlocked(
                f"{action} requires parameters: {', '.join(missing)}",
                provider=self.provider.value,
                details={"missing": missing},
            )

        logger.info(
            "Executing provider action",
            extra={"extra": {"provider": self.provider.value, "action": action, "user_id": user_id}},
        )
        with self.provider_errors(action):
            return self._execute(action, params, user_id)

    @contextmanager
    def provider_errors(self, operation: str) -> Iterator[None]:
        """Re-raise anything that is not already a CloudError as a taxonomy error."""
        try:
            yield
        except CloudError:
            raise
        except Exception as exc:
            translated = self.translate_error(exc)
            logger.error(
                "Provider call failed",
                extra={
                    "extra": {
                        "provider": self.provider.value,
                        "operation": operation,
                        "code": translated.code.value,
                        "error_type": type(exc).__name__,
                    }
                },
            )
            raise translated from exc

    def run_concurrently(self, calls: Mapping[str, Callable[[], Any]]) -> Dict[str, Any]:
        """Run independent provider calls in parallel; the first failure is raised."""
        if not calls:
            return {}
        workers = max(1, min(self.config.max_workers, len(calls)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"{self.provider.value}-call") as pool:
            futures = {name: pool.submit(fn) for name, fn in calls.items()}
            return {name: future.result() for name, future in futures.items()}

    def timed_health(self, check: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
        start = time.time()
        try:
            details = check()
        except Exception as exc:
            translated = exc if isinstance(exc, CloudError) else self.translate_error(exc)
            return {
                "provider": self.provider.value,
                "healthy": False,
                "error": translated.code.value,
                "message": translated.message,
                "latency_ms": int((time.time() - start) * 1000),
                "read_only": self.read_only,
            }
        return {
            "provider": self.provider.value,
            "healthy": True,
            "latency_ms": int((time.time() - start) * 1000),
            "read_only": self.read_only,
            **details,
        }

