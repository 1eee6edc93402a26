"""Journey dispatcher: advances validated intents to a terminal state through the cloud adapters."""
from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Mapping, Optional

from audit import AuditRecorder
from cloud_adapter import CloudAdapter
from errors import ActionBlocked, CloudError, IntentNotFound, InvalidTransition, ProviderUnavailable
from logging_utils import logger
from metrics import AgentMetrics
from models import (
    ACTION_GET_BILLING,
    ACTION_GET_CONNECTIVITY,
    ACTION_LIST_RESOURCES,
    ACTION_NONE,
    CloudProvider,
    Intent,
    IntentStatus,
    Provider,
    is_mutating_action,
)
from stores import IntentStore

READ_ACTIONS: Dict[str, str] = {
    ACTION_GET_BILLING: "get_billing",
    ACTION_LIST_RESOURCES: "list_resources",
    ACTION_GET_CONNECTIVITY: "check_health",
}

CLAIMABLE_STATUSES = [IntentStatus.PENDING_CONFIRMATION, IntentStatus.EXECUTING]


class JourneyDispatcher:
    """Moves intents from PENDING_CONFIRMATION/EXECUTING to COMPLETED or FAILED.

    Execution is claimed with a conditional write on the intent (status still
    claimable and ``started_at`` unset) before any adapter call, so a repeated or
    concurrent ``advance_step`` for the same intent never reaches the provider twice.
    """

    def __init__(
        self,
        store: IntentStore,
        adapters: Mapping[CloudProvider, CloudAdapter],
        audit: AuditRecorder,
        max_workers: int = 4,
    ) -> None:
        self.store = store
        self.adapters = dict(adapters)
        self.audit = audit
        self.max_workers = max_workers

    def _load(self, intent_id: str) -> Intent:
        intent = self.store.get(intent_id)
        if intent is None:
            raise IntentNotFound(f"Intent {intent_id} not found", details={"intent_id": intent_id})
        return intent

    def advance_step(self, intent_id: str, next_step: Optional[str] = None, metrics: Optional[AgentMetrics] = None) -> Intent:
        metrics = metrics or AgentMetrics()
        intent = self._load(intent_id)

        if intent.is_terminal:
            logger.info(
                "Intent already terminal; returning stored outcome",
                extra={"extra": {"correlation_id": metrics.correlation_id, "intent_id": intent_id, "status": intent.status.value}},
            )
            return intent
        if intent.status == IntentStatus.PENDING_VALIDATION:
            raise InvalidTransition(
                "Intent must be validated before it can advance",
                details={"intent_id": intent_id, "status": intent.status.value},
            )

        claimed = self.store.update_if(
            intent_id,
            expected={"status": CLAIMABLE_STATUSES, "started_at": None},
            updates={"status": IntentStatus.EXECUTING, "started_at": time.time(), "current_step": next_step},
        )
        if claimed is None:
            current = self._load(intent_id)
            logger.info(
                "Execution already claimed; skipping duplicate dispatch",
                extra={"extra": {"correlation_id": metrics.correlation_id, "intent_id": intent_id, "status": current.status.value}},
            )
            return current

        logger.info(
            "Advancing intent",
            extra={"extra": {"correlation_id": metrics.correlation_id, "intent_id": intent_id, "step": next_step, "action": claimed.action}},
        )
        return self._run(claimed, metrics)

    def complete_journey(self, intent_id: str, result: Any) -> Intent:
        """Close a claimable intent with an externally produced result.

        Terminal intents are returned as stored; PENDING_VALIDATION raises InvalidTransition.
        """
        completed = self.store.update_if(
            intent_id,
            expected={"status": CLAIMABLE_STATUSES},
            updates={"status": IntentStatus.COMPLETED, "result": result, "error": None},
        )
        if completed is None:
            current = self._load(intent_id)
            if current.status == IntentStatus.PENDING_VALIDATION:
                raise InvalidTransition(
                    "Intent must be validated before it can complete",
                    details={"intent_id": intent_id, "status": current.status.value},
                )
            return current
        self.audit.record_intent(completed)
        return completed

    def _run(self, intent: Intent, metrics: AgentMetrics) -> Intent:
        start = time.time()
        failure: Optional[CloudError] = None
        try:
            result = self._dispatch(intent, metrics)
        except CloudError as exc:
            failure = exc
        except Exception as exc:
            logger.exception(
                "Unexpected dispatcher failure",
                extra={"extra": {"correlation_id": metrics.correlation_id, "intent_id": intent.id}},
            )
            failure = ProviderUnavailable(f"Unexpected error during execution ({type(exc).__name__})")

        intent.execution_time_ms = int((time.time() - start) * 1000)
        metrics.execution_latency_ms = intent.execution_time_ms
        if failure is None:
            intent.status = IntentStatus.COMPLETED
            intent.result = result
            intent.error = None
        else:
            intent.status = IntentStatus.FAILED
            intent.error = failure.message

        try:
            stored = self.store.update_if(
                intent.id,
                expected={"status": IntentStatus.EXECUTING},
                updates={
                    "status": intent.status,
                    "result": intent.result,
                    "error": intent.error,
                    "execution_time_ms": intent.execution_time_ms,
                },
            )
        except Exception as exc:
            logger.error(
                "Could not persist intent outcome",
                extra={"extra": {"correlation_id": metrics.correlation_id, "intent_id": intent.id, "status": intent.status.value, "error": str(exc)}},
            )
        else:
            if stored is None:
                current = self._load(intent.id)
                logger.info(
                    "Intent closed elsewhere; keeping stored outcome",
                    extra={"extra": {"correlation_id": metrics.correlation_id, "intent_id": intent.id, "status": current.status.value}},
                )
                return current

        logger.info(
            "Intent finished",
            extra={
                "extra": {
                    "correlation_id": metrics.correlation_id,
                    "intent_id": intent.id,
                    "status": intent.status.value,
                    "error_code": failure.code.value if failure else None,
                    "execution_time_ms": intent.execution_time_ms,
                }
            },
        )
        self.audit.record_intent(intent)
        if failure is not None:
            self.audit.record_error(
                intent.user_id,
                failure.to_dict(),
                {"provider": intent.provider.value, "intent_id": intent.id},
                org_id=intent.org_id,
            )
        return intent

    def _adapters_for(self, provider: Provider) -> List[CloudAdapter]:
        if provider == Provider.MULTI:
            return list(self.adapters.values())
        if provider == Provider.NONE:
            return []
        adapter = self.adapters.get(CloudProvider(provider.value))
        return [adapter] if adapter else []

    def _dispatch(self, intent: Intent, metrics: AgentMetrics) -> Any:
        action = intent.action
        if action == ACTION_NONE:
            return None

        adapters = self._adapters_for(intent.provider)
        if not adapters:
            raise ActionBlocked(f"No adapter available for provider '{intent.provider.value}'")

        if is_mutating_action(action):
            if len(adapters) != 1:
                raise ActionBlocked(f"{action} requires a single target provider; got '{intent.provider.value}'")
            metrics.adapter_calls += 1
            return adapters[0].execute_action(action, intent.parameters, intent.user_id)

        method = READ_ACTIONS.get(action)
        if method is None:
            raise ActionBlocked(f"Unsupported action: {action}")
        if len(adapters) == 1:
            metrics.adapter_calls += 1
            return getattr(adapters[0], method)(intent.user_id)
        return self._fan_out(adapters, method, intent.user_id, metrics)

    def _fan_out(self, adapters: List[CloudAdapter], method: str, user_id: str, metrics: AgentMetrics) -> Dict[str, Any]:
        """Query every provider concurrently; fail only if all of them fail."""
        metrics.adapter_calls += len(adapters)
        results: Dict[str, Any] = {}
        errors: List[CloudError] = []
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(adapters))) as pool:
            futures = {a.provider.value: pool.submit(getattr(a, method), user_id) for a in adapters}
            for name, future in futures.items():
                try:
                    results[name] = future.result()
                except CloudError as exc:
                    errors.append(exc)
                    results[name] = {"success": False, "error": exc.to_dict()}
        if len(errors) == len(adapters):
            raise errors[0]
        return {"success": True, "providers": results}
