"""Deterministic policy validation for normalized intents with observability."""
from __future__ import annotations

import time
from typing import Optional, Tuple

from errors import ValidationBlocked
from logging_utils import logger
from metrics import AgentMetrics
from models import Intent, IntentStatus, IntentType
from stores import IntentStore

Decision = Tuple[IntentStatus, Optional[str]]

DEFAULT_MIN_CONFIDENCE = 0.7
UNRECOGNIZED_INTENT = "Unrecognized intent"
LOW_CONFIDENCE = "Confidence too low — please clarify your request"


def evaluate_intent(
    intent_type: IntentType,
    confidence: float,
    requires_confirmation: bool,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
) -> Decision:
    """
    Apply the fixed-order rule set. The order is part of the contract.

    1. UNKNOWN intents are blocked.
    2. Low confidence is blocked, even when no confirmation would be needed.
    3. Otherwise the intent waits for confirmation or executes directly.

    Returns: (BLOCKED | PENDING_CONFIRMATION | EXECUTING, reason)
    """
    if intent_type == IntentType.UNKNOWN:
        return IntentStatus.BLOCKED, UNRECOGNIZED_INTENT
    if confidence < min_confidence:
        return IntentStatus.BLOCKED, LOW_CONFIDENCE
    if requires_confirmation:
        return IntentStatus.PENDING_CONFIRMATION, None
    return IntentStatus.EXECUTING, None


class PolicyValidator:
    def __init__(self, store: IntentStore, min_confidence: float = DEFAULT_MIN_CONFIDENCE) -> None:
        self.store = store
        self.min_confidence = min_confidence

    def validate(self, intent: Intent, metrics: Optional[AgentMetrics] = None) -> Intent:
        """Set the intent's post-validation status and persist it.

        Only PENDING_VALIDATION intents are evaluated; anything else is returned unchanged.
        """
        if intent.status != IntentStatus.PENDING_VALIDATION:
            logger.info(
                "Intent already validated; skipping policy evaluation",
                extra={"extra": {"intent_id": intent.id, "status": intent.status.value}},
            )
            return intent

        policy_start = time.time()
        status, reason = evaluate_intent(
            intent.intent_type, intent.confidence, intent.requires_confirmation, self.min_confidence
        )
        intent.status = status
        intent.error = reason

        try:
            self.store.update(intent)
        except Exception as exc:
            logger.warning(
                "Could not persist intent status",
                extra={"extra": {"intent_id": intent.id, "error": str(exc), "error_type": type(exc).__name__}},
            )

        logger.info(
            "Policy evaluation result",
            extra={
                "extra": {
                    "correlation_id": metrics.correlation_id if metrics else None,
                    "intent_id": intent.id,
                    "status": status.value,
                    "reason": reason,
                    "intent_type": intent.intent_type.value,
                    "action": intent.action,
                    "confidence": intent.confidence,
                }
            },
        )

        if metrics:
            metrics.validation_status = status.value
            metrics.validation_reason = reason
            metrics.policy_latency_ms = int((time.time() - policy_start) * 1000)
        return intent

    @staticmethod
    def enforce(intent: Intent) -> Intent:
        """Raise ValidationBlocked for a blocked intent; return it unchanged otherwise."""
        if intent.status == IntentStatus.BLOCKED:
            raise ValidationBlocked(intent.error or UNRECOGNIZED_INTENT, details={"intent_id": intent.id})
        return intent
