"""Application context: explicitly constructed services shared by callers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from audit import AuditRecorder
from aws_adapter import AWSAdapter
from cloud_adapter import CloudAdapter
from config import AppConfig
from executor import JourneyDispatcher
from gcp_adapter import GCPAdapter
from intent_parser import ContextLike, IntentNormalizer, LLMClassifier, OpenAIClassifier
from logging_utils import configure_logging, logger
from metrics import AgentMetrics
from models import CloudProvider, Intent, IntentStatus
from policy_engine import PolicyValidator
from stores import (
    AuditStore,
    ConnectionStore,
    InMemoryAuditStore,
    InMemoryConnectionStore,
    InMemoryIntentStore,
    IntentStore,
)
from vault import CredentialVault


@dataclass
class AppContext:
    config: AppConfig
    intents: IntentStore
    connections: ConnectionStore
    audit_store: AuditStore
    vault: CredentialVault
    adapters: Dict[CloudProvider, CloudAdapter]
    normalizer: IntentNormalizer
    validator: PolicyValidator
    dispatcher: JourneyDispatcher
    audit: AuditRecorder

    def adapter(self, provider: CloudProvider | str) -> CloudAdapter:
        return self.adapters[CloudProvider(provider)]


def build_context(
    config: Optional[AppConfig] = None,
    *,
    intents: Optional[IntentStore] = None,
    connections: Optional[ConnectionStore] = None,
    audit_store: Optional[AuditStore] = None,
    vault: Optional[CredentialVault] = None,
    adapters: Optional[Mapping[CloudProvider, CloudAdapter]] = None,
    classifier: Optional[LLMClassifier] = None,
) -> AppContext:
    """Wire every service; any collaborator can be replaced (tests pass fakes here)."""
    config = config or AppConfig.from_env()
    config.validate()
    configure_logging(config.logging)

    intents = intents or InMemoryIntentStore()
    connections = connections or InMemoryConnectionStore()
    audit_store = audit_store or InMemoryAuditStore()
    vault = vault or CredentialVault.from_config(connections, config.vault)

    if adapters is None:
        adapters = {
            CloudProvider.AWS: AWSAdapter(vault, config.cloud),
            CloudProvider.GCP: GCPAdapter(vault, config.cloud),
        }
    if classifier is None and config.llm.enabled:
        classifier = OpenAIClassifier(config.llm)

    audit = AuditRecorder(audit_store)
    context = AppContext(
        config=config,
        intents=intents,
        connections=connections,
        audit_store=audit_store,
        vault=vault,
        adapters=dict(adapters),
        normalizer=IntentNormalizer(intents, classifier, config.security),
        validator=PolicyValidator(intents, config.security.min_confidence),
        dispatcher=JourneyDispatcher(intents, adapters, audit, max_workers=config.cloud.max_workers),
        audit=audit,
    )
    logger.info(
        "Application context built",
        extra={
            "extra": {
                "llm_enabled": classifier is not None,
                "read_only": config.cloud.read_only,
                "providers": [p.value for p in context.adapters],
            }
        },
    )
    return context


class Pipeline:
    """Prompt → normalize → validate → (auto-)execute, for one request at a time."""

    def __init__(self, context: AppContext) -> None:
        self.context = context

    def submit(self, prompt: str, request_context: ContextLike, metrics: Optional[AgentMetrics] = None) -> Intent:
        metrics = metrics or AgentMetrics()
        intent = self.context.normalizer.normalize(prompt, request_context, metrics)
        intent = self.context.validator.validate(intent, metrics)
        if intent.status == IntentStatus.BLOCKED:
            self.context.audit.record_intent(intent)
            return intent
        if intent.status == IntentStatus.EXECUTING:
            return self.context.dispatcher.advance_step(intent.id, "auto-execute", metrics)
        return intent

    def confirm(self, intent_id: str, next_step: str = "confirmed", metrics: Optional[AgentMetrics] = None) -> Intent:
        return self.context.dispatcher.advance_step(intent_id, next_step, metrics)

    def describe(self, intent: Intent, metrics: AgentMetrics) -> Dict[str, Any]:
        return {"intent": intent.to_dict(), "metrics": metrics.finalize()}
