"""Data models and constants for the safeops core pipeline."""
from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class IntentType(str, Enum):
    COST_CONTROL = "COST_CONTROL"
    INVENTORY = "INVENTORY"
    SECURITY = "SECURITY"
    COMPLIANCE = "COMPLIANCE"
    DEPLOYMENT = "DEPLOYMENT"
    CONNECTIVITY = "CONNECTIVITY"
    UNKNOWN = "UNKNOWN"


class Provider(str, Enum):
    """Provider named by an intent (may span several clouds)."""

    AWS = "aws"
    GCP = "gcp"
    MULTI = "multi"
    NONE = "none"


class CloudProvider(str, Enum):
    """A single cloud with an adapter and vaulted credentials."""

    AWS = "aws"
    GCP = "gcp"


class IntentStatus(str, Enum):
    PENDING_VALIDATION = "PENDING_VALIDATION"
    PENDING_CONFIRMATION = "PENDING_CONFIRMATION"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    BLOCKED = "BLOCKED"


TERMINAL_STATUSES: frozenset[IntentStatus] = frozenset(
    {IntentStatus.BLOCKED, IntentStatus.COMPLETED, IntentStatus.FAILED}
)


class ConnectionStatus(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"


class Severity(str, Enum):
    INFO = "INFO"
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class CTAType(str, Enum):
    EXECUTE = "EXECUTE"
    VIEW_BILLING = "VIEW_BILLING"
    NAVIGATE = "NAVIGATE"
    LINK = "LINK"


# Action names understood by the dispatcher.
ACTION_GET_BILLING = "GET_BILLING"
ACTION_LIST_RESOURCES = "LIST_RESOURCES"
ACTION_STOP_RESOURCE = "STOP_RESOURCE"
ACTION_GET_CONNECTIVITY = "GET_CONNECTIVITY"
ACTION_NONE = "NONE"

KNOWN_ACTIONS: set[str] = {
    ACTION_GET_BILLING,
    ACTION_LIST_RESOURCES,
    ACTION_STOP_RESOURCE,
    ACTION_GET_CONNECTIVITY,
    ACTION_NONE,
}
MUTATING_ACTION_PREFIXES: tuple[str, ...] = ("STOP_", "DELETE_", "DISABLE_", "TERMINATE_")


def is_mutating_action(action: Optional[str]) -> bool:
    """True when ``action`` changes provider state (stop, delete, disable, terminate)."""
    if not action:
        return False
    return action.upper().startswith(MUTATING_ACTION_PREFIXES)


def clamp_confidence(value: Any) -> float:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return 0.0
    if confidence != confidence:  # NaN
        return 0.0
    return min(1.0, max(0.0, confidence))


def _now() -> float:
    return time.time()


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class CallToAction:
    """Follow-up action offered to the operator alongside an intent."""

    label: str
    action: str
    type: CTAType = CTAType.EXECUTE
    requires_confirmation: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CallToAction:
        raw_type = str(data.get("type") or CTAType.EXECUTE.value).upper()
        cta_type = CTAType(raw_type) if raw_type in CTAType.__members__ else CTAType.EXECUTE
        return cls(
            label=str(data.get("label", "")),
            action=str(data.get("action", "")),
            type=cta_type,
            requires_confirmation=bool(data.get("requiresConfirmation", data.get("requires_confirmation", False))),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "label": self.label,
            "action": self.action,
            "type": self.type.value,
            "requiresConfirmation": self.requires_confirmation,
        }


@dataclass
class Intent:
    """Structured, validated representation of an operator request.

    The record is never deleted: it is the audit-relevant trace of what was
    asked and what happened. ``confidence`` is clamped to [0, 1] and mutating
    actions always require confirmation.
    """

    user_id: str
    org_id: str
    raw_prompt: str
    intent_type: IntentType = IntentType.UNKNOWN
    provider: Provider = Provider.NONE
    action: str = ACTION_NONE
    thread_id: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    summary: str = ""
    steps: List[str] = field(default_factory=list)
    ctas: List[CallToAction] = field(default_factory=list)
    hooks: List[str] = field(default_factory=list)
    status: IntentStatus = IntentStatus.PENDING_VALIDATION
    confidence: float = 0.0
    requires_confirmation: bool = True
    result: Any = None
    error: Optional[str] = None
    execution_time_ms: Optional[int] = None
    current_step: Optional[str] = None
    started_at: Optional[float] = None
    id: str = field(default_factory=_new_id)
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def __post_init__(self) -> None:
        self.confidence = clamp_confidence(self.confidence)
        if is_mutating_action(self.action):
            self.requires_confirmation = True

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def touch(self) -> None:
        self.updated_at = _now()

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["intent_type"] = self.intent_type.value
        data["provider"] = self.provider.value
        data["status"] = self.status.value
        data["ctas"] = [cta.to_dict() for cta in self.ctas]
        return data


@dataclass
class CloudConnection:
    """Vaulted credentials for one (user, provider) pair.

    Only ``encrypted_data`` holds secrets; ``project_id`` and ``account_id``
    are display metadata kept in cleartext.
    """

    user_id: str
    provider: CloudProvider
    encrypted_data: Optional[str]
    project_id: Optional[str] = None
    account_id: Optional[str] = None
    status: ConnectionStatus = ConnectionStatus.CONNECTED
    connected_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    @property
    def key(self) -> tuple[str, str]:
        return (self.user_id, self.provider.value)

    def public_view(self) -> Dict[str, Any]:
        """Connection fields that are safe to log or display."""
        return {
            "user_id": self.user_id,
            "provider": self.provider.value,
            "project_id": self.project_id,
            "account_id": self.account_id,
            "status": self.status.value,
            "connected_at": self.connected_at,
        }


@dataclass
class AuditRecord:
    """Append-only audit entry."""

    user_id: str
    org_id: str
    provider: str
    action: str
    payload: Any = None
    intent_id: Optional[str] = None
    new_state: Any = None
    severity: Severity = Severity.INFO
    timestamp: float = field(default_factory=_now)
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["severity"] = self.severity.value
        return data


@dataclass
class RequestContext:
    """Caller identity attached to a prompt."""

    user_id: str
    org_id: str = "default"
    thread_id: Optional[str] = None
