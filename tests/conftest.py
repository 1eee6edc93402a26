"""Pytest configuration and shared fixtures."""
import json
import sys
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional
from unittest.mock import MagicMock

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

# Add src directory to Python path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from audit import AuditRecorder
from cloud_adapter import CloudAdapter
from config import AppConfig, CloudConfig, LoggingConfig, SecurityConfig
from errors import CloudError, ProviderUnavailable
from models import CloudProvider
from stores import InMemoryAuditStore, InMemoryConnectionStore, InMemoryIntentStore
from vault import CredentialVault


class FakeCloudAdapter(CloudAdapter):
    """In-process adapter that records every provider call instead of making it."""

    def __init__(self, vault, config, provider=CloudProvider.AWS, fail_with: Optional[CloudError] = None):
        super().__init__(vault, config)
        self.provider = provider
        self.fail_with = fail_with
        self.calls: List[tuple] = []

    def _maybe_fail(self):
        if self.fail_with is not None:
            raise self.fail_with

    def get_billing(self, user_id=None):
        self.calls.append(("get_billing", user_id))
        self._maybe_fail()
        return {"success": True, "provider": self.provider.value, "currentSpend": 42.0}

    def list_resources(self, user_id=None):
        self.calls.append(("list_resources", user_id))
        self._maybe_fail()
        return {"success": True, "provider": self.provider.value, "resources": [{"id": "r-1"}]}

    def check_health(self, user_id=None):
        self.calls.append(("check_health", user_id))
        return {"provider": self.provider.value, "healthy": self.fail_with is None}

    def required_params(self, action: str, params: Mapping[str, Any]) -> list:
        return [] if params.get("resourceId") or params.get("resourceName") else ["resourceId"]

    def _execute(self, action, params, user_id):
        self.calls.append(("execute_action", action, dict(params), user_id))
        self._maybe_fail()
        return {"success": True, "action": action, "resourceId": params.get("resourceId")}

    def translate_error(self, exc: Exception) -> CloudError:
        return ProviderUnavailable(str(exc), provider=self.provider.value)


class StubClassifier:
    """LLM classifier double returning canned content or raising."""

    def __init__(self, content: Optional[str] = None, error: Optional[Exception] = None):
        self.content = content
        self.error = error
        self.calls: List[tuple] = []
        self.last_usage = {"prompt_tokens": 100, "completion_tokens": 50}

    def classify(self, system_instructions: str, prompt: str) -> str:
        self.calls.append((system_instructions, prompt))
        if self.error is not None:
            raise self.error
        return self.content


@pytest.fixture
def encryption_key() -> str:
    return AESGCM.generate_key(bit_length=256).hex()


@pytest.fixture
def connection_store():
    return InMemoryConnectionStore()


@pytest.fixture
def vault(connection_store, encryption_key):
    return CredentialVault(connection_store, bytes.fromhex(encryption_key))


@pytest.fixture
def intent_store():
    return InMemoryIntentStore()


@pytest.fixture
def audit_store():
    return InMemoryAuditStore()


@pytest.fixture
def audit_recorder(audit_store):
    return AuditRecorder(audit_store)


@pytest.fixture
def read_only_config() -> CloudConfig:
    return CloudConfig(read_only=True, timeout_seconds=5)


@pytest.fixture
def writable_config() -> CloudConfig:
    return CloudConfig(read_only=False, timeout_seconds=5, gcp_project_id="demo-project")


@pytest.fixture
def fake_adapter_factory(vault, writable_config):
    def build(provider=CloudProvider.AWS, config=None, fail_with=None):
        return FakeCloudAdapter(vault, config or writable_config, provider=provider, fail_with=fail_with)

    return build


@pytest.fixture
def stub_classifier_factory():
    def build(content=None, error=None):
        return StubClassifier(content=content, error=error)

    return build


@pytest.fixture
def app_config(encryption_key, tmp_path) -> AppConfig:
    config = AppConfig()
    config.vault.encryption_key = encryption_key
    config.security = SecurityConfig()
    config.cloud = CloudConfig(read_only=False, timeout_seconds=5)
    config.logging = LoggingConfig(log_path=tmp_path / "safeops.log", console_output=False)
    return config


@pytest.fixture
def llm_payload() -> Dict[str, Any]:
    """A schema-conformant classifier document."""
    return {
        "intentType": "INVENTORY",
        "provider": "gcp",
        "action": "LIST_RESOURCES",
        "parameters": {},
        "summary": "Inventory sweep of Cloud Run services",
        "steps": ["Authenticate", "List services", "Present findings"],
        "ctas": [{"label": "View", "action": "NAVIGATE", "type": "NAVIGATE", "requiresConfirmation": False}],
        "hooks": ["2 services idle"],
        "confidence": 0.92,
        "requiresConfirmation": False,
    }


@pytest.fixture
def mock_openai_client(llm_payload):
    """Mock OpenAI client whose chat completion returns ``llm_payload``."""
    mock_message = MagicMock()
    mock_message.content = json.dumps(llm_payload)

    mock_choice = MagicMock()
    mock_choice.message = mock_message

    mock_response = MagicMock()
    mock_response.choices = [mock_choice]
    mock_usage = MagicMock()
    mock_usage.prompt_tokens = 100
    mock_usage.completion_tokens = 50
    mock_response.usage = mock_usage

    client = MagicMock()
    client.chat.completions.create.return_value = mock_response
    return client


@pytest.fixture
def mock_metrics():
    """Fresh AgentMetrics for testing."""
    from metrics import AgentMetrics
    return AgentMetrics()
