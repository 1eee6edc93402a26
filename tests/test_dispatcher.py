"""Tests for executor.py - idempotent journey dispatch."""
from concurrent.futures import ThreadPoolExecutor

import pytest

from config import CloudConfig
from errors import AuthFailed, IntentNotFound, InvalidTransition
from executor import JourneyDispatcher
from models import (
    ACTION_GET_BILLING,
    ACTION_LIST_RESOURCES,
    ACTION_NONE,
    ACTION_STOP_RESOURCE,
    CloudProvider,
    Intent,
    IntentStatus,
    IntentType,
    Provider,
    Severity,
)
from stores import InMemoryIntentStore


def stored_intent(store, status=IntentStatus.PENDING_CONFIRMATION, action=ACTION_STOP_RESOURCE, provider=Provider.AWS, **kwargs):
    intent = Intent(
        user_id="u1",
        org_id="acme",
        raw_prompt="stop i-0123456789abcdef0",
        intent_type=IntentType.DEPLOYMENT if action == ACTION_STOP_RESOURCE else IntentType.COST_CONTROL,
        provider=provider,
        action=action,
        parameters={"resourceId": "i-0123456789abcdef0"},
        confidence=0.9,
        status=status,
        **kwargs,
    )
    store.create(intent)
    return intent


@pytest.fixture
def aws_adapter(fake_adapter_factory):
    return fake_adapter_factory(CloudProvider.AWS)


@pytest.fixture
def dispatcher(intent_store, aws_adapter, audit_recorder):
    return JourneyDispatcher(intent_store, {CloudProvider.AWS: aws_adapter}, audit_recorder)


@pytest.mark.unit
class TestAdvanceStep:
    def test_confirmed_stop_completes(self, dispatcher, intent_store, aws_adapter, mock_metrics):
        intent = stored_intent(intent_store)

        result = dispatcher.advance_step(intent.id, "confirmed", mock_metrics)

        assert result.status == IntentStatus.COMPLETED
        assert result.result["resourceId"] == "i-0123456789abcdef0"
        assert result.current_step == "confirmed"
        assert result.execution_time_ms is not None
        assert aws_adapter.calls == [
            ("execute_action", ACTION_STOP_RESOURCE, {"resourceId": "i-0123456789abcdef0"}, "u1")
        ]
        assert mock_metrics.adapter_calls == 1
        assert intent_store.get(intent.id).status == IntentStatus.COMPLETED

    def test_second_advance_is_a_no_op(self, dispatcher, intent_store, aws_adapter):
        intent = stored_intent(intent_store)

        first = dispatcher.advance_step(intent.id, "confirmed")
        second = dispatcher.advance_step(intent.id, "confirmed-again")

        assert len(aws_adapter.calls) == 1
        assert second.status == IntentStatus.COMPLETED
        assert second.result == first.result
        assert second.current_step == "confirmed"

    def test_concurrent_advances_call_provider_once(self, dispatcher, intent_store, aws_adapter):
        intent = stored_intent(intent_store)

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(lambda _: dispatcher.advance_step(intent.id, "confirmed"), range(16)))

        assert len(aws_adapter.calls) == 1
        assert intent_store.get(intent.id).status == IntentStatus.COMPLETED
        assert all(o.status in (IntentStatus.EXECUTING, IntentStatus.COMPLETED) for o in outcomes)

    def test_unknown_intent(self, dispatcher):
        with pytest.raises(IntentNotFound):
            dispatcher.advance_step("does-not-exist")

    def test_unvalidated_intent_rejected(self, dispatcher, intent_store, aws_adapter):
        intent = stored_intent(intent_store, status=IntentStatus.PENDING_VALIDATION)

        with pytest.raises(InvalidTransition):
            dispatcher.advance_step(intent.id)

        assert aws_adapter.calls == []

    def test_blocked_intent_returned_unchanged(self, dispatcher, intent_store, aws_adapter):
        intent = stored_intent(intent_store, status=IntentStatus.BLOCKED, error="Unrecognized intent")

        result = dispatcher.advance_step(intent.id)

        assert result.status == IntentStatus.BLOCKED
        assert result.error == "Unrecognized intent"
        assert aws_adapter.calls == []

    def test_read_only_gate_fails_intent(self, intent_store, audit_recorder, audit_store, fake_adapter_factory):
        adapter = fake_adapter_factory(config=CloudConfig(read_only=True))
        dispatcher = JourneyDispatcher(intent_store, {CloudProvider.AWS: adapter}, audit_recorder)
        intent = stored_intent(intent_store)

        result = dispatcher.advance_step(intent.id, "confirmed")

        assert result.status == IntentStatus.FAILED
        assert "READ-ONLY" in result.error
        assert adapter.calls == []
        actions = {record.action: record for record in audit_store.list(intent_id=intent.id)}
        assert actions[ACTION_STOP_RESOURCE].severity == Severity.HIGH
        assert "ERROR:ACTION_BLOCKED" in actions

    def test_provider_error_fails_intent(self, intent_store, audit_recorder, fake_adapter_factory):
        adapter = fake_adapter_factory(fail_with=AuthFailed("AWS rejected the credentials", provider="aws"))
        dispatcher = JourneyDispatcher(intent_store, {CloudProvider.AWS: adapter}, audit_recorder)
        intent = stored_intent(intent_store, status=IntentStatus.EXECUTING, action=ACTION_GET_BILLING)

        result = dispatcher.advance_step(intent.id)

        assert result.status == IntentStatus.FAILED
        assert result.error == "AWS rejected the credentials"

    def test_unexpected_exception_fails_intent(self, dispatcher, intent_store, aws_adapter, monkeypatch):
        def explode(user_id=None):
            raise RuntimeError("socket closed")

        monkeypatch.setattr(aws_adapter, "list_resources", explode)
        intent = stored_intent(intent_store, status=IntentStatus.EXECUTING, action=ACTION_LIST_RESOURCES)

        result = dispatcher.advance_step(intent.id)

        assert result.status == IntentStatus.FAILED
        assert "RuntimeError" in result.error

    def test_read_action_auto_executes(self, dispatcher, intent_store, aws_adapter):
        intent = stored_intent(intent_store, status=IntentStatus.EXECUTING, action=ACTION_GET_BILLING)

        result = dispatcher.advance_step(intent.id, "auto-execute")

        assert result.status == IntentStatus.COMPLETED
        assert result.result["currentSpend"] == 42.0
        assert aws_adapter.calls == [("get_billing", "u1")]

    def test_no_action_completes_without_provider_calls(self, dispatcher, intent_store, aws_adapter):
        intent = stored_intent(intent_store, status=IntentStatus.EXECUTING, action=ACTION_NONE, provider=Provider.NONE)

        result = dispatcher.advance_step(intent.id)

        assert result.status == IntentStatus.COMPLETED
        assert result.result is None
        assert aws_adapter.calls == []

    def test_missing_adapter_fails(self, dispatcher, intent_store):
        intent = stored_intent(intent_store, status=IntentStatus.EXECUTING, action=ACTION_GET_BILLING, provider=Provider.GCP)

        result = dispatcher.advance_step(intent.id)

        assert result.status == IntentStatus.FAILED


@pytest.mark.unit
class TestMultiProvider:
    @pytest.fixture
    def adapters(self, fake_adapter_factory):
        return {
            CloudProvider.AWS: fake_adapter_factory(CloudProvider.AWS),
            CloudProvider.GCP: fake_adapter_factory(CloudProvider.GCP),
        }

    def test_fan_out_collects_every_provider(self, intent_store, audit_recorder, adapters, mock_metrics):
        dispatcher = JourneyDispatcher(intent_store, adapters, audit_recorder)
        intent = stored_intent(intent_store, status=IntentStatus.EXECUTING, action=ACTION_LIST_RESOURCES, provider=Provider.MULTI)

        result = dispatcher.advance_step(intent.id, metrics=mock_metrics)

        assert result.status == IntentStatus.COMPLETED
        assert set(result.result["providers"]) == {"aws", "gcp"}
        assert mock_metrics.adapter_calls == 2

    def test_partial_failure_still_completes(self, intent_store, audit_recorder, adapters, fake_adapter_factory):
        adapters[CloudProvider.GCP] = fake_adapter_factory(
            CloudProvider.GCP, fail_with=AuthFailed("No usable GCP credentials found", provider="gcp")
        )
        dispatcher = JourneyDispatcher(intent_store, adapters, audit_recorder)
        intent = stored_intent(intent_store, status=IntentStatus.EXECUTING, action=ACTION_GET_BILLING, provider=Provider.MULTI)

        result = dispatcher.advance_step(intent.id)

        assert result.status == IntentStatus.COMPLETED
        assert result.result["providers"]["aws"]["currentSpend"] == 42.0
        assert result.result["providers"]["gcp"]["success"] is False
        assert result.result["providers"]["gcp"]["error"]["code"] == "AUTH_FAILED"

    def test_all_failing_fails_intent(self, intent_store, audit_recorder, fake_adapter_factory):
        error = AuthFailed("no credentials")
        adapters = {
            CloudProvider.AWS: fake_adapter_factory(CloudProvider.AWS, fail_with=error),
            CloudProvider.GCP: fake_adapter_factory(CloudProvider.GCP, fail_with=error),
        }
        dispatcher = JourneyDispatcher(intent_store, adapters, audit_recorder)
        intent = stored_intent(intent_store, status=IntentStatus.EXECUTING, action=ACTION_GET_BILLING, provider=Provider.MULTI)

        assert dispatcher.advance_step(intent.id).status == IntentStatus.FAILED

    def test_mutating_action_needs_single_provider(self, intent_store, audit_recorder, adapters):
        dispatcher = JourneyDispatcher(intent_store, adapters, audit_recorder)
        intent = stored_intent(intent_store, provider=Provider.MULTI)

        result = dispatcher.advance_step(intent.id, "confirmed")

        assert result.status == IntentStatus.FAILED
        assert all(adapter.calls == [] for adapter in adapters.values())


@pytest.mark.unit
class TestCompleteJourney:
    def test_completes_open_intent(self, dispatcher, intent_store, audit_store):
        intent = stored_intent(intent_store)

        result = dispatcher.complete_journey(intent.id, {"note": "handled out of band"})

        assert result.status == IntentStatus.COMPLETED
        assert intent_store.get(intent.id).result == {"note": "handled out of band"}
        assert len(audit_store.list(intent_id=intent.id)) == 1

    def test_terminal_intent_unchanged(self, dispatcher, intent_store):
        intent = stored_intent(intent_store, status=IntentStatus.FAILED, error="boom")

        result = dispatcher.complete_journey(intent.id, {"note": "late"})

        assert result.status == IntentStatus.FAILED
        assert result.result is None

    def test_unvalidated_intent_rejected(self, dispatcher, intent_store, audit_store):
        intent = stored_intent(intent_store, status=IntentStatus.PENDING_VALIDATION)

        with pytest.raises(InvalidTransition):
            dispatcher.complete_journey(intent.id, {"note": "skip validation"})

        assert intent_store.get(intent.id).status == IntentStatus.PENDING_VALIDATION
        assert audit_store.list(intent_id=intent.id) == []

    def test_blocked_intent_unchanged(self, dispatcher, intent_store):
        intent = stored_intent(intent_store, status=IntentStatus.BLOCKED, error="Unrecognized intent")

        result = dispatcher.complete_journey(intent.id, {"note": "late"})

        assert result.status == IntentStatus.BLOCKED
        assert result.error == "Unrecognized intent"

    def test_completion_during_run_is_kept(self, dispatcher, intent_store, aws_adapter, monkeypatch):
        intent = stored_intent(intent_store, status=IntentStatus.EXECUTING, action=ACTION_LIST_RESOURCES)

        def list_then_close(user_id=None):
            dispatcher.complete_journey(intent.id, {"note": "closed by operator"})
            return {"success": True, "resources": []}

        monkeypatch.setattr(aws_adapter, "list_resources", list_then_close)

        result = dispatcher.advance_step(intent.id)

        assert result.status == IntentStatus.COMPLETED
        assert result.result == {"note": "closed by operator"}
        assert intent_store.get(intent.id).result == {"note": "closed by operator"}


class OutcomeWriteFailsStore(InMemoryIntentStore):
    """Claims succeed; the write that records the outcome hits a dead connection."""

    def update_if(self, intent_id, expected, updates):
        if "started_at" not in expected:
            raise ConnectionError("db down")
        return super().update_if(intent_id, expected, updates)


@pytest.mark.unit
class TestOutcomeWriteFailure:
    def test_returns_terminal_intent(self, aws_adapter, audit_recorder, audit_store):
        store = OutcomeWriteFailsStore()
        dispatcher = JourneyDispatcher(store, {CloudProvider.AWS: aws_adapter}, audit_recorder)
        intent = stored_intent(store)

        result = dispatcher.advance_step(intent.id, "confirmed")

        assert result.status == IntentStatus.COMPLETED
        assert result.result["resourceId"] == "i-0123456789abcdef0"
        assert len(audit_store.list(intent_id=intent.id)) == 1

    def test_provider_not_called_again(self, aws_adapter, audit_recorder):
        store = OutcomeWriteFailsStore()
        dispatcher = JourneyDispatcher(store, {CloudProvider.AWS: aws_adapter}, audit_recorder)
        intent = stored_intent(store)

        dispatcher.advance_step(intent.id, "confirmed")
        dispatcher.advance_step(intent.id, "confirmed")

        assert len(aws_adapter.calls) == 1
