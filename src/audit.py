"""Append-only audit trail for reports, errors, log snapshots and intent outcomes.

Recording is fire-and-forget: a failing audit store is logged and swallowed so
it never fails the request that produced the record.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from logging_utils import logger
from models import AuditRecord, Intent, IntentStatus, Severity
from stores import AuditStore

DEFAULT_ORG = "default"


class AuditRecorder:
    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def _append(self, record: AuditRecord, kind: str) -> Optional[AuditRecord]:
        try:
            self.store.append(record)
        except Exception as exc:
            logger.error(
                "Audit persistence failed",
                extra={"extra": {"kind": kind, "user_id": record.user_id, "action": record.action, "error": str(exc)}},
            )
            return None
        logger.info(
            "Audit record persisted",
            extra={
                "extra": {
                    "kind": kind,
                    "audit_id": record.id,
                    "user_id": record.user_id,
                    "action": record.action,
                    "severity": record.severity.value,
                }
            },
        )
        return record

    def record_report(
        self,
        user_id: str,
        report: Optional[Dict[str, Any]],
        intent_id: Optional[str] = None,
        org_id: str = DEFAULT_ORG,
    ) -> Optional[AuditRecord]:
        if not user_id or not report:
            return None
        metadata = report.get("metadata") or {}
        record = AuditRecord(
            user_id=user_id,
            org_id=org_id,
            intent_id=intent_id,
            provider=metadata.get("provider") or "system",
            action=report.get("reportType") or "SEMANTIC_REPORT",
            payload=report,
            severity=Severity.HIGH if metadata.get("risk") == "Critical" else Severity.INFO,
        )
        return self._append(record, "report")

    def record_log_trace(
        self, user_id: str, log_report: Optional[Dict[str, Any]], org_id: str = DEFAULT_ORG
    ) -> Optional[AuditRecord]:
        if not user_id or not log_report:
            return None
        record = AuditRecord(
            user_id=user_id,
            org_id=org_id,
            provider=log_report.get("source") or "unknown",
            action="LOG_TRACE",
            payload=log_report,
            severity=Severity.INFO,
        )
        return self._append(record, "log_trace")

    def record_error(
        self,
        user_id: str,
        error_report: Optional[Dict[str, Any]],
        context: Optional[Dict[str, Any]] = None,
        org_id: str = DEFAULT_ORG,
    ) -> Optional[AuditRecord]:
        if not user_id or not error_report:
            return None
        context = context or {}
        record = AuditRecord(
            user_id=user_id,
            org_id=org_id,
            intent_id=context.get("intent_id"),
            provider=context.get("provider") or "system",
            action=f"ERROR:{error_report.get('code') or 'UNKNOWN'}",
            payload=error_report,
            severity=Severity.MEDIUM,
        )
        return self._append(record, "error")

    def record_intent(self, intent: Intent, payload: Any = None) -> Optional[AuditRecord]:
        """Record the outcome of an intent."""
        if intent.status == IntentStatus.FAILED:
            severity = Severity.HIGH
        elif intent.requires_confirmation:
            severity = Severity.MEDIUM
        else:
            severity = Severity.INFO
        record = AuditRecord(
            user_id=intent.user_id,
            org_id=intent.org_id,
            intent_id=intent.id,
            provider=intent.provider.value,
            action=intent.action,
            payload=payload if payload is not None else {"parameters": intent.parameters, "status": intent.status.value},
            new_state=intent.result if intent.status == IntentStatus.COMPLETED else {"error": intent.error},
            severity=severity,
        )
        return self._append(record, "intent")
