"""Health check utilities for monitoring system status."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from context import AppContext
from intent_parser import SYSTEM_INSTRUCTIONS, parse_llm_response
from logging_utils import logger


@dataclass
class HealthCheck:
    """Individual health check result."""

    name: str
    healthy: bool
    message: str
    latency_ms: Optional[int] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class HealthStatus:
    """Overall health status of the system."""

    healthy: bool
    checks: Dict[str, HealthCheck]
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "healthy": self.healthy,
            "timestamp": self.timestamp,
            "checks": {
                name: {
                    "healthy": check.healthy,
                    "message": check.message,
                    "latency_ms": check.latency_ms,
                    "metadata": check.metadata,
                }
                for name, check in self.checks.items()
            },
        }


def check_vault(context: AppContext) -> HealthCheck:
    """Encrypt and decrypt a sample value with the configured key."""
    start = time.time()
    sample = f"health-{start}"
    healthy = context.vault.decrypt(context.vault.encrypt(sample)) == sample
    return HealthCheck(
        name="vault",
        healthy=healthy,
        message="Vault encryption round trip succeeded" if healthy else "Vault encryption round trip failed",
        latency_ms=int((time.time() - start) * 1000),
    )


def check_adapter(context: AppContext, provider: str, user_id: Optional[str] = None) -> HealthCheck:
    start = time.time()
    report = context.adapter(provider).check_health(user_id)
    healthy = bool(report.get("healthy"))
    return HealthCheck(
        name=f"adapter_{provider}",
        healthy=healthy,
        message="Credentials resolved" if healthy else f"Adapter unhealthy: {report.get('error')}",
        latency_ms=int((time.time() - start) * 1000),
        metadata={k: v for k, v in report.items() if k not in ("healthy", "latency_ms")},
    )


def check_llm_classifier(context: AppContext) -> HealthCheck:
    """Check that the LLM classifier answers with a schema-conformant document."""
    start = time.time()
    classifier = context.normalizer.classifier
    if classifier is None:
        return HealthCheck(
            name="llm_classifier",
            healthy=True,
            message="LLM classifier disabled; rule-based classifier in use",
            latency_ms=0,
        )
    try:
        raw = classifier.classify(SYSTEM_INSTRUCTIONS, "Show me my AWS costs for this month")
    except Exception as e:
        return HealthCheck(
            name="llm_classifier",
            healthy=False,
            message=f"LLM API error: {type(e).__name__}",
            latency_ms=int((time.time() - start) * 1000),
        )
    parsed, error = parse_llm_response(raw)
    return HealthCheck(
        name="llm_classifier",
        healthy=parsed is not None,
        message="LLM classifier is reachable" if parsed is not None else f"LLM returned invalid schema: {error}",
        latency_ms=int((time.time() - start) * 1000),
        metadata={"model": getattr(getattr(classifier, "config", None), "model", None)},
    )


def check_logging() -> HealthCheck:
    """Check if logging system is functional."""
    start = time.time()

    try:
        logger.info("Health check test log", extra={"extra": {"test": True}})

        return HealthCheck(
            name="logging",
            healthy=True,
            message="Logging system is functional",
            latency_ms=int((time.time() - start) * 1000),
        )

    except Exception as e:
        return HealthCheck(
            name="logging",
            healthy=False,
            message=f"Logging error: {str(e)}",
            latency_ms=int((time.time() - start) * 1000),
        )


def get_health_status(
    context: AppContext, include_adapters: bool = True, include_llm_check: bool = False
) -> HealthStatus:
    """
    Get overall system health status.

    Args:
        context: Wired application context
        include_adapters: Whether to check provider credentials (network calls)
        include_llm_check: Whether to include an LLM round trip (slower, billed)

    Returns:
        HealthStatus with all check results
    """
    checks: Dict[str, HealthCheck] = {}

    checks["vault"] = check_vault(context)
    checks["logging"] = check_logging()

    if include_adapters:
        for provider in context.adapters:
            check = check_adapter(context, provider.value)
            checks[check.name] = check

    if include_llm_check:
        checks["llm_classifier"] = check_llm_classifier(context)

    overall_healthy = all(check.healthy for check in checks.values())

    return HealthStatus(healthy=overall_healthy, checks=checks)


def health_check_cli() -> int:
    """
    CLI command for health checks.

    Returns:
        0 if healthy, 1 if unhealthy
    """
    import json
    import sys

    from context import build_context

    include_llm = "--full" in sys.argv or "-f" in sys.argv
    offline = "--offline" in sys.argv

    status = get_health_status(build_context(), include_adapters=not offline, include_llm_check=include_llm)

    print(json.dumps(status.to_dict(), indent=2, default=str))

    return 0 if status.healthy else 1


if __name__ == "__main__":
    exit(health_check_cli())
