"""CLI orchestrator for the safeops pipeline with observability."""
from __future__ import annotations

import argparse
import json
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from context import AppContext, Pipeline, build_context
from errors import SafeOpsError
from logging_utils import logger
from metrics import AgentMetrics
from models import IntentStatus, RequestContext


def load_requests(path: Path) -> List[Dict[str, Any]]:
    """Load prompt requests from a JSON file.

    Each entry carries ``prompt`` plus optional ``userId``/``orgId``/``threadId``.
    """
    with path.open("r", encoding="utf-8") as handle:
        raw_requests = json.load(handle)

    requests: List[Dict[str, Any]] = []
    for entry in raw_requests:
        requests.append(
            {
                "prompt": str(entry.get("prompt", "")),
                "userId": str(entry.get("userId", "cli-user")).strip(),
                "orgId": str(entry.get("orgId", "default")).strip(),
                "threadId": entry.get("threadId"),
            }
        )
    return requests


def process_prompts(context: AppContext, requests: List[Dict[str, Any]], confirm: bool = False) -> List[Dict[str, Any]]:
    """Run every request through the pipeline, optionally confirming pending intents."""
    pipeline = Pipeline(context)
    results = []

    for req in requests:
        metrics = AgentMetrics()
        request_context = RequestContext(user_id=req["userId"], org_id=req["orgId"], thread_id=req.get("threadId"))
        logger.info(
            "Processing prompt",
            extra={"extra": {"correlation_id": metrics.correlation_id, "user_id": request_context.user_id, "prompt": req["prompt"][:100]}},
        )
        try:
            intent = pipeline.submit(req["prompt"], request_context, metrics)
            if confirm and intent.status == IntentStatus.PENDING_CONFIRMATION:
                intent = pipeline.confirm(intent.id, "cli-confirmed", metrics)
        except SafeOpsError as exc:
            results.append({"prompt": req["prompt"], "error": exc.to_dict(), "metrics": metrics.finalize()})
            continue

        result = pipeline.describe(intent, metrics)
        logger.info(
            "Final status",
            extra={
                "extra": {
                    "correlation_id": metrics.correlation_id,
                    "intent_id": intent.id,
                    "status": intent.status.value,
                    "error": intent.error,
                }
            },
        )
        results.append(result)

    return results


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="safeops intent-to-action CLI")
    parser.add_argument("prompts", nargs="*", help="Natural-language requests")
    parser.add_argument("--input", help="Path to a JSON file of requests")
    parser.add_argument("--user", default="cli-user", help="User id for inline prompts")
    parser.add_argument("--org", default="default", help="Org id for inline prompts")
    parser.add_argument("--thread", default=None, help="Thread id for inline prompts")
    parser.add_argument("--confirm", action="store_true", help="Confirm intents that are pending confirmation")
    args = parser.parse_args(argv)

    requests = load_requests(Path(args.input).resolve()) if args.input else []
    requests.extend(
        {"prompt": p, "userId": args.user, "orgId": args.org, "threadId": args.thread} for p in args.prompts
    )
    if not requests:
        parser.error("provide at least one prompt or --input")

    start = time.time()
    context = build_context()
    results = process_prompts(context, requests, confirm=args.confirm)
    total_latency_ms = int((time.time() - start) * 1000)
    logger.info("Completed batch", extra={"extra": {"total_latency_ms": total_latency_ms, "count": len(results)}})
    print(json.dumps(results, indent=2, default=str))


if __name__ == "__main__":
    main()
