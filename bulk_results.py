# bulk_results.py
"""Shared response shape for bulk tool operations.

A bulk backend call either raises (nothing happened, or nothing is known) or
returns a BulkResult. Partial failure is data: the tool still succeeds when at
least one item went through, and reports the ids that did not.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Sequence


log = logging.getLogger(__name__)


@dataclass(frozen=True)
class BulkResult:
    success_count: int
    failed_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_payload(cls, payload: Any) -> "BulkResult":
        payload = payload if isinstance(payload, dict) else {}
        failed = payload.get("failedIds")
        return cls(
            success_count=int(payload.get("successCount") or 0),
            failed_ids=[str(i) for i in failed] if isinstance(failed, list) else [],
        )

    @property
    def failure_count(self) -> int:
        return len(self.failed_ids)

    @property
    def success(self) -> bool:
        return self.success_count > 0


def bulk_tool_result(result: BulkResult, requested: Sequence[str] | int, noun: str, verb: str = "deleted") -> dict[str, Any]:
    total = requested if isinstance(requested, int) else len(requested)
    if result.success_count + result.failure_count != total:
        log.warning(
            "Bulk %s %s: backend accounted for %s of %s requested items",
            verb,
            noun,
            result.success_count + result.failure_count,
            total,
        )
    if result.failed_ids:
        log.warning("Bulk %s %s: %s failed", verb, noun, result.failure_count)

    if not result.failed_ids:
        message = f"Successfully {verb} {result.success_count} {noun}"
    else:
        message = f"{verb.capitalize()} {result.success_count} {noun}, {result.failure_count} failed"

    return {
        "success": result.success,
        f"{verb}_count": result.success_count,
        "failed_ids": list(result.failed_ids),
        "summary": {
            "total_requested": total,
            "success_count": result.success_count,
            "failure_count": result.failure_count,
        },
        "message": message,
    }
