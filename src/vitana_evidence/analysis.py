"""
Failure Analysis

VTID: VTID-01204

Pattern-based categorisation of failed tasks. The analysis points at the
first failing action (or condition) and suggests what to look at next. It
never changes a task's outcome.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .main import ActionStatus, ExecutionResult, TaskResult

logger = logging.getLogger(__name__)


class FailureCategory(Enum):
    INCOMPLETE_IMPLEMENTATION = "INCOMPLETE_IMPLEMENTATION"
    COMPILATION_ERROR = "COMPILATION_ERROR"
    ENVIRONMENT_ERROR = "ENVIRONMENT_ERROR"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    TIMEOUT = "TIMEOUT"
    DEPENDENCY_ERROR = "DEPENDENCY_ERROR"
    DISPATCH_ERROR = "DISPATCH_ERROR"
    ASSERTION_FAILED = "ASSERTION_FAILED"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


SUGGESTED_ACTIONS = {
    FailureCategory.INCOMPLETE_IMPLEMENTATION: "Create the missing file, route or module, then re-run",
    FailureCategory.COMPILATION_ERROR: "Fix the reported compile/syntax errors before re-running",
    FailureCategory.ENVIRONMENT_ERROR: "Start the required service or free the port, then re-run",
    FailureCategory.AUTHENTICATION_ERROR: "Check credentials and tokens used by the request",
    FailureCategory.TIMEOUT: "Check whether the operation hangs, or raise the action timeout",
    FailureCategory.DEPENDENCY_ERROR: "Install or pin the missing dependency",
    FailureCategory.DISPATCH_ERROR: "Register an executor for the action type or fix the type name",
    FailureCategory.ASSERTION_FAILED: "Compare the evidence payload with the failing condition",
    FailureCategory.UNKNOWN_ERROR: "Review the action evidence and engine logs",
}

# checked in order; first match wins
_PATTERNS = [
    (FailureCategory.INCOMPLETE_IMPLEMENTATION, [
        r"file not found", r"enoent", r"cannot find module", r"404 not found",
        r"does not exist", r"no such file",
    ]),
    (FailureCategory.COMPILATION_ERROR, [
        r"\bts\d+:", r"syntaxerror", r"compilation failed", r"compile error",
    ]),
    (FailureCategory.ENVIRONMENT_ERROR, [
        r"econnrefused", r"connection refused", r"connecterror",
        r"port already in use", r"address already in use", r"not running",
    ]),
    (FailureCategory.AUTHENTICATION_ERROR, [
        r"\b401\b", r"unauthorized", r"\b403\b", r"forbidden", r"invalid token",
    ]),
    (FailureCategory.TIMEOUT, [
        r"timeout", r"timed out", r"etimedout",
    ]),
    (FailureCategory.DEPENDENCY_ERROR, [
        r"npm err", r"package not found", r"eresolve", r"modulenotfounderror",
        r"no matching distribution",
    ]),
]


@dataclass
class FailureAnalysis:
    """Category and guidance for one failed task"""
    category: FailureCategory
    reason: str
    suggested_action: str
    action_id: Optional[str] = None
    action_type: Optional[str] = None
    phase: Optional[str] = None
    failed_conditions: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "category": self.category.value,
            "reason": self.reason,
            "suggested_action": self.suggested_action,
            "evidence": {
                "action_id": self.action_id,
                "action_type": self.action_type,
                "phase": self.phase,
            },
            "failed_conditions": self.failed_conditions,
        }


class FailureAnalyzer:
    """Categorises a failed TaskResult from its first failing action or condition"""

    def analyze(self, task_result: TaskResult) -> FailureAnalysis:
        failed = next((r for r in task_result.results if not r.success), None)
        failed_conditions = []
        if task_result.validation:
            failed_conditions = [e.description for e in task_result.validation.failed_conditions]

        if failed is None:
            if failed_conditions:
                return self._build(
                    FailureCategory.ASSERTION_FAILED,
                    f"Condition not met: {failed_conditions[0]}",
                    None,
                    failed_conditions,
                )
            return self._build(
                FailureCategory.UNKNOWN_ERROR,
                task_result.failure_reason or "Task failed but no failed action was found",
                None,
                failed_conditions,
            )

        category = self.categorize(failed)
        reason = failed.error or f"Action {failed.action_id} {failed.status.value}"
        analysis = self._build(category, reason, failed, failed_conditions)
        logger.debug(f"Task {task_result.task_id} failure categorised as {category.value}")
        return analysis

    @staticmethod
    def categorize(result: ExecutionResult) -> FailureCategory:
        if result.status == ActionStatus.DISPATCH_ERROR:
            return FailureCategory.DISPATCH_ERROR
        if result.status == ActionStatus.TIMEOUT:
            return FailureCategory.TIMEOUT

        data = result.data or {}
        text = " ".join(
            str(part) for part in (result.error, data.get("stderr"), data.get("transport_error")) if part
        ).lower()

        for category, patterns in _PATTERNS:
            if any(re.search(p, text) for p in patterns):
                return category

        if result.action_type == "FILE_VALIDATION":
            return FailureCategory.INCOMPLETE_IMPLEMENTATION
        if result.action_type == "HTTP_REQUEST" and isinstance(data.get("status"), int):
            return FailureCategory.ASSERTION_FAILED
        return FailureCategory.UNKNOWN_ERROR

    @staticmethod
    def _build(
        category: FailureCategory,
        reason: str,
        result: Optional[ExecutionResult],
        failed_conditions: List[str],
    ) -> FailureAnalysis:
        return FailureAnalysis(
            category=category,
            reason=reason,
            suggested_action=SUGGESTED_ACTIONS[category],
            action_id=result.action_id if result else None,
            action_type=result.action_type if result else None,
            phase=result.phase.value if result else None,
            failed_conditions=failed_conditions,
        )
