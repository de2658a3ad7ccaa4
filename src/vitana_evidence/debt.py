"""
Technical Debt Detection

VTID: VTID-01204

Looks over the actions of a PASSED task for things that worked but should
not stay that way: slow HTTP calls and test/query commands, 5xx responses
that were accepted, responses without a Content-Type, warnings printed by
commands. Findings are advisory and never change a task's outcome.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .main import ExecutionResult, TaskResult

logger = logging.getLogger(__name__)

HTTP_TYPES = {"HTTP_REQUEST"}
COMMAND_TYPES = {"TERMINAL_COMMAND", "PROCESS"}

DEFAULT_HTTP_THRESHOLD_MS = 1000
DEFAULT_COMMAND_THRESHOLD_MS = 500

# only commands that look like test or query runs are timed
_TIMED_COMMAND_MARKERS = ("test", "query")
_WARNING_MARKERS = ("warning", "deprecated")
MAX_WARNING_LENGTH = 100


class DebtCategory(Enum):
    PERFORMANCE_DEGRADATION = "PERFORMANCE_DEGRADATION"
    ERROR_HANDLING_INCOMPLETE = "ERROR_HANDLING_INCOMPLETE"
    API_ENDPOINT_INCOMPLETE = "API_ENDPOINT_INCOMPLETE"
    CODE_QUALITY = "CODE_QUALITY"


class DebtSeverity(Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"


@dataclass
class DebtItem:
    """One finding against a passing action"""
    category: DebtCategory
    severity: DebtSeverity
    description: str
    recommendation: str
    action_id: str
    location: str
    metric: Optional[str] = None
    threshold: Optional[int] = None
    actual: Optional[int] = None
    detected_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        evidence: Dict[str, Any] = {
            "action_id": self.action_id,
            "location": self.location,
        }
        if self.metric:
            evidence.update({"metric": self.metric, "threshold": self.threshold, "actual": self.actual})
        return {
            "detector": TechnicalDebtDetector.name,
            "category": self.category.value,
            "severity": self.severity.value,
            "description": self.description,
            "recommendation": self.recommendation,
            "detected_at": self.detected_at.isoformat(),
            "evidence": evidence,
        }


def severity_for(actual: int, threshold: int) -> DebtSeverity:
    """Severity by how far a measurement overshoots its threshold"""
    ratio = actual / threshold
    if ratio > 3:
        return DebtSeverity.HIGH
    if ratio > 2:
        return DebtSeverity.MEDIUM
    return DebtSeverity.LOW


def extract_warnings(output: str) -> List[str]:
    return [
        line.strip()[:MAX_WARNING_LENGTH]
        for line in output.splitlines()
        if any(marker in line.lower() for marker in _WARNING_MARKERS)
    ]


class TechnicalDebtDetector:
    """Advisory checks over the successful actions of a passed task"""

    name = "performance-detector"

    def __init__(
        self,
        http_threshold_ms: int = DEFAULT_HTTP_THRESHOLD_MS,
        command_threshold_ms: int = DEFAULT_COMMAND_THRESHOLD_MS,
    ):
        self.http_threshold_ms = http_threshold_ms
        self.command_threshold_ms = command_threshold_ms

    def analyze(self, task_result: TaskResult) -> List[DebtItem]:
        items: List[DebtItem] = []
        for result in task_result.results:
            if not result.success:
                continue
            if result.action_type in HTTP_TYPES:
                items.extend(self._check_http(result))
            elif result.action_type in COMMAND_TYPES:
                items.extend(self._check_command(result))

        if items:
            logger.info(f"Task {task_result.task_id}: {len(items)} technical debt item(s)")
        return items

    # =========================================================================
    # Checks
    # =========================================================================

    def _check_http(self, result: ExecutionResult) -> List[DebtItem]:
        data = result.data or {}
        location = f"{data.get('method', 'GET')} {data.get('url', 'unknown URL')}"
        items = []

        duration = data.get("response_time_ms", result.duration_ms) or 0
        if duration > self.http_threshold_ms:
            items.append(DebtItem(
                category=DebtCategory.PERFORMANCE_DEGRADATION,
                severity=severity_for(duration, self.http_threshold_ms),
                description=f"HTTP request took {duration}ms, exceeds {self.http_threshold_ms}ms threshold",
                recommendation="Optimise the endpoint, add caching or paginate the response",
                action_id=result.action_id,
                location=location,
                metric="duration_ms",
                threshold=self.http_threshold_ms,
                actual=duration,
            ))

        status = data.get("status")
        if isinstance(status, int) and status >= 500:
            items.append(DebtItem(
                category=DebtCategory.ERROR_HANDLING_INCOMPLETE,
                severity=DebtSeverity.HIGH,
                description=f"Endpoint answered {status} and the step still passed",
                recommendation="Return 4xx for client errors and fix the server-side failure",
                action_id=result.action_id,
                location=location,
            ))

        headers = {str(k).lower() for k in (data.get("headers") or {})}
        if isinstance(status, int) and "content-type" not in headers:
            items.append(DebtItem(
                category=DebtCategory.API_ENDPOINT_INCOMPLETE,
                severity=DebtSeverity.LOW,
                description="Response missing Content-Type header",
                recommendation="Set a Content-Type header on the response",
                action_id=result.action_id,
                location=location,
            ))
        return items

    def _check_command(self, result: ExecutionResult) -> List[DebtItem]:
        data = result.data or {}
        command = data.get("command")
        if isinstance(command, list):
            command = " ".join(str(c) for c in command)
        location = str(command or "unknown command")
        items = []

        duration = data.get("duration_ms", result.duration_ms) or 0
        timed = any(marker in location.lower() for marker in _TIMED_COMMAND_MARKERS)
        if timed and duration > self.command_threshold_ms:
            items.append(DebtItem(
                category=DebtCategory.PERFORMANCE_DEGRADATION,
                severity=severity_for(duration, self.command_threshold_ms),
                description=f"Command took {duration}ms, exceeds {self.command_threshold_ms}ms threshold",
                recommendation="Profile the slow operation; add indexes or trim the test setup",
                action_id=result.action_id,
                location=location,
                metric="duration_ms",
                threshold=self.command_threshold_ms,
                actual=duration,
            ))

        warnings = extract_warnings(str(data.get("stdout") or ""))
        if warnings:
            items.append(DebtItem(
                category=DebtCategory.CODE_QUALITY,
                severity=DebtSeverity.LOW,
                description=f"Command produced {len(warnings)} warning(s)",
                recommendation="Address warnings: " + "; ".join(warnings[:2]),
                action_id=result.action_id,
                location=location,
            ))
        return items
