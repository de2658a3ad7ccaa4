"""
Configuration and Types for the Vitana Evidence Engine

VTID: VTID-01204
"""

import os
import platform
import socket
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple


class Phase(Enum):
    """Phase an action belongs to within a task"""
    PREREQUISITE = "prereq"
    STEP = "step"
    CLEANUP = "cleanup"


class TaskPhase(Enum):
    """Task lifecycle state"""
    PENDING = "pending"
    PREREQUISITES = "prerequisites"
    STEPS = "steps"
    VALIDATING = "validating"
    CLEANUP = "cleanup"
    COMPLETED = "completed"


class TaskStatus(Enum):
    """Terminal task outcome"""
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class ActionStatus(Enum):
    """Outcome of a single action"""
    PASSED = "passed"
    FAILED = "failed"
    TIMEOUT = "timeout"
    DISPATCH_ERROR = "dispatch_error"


# =========================================================================
# Specification Model
# =========================================================================

@dataclass(frozen=True)
class Action:
    """One declared invocation of an executor"""
    action_id: str
    action_type: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=dict)
    timeout_ms: Optional[int] = None
    continue_on_failure: bool = False


@dataclass(frozen=True)
class ValidationCondition:
    """Boolean expression over prior results of the same task"""
    expression: str
    description: str = ""


@dataclass(frozen=True)
class Task:
    """One unit of verifiable work"""
    task_id: str
    title: str
    prerequisites: Tuple[Action, ...] = ()
    steps: Tuple[Action, ...] = ()
    cleanup: Tuple[Action, ...] = ()
    success_conditions: Tuple[ValidationCondition, ...] = ()
    failure_conditions: Tuple[ValidationCondition, ...] = ()

    @property
    def action_count(self) -> int:
        return len(self.prerequisites) + len(self.steps) + len(self.cleanup)

    def phases(self) -> List[Tuple[Phase, Tuple[Action, ...]]]:
        return [
            (Phase.PREREQUISITE, self.prerequisites),
            (Phase.STEP, self.steps),
            (Phase.CLEANUP, self.cleanup),
        ]


@dataclass(frozen=True)
class GlobalConfig:
    """
    Global configuration block of a specification.

    Executors receive this on every call; nothing here is writable by them.
    """
    workspace_root: Path = field(default_factory=Path.cwd)
    evidence_directory: str = "evidence"
    default_timeout_ms: int = 60000
    environment: Dict[str, str] = field(default_factory=dict)
    base_url: Optional[str] = None
    remote_automation: Dict[str, Any] = field(default_factory=dict)
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def evidence_root(self) -> Path:
        path = Path(self.evidence_directory)
        if path.is_absolute():
            return path
        return self.workspace_root / path


@dataclass(frozen=True)
class Specification:
    """A loaded, validated task-graph document"""
    schema_version: str
    tasks: Dict[str, Task]
    global_config: GlobalConfig
    metadata: Dict[str, Any] = field(default_factory=dict)
    source_path: Optional[Path] = None

    @property
    def title(self) -> str:
        return str(self.metadata.get("taskTitle") or self.metadata.get("title") or "")


# =========================================================================
# Execution Model
# =========================================================================

@dataclass
class ExecutionResult:
    """
    The literal outcome of one Action.

    Metadata fields (timestamps, pid, platform, hostname) are stamped by the
    engine, never copied from the specification.
    """
    task_id: str
    action_id: str
    action_type: str
    phase: Phase
    status: ActionStatus
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    description: str = ""
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    pid: int = field(default_factory=os.getpid)
    platform: str = field(default_factory=lambda: platform.platform())
    hostname: str = field(default_factory=socket.gethostname)

    @property
    def success(self) -> bool:
        return self.status == ActionStatus.PASSED

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at and self.ended_at:
            delta = self.ended_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "action_id": self.action_id,
            "action_type": self.action_type,
            "phase": self.phase.value,
            "status": self.status.value,
            "success": self.success,
            "description": self.description,
            "data": self.data,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "ended_at": self.ended_at.isoformat() if self.ended_at else None,
            "duration_ms": self.duration_ms,
            "pid": self.pid,
            "platform": self.platform,
            "hostname": self.hostname,
        }


@dataclass
class ConditionEvaluation:
    """Result of evaluating one validation condition"""
    kind: str  # "success" | "failure"
    expression: str
    description: str
    passed: bool
    value: Any = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        value = self.value
        if not isinstance(value, (str, int, float, bool, type(None))):
            value = repr(value)
        return {
            "kind": self.kind,
            "expression": self.expression,
            "description": self.description,
            "passed": self.passed,
            "value": value,
            "error": self.error,
        }


@dataclass
class ValidationOutcome:
    """All condition evaluations for one task"""
    passed: bool = True
    evaluations: List[ConditionEvaluation] = field(default_factory=list)

    @property
    def failed_conditions(self) -> List[ConditionEvaluation]:
        return [e for e in self.evaluations if not e.passed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "passed": self.passed,
            "total": len(self.evaluations),
            "failed": len(self.failed_conditions),
            "evaluations": [e.to_dict() for e in self.evaluations],
        }


@dataclass
class TaskResult:
    """
    Complete record of one task's execution.

    Terminal status is set once by the orchestrator and never revised.
    """
    task_id: str
    title: str
    status: TaskStatus = TaskStatus.PENDING
    phase: TaskPhase = TaskPhase.PENDING
    phase_history: List[str] = field(default_factory=list)
    results: List[ExecutionResult] = field(default_factory=list)
    validation: Optional[ValidationOutcome] = None
    failure_reason: Optional[str] = None
    failure_analysis: Optional[Dict[str, Any]] = None
    technical_debt: List[Dict[str, Any]] = field(default_factory=list)
    cleanup_errors: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def duration_ms(self) -> Optional[int]:
        if self.started_at and self.completed_at:
            delta = self.completed_at - self.started_at
            return int(delta.total_seconds() * 1000)
        return None

    def enter(self, phase: TaskPhase) -> None:
        self.phase = phase
        self.phase_history.append(phase.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "status": self.status.value,
            "phase_history": self.phase_history,
            "actions": [
                {
                    "action_id": r.action_id,
                    "action_type": r.action_type,
                    "phase": r.phase.value,
                    "status": r.status.value,
                    "error": r.error,
                    "duration_ms": r.duration_ms,
                }
                for r in self.results
            ],
            "validation": self.validation.to_dict() if self.validation else None,
            "failure_reason": self.failure_reason,
            "failure_analysis": self.failure_analysis,
            "technical_debt": self.technical_debt,
            "cleanup_errors": self.cleanup_errors,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
        }


@dataclass
class ExecutionReport:
    """Aggregate of all task outcomes for a run"""
    run_id: str
    tasks: Dict[str, TaskResult] = field(default_factory=dict)
    started_at: datetime = field(default_factory=datetime.now)
    completed_at: Optional[datetime] = None
    aborted: bool = False
    abort_reason: Optional[str] = None
    dry_run: bool = False
    evidence_path: Optional[Path] = None
    unknown_action_types: Dict[str, List[str]] = field(default_factory=dict)
    shutdown_errors: List[str] = field(default_factory=list)

    @property
    def summary(self) -> Dict[str, int]:
        statuses = [t.status for t in self.tasks.values()]
        return {
            "total": len(statuses),
            "passed": statuses.count(TaskStatus.PASSED),
            "failed": statuses.count(TaskStatus.FAILED),
            "skipped": statuses.count(TaskStatus.SKIPPED),
            "actions_attempted": sum(len(t.results) for t in self.tasks.values()),
        }

    @property
    def success(self) -> bool:
        """True only if every task passed and the run was not aborted"""
        if self.aborted or self.dry_run or not self.tasks:
            return False
        return all(t.status == TaskStatus.PASSED for t in self.tasks.values())

    @property
    def duration_ms(self) -> Optional[int]:
        if self.completed_at:
            return int((self.completed_at - self.started_at).total_seconds() * 1000)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "success": self.success,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "dry_run": self.dry_run,
            "summary": self.summary,
            "unknown_action_types": self.unknown_action_types,
            "shutdown_errors": self.shutdown_errors,
            "tasks": {task_id: t.to_dict() for task_id, t in self.tasks.items()},
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_ms": self.duration_ms,
        }


# =========================================================================
# Engine Configuration
# =========================================================================

@dataclass
class EngineConfig:
    """
    Configuration for the Execution Engine.

    Controls run behaviour; per-run settings live in the specification's
    globalConfiguration block.
    """
    verbose: bool = False
    dry_run: bool = False
    stop_on_failure: bool = False
    plugin_dirs: List[Path] = field(default_factory=list)
    evidence_dir_override: Optional[Path] = None
    default_timeout_ms: Optional[int] = None

    @classmethod
    def from_yaml(cls, path: str) -> "EngineConfig":
        """Load config from YAML file"""
        import yaml

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        if "plugin_dirs" in data:
            data["plugin_dirs"] = [Path(p) for p in data["plugin_dirs"]]
        if data.get("evidence_dir_override"):
            data["evidence_dir_override"] = Path(data["evidence_dir_override"])

        return cls(**data)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """Load config from environment variables"""
        plugin_dirs = os.getenv("VITANA_EVIDENCE_PLUGIN_DIRS", "")
        evidence_dir = os.getenv("VITANA_EVIDENCE_DIR")
        timeout = os.getenv("VITANA_EVIDENCE_TIMEOUT_MS")
        return cls(
            verbose=os.getenv("VITANA_EVIDENCE_VERBOSE", "false").lower() == "true",
            stop_on_failure=os.getenv("VITANA_EVIDENCE_STOP_ON_FAILURE", "false").lower() == "true",
            plugin_dirs=[Path(p) for p in plugin_dirs.split(os.pathsep) if p],
            evidence_dir_override=Path(evidence_dir) if evidence_dir else None,
            default_timeout_ms=int(timeout) if timeout else None,
        )
