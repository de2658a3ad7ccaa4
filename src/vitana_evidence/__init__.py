"""
Vitana Evidence Engine - VTID-01204

Verification execution engine. Reads a declarative task specification,
performs every action itself (processes, HTTP calls, filesystem checks,
browser automation over MCP) and writes the evidence of what literally
happened.

CRITICAL RULES:
1. Only the engine performs actions and only the engine writes evidence
2. Evidence is written once and never overwritten
3. A task passes only when its own conditions hold over its own results
4. No automation server process outlives a run
"""

__version__ = "1.0.0"
__vtid__ = "VTID-01204"

from .errors import (
    ActionFailedError,
    ActionTimeoutError,
    DispatchError,
    EngineError,
    EvidenceWriteError,
    ExecutionError,
    RegistrationError,
    SpecificationError,
    ValidationError,
)
from .main import (
    Action,
    ActionStatus,
    EngineConfig,
    ExecutionReport,
    ExecutionResult,
    GlobalConfig,
    Phase,
    Specification,
    Task,
    TaskPhase,
    TaskResult,
    TaskStatus,
    ValidationCondition,
)
from .loader import SpecificationLoader
from .registry import PluginRegistry
from .executors import BaseExecutor
from .validation import ValidationEngine
from .evidence import EvidenceCollector
from .analysis import FailureAnalyzer
from .debt import TechnicalDebtDetector
from .orchestrator import ExecutionEngine

__all__ = [
    # Engine
    "ExecutionEngine",
    "EngineConfig",
    # Components
    "SpecificationLoader",
    "PluginRegistry",
    "BaseExecutor",
    "ValidationEngine",
    "EvidenceCollector",
    "FailureAnalyzer",
    "TechnicalDebtDetector",
    # Types
    "Action",
    "ActionStatus",
    "ExecutionReport",
    "ExecutionResult",
    "GlobalConfig",
    "Phase",
    "Specification",
    "Task",
    "TaskPhase",
    "TaskResult",
    "TaskStatus",
    "ValidationCondition",
    # Errors
    "EngineError",
    "SpecificationError",
    "RegistrationError",
    "DispatchError",
    "ExecutionError",
    "ActionFailedError",
    "ActionTimeoutError",
    "ValidationError",
    "EvidenceWriteError",
    # Meta
    "__version__",
    "__vtid__",
]
