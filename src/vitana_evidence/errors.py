"""
Error Taxonomy

VTID: VTID-01204

Only SpecificationError, RegistrationError and EvidenceWriteError abort a run.
Everything else is scoped to a task and ends up in the execution report.
"""

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base exception for evidence engine errors"""
    pass


class SpecificationError(EngineError):
    """Malformed or ambiguous specification document"""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        self.reason = message
        super().__init__(f"{path}: {message}" if path else message)


class RegistrationError(EngineError):
    """Executor registration failed (duplicate action type, late registration)"""
    pass


class DispatchError(EngineError):
    """Specification references an action type no executor handles"""

    def __init__(self, action_type: str):
        self.action_type = action_type
        super().__init__(f"No executor registered for action type: {action_type}")


class ExecutionError(EngineError):
    """
    An executor's underlying operation failed.

    `data` holds whatever payload the executor managed to observe before
    failing, so the failure still becomes evidence.
    """

    def __init__(self, message: str, data: Optional[Dict[str, Any]] = None):
        self.data = data
        super().__init__(message)


class ActionFailedError(ExecutionError):
    """Action ran but its outcome is a failure (non-zero exit, bad status, ...)"""
    pass


class ActionTimeoutError(ExecutionError):
    """Action exceeded its allotted time"""
    pass


class ValidationError(EngineError):
    """A condition expression could not be evaluated against the context"""
    pass


class EvidenceWriteError(EngineError):
    """An evidence artifact could not be written exactly once"""
    pass
