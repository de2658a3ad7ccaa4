"""
Validation - VTID-01204

Condition evaluation for the Evidence Engine. Conditions are boolean
expressions over results a task has already produced; they decide pass/fail
but never execute anything themselves.
"""

from .engine import ValidationEngine, failed_descriptions, result_view
from .expressions import ExpressionError, evaluate, normalize

__all__ = [
    # Engine
    "ValidationEngine",
    "failed_descriptions",
    "result_view",
    # Expressions
    "ExpressionError",
    "evaluate",
    "normalize",
]
