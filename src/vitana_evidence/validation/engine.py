"""
Validation Engine

VTID: VTID-01204

Evaluates a task's success and failure conditions against the results that
task has already produced. A context is built per task and never leaks into
another task.

A task passes only if:
1. every success condition is truthy, and
2. no failure condition is truthy.

A condition that cannot be evaluated is never assumed to hold: an erroring
success condition is failed, and an erroring failure condition fails the task
because it cannot be proven false.
"""

import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Sequence

from ..main import (
    ConditionEvaluation,
    ExecutionResult,
    ValidationCondition,
    ValidationOutcome,
)
from .expressions import ExpressionError, evaluate

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ("PREREQ", "STEP", "CLEANUP")

_TEMPLATE = re.compile(r"\{\{\s*(.+?)\s*\}\}")
_IDENTIFIER = re.compile(r"^[A-Za-z_]\w*$")


def _camel(key: str) -> str:
    head, *rest = key.split("_")
    return head + "".join(part.title() for part in rest)


def result_view(result: ExecutionResult) -> Dict[str, Any]:
    """
    Flatten one result into the mapping conditions see.

    Payload fields are exposed under their own name and a camelCase alias
    (exit_code / exitCode). Engine fields win over payload fields.
    """
    data = result.data or {}
    view: Dict[str, Any] = {}
    for key, value in data.items():
        view[key] = value
        alias = _camel(key)
        if alias not in data:
            view[alias] = value

    stderr = str(data.get("stderr") or "")
    stdout = str(data.get("stdout") or "")
    error_count = len(re.findall(r"error", stderr, re.IGNORECASE))
    warning_count = len(re.findall(r"warning", stdout, re.IGNORECASE))

    view.update({
        "success": result.success,
        "status": result.status.value if "status" not in data else data["status"],
        "action_status": result.status.value,
        "error": result.error,
        "duration_ms": result.duration_ms,
        "error_count": error_count,
        "errorCount": error_count,
        "warning_count": warning_count,
        "warningCount": warning_count,
    })
    return view


class ValidationEngine:
    """
    Evaluates validation conditions for one task at a time.

    Context names available to an expression:
        <action id>            the result view, when the id is an identifier
        steps["<action id>"]   every result view by full id
        STEP[1], PREREQ[1], CLEANUP[1]
                               results whose id is "<SCOPE>.<n>"
    """

    def build_context(self, results: Sequence[ExecutionResult]) -> Dict[str, Any]:
        """Build the read-only evaluation context for one task"""
        steps: Dict[str, Dict[str, Any]] = {}
        scopes: Dict[str, Dict[str, Any]] = {name: {} for name in DEFAULT_SCOPES}

        for result in results:
            view = result_view(result)
            steps[result.action_id] = view
            if "." in result.action_id:
                prefix, suffix = result.action_id.split(".", 1)
                scopes.setdefault(prefix, {})[suffix] = view

        context: Dict[str, Any] = {}
        for action_id, view in steps.items():
            if _IDENTIFIER.match(action_id):
                context[action_id] = view
        for prefix, scope in scopes.items():
            if _IDENTIFIER.match(prefix) and prefix not in context:
                context[prefix] = scope
        context["steps"] = steps
        return context

    def evaluate(
        self,
        results: Sequence[ExecutionResult],
        success_conditions: Iterable[ValidationCondition],
        failure_conditions: Iterable[ValidationCondition],
    ) -> ValidationOutcome:
        """Evaluate every condition of a task; nothing is short-circuited"""
        context = self.build_context(results)
        outcome = ValidationOutcome()

        for condition in success_conditions:
            evaluation = self._evaluate_one("success", condition, context)
            evaluation.passed = evaluation.error is None and bool(evaluation.value)
            outcome.evaluations.append(evaluation)

        for condition in failure_conditions:
            evaluation = self._evaluate_one("failure", condition, context)
            evaluation.passed = evaluation.error is None and not evaluation.value
            outcome.evaluations.append(evaluation)

        outcome.passed = all(e.passed for e in outcome.evaluations)

        for evaluation in outcome.evaluations:
            marker = "passed" if evaluation.passed else "FAILED"
            logger.info(f"Condition {marker}: {evaluation.description}")

        return outcome

    @staticmethod
    def _evaluate_one(
        kind: str,
        condition: ValidationCondition,
        context: Mapping[str, Any],
    ) -> ConditionEvaluation:
        evaluation = ConditionEvaluation(
            kind=kind,
            expression=condition.expression,
            description=condition.description or condition.expression,
            passed=False,
        )
        try:
            evaluation.value = evaluate(condition.expression, context)
        except ExpressionError as e:
            evaluation.error = str(e)
            logger.warning(f"Cannot evaluate {kind} condition '{condition.expression}': {e}")
        except Exception as e:
            # a broken condition fails itself, never the run
            evaluation.error = f"{type(e).__name__}: {e}"
            logger.exception(f"Unexpected error evaluating {kind} condition '{condition.expression}'")
        return evaluation

    # =========================================================================
    # Parameter Interpolation
    # =========================================================================

    def interpolate(self, value: Any, results: Sequence[ExecutionResult]) -> Any:
        """
        Render `{{ expr }}` templates in action parameters from prior results.

        A string that is exactly one template keeps the value's type; mixed
        text is rendered with str(). Raises ExpressionError on failure.
        """
        if not self._has_templates(value):
            return value
        return self._render(value, self.build_context(results))

    def _has_templates(self, value: Any) -> bool:
        if isinstance(value, str):
            return "{{" in value
        if isinstance(value, dict):
            return any(self._has_templates(v) for v in value.values())
        if isinstance(value, list):
            return any(self._has_templates(v) for v in value)
        return False

    def _render(self, value: Any, context: Mapping[str, Any]) -> Any:
        if isinstance(value, dict):
            return {k: self._render(v, context) for k, v in value.items()}
        if isinstance(value, list):
            return [self._render(v, context) for v in value]
        if not isinstance(value, str) or "{{" not in value:
            return value

        whole = _TEMPLATE.fullmatch(value.strip())
        if whole:
            return evaluate(whole.group(1), context)
        return _TEMPLATE.sub(lambda m: str(evaluate(m.group(1), context)), value)


def failed_descriptions(outcome: ValidationOutcome) -> List[str]:
    """Descriptions of the conditions that did not pass, verbatim"""
    return [e.description for e in outcome.failed_conditions]
