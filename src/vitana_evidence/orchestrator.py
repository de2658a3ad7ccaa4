"""
Vitana Evidence Engine - Core Execution Logic

VTID: VTID-01204

Drives a loaded specification task by task: prerequisites, steps,
validation, cleanup. Every attempted action becomes an engine-authored
evidence artifact; a task's outcome is decided from those results and the
task's own conditions, never from anything the document claims.
"""

import asyncio
import dataclasses
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .analysis import FailureAnalyzer
from .debt import TechnicalDebtDetector
from .errors import (
    ActionTimeoutError,
    DispatchError,
    EvidenceWriteError,
    ExecutionError,
    ValidationError,
)
from .evidence import EvidenceCollector, new_run_id
from .executors import BaseExecutor
from .loader import SpecificationLoader
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
)
from .registry import PluginRegistry
from .validation import ValidationEngine, failed_descriptions

logger = logging.getLogger(__name__)

# extra time given to an executor to enforce its own timeout first
BACKSTOP_GRACE_SECONDS = 2.0


class ExecutionEngine:
    """
    Sequential executor for verification specifications.

    Guarantees:
    1. Each action runs at most once, in document order
    2. Each attempted action yields exactly one evidence artifact
    3. An unknown action type fails only its own task
    4. Executors are shut down exactly once, even when the run aborts

    Events (register with `on`): task.started, task.phase, action.completed,
    task.completed, run.completed.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        registry: Optional[PluginRegistry] = None,
        validation: Optional[ValidationEngine] = None,
        analyzer: Optional[FailureAnalyzer] = None,
        debt_detector: Optional[TechnicalDebtDetector] = None,
    ):
        self.config = config or EngineConfig()
        self.registry = registry
        self.validation = validation or ValidationEngine()
        self.analyzer = analyzer or FailureAnalyzer()
        self.debt_detector = debt_detector or TechnicalDebtDetector()
        self.report: Optional[ExecutionReport] = None
        self._event_handlers: Dict[str, List[Callable]] = {}

        self._stats = {
            "actions_executed": 0,
            "actions_failed": 0,
            "dispatch_errors": 0,
            "timeouts": 0,
            "evidence_written": 0,
        }

    # =========================================================================
    # Setup
    # =========================================================================

    def initialize(self) -> PluginRegistry:
        """Load and freeze the plugin registry (once)"""
        if self.registry is None:
            self.registry = PluginRegistry(self.config.plugin_dirs).load_all()
        else:
            self.registry.freeze()
        return self.registry

    def load(self, path: Path) -> Specification:
        return SpecificationLoader().load(path)

    def _effective_global(self, global_config: GlobalConfig) -> GlobalConfig:
        overrides: Dict[str, Any] = {}
        if self.config.evidence_dir_override:
            overrides["evidence_directory"] = str(self.config.evidence_dir_override)
        if self.config.default_timeout_ms:
            overrides["default_timeout_ms"] = self.config.default_timeout_ms
        if overrides:
            return dataclasses.replace(global_config, **overrides)
        return global_config

    # =========================================================================
    # Run
    # =========================================================================

    async def run_file(self, path: Path) -> ExecutionReport:
        """Load a document and run it"""
        return await self.run(self.load(path))

    async def run(self, specification: Specification) -> ExecutionReport:
        """
        Execute every task of a specification.

        Raises EvidenceWriteError when evidence cannot be persisted; the
        partial report stays available as `self.report`.
        """
        registry = self.initialize()
        global_config = self._effective_global(specification.global_config)
        report = ExecutionReport(run_id=new_run_id(), dry_run=self.config.dry_run)
        self.report = report

        logger.info(
            f"Run {report.run_id}: {len(specification.tasks)} task(s)"
            f"{' (dry run)' if self.config.dry_run else ''}"
        )

        if self.config.dry_run:
            self._dry_run(specification, report)
            report.completed_at = datetime.now()
            await self._emit_event("run.completed", report)
            return report

        collector = EvidenceCollector(global_config.evidence_root, report.run_id)
        report.evidence_path = collector.run_dir

        try:
            halted = False
            for task in specification.tasks.values():
                if halted:
                    report.tasks[task.task_id] = self._skipped(
                        task, "Not run: stop-on-failure after an earlier failed task"
                    )
                    continue

                task_result = await self._run_task(task, global_config, collector)
                report.tasks[task.task_id] = task_result

                if task_result.status == TaskStatus.FAILED and self.config.stop_on_failure:
                    logger.warning(f"Task {task.task_id} failed, stopping run")
                    halted = True

        except EvidenceWriteError as e:
            report.aborted = True
            report.abort_reason = str(e)
            logger.error(f"Run aborted: {e}")
            raise

        finally:
            report.shutdown_errors = await registry.cleanup_all()
            report.completed_at = datetime.now()

        collector.save_report(report)
        await self._emit_event("run.completed", report)

        summary = report.summary
        logger.info(
            f"Run {report.run_id} finished: {summary['passed']}/{summary['total']} passed, "
            f"{summary['failed']} failed, {summary['skipped']} skipped"
        )
        return report

    def _dry_run(self, specification: Specification, report: ExecutionReport) -> None:
        """Resolve every action type without executing anything"""
        for task in specification.tasks.values():
            unknown = sorted({
                action.action_type
                for _, actions in task.phases()
                for action in actions
                if self.registry.get(action.action_type) is None
            })
            if unknown:
                report.unknown_action_types[task.task_id] = unknown
                reason = f"Dry run: no executor for {', '.join(unknown)}"
                logger.warning(f"Task {task.task_id}: {reason}")
            else:
                reason = "Dry run: not executed"
            report.tasks[task.task_id] = self._skipped(task, reason)

    @staticmethod
    def _skipped(task: Task, reason: str) -> TaskResult:
        return TaskResult(
            task_id=task.task_id,
            title=task.title,
            status=TaskStatus.SKIPPED,
            failure_reason=reason,
        )

    # =========================================================================
    # Task Lifecycle
    # =========================================================================

    async def _run_task(
        self,
        task: Task,
        global_config: GlobalConfig,
        collector: EvidenceCollector,
    ) -> TaskResult:
        result = TaskResult(task_id=task.task_id, title=task.title)
        result.started_at = datetime.now()
        logger.info(f"Task {task.task_id}: {task.title}")
        await self._emit_event("task.started", result)

        await self._enter(result, TaskPhase.PREREQUISITES)
        blocked = await self._run_phase(task, Phase.PREREQUISITE, task.prerequisites, result, global_config, collector)

        if blocked is not None:
            result.status = TaskStatus.FAILED
            result.failure_reason = f"Prerequisite {blocked.action_id} failed: {blocked.error}"
            return await self._complete(result, collector)

        await self._enter(result, TaskPhase.STEPS)
        blocked = await self._run_phase(task, Phase.STEP, task.steps, result, global_config, collector)

        await self._enter(result, TaskPhase.VALIDATING)
        result.validation = self.validation.evaluate(
            result.results,
            task.success_conditions,
            task.failure_conditions,
        )

        await self._enter(result, TaskPhase.CLEANUP)
        cleanup_start = len(result.results)
        await self._run_phase(task, Phase.CLEANUP, task.cleanup, result, global_config, collector)
        for cleanup_result in result.results[cleanup_start:]:
            if not cleanup_result.success:
                result.cleanup_errors.append(f"{cleanup_result.action_id}: {cleanup_result.error}")

        result.status, result.failure_reason = self._decide(task, result, blocked)
        return await self._complete(result, collector)

    @staticmethod
    def _decide(
        task: Task,
        result: TaskResult,
        blocked: Optional[ExecutionResult],
    ) -> Tuple[TaskStatus, Optional[str]]:
        """Outcome from results and conditions; cleanup never changes it"""
        dispatch_errors = [
            r for r in result.results
            if r.status == ActionStatus.DISPATCH_ERROR and r.phase != Phase.CLEANUP
        ]
        if dispatch_errors:
            return TaskStatus.FAILED, dispatch_errors[0].error

        if result.validation is not None and not result.validation.passed:
            return TaskStatus.FAILED, "Failed conditions: " + "; ".join(failed_descriptions(result.validation))

        has_conditions = bool(task.success_conditions or task.failure_conditions)
        if not has_conditions and blocked is not None:
            return TaskStatus.FAILED, f"Step {blocked.action_id} failed: {blocked.error}"

        return TaskStatus.PASSED, None

    async def _complete(self, result: TaskResult, collector: EvidenceCollector) -> TaskResult:
        await self._enter(result, TaskPhase.COMPLETED)
        result.completed_at = datetime.now()

        if result.status == TaskStatus.FAILED:
            result.failure_analysis = self.analyzer.analyze(result).to_dict()
            logger.warning(f"Task {result.task_id} FAILED: {result.failure_reason}")
        else:
            logger.info(f"Task {result.task_id} passed")
            try:
                result.technical_debt = [item.to_dict() for item in self.debt_detector.analyze(result)]
            except Exception as e:
                logger.warning(f"Technical debt detection failed for {result.task_id}: {e}")

        collector.save_task_evidence(result)
        await self._emit_event("task.completed", result)
        return result

    async def _enter(self, result: TaskResult, phase: TaskPhase) -> None:
        result.enter(phase)
        logger.debug(f"Task {result.task_id} -> {phase.value}")
        await self._emit_event("task.phase", result, phase=phase)

    # =========================================================================
    # Action Dispatch
    # =========================================================================

    async def _run_phase(
        self,
        task: Task,
        phase: Phase,
        actions: Sequence[Action],
        task_result: TaskResult,
        global_config: GlobalConfig,
        collector: EvidenceCollector,
    ) -> Optional[ExecutionResult]:
        """Run a phase; returns the failed action that stopped it, if any"""
        for action in actions:
            action_result, parameters = await self._execute_action(
                task, phase, action, task_result.results, global_config
            )
            task_result.results.append(action_result)

            collector.save_action_evidence(action_result, parameters)
            self._stats["evidence_written"] += 1
            await self._emit_event("action.completed", action_result)

            if not action_result.success and not action.continue_on_failure:
                logger.warning(f"Action {action.action_id} failed, stopping {phase.value} phase")
                return action_result
        return None

    async def _execute_action(
        self,
        task: Task,
        phase: Phase,
        action: Action,
        prior: Sequence[ExecutionResult],
        global_config: GlobalConfig,
    ) -> Tuple[ExecutionResult, Dict[str, Any]]:
        result = ExecutionResult(
            task_id=task.task_id,
            action_id=action.action_id,
            action_type=action.action_type,
            phase=phase,
            status=ActionStatus.FAILED,
            description=action.description,
            started_at=datetime.now(),
        )
        parameters: Dict[str, Any] = dict(action.parameters)
        logger.info(f"{action.action_id}: {action.description or action.action_type}")

        executor = self.registry.get(action.action_type)
        if executor is None:
            error = DispatchError(action.action_type)
            result.status = ActionStatus.DISPATCH_ERROR
            result.error = str(error)
            result.data = {
                "action_type": action.action_type,
                "registered_types": self.registry.list_action_types(),
            }
            result.ended_at = datetime.now()
            self._stats["dispatch_errors"] += 1
            logger.error(f"{action.action_id}: {error}")
            return result, parameters

        timeout_ms = action.timeout_ms or global_config.default_timeout_ms
        self._stats["actions_executed"] += 1
        try:
            parameters = self.validation.interpolate(parameters, prior)
            if action.timeout_ms and "timeout" not in parameters:
                parameters["timeout"] = action.timeout_ms

            # the backstop follows the timeout the executor itself enforces
            timeout = BaseExecutor.timeout_seconds(parameters, global_config)
            timeout_ms = int(timeout * 1000)
            result.data = await asyncio.wait_for(
                executor.execute(parameters, global_config),
                timeout=timeout + BACKSTOP_GRACE_SECONDS,
            )
            result.status = ActionStatus.PASSED

        except ActionTimeoutError as e:
            result.status = ActionStatus.TIMEOUT
            result.error = str(e)
            result.data = e.data

        except asyncio.TimeoutError:
            result.status = ActionStatus.TIMEOUT
            result.error = f"Action exceeded {timeout_ms}ms"

        except ExecutionError as e:
            result.error = str(e)
            result.data = e.data

        except ValidationError as e:
            result.error = f"Parameter interpolation failed: {e}"

        except Exception as e:
            logger.exception(f"Executor {type(executor).__name__} raised unexpectedly")
            result.error = f"{type(e).__name__}: {e}"

        result.ended_at = datetime.now()

        if result.success:
            logger.info(f"{action.action_id} passed ({result.duration_ms}ms)")
        else:
            self._stats["actions_failed"] += 1
            if result.status == ActionStatus.TIMEOUT:
                self._stats["timeouts"] += 1
            logger.error(f"{action.action_id} {result.status.value}: {result.error}")

        return result, parameters

    # =========================================================================
    # Event System
    # =========================================================================

    def on(self, event: str, handler: Callable) -> None:
        """Register event handler"""
        if event not in self._event_handlers:
            self._event_handlers[event] = []
        self._event_handlers[event].append(handler)

    async def _emit_event(self, event: str, subject: Any, **kwargs) -> None:
        for handler in self._event_handlers.get(event, []):
            try:
                if asyncio.iscoroutinefunction(handler):
                    await handler(event, subject, **kwargs)
                else:
                    handler(event, subject, **kwargs)
            except Exception as e:
                logger.error(f"Event handler error: {e}")

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_stats(self) -> Dict[str, Any]:
        return dict(self._stats)
