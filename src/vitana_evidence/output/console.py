"""
Console Output Formatter

VTID: VTID-01204

Colored run output: one line per action, a verdict per task, and a summary.
"""

from typing import Dict, List, Optional, TextIO

from .base import BaseFormatter, OutputLevel
from ..main import ActionStatus, ExecutionReport, ExecutionResult, TaskResult, TaskStatus


class ConsoleFormatter(BaseFormatter):
    """
    Console formatter with colored output.

    Uses ANSI escape codes in terminals, plain text otherwise.
    """

    COLORS = {
        "reset": "\033[0m",
        "bold": "\033[1m",
        "dim": "\033[2m",
        "green": "\033[32m",
        "yellow": "\033[33m",
        "red": "\033[31m",
        "blue": "\033[34m",
        "cyan": "\033[36m",
        "magenta": "\033[35m",
    }

    SYMBOLS = {
        "running": "◔",
        "passed": "●",
        "failed": "✗",
        "timeout": "⏱",
        "dispatch_error": "⊘",
        "skipped": "○",
    }

    STATUS_COLORS = {
        "passed": "green",
        "failed": "red",
        "timeout": "yellow",
        "dispatch_error": "magenta",
        "skipped": "dim",
    }

    def __init__(
        self,
        level: OutputLevel = OutputLevel.NORMAL,
        use_colors: bool = True,
        stream: Optional[TextIO] = None,
    ):
        super().__init__(level, stream)
        self.use_colors = use_colors and hasattr(self.stream, "isatty") and self.stream.isatty()

    def _c(self, color: str, text: str) -> str:
        """Apply color to text"""
        if self.use_colors:
            return f"{self.COLORS.get(color, '')}{text}{self.COLORS['reset']}"
        return text

    def _status(self, status: str) -> str:
        color = self.STATUS_COLORS.get(status, "dim")
        return self._c(color, self.SYMBOLS.get(status, "○"))

    def task_started(self, task: TaskResult) -> None:
        if not self.at_least(OutputLevel.NORMAL):
            return
        symbol = self._c("blue", self.SYMBOLS["running"])
        self.write(f"{symbol} {self._c('cyan', task.task_id)} {task.title}")

    def action_completed(self, result: ExecutionResult) -> None:
        if not self.at_least(OutputLevel.NORMAL):
            return
        duration = self._c("dim", f"({result.duration_ms}ms)") if result.duration_ms is not None else ""
        phase = self._c("dim", f"[{result.phase.value}]")
        self.write(f"  {self._status(result.status.value)} {phase} {result.action_id} {duration}")

        if result.status != ActionStatus.PASSED and result.error:
            self.write(f"      {self._c('red', result.error)}")

        if self.at_least(OutputLevel.VERBOSE) and result.data:
            for key in ("exit_code", "status", "file_path", "action"):
                if key in result.data:
                    self.write(f"      {self._c('dim', key + ':')} {result.data[key]}")

    def task_completed(self, task: TaskResult) -> None:
        status = task.status.value
        duration = ""
        if task.duration_ms is not None:
            duration = self._c("dim", f" ({task.duration_ms / 1000:.1f}s)")

        label = self._c(self.STATUS_COLORS.get(status, "dim"), status.upper())
        self.write(f"{self._status(status)} {task.task_id} {label}{duration}")

        if task.status == TaskStatus.FAILED:
            if task.failure_reason:
                self.write(f"  {self._c('red', 'Reason:')} {task.failure_reason}")
            if task.validation:
                for evaluation in task.validation.failed_conditions:
                    detail = f" ({evaluation.error})" if evaluation.error else ""
                    self.write(f"    {self._c('red', '-')} {evaluation.description}{detail}")
            if task.failure_analysis and self.at_least(OutputLevel.NORMAL):
                analysis = task.failure_analysis
                self.write(f"  {self._c('yellow', 'Category:')} {analysis['category']}")
                self.write(f"  {self._c('yellow', 'Suggested:')} {analysis['suggested_action']}")

        if task.technical_debt and self.at_least(OutputLevel.VERBOSE):
            self.write(f"  {self._c('yellow', 'Technical debt:')}")
            for item in task.technical_debt:
                self.write(f"    {self._c('yellow', '-')} [{item['severity']}] {item['description']}")

        if task.cleanup_errors and self.at_least(OutputLevel.VERBOSE):
            self.write(f"  {self._c('dim', 'Cleanup errors:')}")
            for error in task.cleanup_errors:
                self.write(f"    {self._c('dim', '-')} {error}")

    def summary(self, report: ExecutionReport) -> None:
        stats = report.summary
        self.write()
        self.write(self._c("bold", "═" * 50))
        self.write(self._c("bold", "  EXECUTION SUMMARY" + ("  (dry run)" if report.dry_run else "")))
        self.write(self._c("bold", "═" * 50))

        self.write(f"\n  {self._c('bold', 'Tasks:')}")
        self.write(f"    Passed:   {self._c('green', str(stats['passed']))}")
        self.write(f"    Failed:   {self._c('red', str(stats['failed']))}")
        self.write(f"    Skipped:  {stats['skipped']}")
        self.write(f"    Total:    {stats['total']}")
        self.write(f"\n  {self._c('bold', 'Actions attempted:')} {stats['actions_attempted']}")

        if report.unknown_action_types:
            self.write(f"\n  {self._c('bold', 'Unknown action types:')}")
            for task_id, types in report.unknown_action_types.items():
                self.write(f"    {task_id}: {', '.join(types)}")

        if report.shutdown_errors:
            self.write(f"\n  {self._c('yellow', 'Executor shutdown errors:')}")
            for error in report.shutdown_errors:
                self.write(f"    - {error}")

        if report.evidence_path:
            self.write(f"\n  {self._c('bold', 'Evidence:')} {report.evidence_path}")
        if report.duration_ms is not None:
            self.write(f"  {self._c('bold', 'Duration:')} {report.duration_ms / 1000:.1f}s")

        self.write()
        self.write(self._c("bold", "═" * 50))

    def plugin_list(self, plugins: List[Dict[str, str]]) -> None:
        self.write(self._c("bold", "Registered action types:"))
        for plugin in plugins:
            action_type = self._c("cyan", f"{plugin['action_type']:24}")
            self.write(f"  {action_type} {plugin['executor']}")
            if self.at_least(OutputLevel.VERBOSE):
                self.write(f"  {'':24} {self._c('dim', plugin['source'])}")


def print_banner(version: str, vtid: str, stream: Optional[TextIO] = None) -> None:
    """Print the engine banner"""
    banner = f"""
╔═══════════════════════════════════════════════════════════╗
║                                                           ║
║            VITANA EVIDENCE ENGINE v{version:<8} ({vtid})     ║
║        Engine-authored evidence, never claimed results     ║
║                                                           ║
╚═══════════════════════════════════════════════════════════╝
"""
    print(banner, file=stream)
