"""
Base Output Formatter

VTID: VTID-01204
"""

import sys
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, List, Optional, TextIO

from ..main import ExecutionReport, ExecutionResult, TaskResult


class OutputLevel(Enum):
    """Output verbosity levels"""
    QUIET = 0
    NORMAL = 1
    VERBOSE = 2
    DEBUG = 3


class BaseFormatter(ABC):
    """Base class for run output formatters"""

    def __init__(self, level: OutputLevel = OutputLevel.NORMAL, stream: Optional[TextIO] = None):
        self.level = level
        self.stream = stream or sys.stdout

    def at_least(self, level: OutputLevel) -> bool:
        return self.level.value >= level.value

    def write(self, text: str = "") -> None:
        print(text, file=self.stream)

    @abstractmethod
    def task_started(self, task: TaskResult) -> None:
        """Format task started message"""
        pass

    @abstractmethod
    def action_completed(self, result: ExecutionResult) -> None:
        """Format one action outcome"""
        pass

    @abstractmethod
    def task_completed(self, task: TaskResult) -> None:
        """Format task outcome, including failed conditions"""
        pass

    @abstractmethod
    def summary(self, report: ExecutionReport) -> None:
        """Format run summary"""
        pass

    @abstractmethod
    def plugin_list(self, plugins: List[Dict[str, str]]) -> None:
        """Format the registered action types"""
        pass
