"""
Executor Plugins

VTID: VTID-01204

Built-in executors. Every module in this directory is scanned by the
PluginRegistry; additional directories can be scanned with --plugin-dir.
"""

from .base import BaseExecutor
from .browser import BrowserAutomationExecutor
from .file_validation import FileValidationExecutor
from .http_request import HttpRequestExecutor
from .process import ProcessExecutor

__all__ = [
    "BaseExecutor",
    "BrowserAutomationExecutor",
    "FileValidationExecutor",
    "HttpRequestExecutor",
    "ProcessExecutor",
]
