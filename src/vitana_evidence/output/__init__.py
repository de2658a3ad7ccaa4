"""
Output Formatting

Provides formatted console output for runs and plugin listings.
"""

from .base import BaseFormatter, OutputLevel
from .console import ConsoleFormatter, print_banner

__all__ = [
    "BaseFormatter",
    "OutputLevel",
    "ConsoleFormatter",
    "print_banner",
]
