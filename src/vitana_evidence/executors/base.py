"""
Base Executor Interface

VTID: VTID-01204

All executor plugins must implement this interface. The registry discovers
subclasses of BaseExecutor in plugin directories and routes each declared
action type to the instance that claimed it.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ..errors import ActionFailedError
from ..main import GlobalConfig

logger = logging.getLogger(__name__)


class BaseExecutor(ABC):
    """
    Base class for all executors.

    An executor performs the real-world behaviour of one or more action types
    and returns the observed payload. Operational failures are raised as
    ActionFailedError / ActionTimeoutError carrying whatever payload was
    observed, so the engine can still record it as evidence.
    """

    #: Short human-readable name, used in plugin listings
    name: str = "base"

    @abstractmethod
    def action_types(self) -> List[str]:
        """Action type identifiers this executor handles"""
        pass

    @abstractmethod
    async def execute(
        self,
        parameters: Dict[str, Any],
        global_config: GlobalConfig,
    ) -> Dict[str, Any]:
        """
        Execute one action.

        Args:
            parameters: Action parameters from the specification
            global_config: Global configuration of the specification

        Returns:
            The observed payload for the action
        """
        pass

    async def cleanup(self) -> None:
        """Release long-lived resources. Called once at run shutdown."""
        pass

    # =========================================================================
    # Helper Methods
    # =========================================================================

    @staticmethod
    def require(parameters: Dict[str, Any], *fields: str) -> None:
        """Fail the action when a required parameter is absent"""
        missing = [f for f in fields if parameters.get(f) is None]
        if missing:
            raise ActionFailedError(
                f"Missing required parameter(s): {', '.join(missing)}",
                data={"missing_parameters": missing},
            )

    @staticmethod
    def timeout_seconds(parameters: Dict[str, Any], global_config: GlobalConfig) -> float:
        """Per-action timeout in seconds (parameter `timeout` in ms, else global default)"""
        timeout_ms = parameters.get("timeout") or global_config.default_timeout_ms
        return float(timeout_ms) / 1000
