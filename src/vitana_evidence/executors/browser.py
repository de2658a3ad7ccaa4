"""
Remote Browser Automation Executor

VTID: VTID-01204

Drives a browser through a Model Context Protocol automation server
(chrome-devtools-mcp by default). The server process is started lazily on the
first action, shared by every later action of the run, and stopped once when
the registry shuts executors down.

Action Type: MCP_BROWSER_COMMAND
"""

import logging
import shlex
from typing import Any, Callable, Dict, List, Optional

from ..errors import ActionFailedError, ActionTimeoutError
from ..main import GlobalConfig
from ..mcp_client import MCPClient, MCPError, MCPTimeoutError
from .base import BaseExecutor

logger = logging.getLogger(__name__)

DEFAULT_COMMAND = ["npx", "-y", "chrome-devtools-mcp@latest"]
DEFAULT_STARTUP_TIMEOUT_MS = 60000
DEFAULT_REQUEST_TIMEOUT_MS = 30000

# keys that configure the call itself rather than the remote operation
_CONTROL_KEYS = {"action", "arguments", "timeout"}


def server_command(config: Dict[str, Any]) -> List[str]:
    """Build the server argv from a remoteAutomation block"""
    command = config.get("command") or DEFAULT_COMMAND
    if isinstance(command, str):
        command = shlex.split(command)
    return [str(c) for c in command] + [str(a) for a in config.get("args") or []]


class BrowserAutomationExecutor(BaseExecutor):
    """
    Executor for remote browser operations.

    Parameters:
        action: remote operation name (e.g. navigate_page, take_snapshot, click)
        arguments: operation arguments; when absent, the remaining keys are used
        timeout: milliseconds to wait for the operation's response
    """

    name = "mcp-browser"

    def __init__(self, client_factory: Optional[Callable[..., MCPClient]] = None):
        self._client_factory = client_factory or MCPClient
        self._client: Optional[MCPClient] = None
        self._tool_names: List[str] = []
        self._startup_error: Optional[ActionFailedError] = None

    def action_types(self) -> List[str]:
        return ["MCP_BROWSER_COMMAND"]

    @property
    def client(self) -> Optional[MCPClient]:
        return self._client

    async def execute(
        self,
        parameters: Dict[str, Any],
        global_config: GlobalConfig,
    ) -> Dict[str, Any]:
        self.require(parameters, "action")

        operation = str(parameters["action"])
        arguments = parameters.get("arguments")
        if arguments is None:
            arguments = {k: v for k, v in parameters.items() if k not in _CONTROL_KEYS}
        if not isinstance(arguments, dict):
            raise ActionFailedError(
                "Parameter 'arguments' must be a mapping",
                data={"action": operation, "arguments": arguments},
            )

        client = await self._ensure_client(global_config)

        payload: Dict[str, Any] = {
            "action": operation,
            "arguments": arguments,
            "listed": operation in self._tool_names,
            "server_info": client.server_info,
        }

        timeout = None
        if parameters.get("timeout"):
            timeout = float(parameters["timeout"]) / 1000

        logger.info(f"Browser operation: {operation}")
        try:
            result = await client.call_tool(operation, arguments, timeout=timeout)
        except MCPTimeoutError as e:
            raise ActionTimeoutError(str(e), data=payload)
        except MCPError as e:
            payload["mcp_error"] = e.data
            raise ActionFailedError(str(e), data=payload)

        payload["result"] = result
        payload["is_error"] = bool(result.get("isError", False))
        payload["content_text"] = self._content_text(result)

        if payload["is_error"]:
            raise ActionFailedError(
                f"Browser operation '{operation}' failed: "
                f"{payload['content_text'] or 'tool reported an error'}",
                data=payload,
            )
        return payload

    async def _ensure_client(self, global_config: GlobalConfig) -> MCPClient:
        """Start the server and complete the handshake on first use"""
        if self._client is not None:
            return self._client
        if self._startup_error is not None:
            raise self._startup_error

        config = global_config.remote_automation or {}
        command = server_command(config)
        startup_timeout = float(config.get("startupTimeout", DEFAULT_STARTUP_TIMEOUT_MS)) / 1000
        request_timeout = float(config.get("requestTimeout", DEFAULT_REQUEST_TIMEOUT_MS)) / 1000
        env = {**global_config.environment, **{str(k): str(v) for k, v in (config.get("env") or {}).items()}}

        client = self._client_factory(
            command,
            env=env,
            cwd=str(global_config.workspace_root),
            request_timeout=request_timeout,
        )
        try:
            await client.start()
            await client.initialize(timeout=startup_timeout)
            tools = await client.list_tools()
        except MCPError as e:
            await client.close()
            data = {
                "server_command": command,
                "exit_code": client.returncode,
                "stderr_tail": client.stderr_tail,
            }
            # every later action of the run fails the same way
            self._startup_error = ActionFailedError(
                f"Automation server did not start: {e}", data=data
            )
            raise self._startup_error

        self._tool_names = [t.get("name") for t in tools if isinstance(t, dict)]
        self._client = client
        return client

    @staticmethod
    def _content_text(result: Dict[str, Any]) -> str:
        parts = []
        for item in result.get("content") or []:
            if isinstance(item, dict) and item.get("type") == "text":
                parts.append(str(item.get("text", "")))
        return "\n".join(parts)

    async def cleanup(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None
