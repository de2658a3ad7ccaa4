"""
Model Context Protocol stdio client

VTID: VTID-01204

Owns one long-lived automation-server child process and speaks newline-
delimited JSON-RPC 2.0 over its stdin/stdout.

Protocol state machine (the server enforces it, the client follows it):

1. UNINITIALIZED -> `initialize` handshake, then `notifications/initialized`.
   Any other request first is answered with "method not found" (-32601).
2. INITIALIZED   -> `tools/list` is sent as a bare method.
3. READY         -> every operation goes through `tools/call` with
                    {"name": <operation>, "arguments": {...}}. Sending the
                    operation name as the method is "method not found" too.
4. CLOSED        -> stdin closed, then terminate, then kill. The child must
                    never outlive the caller.

The server's stderr carries informational notices as well as fatal startup
errors. Lines are classified for logging only; failure is decided by the
process actually exiting.
"""

import asyncio
import collections
import itertools
import json
import logging
import os
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from .errors import ExecutionError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_INFO = {"name": "vitana-evidence", "version": "1.0.0"}

METHOD_NOT_FOUND = -32601

# stdout lines can carry whole page snapshots
STREAM_LIMIT = 32 * 1024 * 1024

STDERR_TAIL_LINES = 200

_INFO_PREFIXES = ("warning", "warn:", "[warn", "info", "[info", "debug", "[debug", "notice")
_FATAL_MARKERS = (
    "error:",
    "fatal",
    "traceback",
    "exception",
    "cannot find module",
    "command not found",
    "enoent",
    "eaddrinuse",
    "permission denied",
    "failed to launch",
)


class ClientState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    READY = "ready"
    CLOSED = "closed"


class MCPError(ExecutionError):
    """JSON-RPC error returned by the server, or a transport failure"""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None):
        self.code = code
        self.error_data = data
        super().__init__(message, data={"code": code, "message": message, "data": data})

    @property
    def is_method_not_found(self) -> bool:
        return self.code == METHOD_NOT_FOUND


class MCPProcessExitedError(MCPError):
    """The server process exited while the client was waiting on it"""

    def __init__(self, returncode: Optional[int], stderr_tail: List[str]):
        self.returncode = returncode
        self.stderr_tail = stderr_tail
        tail = "\n".join(stderr_tail[-10:])
        message = f"Automation server exited with code {returncode}"
        if tail:
            message += f":\n{tail}"
        super().__init__(message)
        self.data = {"exit_code": returncode, "stderr_tail": stderr_tail}


class MCPTimeoutError(MCPError):
    """No response within the request timeout"""
    pass


def classify_stderr_line(line: str) -> str:
    """
    Classify one stderr line as "info" or "fatal".

    Heuristic content sniffing: explicit warning/info prefixes win, then known
    fatal markers. Nothing here fails the connection; only process exit does.
    """
    lowered = line.strip().lower()
    if not lowered:
        return "info"
    if lowered.startswith(_INFO_PREFIXES):
        return "info"
    if any(marker in lowered for marker in _FATAL_MARKERS):
        return "fatal"
    return "info"


class MCPClient:
    """
    Client for one automation server over stdio.

    Usage:
        client = MCPClient(["npx", "-y", "chrome-devtools-mcp@latest"])
        await client.start()
        await client.initialize()
        await client.list_tools()
        result = await client.call_tool("navigate_page", {"url": "..."})
        await client.close()
    """

    def __init__(
        self,
        command: List[str],
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
        request_timeout: float = 30.0,
        close_grace: float = 2.0,
    ):
        if not command:
            raise ValueError("Automation server command is empty")
        self.command = list(command)
        self.env = env
        self.cwd = cwd
        self.request_timeout = request_timeout
        self.close_grace = close_grace

        self.state = ClientState.UNINITIALIZED
        self.server_info: Dict[str, Any] = {}
        self.server_capabilities: Dict[str, Any] = {}
        self.protocol_version: Optional[str] = None
        self.tools: List[Dict[str, Any]] = []

        self._process: Optional[asyncio.subprocess.Process] = None
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._stderr: Deque[str] = collections.deque(maxlen=STDERR_TAIL_LINES)
        self._stdout_task: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._exit_error: Optional[MCPProcessExitedError] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def is_alive(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def stderr_tail(self) -> List[str]:
        return list(self._stderr)

    async def start(self) -> None:
        """Spawn the server process and start the reader tasks"""
        if self._process is not None:
            return

        logger.info(f"Starting automation server: {' '.join(self.command)}")
        env = {**os.environ, **(self.env or {})}
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.cwd,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            raise MCPError(f"Failed to start automation server: {e}")

        self._stdout_task = asyncio.create_task(self._read_stdout())
        self._stderr_task = asyncio.create_task(self._read_stderr())
        logger.debug(f"Automation server started (pid {self._process.pid})")

    async def initialize(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        """Perform the mandatory handshake"""
        result = await self.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": CLIENT_INFO,
            },
            timeout=timeout,
        )
        self.protocol_version = result.get("protocolVersion")
        self.server_capabilities = result.get("capabilities") or {}
        self.server_info = result.get("serverInfo") or {}

        await self.notify("notifications/initialized")
        self.state = ClientState.INITIALIZED
        logger.info(
            f"Handshake complete with {self.server_info.get('name', 'server')} "
            f"(protocol {self.protocol_version})"
        )
        return result

    async def list_tools(self) -> List[Dict[str, Any]]:
        """Enumerate remote operations (bare `tools/list` method)"""
        result = await self.request("tools/list", {})
        self.tools = list(result.get("tools") or [])
        self.state = ClientState.READY
        logger.debug(f"Server exposes {len(self.tools)} tool(s)")
        return self.tools

    async def call_tool(
        self,
        name: str,
        arguments: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Invoke a remote operation through the generic `tools/call` dispatch"""
        return await self.request(
            "tools/call",
            {"name": name, "arguments": arguments or {}},
            timeout=timeout,
        )

    async def close(self) -> None:
        """Close stdin, then terminate, then kill. Idempotent."""
        if self.state == ClientState.CLOSED and not self.is_alive:
            return
        self.state = ClientState.CLOSED
        process = self._process

        if process is not None and process.returncode is None:
            logger.info(f"Stopping automation server (pid {process.pid})")
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            if not await self._wait_exit(process, self.close_grace):
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass
                if not await self._wait_exit(process, self.close_grace):
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()

        readers = {t for t in (self._stdout_task, self._stderr_task) if t is not None and not t.done()}
        if readers:
            # drain whatever the server wrote before it went away
            await asyncio.wait(readers, timeout=1.0)
        for task in (self._stdout_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self._fail_pending(MCPError("Client closed"))

    @staticmethod
    async def _wait_exit(process: asyncio.subprocess.Process, timeout: float) -> bool:
        try:
            await asyncio.wait_for(process.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # =========================================================================
    # JSON-RPC
    # =========================================================================

    async def request(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """
        Send one request and wait for the response with the matching id.

        No client-side state checks: calling out of order is answered by the
        server, which is exactly what the protocol regression tests rely on.
        """
        if self._exit_error is not None:
            raise self._exit_error
        if self._process is None:
            raise MCPError("Automation server not started")

        request_id = next(self._ids)
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future

        message = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            await self._send(message)
            response = await asyncio.wait_for(future, timeout=timeout or self.request_timeout)
        except asyncio.TimeoutError:
            raise MCPTimeoutError(
                f"No response to '{method}' within {timeout or self.request_timeout:.1f}s"
            )
        finally:
            self._pending.pop(request_id, None)

        if "error" in response:
            error = response["error"] or {}
            raise MCPError(
                f"MCP error {error.get('code')}: {error.get('message', 'unknown error')} "
                f"(method '{method}')",
                code=error.get("code"),
                data=error.get("data"),
            )
        return response.get("result") or {}

    async def notify(self, method: str, params: Optional[Dict[str, Any]] = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._send(message)

    async def _send(self, message: Dict[str, Any]) -> None:
        process = self._process
        if process is None or process.stdin is None:
            raise MCPError("Automation server not started")
        if process.stdin.is_closing():
            if self.state == ClientState.CLOSED:
                raise MCPError("Client closed")
            raise await self._exited()

        line = json.dumps(message, separators=(",", ":")) + "\n"
        async with self._write_lock:
            try:
                process.stdin.write(line.encode("utf-8"))
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                raise await self._exited()
        logger.debug(f"-> {message.get('method')} (id {message.get('id')})")

    async def _exited(self) -> MCPProcessExitedError:
        """Wait for the stdout reader to record the exit, then return the error"""
        if self._stdout_task is not None and not self._stdout_task.done():
            await asyncio.wait({self._stdout_task}, timeout=self.close_grace + 1.0)
        if self._exit_error is not None:
            return self._exit_error
        assert self._process is not None
        await self._process.wait()
        return MCPProcessExitedError(self._process.returncode, self.stderr_tail)

    async def _respond(self, request_id: Any, result: Any = None, error: Any = None) -> None:
        message: Dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
        if error is not None:
            message["error"] = error
        else:
            message["result"] = result if result is not None else {}
        try:
            await self._send(message)
        except MCPError as e:
            logger.debug(f"Could not answer server request {request_id}: {e}")

    # =========================================================================
    # Readers
    # =========================================================================

    async def _read_stdout(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        while True:
            try:
                raw = await stdout.readline()
            except (asyncio.LimitOverrunError, ValueError) as e:
                logger.error(f"Oversized message from automation server: {e}")
                continue
            if not raw:
                break

            text = raw.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                logger.warning(f"Non-JSON output from automation server: {text[:200]}")
                continue
            if not isinstance(message, dict):
                logger.warning(f"Unexpected JSON-RPC payload: {text[:200]}")
                continue
            await self._dispatch(message)

        await self._process.wait()
        # let stderr drain so the exit error carries the server's last words
        if self._stderr_task is not None:
            try:
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1.0)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass

        returncode = self._process.returncode
        if self.state != ClientState.CLOSED:
            logger.error(f"Automation server exited unexpectedly with code {returncode}")
        self._exit_error = MCPProcessExitedError(returncode, self.stderr_tail)
        self._fail_pending(self._exit_error)

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        if "method" in message:
            method = message["method"]
            if "id" in message:
                # server -> client request
                if method == "ping":
                    await self._respond(message["id"], {})
                else:
                    await self._respond(
                        message["id"],
                        error={"code": METHOD_NOT_FOUND, "message": f"Method not found: {method}"},
                    )
            else:
                logger.debug(f"Server notification: {method}")
            return

        future = self._pending.get(message.get("id"))
        if future is None:
            logger.warning(f"Response for unknown request id {message.get('id')}")
            return
        if not future.done():
            future.set_result(message)

    async def _read_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stderr = self._process.stderr
        while True:
            try:
                raw = await stderr.readline()
            except (asyncio.LimitOverrunError, ValueError):
                continue
            if not raw:
                break
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            self._stderr.append(line)
            if classify_stderr_line(line) == "fatal":
                logger.warning(f"[automation server] {line}")
            else:
                logger.debug(f"[automation server] {line}")

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()
