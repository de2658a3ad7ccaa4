"""
Process Executor

VTID: VTID-01204

Spawns an OS command, captures stdout/stderr independently, enforces a
timeout by killing the child, and reports the exit status.

Action Types: TERMINAL_COMMAND, PROCESS
"""

import asyncio
import logging
import os
import shlex
import time
from pathlib import Path
from typing import Any, Dict, List

from ..errors import ActionFailedError, ActionTimeoutError
from ..main import GlobalConfig
from .base import BaseExecutor

logger = logging.getLogger(__name__)


def build_argv(parameters: Dict[str, Any]) -> List[str]:
    """
    Build an argv vector from action parameters.

    A list command, or a command string with explicit `args`, is used as-is
    so arguments containing whitespace stay single arguments. A bare string
    is split with shell quoting rules.
    """
    command = parameters["command"]
    args = parameters.get("args") or []
    if not isinstance(args, list):
        raise ActionFailedError("Parameter 'args' must be a list", data={"args": args})

    if isinstance(command, list):
        argv = [str(c) for c in command]
    elif args:
        argv = [str(command)]
    else:
        argv = shlex.split(str(command))

    argv.extend(str(a) for a in args)
    if not argv:
        raise ActionFailedError("Empty command", data={"command": command})
    return argv


class ProcessExecutor(BaseExecutor):
    """
    Executor for OS commands.

    Parameters:
        command: string or argv list
        args: extra arguments appended verbatim
        shell: run through the system shell instead of exec
        workingDirectory: defaults to the workspace root
        environment: merged over os.environ and the global environment
        expectedExitCodes: exit codes that count as success (default [0])
        stdin: text written to the child's standard input
        timeout: milliseconds before the child is killed
    """

    name = "process"

    def action_types(self) -> List[str]:
        return ["TERMINAL_COMMAND", "PROCESS"]

    async def execute(
        self,
        parameters: Dict[str, Any],
        global_config: GlobalConfig,
    ) -> Dict[str, Any]:
        self.require(parameters, "command")

        expected = parameters.get("expectedExitCodes") or [0]
        if isinstance(expected, int):
            expected = [expected]
        cwd = Path(parameters.get("workingDirectory") or global_config.workspace_root)
        env = {
            **os.environ,
            **global_config.environment,
            **{str(k): str(v) for k, v in (parameters.get("environment") or {}).items()},
        }
        use_shell = bool(parameters.get("shell", False))
        stdin_text = parameters.get("stdin")
        timeout = self.timeout_seconds(parameters, global_config)

        if use_shell:
            command = parameters["command"]
            if isinstance(command, list):
                command = " ".join(shlex.quote(str(c)) for c in command)
            argv = [str(command)]
        else:
            argv = build_argv(parameters)

        payload: Dict[str, Any] = {
            "command": parameters["command"],
            "argv": argv,
            "shell": use_shell,
            "working_directory": str(cwd),
            "expected_exit_codes": expected,
            "exit_code": None,
            "stdout": "",
            "stderr": "",
            "timed_out": False,
            "pid": None,
        }

        logger.info(f"Running command: {argv if not use_shell else argv[0]}")
        start = time.monotonic()

        try:
            if use_shell:
                process = await asyncio.create_subprocess_shell(
                    argv[0],
                    cwd=str(cwd),
                    env=env,
                    stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            else:
                process = await asyncio.create_subprocess_exec(
                    *argv,
                    cwd=str(cwd),
                    env=env,
                    stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
        except OSError as e:
            payload["spawn_error"] = str(e)
            payload["duration_ms"] = int((time.monotonic() - start) * 1000)
            raise ActionFailedError(f"Failed to start command: {e}", data=payload)

        payload["pid"] = process.pid
        stdin_bytes = stdin_text.encode("utf-8") if stdin_text is not None else None

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(input=stdin_bytes),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            await self._kill(process)
            payload["timed_out"] = True
            payload["duration_ms"] = int((time.monotonic() - start) * 1000)
            raise ActionTimeoutError(
                f"Command timed out after {int(timeout * 1000)}ms and was killed",
                data=payload,
            )
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        payload["exit_code"] = process.returncode
        payload["stdout"] = stdout.decode("utf-8", errors="replace")
        payload["stderr"] = stderr.decode("utf-8", errors="replace")
        payload["duration_ms"] = int((time.monotonic() - start) * 1000)

        if process.returncode not in expected:
            raise ActionFailedError(
                f"Command exited with code {process.returncode}. "
                f"Expected: {', '.join(str(c) for c in expected)}",
                data=payload,
            )

        return payload

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        """Kill the child and reap it so no zombie is left behind"""
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.error(f"Process {process.pid} did not exit after kill")
