"""
Tests for the MCP stdio client and the Browser Automation Executor

VTID: VTID-01204

Runs against tests/fixtures/fake_mcp_server.py, which enforces the same
handshake and tools/call dispatch as a real automation server.
"""

import asyncio
import os
import signal

import pytest
import pytest_asyncio

from vitana_evidence import ActionFailedError, ActionTimeoutError, GlobalConfig
from vitana_evidence.executors.browser import BrowserAutomationExecutor, server_command
from vitana_evidence.mcp_client import (
    ClientState,
    MCPClient,
    MCPError,
    MCPProcessExitedError,
    MCPTimeoutError,
    classify_stderr_line,
)


def process_gone(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


@pytest_asyncio.fixture
async def client(fake_server_command):
    client = MCPClient(fake_server_command, request_timeout=5.0, close_grace=0.5)
    await client.start()
    yield client
    await client.close()


class TestClassifyStderr:
    """Tests for stderr line classification"""

    def test_security_notice_is_info(self):
        """Should not treat the startup notice as fatal"""
        line = (
            "chrome-devtools-mcp exposes content of the browser instance to the MCP clients "
            "allowing them to inspect, debug, and modify any data in the browser."
        )
        assert classify_stderr_line(line) == "info"

    def test_warning_prefix_wins(self):
        """Should classify warning lines as info even when they mention errors"""
        assert classify_stderr_line("Warning: error reporting disabled") == "info"

    def test_fatal_markers(self):
        """Should flag known fatal startup errors"""
        assert classify_stderr_line("Error: Cannot find module 'puppeteer-core'") == "fatal"
        assert classify_stderr_line("sh: npx: command not found") == "fatal"

    def test_blank(self):
        """Should treat blank lines as info"""
        assert classify_stderr_line("   ") == "info"


class TestMCPClient:
    """Tests for the protocol state machine over a real child process"""

    @pytest.mark.asyncio
    async def test_handshake_and_list(self, client):
        """Should complete initialize, then list tools"""
        await client.initialize()
        assert client.state == ClientState.INITIALIZED
        assert client.server_info["name"] == "fake-devtools-mcp"
        assert client.protocol_version == "2024-11-05"

        tools = await client.list_tools()
        assert client.state == ClientState.READY
        assert "navigate_page" in [t["name"] for t in tools]

    @pytest.mark.asyncio
    async def test_request_before_handshake_is_method_not_found(self, client):
        """Should surface -32601 for tools/list before initialize, without hanging"""
        with pytest.raises(MCPError) as exc:
            await asyncio.wait_for(client.request("tools/list", {}), timeout=5)
        assert exc.value.is_method_not_found

    @pytest.mark.asyncio
    async def test_operation_as_bare_method_is_method_not_found(self, client):
        """Should reject an operation name sent as the method itself"""
        await client.initialize()
        await client.list_tools()
        with pytest.raises(MCPError) as exc:
            await client.request("navigate_page", {"url": "https://example.com"})
        assert exc.value.code == -32601

    @pytest.mark.asyncio
    async def test_call_tool(self, client):
        """Should reach operations through tools/call"""
        await client.initialize()
        await client.list_tools()
        result = await client.call_tool("navigate_page", {"url": "https://example.com"})
        assert result["content"][0]["text"] == "Navigated to https://example.com"
        assert result["isError"] is False

    @pytest.mark.asyncio
    async def test_stderr_notice_tolerated(self, client):
        """Should keep working after the server's stderr notice"""
        await client.initialize()
        await client.list_tools()
        assert any("exposes content" in line for line in client.stderr_tail)
        assert client.is_alive

    @pytest.mark.asyncio
    async def test_request_timeout(self, client):
        """Should raise MCPTimeoutError when no response arrives in time"""
        await client.initialize()
        await client.list_tools()
        with pytest.raises(MCPTimeoutError):
            await client.call_tool("slow_operation", {"seconds": 3}, timeout=0.3)

    @pytest.mark.asyncio
    async def test_crash_on_start(self, fake_server_command):
        """Should report the exit code and stderr of a server that dies at startup"""
        client = MCPClient(fake_server_command + ["--crash-on-start"], request_timeout=5.0)
        await client.start()
        try:
            with pytest.raises(MCPProcessExitedError) as exc:
                await client.initialize()
        finally:
            await client.close()
        assert exc.value.returncode == 1
        assert any("Cannot find module" in line for line in exc.value.stderr_tail)

    @pytest.mark.asyncio
    async def test_exit_after_init(self, fake_server_command):
        """Should fail later requests once the server has exited"""
        client = MCPClient(fake_server_command + ["--exit-after-init"], request_timeout=5.0)
        await client.start()
        try:
            # the exit can already surface on the initialized notification
            with pytest.raises(MCPProcessExitedError) as exc:
                await client.initialize()
                await client.list_tools()
        finally:
            await client.close()
        assert exc.value.returncode == 3

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, client):
        """Should stop the child exactly once and leave no process behind"""
        await client.initialize()
        pid = client.pid

        await client.close()
        await client.close()

        assert client.state == ClientState.CLOSED
        assert not client.is_alive
        assert process_gone(pid)

    @pytest.mark.asyncio
    async def test_close_kills_unresponsive_server(self, fake_server_command):
        """Should escalate to kill when the server ignores stdin close and SIGTERM"""
        client = MCPClient(fake_server_command + ["--ignore-sigterm"], close_grace=0.3)
        await client.start()
        await client.initialize()
        await client.list_tools()

        pending = asyncio.create_task(client.call_tool("slow_operation", {"seconds": 30}))
        await asyncio.sleep(0.2)
        await client.close()

        with pytest.raises(MCPError):
            await pending
        assert client.returncode == -signal.SIGKILL
        assert process_gone(client.pid)


class TestBrowserAutomationExecutor:
    """Tests for browser operations through the executor"""

    @pytest.fixture
    def global_config(self, workspace, fake_server_command):
        return GlobalConfig(
            workspace_root=workspace,
            remote_automation={"command": fake_server_command, "startupTimeout": 10000},
        )

    @pytest_asyncio.fixture
    async def executor(self):
        executor = BrowserAutomationExecutor()
        yield executor
        await executor.cleanup()

    def test_server_command(self):
        """Should split a command string and append args"""
        assert server_command({"command": "npx -y chrome-devtools-mcp@latest", "args": ["--headless"]}) == [
            "npx", "-y", "chrome-devtools-mcp@latest", "--headless",
        ]
        assert server_command({})[0] == "npx"

    @pytest.mark.asyncio
    async def test_navigate(self, executor, global_config):
        """Should start the server lazily and dispatch through tools/call"""
        payload = await executor.execute(
            {"action": "navigate_page", "url": "https://example.com"}, global_config
        )
        assert payload["arguments"] == {"url": "https://example.com"}
        assert payload["listed"] is True
        assert payload["content_text"] == "Navigated to https://example.com"
        assert payload["server_info"]["name"] == "fake-devtools-mcp"

    @pytest.mark.asyncio
    async def test_reuses_one_server(self, executor, global_config):
        """Should share one server process across actions"""
        await executor.execute({"action": "navigate_page", "url": "https://example.com"}, global_config)
        pid = executor.client.pid
        await executor.execute({"action": "take_snapshot"}, global_config)
        assert executor.client.pid == pid

    @pytest.mark.asyncio
    async def test_tool_error(self, executor, global_config):
        """Should fail the action when the tool reports isError"""
        with pytest.raises(ActionFailedError, match="Element not found") as exc:
            await executor.execute({"action": "fail_operation"}, global_config)
        assert exc.value.data["is_error"] is True

    @pytest.mark.asyncio
    async def test_unknown_tool(self, executor, global_config):
        """Should attach the JSON-RPC error for an unknown operation"""
        with pytest.raises(ActionFailedError) as exc:
            await executor.execute({"action": "teleport"}, global_config)
        assert exc.value.data["listed"] is False
        assert exc.value.data["mcp_error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_operation_timeout(self, executor, global_config):
        """Should map a slow response to ActionTimeoutError"""
        with pytest.raises(ActionTimeoutError):
            await executor.execute(
                {"action": "slow_operation", "arguments": {"seconds": 3}, "timeout": 300},
                global_config,
            )

    @pytest.mark.asyncio
    async def test_startup_failure_is_cached(self, executor, workspace, fake_server_command):
        """Should fail every action the same way when the server cannot start"""
        config = GlobalConfig(
            workspace_root=workspace,
            remote_automation={"command": fake_server_command, "args": ["--crash-on-start"]},
        )
        with pytest.raises(ActionFailedError, match="did not start") as first:
            await executor.execute({"action": "navigate_page"}, config)
        assert first.value.data["exit_code"] == 1
        assert any("Cannot find module" in line for line in first.value.data["stderr_tail"])

        with pytest.raises(ActionFailedError) as second:
            await executor.execute({"action": "take_snapshot"}, config)
        assert second.value is first.value
        assert executor.client is None

    @pytest.mark.asyncio
    async def test_cleanup_stops_server(self, global_config):
        """Should stop the server on cleanup"""
        executor = BrowserAutomationExecutor()
        await executor.execute({"action": "take_snapshot"}, global_config)
        pid = executor.client.pid

        await executor.cleanup()
        await executor.cleanup()

        assert executor.client is None
        assert process_gone(pid)
