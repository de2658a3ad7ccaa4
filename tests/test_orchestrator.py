"""
End-to-end tests for the Execution Engine

VTID: VTID-01204
"""

import json
import os

import httpx
import pytest
import yaml
from fastapi import FastAPI

from vitana_evidence import (
    ActionStatus,
    EvidenceCollector,
    EvidenceWriteError,
    ExecutionEngine,
    PluginRegistry,
    TaskStatus,
    TechnicalDebtDetector,
)
from vitana_evidence.executors.http_request import HttpRequestExecutor

from helpers import action, action_artifacts, build_document, python_command, task


def process_gone(pid):
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return True
    return False


def exit_with(code):
    return python_command(f"import sys; sys.exit({code})")


class TestScenarios:
    """Acceptance scenarios: command, HTTP and file checks"""

    @pytest.mark.asyncio
    async def test_passing_command(self, workspace, loader, make_engine):
        """Should pass a task whose command exits 0 and write one artifact"""
        doc = build_document(workspace, {
            "T001": task(
                [action("STEP.1", "TERMINAL_COMMAND", command=python_command("print('built')"))],
                success=[{"condition": "STEP.1.exit_code === 0", "description": "build exits 0"}],
            ),
        })

        report = await make_engine().run(loader.load_dict(doc))

        result = report.tasks["T001"]
        assert result.status == TaskStatus.PASSED
        assert report.success is True

        artifacts = action_artifacts(report)
        assert len(artifacts) == 1
        artifact = json.loads(artifacts[0].read_text())
        assert artifact["result"]["data"]["exit_code"] == 0
        assert artifact["result"]["data"]["stdout"].strip() == "built"
        assert EvidenceCollector.verify_artifact(artifacts[0])

    @pytest.mark.asyncio
    async def test_http_not_found(self, workspace, loader, make_engine):
        """Should fail on a 404 and name the failed condition verbatim"""
        registry = PluginRegistry(include_builtin=False)
        registry.register(HttpRequestExecutor(transport=httpx.ASGITransport(app=FastAPI())))

        doc = build_document(workspace, {
            "T002": task(
                [action("STEP.1", "HTTP_REQUEST", url="/health", method="GET")],
                success=[{"condition": "STEP.1.status === 200", "description": "Health endpoint returns 200"}],
            ),
        }, baseUrl="http://testserver")

        report = await make_engine(registry=registry).run(loader.load_dict(doc))

        result = report.tasks["T002"]
        assert result.status == TaskStatus.FAILED
        assert result.failure_reason == "Failed conditions: Health endpoint returns 200"
        assert [e.description for e in result.validation.failed_conditions] == ["Health endpoint returns 200"]

        artifact = json.loads(action_artifacts(report)[0].read_text())
        assert artifact["result"]["data"]["status"] == 404

    @pytest.mark.asyncio
    async def test_missing_file(self, workspace, loader, make_engine):
        """Should fail a file check with file-not-found evidence"""
        doc = build_document(workspace, {
            "T003": task(
                [action("STEP.1", "FILE_VALIDATION", filePath="src/app.py", validationType="EXISTS")],
                success=[{"condition": "STEP.1.exists === true", "description": "app.py exists"}],
            ),
        })

        report = await make_engine().run(loader.load_dict(doc))

        assert report.tasks["T003"].status == TaskStatus.FAILED
        artifact = json.loads(action_artifacts(report)[0].read_text())
        assert "File not found" in artifact["result"]["error"]
        assert artifact["result"]["data"]["exists"] is False
        assert report.tasks["T003"].failure_analysis["category"] == "INCOMPLETE_IMPLEMENTATION"

    @pytest.mark.asyncio
    async def test_run_yaml_file(self, workspace, make_engine):
        """Should load and run a YAML document from disk"""
        doc = build_document(workspace, {
            "T001": task(
                [action("STEP.1", "TERMINAL_COMMAND", command=python_command("print('ok')"))],
                success=["STEP.1.success"],
            ),
        })
        path = workspace / "verify.yaml"
        path.write_text(yaml.safe_dump(doc))

        report = await make_engine().run_file(path)

        assert report.success is True
        assert (report.evidence_path / "execution-report.json").exists()
        assert (report.evidence_path / "T001" / "task-summary.json").exists()


class TestIsolation:
    """Tests for per-task isolation and evidence accounting"""

    @pytest.mark.asyncio
    async def test_unknown_type_fails_only_its_task(self, workspace, loader, make_engine):
        """Should fail the task with the unknown type and still run its sibling"""
        doc = build_document(workspace, {
            "T1": task([action("STEP.1", "QUANTUM_TELEPORT")], success=["STEP.1.success"]),
            "T2": task(
                [action("STEP.1", "TERMINAL_COMMAND", command=python_command("print(1)"))],
                success=["STEP.1.exit_code == 0"],
            ),
        })

        report = await make_engine().run(loader.load_dict(doc))

        assert report.tasks["T1"].status == TaskStatus.FAILED
        assert "QUANTUM_TELEPORT" in report.tasks["T1"].failure_reason
        assert report.tasks["T1"].results[0].status == ActionStatus.DISPATCH_ERROR
        assert report.tasks["T1"].failure_analysis["category"] == "DISPATCH_ERROR"
        assert report.tasks["T2"].status == TaskStatus.PASSED

    @pytest.mark.asyncio
    async def test_overflowing_condition_fails_only_its_task(self, workspace, loader, make_engine):
        """Should fail a task whose condition overflows and still run its sibling"""
        doc = build_document(workspace, {
            "T1": task(
                [action("STEP.1", "TERMINAL_COMMAND", command=python_command("print(1)"))],
                success=["int(float('inf')) > 0"],
            ),
            "T2": task(
                [action("STEP.1", "TERMINAL_COMMAND", command=python_command("print(1)"))],
                success=["STEP.1.exit_code == 0"],
            ),
        })

        report = await make_engine().run(loader.load_dict(doc))

        assert report.aborted is False
        assert report.tasks["T1"].status == TaskStatus.FAILED
        assert "int(float('inf')) > 0" in report.tasks["T1"].failure_reason
        assert report.tasks["T2"].status == TaskStatus.PASSED

    @pytest.mark.asyncio
    async def test_one_artifact_per_attempted_action(self, workspace, loader, make_engine):
        """Should write exactly one artifact for every attempted action"""
        doc = build_document(workspace, {
            "T1": task(
                [
                    action("STEP.1", "TERMINAL_COMMAND", command=python_command("print(1)")),
                    action("STEP.2", "TERMINAL_COMMAND", command=exit_with(2)),
                    action("STEP.3", "TERMINAL_COMMAND", command=python_command("print(3)")),
                ],
                prerequisites=[action("PREREQ.1", "TERMINAL_COMMAND", command=python_command("print(0)"))],
                cleanup=[action("CLEANUP.1", "TERMINAL_COMMAND", command=python_command("print(9)"))],
            ),
            "T2": task([action("STEP.1", "NOPE")]),
        })

        report = await make_engine().run(loader.load_dict(doc))

        # STEP.3 is never attempted after STEP.2 fails
        assert report.summary["actions_attempted"] == 5
        assert len(action_artifacts(report)) == 5

    @pytest.mark.asyncio
    async def test_repeat_runs_are_identical(self, workspace, loader, make_engine):
        """Should produce the same outcome and result digest on a rerun"""
        (workspace / "README.md").write_text("# project\n")
        doc = build_document(workspace, {
            "T1": task(
                [action("STEP.1", "FILE_VALIDATION", filePath="README.md", validationType="CONTENT_MATCH",
                        expectedContent="# project")],
                success=["STEP.1.content_matches"],
            ),
        })
        spec = loader.load_dict(doc)

        first = await make_engine().run(spec)
        second = await make_engine().run(spec)

        assert first.run_id != second.run_id
        assert first.tasks["T1"].status == second.tasks["T1"].status == TaskStatus.PASSED
        digests = [
            json.loads(action_artifacts(r)[0].read_text())["metadata"]["content_sha256"]
            for r in (first, second)
        ]
        assert digests[0] == digests[1]


class TestLifecycle:
    """Tests for phases, outcomes and run options"""

    @pytest.mark.asyncio
    async def test_prerequisite_failure_skips_task_body(self, workspace, loader, make_engine):
        """Should skip steps, validation and cleanup when a prerequisite fails"""
        doc = build_document(workspace, {
            "T1": task(
                [action("STEP.1", "TERMINAL_COMMAND", command=python_command("print(1)"))],
                prerequisites=[action("PREREQ.1", "TERMINAL_COMMAND", command=exit_with(4))],
                cleanup=[action("CLEANUP.1", "TERMINAL_COMMAND", command=python_command("print(2)"))],
                success=["STEP.1.success"],
            ),
        })

        report = await make_engine().run(loader.load_dict(doc))
        result = report.tasks["T1"]

        assert result.status == TaskStatus.FAILED
        assert result.failure_reason.startswith("Prerequisite PREREQ.1 failed")
        assert [r.action_id for r in result.results] == ["PREREQ.1"]
        assert result.phase_history == ["prerequisites", "completed"]
        assert result.validation is None

    @pytest.mark.asyncio
    async def test_continue_on_failure(self, workspace, loader, make_engine):
        """Should keep running steps after a failure marked continueOnFailure"""
        flaky = action("STEP.1", "TERMINAL_COMMAND", command=exit_with(1))
        flaky["continueOnFailure"] = True
        doc = build_document(workspace, {
            "T1": task(
                [flaky, action("STEP.2", "TERMINAL_COMMAND", command=python_command("print('after')"))],
                success=["STEP.2.exit_code === 0", "STEP.1.exit_code === 1"],
            ),
        })

        report = await make_engine().run(loader.load_dict(doc))

        assert report.tasks["T1"].status == TaskStatus.PASSED
        assert len(report.tasks["T1"].results) == 2

    @pytest.mark.asyncio
    async def test_failed_step_without_conditions(self, workspace, loader, make_engine):
        """Should fail a task with no conditions when a step fails"""
        doc = build_document(workspace, {
            "T1": task([action("STEP.1", "TERMINAL_COMMAND", command=exit_with(5))]),
        })

        report = await make_engine().run(loader.load_dict(doc))

        assert report.tasks["T1"].status == TaskStatus.FAILED
        assert report.tasks["T1"].failure_reason.startswith("Step STEP.1 failed")

    @pytest.mark.asyncio
    async def test_cleanup_failure_keeps_outcome(self, workspace, loader, make_engine):
        """Should record cleanup errors without changing the task outcome"""
        doc = build_document(workspace, {
            "T1": task(
                [action("STEP.1", "TERMINAL_COMMAND", command=python_command("print(1)"))],
                cleanup=[action("CLEANUP.1", "TERMINAL_COMMAND", command=exit_with(7))],
                success=["STEP.1.success"],
            ),
        })

        report = await make_engine().run(loader.load_dict(doc))
        result = report.tasks["T1"]

        assert result.status == TaskStatus.PASSED
        assert len(result.cleanup_errors) == 1
        assert result.cleanup_errors[0].startswith("CLEANUP.1")
        assert result.phase_history == [
            "prerequisites", "steps", "validating", "cleanup", "completed",
        ]

    @pytest.mark.asyncio
    async def test_technical_debt_recorded_for_passed_task(self, workspace, loader, make_engine):
        """Should attach advisory debt findings to a passed task and its summary"""
        doc = build_document(workspace, {
            "T1": task(
                [action("STEP.1", "TERMINAL_COMMAND", command=python_command("print('warning: flag is deprecated')"))],
                success=["STEP.1.exit_code == 0"],
            ),
            "T2": task([action("STEP.1", "TERMINAL_COMMAND", command=exit_with(1))], success=["STEP.1.success"]),
        })

        report = await make_engine().run(loader.load_dict(doc))
        passed, failed = report.tasks["T1"], report.tasks["T2"]

        assert passed.status == TaskStatus.PASSED
        quality = [d for d in passed.technical_debt if d["category"] == "CODE_QUALITY"]
        assert len(quality) == 1
        assert quality[0]["evidence"]["action_id"] == "STEP.1"
        summary = json.loads((report.evidence_path / "T1" / "task-summary.json").read_text())
        assert summary["technical_debt"] == passed.technical_debt

        assert failed.status == TaskStatus.FAILED
        assert failed.technical_debt == []

    @pytest.mark.asyncio
    async def test_debt_detector_error_keeps_outcome(self, workspace, loader):
        """Should log a broken debt detector and still pass the task"""
        class BrokenDetector(TechnicalDebtDetector):
            def analyze(self, task_result):
                raise RuntimeError("detector bug")

        doc = build_document(workspace, {
            "T1": task(
                [action("STEP.1", "TERMINAL_COMMAND", command=python_command("print(1)"))],
                success=["STEP.1.exit_code == 0"],
            ),
        })

        report = await ExecutionEngine(debt_detector=BrokenDetector()).run(loader.load_dict(doc))

        assert report.tasks["T1"].status == TaskStatus.PASSED
        assert report.tasks["T1"].technical_debt == []

    @pytest.mark.asyncio
    async def test_parameter_interpolation(self, workspace, loader, make_engine):
        """Should render later parameters from earlier results"""
        doc = build_document(workspace, {
            "T1": task(
                [
                    action("STEP.1", "TERMINAL_COMMAND", command=python_command("print('token-42')")),
                    action(
                        "STEP.2",
                        "TERMINAL_COMMAND",
                        command=python_command("import sys; print(sys.argv[1].upper())") + ["{{ STEP.1.stdout }}"],
                    ),
                ],
                success=["contains(STEP.2.stdout, 'TOKEN-42')"],
            ),
        })

        report = await make_engine().run(loader.load_dict(doc))

        assert report.tasks["T1"].status == TaskStatus.PASSED

    @pytest.mark.asyncio
    async def test_action_timeout(self, workspace, loader, make_engine):
        """Should record a timed-out action and categorise the failure"""
        slow = action("STEP.1", "TERMINAL_COMMAND", command=python_command("import time; time.sleep(30)"))
        slow["timeout"] = 300
        doc = build_document(workspace, {"T1": task([slow], success=["STEP.1.success"])})

        report = await make_engine().run(loader.load_dict(doc))
        result = report.tasks["T1"]

        assert result.results[0].status == ActionStatus.TIMEOUT
        assert result.status == TaskStatus.FAILED
        assert result.failure_analysis["category"] == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_parameter_timeout_extends_backstop(self, workspace, loader, make_engine):
        """Should let a command outlive the global default when its own timeout allows it"""
        slow = action(
            "STEP.1", "TERMINAL_COMMAND",
            command=python_command("import time; time.sleep(3.5)"), timeout=8000,
        )
        doc = build_document(workspace, {"T1": task([slow], success=["STEP.1.exit_code == 0"])}, timeout=1000)

        report = await make_engine().run(loader.load_dict(doc))
        result = report.tasks["T1"]

        assert result.results[0].status == ActionStatus.PASSED
        assert result.status == TaskStatus.PASSED

    @pytest.mark.asyncio
    async def test_dry_run(self, workspace, loader, make_engine):
        """Should resolve types without executing or writing evidence"""
        marker = workspace / "ran.txt"
        doc = build_document(workspace, {
            "T1": task([action("STEP.1", "TERMINAL_COMMAND",
                               command=python_command(f"open({str(marker)!r}, 'w').close()"))]),
            "T2": task([action("STEP.1", "BOGUS")]),
        })

        report = await make_engine(dry_run=True).run(loader.load_dict(doc))

        assert report.dry_run is True
        assert report.success is False
        assert all(t.status == TaskStatus.SKIPPED for t in report.tasks.values())
        assert report.unknown_action_types == {"T2": ["BOGUS"]}
        assert not marker.exists()
        assert not (workspace / "evidence").exists()

    @pytest.mark.asyncio
    async def test_stop_on_failure(self, workspace, loader, make_engine):
        """Should skip remaining tasks after the first failure"""
        doc = build_document(workspace, {
            "T1": task([action("STEP.1", "TERMINAL_COMMAND", command=exit_with(1))]),
            "T2": task([action("STEP.1", "TERMINAL_COMMAND", command=python_command("print(1)"))]),
        })

        report = await make_engine(stop_on_failure=True).run(loader.load_dict(doc))

        assert report.tasks["T1"].status == TaskStatus.FAILED
        assert report.tasks["T2"].status == TaskStatus.SKIPPED
        assert "stop-on-failure" in report.tasks["T2"].failure_reason

    @pytest.mark.asyncio
    async def test_evidence_dir_override(self, workspace, loader, make_engine, tmp_path):
        """Should write evidence under the configured override"""
        doc = build_document(workspace, {
            "T1": task([action("STEP.1", "TERMINAL_COMMAND", command=python_command("print(1)"))]),
        })
        override = tmp_path / "elsewhere"

        report = await make_engine(evidence_dir_override=override).run(loader.load_dict(doc))

        assert report.evidence_path.parent == override
        assert len(action_artifacts(report)) == 1

    @pytest.mark.asyncio
    async def test_events(self, workspace, loader, make_engine):
        """Should emit lifecycle events to sync and async handlers"""
        doc = build_document(workspace, {
            "T1": task([action("STEP.1", "TERMINAL_COMMAND", command=python_command("print(1)"))]),
        })
        engine = make_engine()
        seen = []

        def on_sync(event, subject, **kwargs):
            seen.append(event)

        async def on_async(event, subject, **kwargs):
            seen.append(f"async:{event}")

        for event in ("task.started", "action.completed", "task.completed", "run.completed"):
            engine.on(event, on_sync)
        engine.on("run.completed", on_async)

        await engine.run(loader.load_dict(doc))

        assert seen == [
            "task.started", "action.completed", "task.completed", "run.completed", "async:run.completed",
        ]
        assert engine.get_stats()["evidence_written"] == 1


class TestShutdown:
    """Tests for executor shutdown and aborted runs"""

    @pytest.mark.asyncio
    async def test_no_orphaned_automation_server(self, workspace, loader, make_engine, fake_server_command):
        """Should stop the automation server when the run ends"""
        doc = build_document(workspace, {
            "T1": task(
                [
                    action("STEP.1", "MCP_BROWSER_COMMAND", action="navigate_page", url="https://example.com"),
                    action("STEP.2", "MCP_BROWSER_COMMAND", action="take_snapshot"),
                ],
                success=["contains(STEP.2.content_text, 'Example Domain')"],
            ),
        }, remoteAutomation={"command": fake_server_command})

        engine = make_engine()
        pids = set()

        def capture(event, result):
            client = engine.registry.get("MCP_BROWSER_COMMAND").client
            if client is not None:
                pids.add(client.pid)

        engine.on("action.completed", capture)
        report = await engine.run(loader.load_dict(doc))

        assert report.tasks["T1"].status == TaskStatus.PASSED
        assert len(pids) == 1
        assert all(process_gone(pid) for pid in pids)
        assert engine.registry.get("MCP_BROWSER_COMMAND").client is None
        assert report.shutdown_errors == []

    @pytest.mark.asyncio
    async def test_evidence_write_failure_aborts(self, workspace, loader, make_engine, fake_server_command):
        """Should abort the run when evidence cannot be written, still shutting down executors"""
        (workspace / "evidence").write_text("not a directory")
        doc = build_document(workspace, {
            "T1": task([action("STEP.1", "MCP_BROWSER_COMMAND", action="take_snapshot")]),
        }, remoteAutomation={"command": fake_server_command})

        engine = make_engine()
        with pytest.raises(EvidenceWriteError):
            await engine.run(loader.load_dict(doc))

        assert engine.report.aborted is True
        assert engine.report.success is False
        assert engine.registry.get("MCP_BROWSER_COMMAND").client is None
