"""
Document builders for the evidence engine tests

VTID: VTID-01204
"""

import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

FIXTURES = Path(__file__).parent / "fixtures"
FAKE_MCP_SERVER = FIXTURES / "fake_mcp_server.py"


def action(action_id: str, action_type: str, **parameters) -> Dict[str, Any]:
    return {
        "actionId": action_id,
        "type": action_type,
        "description": f"{action_type} {action_id}",
        "parameters": parameters,
    }


def python_command(code: str) -> List[str]:
    """argv that runs a snippet with the current interpreter"""
    return [sys.executable, "-c", code]


def build_document(
    workspace: Path,
    tasks: Dict[str, Dict[str, Any]],
    **global_extra,
) -> Dict[str, Any]:
    return {
        "schemaVersion": "2.0",
        "metadata": {"taskTitle": "test run"},
        "globalConfiguration": {
            "workspaceRoot": str(workspace),
            "evidenceDirectory": "evidence",
            "timeout": 20000,
            **global_extra,
        },
        "tasks": tasks,
    }


def task(
    steps: List[Dict[str, Any]],
    success: Optional[List[Any]] = None,
    failure: Optional[List[Any]] = None,
    prerequisites: Optional[List[Dict[str, Any]]] = None,
    cleanup: Optional[List[Dict[str, Any]]] = None,
    title: str = "task",
) -> Dict[str, Any]:
    execution: Dict[str, Any] = {"steps": steps}
    if prerequisites is not None:
        execution["prerequisites"] = prerequisites
    if cleanup is not None:
        execution["cleanup"] = cleanup
    return {
        "title": title,
        "testExecution": execution,
        "validationCriteria": {
            "successConditions": success or [],
            "failureConditions": failure or [],
        },
    }


def action_artifacts(report) -> List[Path]:
    """Action artifacts of a run (excludes task summaries and the report)"""
    return sorted(Path(report.evidence_path).glob("*/*/*.json"))
