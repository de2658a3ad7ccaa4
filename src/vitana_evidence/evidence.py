"""
Evidence Collector

VTID: VTID-01204

Persists what literally happened. Every artifact is written by the engine,
exactly once, with exclusive-create; nothing is ever overwritten.

Layout of one run:

    <evidence root>/<run id>/
        execution-report.json
        <task id>/task-summary.json
        <task id>/<phase>/<action id>.json      (dots in ids become "-";
                                                 ids that would collide are
                                                 rejected when loading)

Each action artifact carries metadata.content_sha256, the SHA-256 of the
canonical JSON of its "result" block, so later edits are detectable.
"""

import hashlib
import json
import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import __version__
from .errors import EvidenceWriteError
from .main import ExecutionReport, ExecutionResult, TaskResult

logger = logging.getLogger(__name__)

ENGINE = f"vitana-evidence {__version__}"
REPORT_FILE = "execution-report.json"
TASK_SUMMARY_FILE = "task-summary.json"


def new_run_id() -> str:
    """Sortable, collision-resistant run identifier"""
    return f"{datetime.now():%Y%m%dT%H%M%S}-{uuid.uuid4().hex[:8]}"


def _normalize(value: Any) -> Any:
    """Round-trip through JSON so hashing sees exactly what is written"""
    return json.loads(json.dumps(value, default=str))


def canonical_digest(block: Any) -> str:
    canonical = json.dumps(block, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def safe_name(identifier: str) -> str:
    """Filesystem name for a task or action id"""
    name = identifier.replace(".", "-").replace("/", "_").replace("\\", "_")
    return name or "_"


class EvidenceCollector:
    """
    Writes the evidence tree for one run.

    Usage:
        collector = EvidenceCollector(Path("evidence"), new_run_id())
        collector.save_action_evidence(result)
        collector.save_task_evidence(task_result)
        collector.save_report(report)
    """

    def __init__(self, evidence_root: Path, run_id: str):
        self.evidence_root = Path(evidence_root)
        self.run_id = run_id
        self.run_dir = self.evidence_root / run_id
        self.written: List[Path] = []

    @property
    def action_artifacts(self) -> List[Path]:
        return [p for p in self.written if p.name not in (REPORT_FILE, TASK_SUMMARY_FILE)]

    def save_action_evidence(
        self,
        result: ExecutionResult,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> Path:
        """Write the artifact for one attempted action"""
        path = (
            self.run_dir
            / safe_name(result.task_id)
            / result.phase.value
            / f"{safe_name(result.action_id)}.json"
        )

        result_block = _normalize({
            "status": result.status.value,
            "success": result.success,
            "data": result.data,
            "error": result.error,
        })

        artifact = {
            "task_id": result.task_id,
            "action_id": result.action_id,
            "phase": result.phase.value,
            "action_type": result.action_type,
            "action": {
                "type": result.action_type,
                "description": result.description,
                "parameters": _normalize(parameters or {}),
            },
            "result": result_block,
            # engine-stamped only
            "metadata": {
                "engine": ENGINE,
                "run_id": self.run_id,
                "started_at": result.started_at.isoformat() if result.started_at else None,
                "ended_at": result.ended_at.isoformat() if result.ended_at else None,
                "duration_ms": result.duration_ms,
                "pid": result.pid,
                "platform": result.platform,
                "hostname": result.hostname,
                "content_sha256": canonical_digest(result_block),
            },
        }

        self._write(path, artifact)
        logger.debug(f"Evidence written: {path}")
        return path

    def save_task_evidence(self, task_result: TaskResult) -> Path:
        path = self.run_dir / safe_name(task_result.task_id) / TASK_SUMMARY_FILE
        summary = task_result.to_dict()
        summary["metadata"] = {"engine": ENGINE, "run_id": self.run_id}
        self._write(path, summary)
        logger.info(f"Saved task summary: {path}")
        return path

    def save_report(self, report: ExecutionReport) -> Path:
        path = self.run_dir / REPORT_FILE
        data = report.to_dict()
        data["metadata"] = {
            "engine": ENGINE,
            "generated_at": datetime.now().isoformat(),
            "evidence_path": str(self.run_dir),
        }
        self._write(path, data)
        logger.info(f"Final report: {path}")
        return path

    def _write(self, path: Path, content: Dict[str, Any]) -> None:
        text = json.dumps(content, indent=2, sort_keys=True, default=str, ensure_ascii=False)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "x", encoding="utf-8") as f:
                f.write(text + "\n")
        except FileExistsError:
            raise EvidenceWriteError(f"Evidence already exists and will not be overwritten: {path}")
        except OSError as e:
            raise EvidenceWriteError(f"Cannot write evidence {path}: {e}")
        self.written.append(path)

    # =========================================================================
    # Verification
    # =========================================================================

    @staticmethod
    def verify_artifact(path: Path) -> bool:
        """Recompute an action artifact's digest; False when it was edited"""
        with open(path, "r", encoding="utf-8") as f:
            artifact = json.load(f)
        expected = (artifact.get("metadata") or {}).get("content_sha256")
        if not expected or "result" not in artifact:
            return False
        return canonical_digest(artifact["result"]) == expected
