"""
Specification Loader

VTID: VTID-01204

Loads and structurally validates task-graph documents (schema 2.x).
Action types are only checked for shape here; resolving them against the
executor registry is the orchestrator's job.
"""

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .errors import SpecificationError
from .evidence import safe_name
from .main import Action, GlobalConfig, Specification, Task, ValidationCondition

logger = logging.getLogger(__name__)

SUPPORTED_SCHEMA_MAJOR = 2

_ENV_REF = re.compile(r"\$\{([^}]+)\}")


class _DuplicateKeyError(ValueError):
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"duplicate key: {key}")


def _reject_duplicate_pairs(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for key, value in pairs:
        if key in result:
            raise _DuplicateKeyError(key)
        result[key] = value
    return result


class _StrictSafeLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys"""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise _DuplicateKeyError(str(key))
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


class SpecificationLoader:
    """
    Parses a specification document into an immutable Specification.

    Validates:
    - schemaVersion is present and has a supported major version
    - globalConfiguration and tasks are present
    - task identifiers are unique (duplicate keys are an error, not an override)
    - action identifiers are unique within a task
    - every action declares a non-empty string type
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._environ = dict(os.environ if environ is None else environ)

    def load(self, path: str) -> Specification:
        """Read, parse and validate a specification file"""
        spec_path = Path(path)
        try:
            text = spec_path.read_text(encoding="utf-8")
        except OSError as e:
            raise SpecificationError(f"Cannot read specification: {e}", path=str(spec_path))

        try:
            if spec_path.suffix.lower() in (".yaml", ".yml"):
                document = yaml.load(text, Loader=_StrictSafeLoader)
            else:
                document = json.loads(text, object_pairs_hook=_reject_duplicate_pairs)
        except _DuplicateKeyError as e:
            raise SpecificationError(f"Duplicate identifier '{e.key}'", path=str(spec_path))
        except (ValueError, yaml.YAMLError) as e:
            raise SpecificationError(f"Document is not valid: {e}", path=str(spec_path))

        spec = self.load_dict(document, source_path=spec_path)
        logger.info(
            f"Loaded specification {spec.title or spec_path.name}: "
            f"{len(spec.tasks)} task(s) [{', '.join(spec.tasks)}]"
        )
        return spec

    def load_dict(
        self,
        document: Any,
        source_path: Optional[Path] = None,
    ) -> Specification:
        """Validate an already-parsed document"""
        if not isinstance(document, dict):
            raise SpecificationError("Specification must be a mapping", path="$")

        version = document.get("schemaVersion")
        if version is None:
            raise SpecificationError("Missing schemaVersion", path="schemaVersion")
        self._check_version(str(version))

        global_config = self._parse_global(document.get("globalConfiguration"))
        document = self._substitute_env(document, global_config)
        global_config = self._parse_global(document.get("globalConfiguration"))

        tasks_doc = document.get("tasks")
        if not isinstance(tasks_doc, dict) or not tasks_doc:
            raise SpecificationError("No tasks defined in specification", path="tasks")

        tasks: Dict[str, Task] = {}
        task_dirs: Dict[str, str] = {}
        for task_id, task_doc in tasks_doc.items():
            task_path = f"tasks.{task_id}"
            if not str(task_id).strip():
                raise SpecificationError("Task identifier must be non-empty", path=task_path)
            self._claim_evidence_name(str(task_id), "Task", task_dirs, task_path)
            tasks[str(task_id)] = self._parse_task(str(task_id), task_doc, task_path)

        metadata = document.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise SpecificationError("metadata must be a mapping", path="metadata")

        return Specification(
            schema_version=str(version),
            tasks=tasks,
            global_config=global_config,
            metadata=metadata,
            source_path=source_path,
        )

    # =========================================================================
    # Parsing
    # =========================================================================

    def _check_version(self, version: str) -> None:
        match = re.match(r"^(\d+)(\.\d+){0,2}$", version.strip())
        if not match:
            raise SpecificationError(f"Unparseable schemaVersion '{version}'", path="schemaVersion")
        if int(match.group(1)) != SUPPORTED_SCHEMA_MAJOR:
            raise SpecificationError(
                f"Unsupported schemaVersion '{version}' (expected {SUPPORTED_SCHEMA_MAJOR}.x)",
                path="schemaVersion",
            )

    def _parse_global(self, block: Any) -> GlobalConfig:
        if block is None:
            raise SpecificationError("Missing globalConfiguration", path="globalConfiguration")
        if not isinstance(block, dict):
            raise SpecificationError("globalConfiguration must be a mapping", path="globalConfiguration")

        environment = block.get("environment") or {}
        if not isinstance(environment, dict):
            raise SpecificationError(
                "environment must be a mapping", path="globalConfiguration.environment"
            )

        timeout = block.get("timeout", 60000)
        if not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0:
            raise SpecificationError(
                "timeout must be a positive integer (ms)", path="globalConfiguration.timeout"
            )

        remote = block.get("remoteAutomation") or {}
        if not isinstance(remote, dict):
            raise SpecificationError(
                "remoteAutomation must be a mapping", path="globalConfiguration.remoteAutomation"
            )

        known = {"workspaceRoot", "evidenceDirectory", "timeout", "environment",
                 "baseUrl", "remoteAutomation"}
        workspace = block.get("workspaceRoot") or self._environ.get("WORKSPACE_ROOT") or os.getcwd()

        return GlobalConfig(
            workspace_root=Path(str(workspace)),
            evidence_directory=str(block.get("evidenceDirectory") or "evidence"),
            default_timeout_ms=timeout,
            environment={str(k): str(v) for k, v in environment.items()},
            base_url=block.get("baseUrl"),
            remote_automation=remote,
            extra={k: v for k, v in block.items() if k not in known},
        )

    def _parse_task(self, task_id: str, doc: Any, path: str) -> Task:
        if not isinstance(doc, dict):
            raise SpecificationError("Task must be a mapping", path=path)

        execution = doc.get("testExecution")
        if not isinstance(execution, dict):
            raise SpecificationError("Missing testExecution", path=f"{path}.testExecution")
        if not isinstance(execution.get("steps"), list):
            raise SpecificationError(
                "Missing testExecution.steps", path=f"{path}.testExecution.steps"
            )

        seen_ids: Dict[str, str] = {}
        evidence_names: Dict[str, str] = {}
        phases = {}
        for key in ("prerequisites", "steps", "cleanup"):
            items = execution.get(key) or []
            phase_path = f"{path}.testExecution.{key}"
            if not isinstance(items, list):
                raise SpecificationError(f"{key} must be a list", path=phase_path)
            phases[key] = tuple(
                self._parse_action(item, f"{phase_path}[{i}]", seen_ids, evidence_names)
                for i, item in enumerate(items)
            )

        criteria = doc.get("validationCriteria")
        if not isinstance(criteria, dict):
            raise SpecificationError("Missing validationCriteria", path=f"{path}.validationCriteria")

        return Task(
            task_id=task_id,
            title=str(doc.get("title") or task_id),
            prerequisites=phases["prerequisites"],
            steps=phases["steps"],
            cleanup=phases["cleanup"],
            success_conditions=self._parse_conditions(
                criteria.get("successConditions"), f"{path}.validationCriteria.successConditions"
            ),
            failure_conditions=self._parse_conditions(
                criteria.get("failureConditions"), f"{path}.validationCriteria.failureConditions"
            ),
        )

    def _parse_action(
        self,
        doc: Any,
        path: str,
        seen_ids: Dict[str, str],
        evidence_names: Dict[str, str],
    ) -> Action:
        if not isinstance(doc, dict):
            raise SpecificationError("Action must be a mapping", path=path)

        action_id = doc.get("actionId")
        if not isinstance(action_id, str) or not action_id.strip():
            raise SpecificationError("Missing actionId", path=f"{path}.actionId")
        if action_id in seen_ids:
            raise SpecificationError(
                f"Duplicate actionId '{action_id}' (first declared at {seen_ids[action_id]})",
                path=f"{path}.actionId",
            )
        seen_ids[action_id] = path
        self._claim_evidence_name(action_id, "actionId", evidence_names, f"{path}.actionId")

        action_type = doc.get("type")
        if not isinstance(action_type, str) or not action_type.strip():
            raise SpecificationError("Action type must be a non-empty string", path=f"{path}.type")

        parameters = doc.get("parameters") or {}
        if not isinstance(parameters, dict):
            raise SpecificationError("parameters must be a mapping", path=f"{path}.parameters")

        timeout = doc.get("timeout")
        if timeout is not None and (
            not isinstance(timeout, int) or isinstance(timeout, bool) or timeout <= 0
        ):
            raise SpecificationError("timeout must be a positive integer (ms)", path=f"{path}.timeout")

        return Action(
            action_id=action_id,
            action_type=action_type.strip(),
            description=str(doc.get("description") or ""),
            parameters=parameters,
            timeout_ms=timeout,
            continue_on_failure=bool(doc.get("continueOnFailure", False)),
        )

    @staticmethod
    def _claim_evidence_name(identifier: str, kind: str, claimed: Dict[str, str], path: str) -> None:
        """Distinct ids must not share an evidence file once sanitised"""
        name = safe_name(identifier)
        other = claimed.get(name)
        if other is not None and other != identifier:
            raise SpecificationError(
                f"{kind} '{identifier}' collides with '{other}' (both stored as '{name}')",
                path=path,
            )
        claimed[name] = identifier

    def _parse_conditions(self, items: Any, path: str) -> Tuple[ValidationCondition, ...]:
        if items is None:
            return ()
        if not isinstance(items, list):
            raise SpecificationError("Conditions must be a list", path=path)

        conditions = []
        for i, item in enumerate(items):
            if isinstance(item, str):
                item = {"condition": item}
            if not isinstance(item, dict):
                raise SpecificationError("Condition must be a mapping", path=f"{path}[{i}]")
            expression = item.get("condition")
            if not isinstance(expression, str) or not expression.strip():
                raise SpecificationError(
                    "Condition expression must be a non-empty string",
                    path=f"{path}[{i}].condition",
                )
            conditions.append(ValidationCondition(
                expression=expression,
                description=str(item.get("description") or expression),
            ))
        return tuple(conditions)

    # =========================================================================
    # Environment substitution
    # =========================================================================

    def _substitute_env(self, document: Dict[str, Any], global_config: GlobalConfig) -> Dict[str, Any]:
        """Replace ${VAR} references in string values; unknown names are kept as written"""
        variables = {
            **self._environ,
            "WORKSPACE_ROOT": str(global_config.workspace_root),
        }

        def replace(value: Any) -> Any:
            if isinstance(value, str):
                return _ENV_REF.sub(lambda m: variables.get(m.group(1), m.group(0)), value)
            if isinstance(value, list):
                return [replace(v) for v in value]
            if isinstance(value, dict):
                return {k: replace(v) for k, v in value.items()}
            return value

        return replace(document)
