"""
File Validation Executor

VTID: VTID-01204

Inspects a path for existence, size, modification time, structured-content
validity and pattern matches. Never mutates the inspected path.

Action Type: FILE_VALIDATION
"""

import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List

import yaml

from ..errors import ActionFailedError
from ..main import GlobalConfig
from .base import BaseExecutor

logger = logging.getLogger(__name__)

VALIDATION_TYPES = {
    "EXISTS",
    "NOT_EXISTS",
    "CONTENT_MATCH",
    "CONTENT_PATTERN",
    "JSON_VALID",
    "YAML_VALID",
}


class FileValidationExecutor(BaseExecutor):
    """
    Executor for filesystem checks.

    Parameters:
        filePath: path, relative paths resolve against the workspace root
        validationType: EXISTS | NOT_EXISTS | CONTENT_MATCH | CONTENT_PATTERN |
                        JSON_VALID | YAML_VALID
        expectedContent: substring for CONTENT_MATCH
        contentPattern: regular expression for CONTENT_PATTERN
        minSize / maxSize: byte bounds
        encoding: text encoding (default utf-8)
    """

    name = "file"

    def action_types(self) -> List[str]:
        return ["FILE_VALIDATION"]

    async def execute(
        self,
        parameters: Dict[str, Any],
        global_config: GlobalConfig,
    ) -> Dict[str, Any]:
        self.require(parameters, "filePath", "validationType")

        validation_type = str(parameters["validationType"]).upper()
        if validation_type not in VALIDATION_TYPES:
            raise ActionFailedError(
                f"Unknown validationType '{validation_type}'",
                data={"validation_type": validation_type, "supported": sorted(VALIDATION_TYPES)},
            )

        path = Path(parameters["filePath"])
        if not path.is_absolute():
            path = global_config.workspace_root / path
        encoding = parameters.get("encoding", "utf-8")

        payload: Dict[str, Any] = {
            "file_path": str(path),
            "validation_type": validation_type,
            "exists": path.exists(),
        }

        if not payload["exists"]:
            if validation_type == "NOT_EXISTS":
                return payload
            raise ActionFailedError(f"File not found: {path}", data=payload)

        if validation_type == "NOT_EXISTS":
            self._stat(path, payload)
            raise ActionFailedError(f"File exists but should not: {path}", data=payload)

        stats = self._stat(path, payload)
        self._check_size(stats.st_size, parameters, payload)

        if validation_type == "EXISTS":
            return payload

        if payload["is_directory"]:
            raise ActionFailedError("Cannot validate content of a directory", data=payload)

        try:
            content = path.read_text(encoding=encoding)
        except (OSError, UnicodeDecodeError) as e:
            raise ActionFailedError(f"Cannot read file: {e}", data=payload)
        payload["content_length"] = len(content)

        if validation_type == "CONTENT_MATCH":
            self.require(parameters, "expectedContent")
            payload["content_matches"] = str(parameters["expectedContent"]) in content
            if not payload["content_matches"]:
                raise ActionFailedError("File content does not match expected string", data=payload)

        elif validation_type == "CONTENT_PATTERN":
            self.require(parameters, "contentPattern")
            pattern = str(parameters["contentPattern"])
            try:
                match = re.search(pattern, content, re.MULTILINE)
            except re.error as e:
                raise ActionFailedError(f"Invalid contentPattern: {e}", data=payload)
            payload["pattern_matches"] = match is not None
            payload["match"] = match.group(0) if match else None
            if not match:
                raise ActionFailedError(f"File content does not match pattern: {pattern}", data=payload)

        elif validation_type == "JSON_VALID":
            try:
                payload["parsed"] = json.loads(content)
                payload["is_valid"] = True
            except json.JSONDecodeError as e:
                payload["is_valid"] = False
                raise ActionFailedError(f"Invalid JSON: {e}", data=payload)

        elif validation_type == "YAML_VALID":
            try:
                payload["parsed"] = yaml.safe_load(content)
                payload["is_valid"] = True
            except yaml.YAMLError as e:
                payload["is_valid"] = False
                raise ActionFailedError(f"Invalid YAML: {e}", data=payload)

        return payload

    @staticmethod
    def _stat(path: Path, payload: Dict[str, Any]):
        stats = path.stat()
        payload["size"] = stats.st_size
        payload["modified"] = datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc).isoformat()
        payload["is_directory"] = path.is_dir()
        return stats

    @staticmethod
    def _check_size(size: int, parameters: Dict[str, Any], payload: Dict[str, Any]) -> None:
        min_size = parameters.get("minSize")
        max_size = parameters.get("maxSize")
        if min_size is not None and size < int(min_size):
            raise ActionFailedError(
                f"File size {size} bytes is less than minimum {min_size} bytes", data=payload
            )
        if max_size is not None and size > int(max_size):
            raise ActionFailedError(
                f"File size {size} bytes exceeds maximum {max_size} bytes", data=payload
            )
