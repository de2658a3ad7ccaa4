"""
Plugin Registry

VTID: VTID-01204

Discovers executor plugins by scanning directories, instantiates each
BaseExecutor subclass it finds, and builds the action-type -> executor map.
The map is frozen after startup and read-only for the rest of the run.
"""

import importlib.util
import inspect
import logging
import sys
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

from .errors import RegistrationError
from .executors.base import BaseExecutor

logger = logging.getLogger(__name__)

BUILTIN_EXECUTOR_DIR = Path(__file__).parent / "executors"


class PluginRegistry:
    """
    Registry of executor plugins keyed by action type.

    Two executors may never claim the same action type: a second claim is a
    RegistrationError naming both sources, never a silent override.
    """

    def __init__(
        self,
        directories: Optional[Sequence[Path]] = None,
        include_builtin: bool = True,
    ):
        dirs = [BUILTIN_EXECUTOR_DIR] if include_builtin else []
        dirs.extend(Path(d) for d in directories or [])
        self.directories: List[Path] = dirs
        self._executors: Dict[str, BaseExecutor] = {}
        self._sources: Dict[str, str] = {}
        self._load_errors: Dict[str, str] = {}
        self._frozen = False

    # =========================================================================
    # Loading
    # =========================================================================

    def load_all(self) -> "PluginRegistry":
        """Scan every configured directory, then freeze the registry"""
        for directory in self.directories:
            self._load_directory(directory)
        self.freeze()
        logger.info(
            f"Loaded {len(self.executors())} executor(s) handling "
            f"{len(self._executors)} action type(s)"
        )
        return self

    def _load_directory(self, directory: Path) -> None:
        if not directory.is_dir():
            logger.warning(f"Executor directory not found: {directory}")
            return

        for path in sorted(directory.glob("*.py")):
            if path.name.startswith("_"):
                continue
            module = self._import(path)
            if module is None:
                continue
            for executor_cls in self._executor_classes(module):
                source = f"{path}:{executor_cls.__name__}"
                try:
                    executor = executor_cls()
                except Exception as e:
                    logger.error(f"Failed to instantiate executor {source}: {e}")
                    self._load_errors[source] = f"{type(e).__name__}: {e}"
                    continue
                self.register(executor, source)

    def _import(self, path: Path):
        if path.parent.resolve() == BUILTIN_EXECUTOR_DIR.resolve():
            module_name = f"{__package__}.executors.{path.stem}"
            try:
                return importlib.import_module(module_name)
            except Exception as e:
                logger.error(f"Failed to load executor module {path.name}: {e}")
                self._load_errors[str(path)] = str(e)
                return None

        module_name = f"vitana_evidence_plugin_{abs(hash(str(path.resolve())))}_{path.stem}"
        spec = importlib.util.spec_from_file_location(module_name, path)
        if spec is None or spec.loader is None:
            logger.error(f"Cannot load executor module: {path}")
            return None

        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception as e:
            sys.modules.pop(module_name, None)
            logger.error(f"Failed to load executor module {path.name}: {e}")
            self._load_errors[str(path)] = str(e)
            return None
        return module

    @staticmethod
    def _executor_classes(module) -> Iterable[type]:
        """Concrete BaseExecutor subclasses defined in (not imported into) the module"""
        for _, obj in inspect.getmembers(module, inspect.isclass):
            if (
                issubclass(obj, BaseExecutor)
                and obj is not BaseExecutor
                and not inspect.isabstract(obj)
                and obj.__module__ == module.__name__
            ):
                yield obj

    def register(self, executor: BaseExecutor, source: Optional[str] = None) -> None:
        """Register every action type an executor declares"""
        if self._frozen:
            raise RegistrationError("Registry is frozen; executors can only be added at startup")

        source = source or f"{type(executor).__module__}:{type(executor).__name__}"
        declared = list(executor.action_types())
        types = list(dict.fromkeys(declared))
        if len(types) != len(declared):
            logger.warning(f"Executor {source} declares some action types more than once")
        if not types:
            raise RegistrationError(f"Executor {source} declares no action types")

        for action_type in types:
            if not isinstance(action_type, str) or not action_type.strip():
                raise RegistrationError(f"Executor {source} declares an empty action type")
            if action_type in self._executors:
                raise RegistrationError(
                    f"Action type '{action_type}' claimed by both "
                    f"{self._sources[action_type]} and {source}"
                )

        for action_type in types:
            self._executors[action_type] = executor
            self._sources[action_type] = source
            logger.debug(f"Registered executor for {action_type} ({source})")

    def freeze(self) -> None:
        self._frozen = True

    # =========================================================================
    # Lookup
    # =========================================================================

    def get(self, action_type: str) -> Optional[BaseExecutor]:
        """Executor for an action type, or None when nothing claimed it"""
        return self._executors.get(action_type)

    def source_of(self, action_type: str) -> Optional[str]:
        return self._sources.get(action_type)

    def list_action_types(self) -> List[str]:
        return sorted(self._executors)

    def executors(self) -> List[BaseExecutor]:
        """Distinct executor instances in registration order"""
        seen: Dict[int, BaseExecutor] = {}
        for executor in self._executors.values():
            seen.setdefault(id(executor), executor)
        return list(seen.values())

    def describe(self) -> List[Dict[str, str]]:
        return [
            {
                "action_type": action_type,
                "executor": type(self._executors[action_type]).__name__,
                "source": self._sources[action_type],
            }
            for action_type in self.list_action_types()
        ]

    @property
    def load_errors(self) -> Dict[str, str]:
        return dict(self._load_errors)

    # =========================================================================
    # Shutdown
    # =========================================================================

    async def cleanup_all(self) -> List[str]:
        """Call cleanup() once on every executor; errors are logged and returned"""
        errors = []
        for executor in self.executors():
            try:
                await executor.cleanup()
            except Exception as e:
                logger.exception(f"Cleanup failed for executor {type(executor).__name__}")
                errors.append(f"{type(executor).__name__}: {e}")
        return errors
