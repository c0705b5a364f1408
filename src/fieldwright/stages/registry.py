"""Name-keyed registry of stage classes.

Stages register under a stable string key with the ``register_stage``
decorator. The DAG executor creates stages by key.

Example:
    >>> stage = create_stage("stacker", {"mode": "Median"})
    >>> stage.node_type_info().display_name
    'Stacker'
"""

import importlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Type

from ..exceptions import ConfigurationError
from .base import NodeTypeInfo, ParameterizedStage, Stage

logger = logging.getLogger(__name__)

BUILTIN_STAGE_MODULES = (
    "fieldwright.processors.dropout_correct",
    "fieldwright.processors.stacker",
)


@dataclass
class StageInfo:
    """Information about a registered stage."""
    name: str
    stage_class: Type[Stage]
    is_builtin: bool = False


class StageRegistry:
    """Registry of available stage classes."""

    def __init__(self):
        self._stages: Dict[str, StageInfo] = {}

    def register(self, name: str, stage_class: Type[Stage], is_builtin: bool = False) -> None:
        """Register a stage class under ``name``.

        Raises:
            ConfigurationError: If ``stage_class`` is not a Stage, or ``name``
                belongs to a built-in stage
        """
        if not (isinstance(stage_class, type) and issubclass(stage_class, Stage)):
            raise ConfigurationError(f"Cannot register {stage_class!r}: not a Stage subclass", config_key=name)

        existing = self._stages.get(name)
        if existing is not None and existing.stage_class is not stage_class:
            if existing.is_builtin and not is_builtin:
                raise ConfigurationError(f"Cannot override built-in stage: {name}", config_key=name)
            logger.info(f"Replacing stage: {name}")

        self._stages[name] = StageInfo(name=name, stage_class=stage_class, is_builtin=is_builtin)
        logger.debug(f"Registered stage: {name} ({stage_class.__name__})")

    def unregister(self, name: str) -> bool:
        """Unregister a stage. Built-in stages cannot be removed."""
        info = self._stages.get(name)
        if info is None:
            return False
        if info.is_builtin:
            logger.warning(f"Cannot unregister built-in stage: {name}")
            return False
        del self._stages[name]
        return True

    def get(self, name: str) -> Optional[StageInfo]:
        return self._stages.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def names(self) -> List[str]:
        return sorted(self._stages)

    def create(self, name: str, parameters: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Stage:
        """Instantiate a registered stage, optionally setting parameters.

        Raises:
            ConfigurationError: If the name is unknown or parameters are invalid
        """
        info = self._stages.get(name)
        if info is None:
            raise ConfigurationError(
                f"Unknown stage: {name}",
                config_key="stage",
                config_value=name,
                valid_values=self.names(),
            )
        stage = info.stage_class(**kwargs)
        if parameters:
            if not isinstance(stage, ParameterizedStage):
                raise ConfigurationError(f"Stage '{name}' takes no parameters", config_key=name)
            stage.set_parameters(parameters)
        return stage

    def node_types(self) -> List[NodeTypeInfo]:
        """Node type info of every registered stage, sorted by name."""
        return [self._stages[name].stage_class().node_type_info() for name in self.names()]


_registry = StageRegistry()
_builtins_loaded = False


def register_stage(name: str, builtin: bool = False) -> Callable[[Type[Stage]], Type[Stage]]:
    """Class decorator registering a stage in the default registry."""

    def decorator(stage_class: Type[Stage]) -> Type[Stage]:
        stage_class.stage_name = name
        _registry.register(name, stage_class, is_builtin=builtin)
        return stage_class

    return decorator


def load_builtin_stages() -> int:
    """Import the built-in stage modules so they register themselves."""
    global _builtins_loaded
    if not _builtins_loaded:
        for module_name in BUILTIN_STAGE_MODULES:
            importlib.import_module(module_name)
        _builtins_loaded = True
    return len(BUILTIN_STAGE_MODULES)


def get_registry() -> StageRegistry:
    """Default registry with the built-in stages loaded."""
    load_builtin_stages()
    return _registry


def create_stage(name: str, parameters: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> Stage:
    """Create a stage from the default registry."""
    return get_registry().create(name, parameters, **kwargs)


__all__ = [
    "StageInfo",
    "StageRegistry",
    "register_stage",
    "load_builtin_stages",
    "get_registry",
    "create_stage",
]
