"""
Module loader - depth-first dependency resolution over the static registry.

Loading a module means, in order:

1. locate its import path (MissingModuleError if it cannot be found)
2. load every dependency, in declaration order (DependencyLoadError on the
   first failure, with the inner error chained)
3. import it
4. run its init hook, if one is declared (ModuleInitError on failure)
5. record it as loaded

A module enters the loaded set only after its init hook succeeded, so a
failed init is retried by the next load() instead of being skipped. A
`visiting` stack detects cycles and reports the full path.

State lives in a LoaderState owned by each ModuleLoader instance; there is
no process-wide registry of loaded modules.
"""

import importlib
import importlib.util
from dataclasses import dataclass, field
from types import ModuleType
from typing import Any, Callable, Iterable

import structlog

from ..errors import (
    CyclicDependencyError,
    DependencyLoadError,
    LoadError,
    MissingModuleError,
    ModuleInitError,
)
from .registry import ModuleRegistry

logger = structlog.get_logger()

__all__ = ["LoaderState", "ModuleLoader"]


@dataclass
class LoaderState:
    """Modules loaded so far (insertion ordered) and the resolution stack."""

    loaded: dict[str, ModuleType] = field(default_factory=dict)
    visiting: list[str] = field(default_factory=list)


def _default_finder(import_path: str) -> Any:
    try:
        return importlib.util.find_spec(import_path)
    except (ImportError, ValueError):
        return None


class ModuleLoader:
    """Loads named modules and their transitive dependencies.

    Args:
        registry: Module graph. Defaults to the built-in table.
        finder: Locates an import path; returns None when it does not exist.
        importer: Imports an import path and returns the module object.
    """

    def __init__(
        self,
        registry: ModuleRegistry | None = None,
        finder: Callable[[str], Any] = _default_finder,
        importer: Callable[[str], ModuleType] = importlib.import_module,
    ) -> None:
        self.registry = registry or ModuleRegistry.default()
        self.state = LoaderState()
        self._finder = finder
        self._importer = importer
        self.log = logger.bind(component="module_loader")

    @property
    def loaded(self) -> tuple[str, ...]:
        """Names of loaded modules in the order they finished loading."""
        return tuple(self.state.loaded)

    def is_loaded(self, name: str) -> bool:
        return name in self.state.loaded

    def module(self, name: str) -> ModuleType:
        """Return the module object of an already loaded module."""
        return self.state.loaded[name]

    def load(self, name: str) -> ModuleType:
        """Load name and its dependencies. Idempotent.

        Raises:
            MissingModuleError: Unknown name or missing import path.
            CyclicDependencyError: name is already being resolved.
            DependencyLoadError: A dependency failed to load.
            ModuleInitError: The init hook failed.
        """
        if name in self.state.loaded:
            return self.state.loaded[name]

        if name in self.state.visiting:
            start = self.state.visiting.index(name)
            raise CyclicDependencyError([*self.state.visiting[start:], name])

        descriptor = self.registry.get(name)
        if descriptor is None:
            raise MissingModuleError(f"Module not found: {name}", module=name)
        if not descriptor.import_path or self._finder(descriptor.import_path) is None:
            raise MissingModuleError(
                f"Module source not found: {name} ({descriptor.import_path or 'no import path'})",
                module=name,
                path=descriptor.import_path or None,
            )

        self.state.visiting.append(name)
        try:
            for dep in descriptor.dependencies:
                try:
                    self.load(dep)
                except CyclicDependencyError:
                    raise
                except LoadError as e:
                    raise DependencyLoadError(name, dep, e) from e

            try:
                module = self._importer(descriptor.import_path)
            except ImportError as e:
                raise ModuleInitError(
                    f"Failed to import module {name}: {e}",
                    module=name,
                    path=descriptor.import_path,
                ) from e

            if descriptor.init_hook:
                self._run_init_hook(name, module, descriptor.init_hook)
        finally:
            self.state.visiting.remove(name)

        self.state.loaded[name] = module
        self.log.debug("module.loaded", module=name, deps=list(descriptor.dependencies))
        return module

    def _run_init_hook(self, name: str, module: ModuleType, hook_name: str) -> None:
        hook = getattr(module, hook_name, None)
        if not callable(hook):
            raise ModuleInitError(
                f"Module {name} declares init hook '{hook_name}' but does not define it",
                module=name,
            )
        try:
            result = hook()
        except Exception as e:
            raise ModuleInitError(
                f"Module initialization failed: {name}: {e}", module=name
            ) from e
        if result is False:
            raise ModuleInitError(f"Module initialization failed: {name}", module=name)

    def load_many(self, names: Iterable[str]) -> list[ModuleType]:
        """Load each name in order, stopping at the first failure."""
        return [self.load(name) for name in names]

    def require_for(self, command: str) -> list[ModuleType]:
        """Load the modules a CLI command needs, per the dispatch table."""
        return self.load_many(self.registry.modules_for(command))

    def available(self) -> list[str]:
        return self.registry.names()

    def describe(self, name: str) -> dict[str, Any]:
        """Dependencies and load status of a module."""
        if name not in self.registry:
            raise MissingModuleError(f"Module not found: {name}", module=name)
        return {
            "name": name,
            "dependencies": list(self.registry.dependencies(name)),
            "loaded": self.is_loaded(name),
        }
