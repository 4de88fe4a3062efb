"""
Module registry - the static module graph and the command dispatch table.

The graph is a literal table fixed at import time: each module has an
ordered dependency list, the import path that holds its functionality and
an optional init hook (an attribute of that module called once after
import). Dependencies are listed in load order.
"""

from dataclasses import dataclass, field
from typing import Iterable, Mapping

__all__ = [
    "COMMAND_MODULES",
    "DEFAULT_MODULES",
    "ModuleDescriptor",
    "ModuleRegistry",
]


@dataclass(frozen=True)
class ModuleDescriptor:
    """Static description of a loadable module."""

    name: str
    dependencies: tuple[str, ...] = ()
    import_path: str = ""
    init_hook: str | None = "init"


DEFAULT_MODULES: tuple[ModuleDescriptor, ...] = (
    ModuleDescriptor("core", (), "stacker.core"),
    ModuleDescriptor("config", ("core",), "stacker.config"),
    ModuleDescriptor("install", ("core", "config"), "stacker.install"),
    ModuleDescriptor("service", ("core", "config"), "stacker.service"),
    ModuleDescriptor("update", ("core", "config", "install"), "stacker.update"),
    ModuleDescriptor("package", ("core",), "stacker.packages"),
    ModuleDescriptor("cli", ("config",), "stacker.cli", init_hook=None),
)

# CLI verb -> modules that must be loaded before the verb runs
COMMAND_MODULES: dict[str, tuple[str, ...]] = {
    "init": ("config", "package"),
    "validate-config": ("config",),
    "install": ("install", "service"),
    "uninstall": ("install", "service"),
    "update": ("update", "service"),
    "rollback": ("update", "service"),
    "service": ("install", "service"),
    "add": ("package",),
    "remove": ("package",),
    "list": ("package",),
    "info": ("package",),
    "enable": ("package",),
    "disable": ("package",),
    "modules": ("core",),
    "module-info": ("core",),
    "health": ("config", "package"),
    "status": ("config", "package"),
    "config": ("config",),
}


@dataclass
class ModuleRegistry:
    """Lookup table of module descriptors by name.

    Instances are independent; tests build their own graphs.
    """

    descriptors: Mapping[str, ModuleDescriptor] = field(default_factory=dict)
    commands: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    @classmethod
    def from_descriptors(
        cls,
        descriptors: Iterable[ModuleDescriptor],
        commands: Mapping[str, tuple[str, ...]] | None = None,
    ) -> "ModuleRegistry":
        table = {d.name: d for d in descriptors}
        return cls(descriptors=table, commands=dict(commands or {}))

    @classmethod
    def default(cls) -> "ModuleRegistry":
        return cls.from_descriptors(DEFAULT_MODULES, COMMAND_MODULES)

    def get(self, name: str) -> ModuleDescriptor | None:
        return self.descriptors.get(name)

    def dependencies(self, name: str) -> tuple[str, ...]:
        descriptor = self.descriptors.get(name)
        return descriptor.dependencies if descriptor else ()

    def names(self) -> list[str]:
        return list(self.descriptors)

    def modules_for(self, command: str) -> tuple[str, ...]:
        return self.commands.get(command, ("core",))

    def __contains__(self, name: object) -> bool:
        return name in self.descriptors
