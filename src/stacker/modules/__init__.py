"""
Module system - static module graph and per-instance loader.
"""

from .loader import LoaderState, ModuleLoader
from .registry import COMMAND_MODULES, DEFAULT_MODULES, ModuleDescriptor, ModuleRegistry

__all__ = [
    "COMMAND_MODULES",
    "DEFAULT_MODULES",
    "LoaderState",
    "ModuleDescriptor",
    "ModuleLoader",
    "ModuleRegistry",
]
