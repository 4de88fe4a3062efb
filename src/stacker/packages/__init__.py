"""
Package module: URL parsing, manifests and the scope manager.
"""

import structlog

from .manager import SCOPES, PackageRecord, PackageScopeManager, ScopeLayout
from .manifest import MANIFEST_FILENAME, PackageManifest, TechnologyManifest, init_project
from .urls import PackageSource, parse_package_url

__all__ = [
    "MANIFEST_FILENAME",
    "SCOPES",
    "PackageManifest",
    "PackageRecord",
    "PackageScopeManager",
    "PackageSource",
    "ScopeLayout",
    "TechnologyManifest",
    "init",
    "init_project",
    "parse_package_url",
]


def init() -> None:
    """Module init hook."""
    structlog.get_logger().debug("module.init", module="package")
