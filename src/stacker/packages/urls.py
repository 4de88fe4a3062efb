"""
Package URL parsing.

    gh:user/repo[@ref]      https://github.com/user/repo.git
    gl:user/repo[@ref]      https://gitlab.com/user/repo.git
    https://host/path.git   used verbatim (cloned)
    file:///local/path      copied from the local directory
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from ..errors import UnsupportedPackageUrlError

SourceKind = Literal["git", "path"]

_SHORTHANDS = {
    "gh:": "https://github.com/",
    "gl:": "https://gitlab.com/",
}

SUPPORTED_FORMATS = (
    "gh:user/repo[@ref]",
    "gl:user/repo[@ref]",
    "https://example.git",
    "file:///local/path",
)


@dataclass(frozen=True)
class PackageSource:
    """Result of parsing a package URL."""

    name: str
    source: str
    ref: str | None
    kind: SourceKind
    url: str


def _unsupported(url: str, reason: str = "") -> UnsupportedPackageUrlError:
    detail = f" ({reason})" if reason else ""
    return UnsupportedPackageUrlError(
        f"Unsupported package URL: {url}{detail}. Supported formats: "
        + ", ".join(SUPPORTED_FORMATS),
        operation="parse_package_url",
    )


def _valid_name(name: str) -> bool:
    return bool(name) and name not in (".", "..") and "/" not in name


def parse_package_url(url: str) -> PackageSource:
    """Split a package URL into name, clone/copy source and optional ref.

    Raises:
        UnsupportedPackageUrlError: Unknown scheme or malformed shorthand.
    """
    url = (url or "").strip()

    for prefix, base in _SHORTHANDS.items():
        if url.startswith(prefix):
            rest = url[len(prefix):]
            path, _, ref = rest.partition("@")
            parts = [p for p in path.strip("/").split("/") if p]
            if len(parts) != 2:
                raise _unsupported(url, "expected user/repo")
            name = parts[1].removesuffix(".git")
            if not _valid_name(name):
                raise _unsupported(url, "invalid repository name")
            return PackageSource(
                name=name,
                source=f"{base}{parts[0]}/{name}.git",
                ref=ref or None,
                kind="git",
                url=url,
            )

    if url.startswith("https://"):
        name = url.rstrip("/").rsplit("/", 1)[-1].removesuffix(".git")
        if not _valid_name(name) or url.count("/") < 3:
            raise _unsupported(url, "cannot derive a package name")
        return PackageSource(name=name, source=url, ref=None, kind="git", url=url)

    if url.startswith("file://"):
        path = url[len("file://"):]
        if not path:
            raise _unsupported(url, "empty path")
        name = Path(path.rstrip("/")).name
        if not _valid_name(name):
            raise _unsupported(url, "cannot derive a package name")
        return PackageSource(name=name, source=path, ref=None, kind="path", url=url)

    raise _unsupported(url)
