"""Disposable virtual network lab for integration-testing a protocol daemon."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version as pkg_version

__all__ = ["bootstrap", "channel", "fabric", "lifecycle", "scenario", "supervisor"]


def _discover_version() -> str:
    try:
        return pkg_version("vmlab")
    except PackageNotFoundError:
        return "unknown"


__version__ = _discover_version()
