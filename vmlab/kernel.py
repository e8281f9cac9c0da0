"""Kernel suitability checks for lab guests."""

from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from .errors import EnvironmentCheckError
from .logging_utils import log_event

# Options the guests cannot boot or run the scenario without. Modules are fine.
REQUIRED_OPTIONS = (
    "CONFIG_9P_FS",
    "CONFIG_NET_9P",
    "CONFIG_NET_9P_VIRTIO",
    "CONFIG_VIRTIO_PCI",
    "CONFIG_VIRTIO_NET",
    "CONFIG_VIRTIO_CONSOLE",
    "CONFIG_SERIAL_8250_CONSOLE",
    "CONFIG_DEVTMPFS",
    "CONFIG_TMPFS",
    "CONFIG_BLK_DEV_INITRD",
    "CONFIG_VLAN_8021Q",
    "CONFIG_BONDING",
    "CONFIG_BRIDGE",
)

# Loaded from the initrd before the host filesystem can be mounted.
EARLY_MODULES = (
    "virtio_pci",
    "9pnet_virtio",
    "9p",
)

_VERSION_PATTERN = re.compile(r"\bversion\s+(\S+)")


@dataclass(frozen=True)
class KernelInfo:
    """What the lab needs to know about the guest kernel."""

    image: Path
    version: str
    modules_dir: Path


def kernel_version(image: Path) -> str:
    """Return the release string embedded in a kernel ``image``."""

    try:
        result = subprocess.run(
            ["file", "-bL", str(image)],
            capture_output=True,
            text=True,
            check=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        raise EnvironmentCheckError(f"unable to inspect kernel {image}: {exc}") from exc
    match = _VERSION_PATTERN.search(result.stdout or "")
    if match is None:
        raise EnvironmentCheckError(f"{image} does not look like a kernel image")
    return match.group(1)


def parse_kernel_config(text: str) -> Dict[str, str]:
    """Return ``CONFIG_*`` assignments from a kernel ``.config``."""

    options: Dict[str, str] = {}
    for line in text.splitlines():
        line = line.strip()
        if not line.startswith("CONFIG_") or "=" not in line:
            continue
        key, _, value = line.partition("=")
        options[key] = value
    return options


def _find_config(version: str, modules_dir: Path, boot_dir: Path) -> Optional[Path]:
    for candidate in (boot_dir / f"config-{version}", modules_dir / "build" / ".config"):
        if candidate.is_file():
            return candidate
    return None


def missing_options(options: Dict[str, str]) -> List[str]:
    return [name for name in REQUIRED_OPTIONS if options.get(name) not in {"y", "m"}]


def probe_kernel(
    image: Path,
    *,
    modules_root: Path = Path("/lib/modules"),
    boot_dir: Path = Path("/boot"),
) -> KernelInfo:
    """Validate ``image`` for use as the guest kernel.

    Raises :class:`EnvironmentCheckError` when the image is unreadable, its
    module tree is missing, or its configuration lacks a required option.
    """

    log_event("vmlab.kernel.probe.start", image=image)
    if not image.is_file() or not os.access(image, os.R_OK):
        raise EnvironmentCheckError(f"kernel {image} is not readable")

    version = kernel_version(image)
    modules_dir = modules_root / version
    if not modules_dir.is_dir():
        raise EnvironmentCheckError(f"no module directory for kernel {version} at {modules_dir}")

    config_path = _find_config(version, modules_dir, boot_dir)
    if config_path is None:
        raise EnvironmentCheckError(f"no configuration found for kernel {version}")
    missing = missing_options(parse_kernel_config(config_path.read_text(encoding="utf-8")))
    if missing:
        raise EnvironmentCheckError(
            f"kernel {version} lacks required options: {', '.join(missing)}"
        )

    log_event(
        "vmlab.kernel.probe.finished",
        version=version,
        modules_dir=modules_dir,
        config=config_path,
    )
    return KernelInfo(image=image, version=version, modules_dir=modules_dir)
