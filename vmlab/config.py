"""Configuration structures for the host driver and the guest bootstrap."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Dict, Optional, Tuple

# 9p mount tags exported by every VM and the points the guest binds them to.
ROOT_TAG = "vmlab-root"
SOURCE_TAG = "vmlab-src"
WORKSPACE_TAG = "vmlab-ws"
MODULES_TAG = "vmlab-modules"

GUEST_LAB_DIR = "/mnt/lab"
GUEST_WORKSPACE_DIR = "/mnt/workspace"

DEFAULT_MEMORY_MB = 256
DEFAULT_POLL_INTERVAL = 0.1
DEFAULT_POLL_ATTEMPTS = 150
DEFAULT_BOOT_ATTEMPTS = 600
DEFAULT_GRACE_SECONDS = 5.0

_CMDLINE_PREFIX = "vmlab."


def _read_positive_int_env(name: str, default: int) -> int:
    """Return a positive integer configured via environment variable."""

    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer value") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be greater than zero")
    return parsed


def _read_positive_float_env(name: str, default: float) -> float:
    """Return a positive number configured via environment variable."""

    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = float(value)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if parsed <= 0:
        raise ValueError(f"{name} must be greater than zero")
    return parsed


def _read_path_env(name: str) -> Optional[Path]:
    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return None
    return Path(value)


def default_kernel() -> Path:
    """Return the image of the running kernel, the usual lab kernel."""

    return Path("/boot") / f"vmlinuz-{os.uname().release}"


@dataclass(frozen=True)
class LabConfig:
    """Settings for one host-side lab run.

    Built once by the CLI and handed to every component constructor.
    """

    source_dir: Path
    kernel: Path
    output_dir: Path
    expected: Path
    initrd_builder: Path
    workspace_parent: Optional[Path] = None
    qemu: str = "qemu-system-x86_64"
    switch_plug: str = "vde_plug"
    memory_mb: int = DEFAULT_MEMORY_MB
    poll_interval: float = DEFAULT_POLL_INTERVAL
    poll_attempts: int = DEFAULT_POLL_ATTEMPTS
    boot_attempts: int = DEFAULT_BOOT_ATTEMPTS
    grace_seconds: float = DEFAULT_GRACE_SECONDS
    settle_scale: float = 1.0
    daemon: str = "src/daemon/lldpd"
    client: str = "src/client/lldpcli"
    keep: bool = False
    debug: bool = False
    update_expected: bool = False

    @classmethod
    def from_environment(cls, source_dir: Optional[Path] = None, **overrides: object) -> "LabConfig":
        """Return a configuration seeded from ``VMLAB_*`` variables.

        Keyword ``overrides`` win over the environment; ``None`` values are
        ignored so argparse defaults can be passed straight through.
        """

        source = (source_dir or Path.cwd()).resolve()
        config = cls(
            source_dir=source,
            kernel=_read_path_env("VMLAB_KERNEL") or default_kernel(),
            output_dir=_read_path_env("VMLAB_OUTPUT_DIR") or Path.cwd(),
            expected=_read_path_env("VMLAB_EXPECTED") or source / "tests" / "vm" / "expected.output",
            initrd_builder=_read_path_env("VMLAB_INITRD_BUILDER") or source / "tests" / "vm" / "mkinitrd",
            workspace_parent=_read_path_env("VMLAB_WORKSPACE_PARENT"),
            qemu=os.environ.get("VMLAB_QEMU") or "qemu-system-x86_64",
            memory_mb=_read_positive_int_env("VMLAB_MEMORY_MB", DEFAULT_MEMORY_MB),
            poll_interval=_read_positive_float_env("VMLAB_POLL_INTERVAL", DEFAULT_POLL_INTERVAL),
            poll_attempts=_read_positive_int_env("VMLAB_POLL_ATTEMPTS", DEFAULT_POLL_ATTEMPTS),
            boot_attempts=_read_positive_int_env("VMLAB_BOOT_ATTEMPTS", DEFAULT_BOOT_ATTEMPTS),
            grace_seconds=_read_positive_float_env("VMLAB_GRACE_SECONDS", DEFAULT_GRACE_SECONDS),
            settle_scale=_read_positive_float_env("VMLAB_SETTLE_SCALE", 1.0),
        )
        updates = {key: value for key, value in overrides.items() if value is not None}
        return replace(config, **updates)

    def guest_path(self, relative: str) -> str:
        """Return where ``relative`` (inside ``source_dir``) appears in a guest."""

        return f"{GUEST_LAB_DIR}/{relative.lstrip('/')}"


@dataclass(frozen=True)
class GuestContext:
    """Everything a guest needs to know about itself.

    Travels on the kernel command line into the initrd stage and as explicit
    JSON across the chroot into the later stages.
    """

    name: str
    switches: Tuple[int, ...]
    kernel_version: str
    poll_interval: float = DEFAULT_POLL_INTERVAL
    python: str = ""
    package_root: str = ""
    lab_dir: str = GUEST_LAB_DIR
    workspace_dir: str = GUEST_WORKSPACE_DIR

    def to_cmdline(self) -> list[str]:
        """Return ``vmlab.*`` kernel command line tokens."""

        tokens = [
            f"{_CMDLINE_PREFIX}name={self.name}",
            f"{_CMDLINE_PREFIX}switches={','.join(str(s) for s in self.switches)}",
            f"{_CMDLINE_PREFIX}kver={self.kernel_version}",
            f"{_CMDLINE_PREFIX}poll={self.poll_interval}",
        ]
        if self.python:
            tokens.append(f"{_CMDLINE_PREFIX}python={self.python}")
        if self.package_root:
            tokens.append(f"{_CMDLINE_PREFIX}pkg={self.package_root}")
        return tokens

    @classmethod
    def from_cmdline(cls, text: str) -> "GuestContext":
        """Parse the tokens written by :meth:`to_cmdline` from ``/proc/cmdline``."""

        values: Dict[str, str] = {}
        for token in text.split():
            if not token.startswith(_CMDLINE_PREFIX) or "=" not in token:
                continue
            key, _, value = token[len(_CMDLINE_PREFIX):].partition("=")
            values[key] = value
        missing = [key for key in ("name", "switches", "kver") if not values.get(key)]
        if missing:
            raise ValueError(f"kernel command line lacks vmlab.{', vmlab.'.join(missing)}")
        try:
            switches = tuple(int(item) for item in values["switches"].split(",") if item)
            poll = float(values.get("poll") or DEFAULT_POLL_INTERVAL)
        except ValueError as exc:
            raise ValueError(f"malformed vmlab kernel parameters: {exc}") from exc
        return cls(
            name=values["name"],
            switches=switches,
            kernel_version=values["kver"],
            poll_interval=poll,
            python=values.get("python", ""),
            package_root=values.get("pkg", ""),
        )

    def to_json(self) -> str:
        payload = {
            "name": self.name,
            "switches": list(self.switches),
            "kernel_version": self.kernel_version,
            "poll_interval": self.poll_interval,
            "python": self.python,
            "package_root": self.package_root,
            "lab_dir": self.lab_dir,
            "workspace_dir": self.workspace_dir,
        }
        return json.dumps(payload, sort_keys=True)

    @classmethod
    def from_json(cls, text: str) -> "GuestContext":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("guest context must be a JSON object")
        return cls(
            name=str(data["name"]),
            switches=tuple(int(item) for item in data["switches"]),
            kernel_version=str(data["kernel_version"]),
            poll_interval=float(data.get("poll_interval", DEFAULT_POLL_INTERVAL)),
            python=str(data.get("python", "")),
            package_root=str(data.get("package_root", "")),
            lab_dir=str(data.get("lab_dir", GUEST_LAB_DIR)),
            workspace_dir=str(data.get("workspace_dir", GUEST_WORKSPACE_DIR)),
        )
