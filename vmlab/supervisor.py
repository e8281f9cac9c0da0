"""Launch and track the lab's virtual machines."""

from __future__ import annotations

import enum
import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .bootimage import interpreter
from .config import (
    MODULES_TAG,
    ROOT_TAG,
    SOURCE_TAG,
    WORKSPACE_TAG,
    GuestContext,
    LabConfig,
)
from .errors import ProvisioningError
from .kernel import KernelInfo
from .logging_utils import log_event
from .processes import TrackedProcess, start_daemon, terminate_all
from .workspace import Workspace

_MAC_PREFIX = "52:54:00"
# Directory holding the vmlab package; guests import it from the shared root.
PACKAGE_ROOT = Path(__file__).resolve().parent.parent


def mac_address(vm: str, switch_id: int) -> str:
    """Return the hardware address of ``vm``'s port on ``switch_id``.

    Derived from a digest of the pair so the same topology always yields
    the same addresses, which keeps captures comparable between runs.
    """

    digest = hashlib.md5(f"{vm}:{switch_id}".encode("utf-8")).hexdigest()
    return f"{_MAC_PREFIX}:{digest[0:2]}:{digest[2:4]}:{digest[4:6]}"


@dataclass(frozen=True)
class SharedMount:
    """A host directory exported to the guest over 9p."""

    tag: str
    path: Path
    readonly: bool


def default_mounts(config: LabConfig, workspace: Workspace, kernel: KernelInfo) -> List[SharedMount]:
    """Return the four exports every guest receives."""

    return [
        SharedMount(ROOT_TAG, Path("/"), readonly=True),
        SharedMount(SOURCE_TAG, config.source_dir, readonly=False),
        SharedMount(WORKSPACE_TAG, workspace.root, readonly=False),
        SharedMount(MODULES_TAG, kernel.modules_dir, readonly=True),
    ]


class VMState(enum.Enum):
    PROVISIONING = "provisioning"
    RUNNING = "running"
    TERMINATED = "terminated"


@dataclass
class VirtualMachine:
    """A guest and the switches it is plugged into, in interface order."""

    name: str
    switches: Tuple[int, ...]
    state: VMState = VMState.PROVISIONING
    process: Optional[TrackedProcess] = None
    command: List[str] = field(default_factory=list)

    def interface_names(self) -> List[str]:
        """Names the guest gives its interfaces, one per attachment."""

        return [f"iface{index}" for index in range(1, len(self.switches) + 1)]


class VMSupervisor:
    """Start guests as daemonised QEMU processes and stop them again."""

    def __init__(self, config: LabConfig, workspace: Workspace, kernel: KernelInfo) -> None:
        self.config = config
        self.workspace = workspace
        self.kernel = kernel
        self.machines: Dict[str, VirtualMachine] = {}

    def qemu_command(
        self,
        name: str,
        switches: Sequence[int],
        mounts: Sequence[SharedMount],
        boot_image: Path,
    ) -> List[str]:
        context = GuestContext(
            name=name,
            switches=tuple(switches),
            kernel_version=self.kernel.version,
            poll_interval=self.config.poll_interval,
            python=str(interpreter()),
            package_root=str(PACKAGE_ROOT),
        )
        append = " ".join(["console=ttyS0", "panic=-1", "quiet", *context.to_cmdline()])
        debug_socket = self.workspace.debug_socket(name)
        cmd = [
            self.config.qemu,
            "-name",
            name,
            "-daemonize",
            "-pidfile",
            str(self.workspace.pid(name)),
            "-nodefaults",
            "-display",
            "none",
            "-no-reboot",
            "-machine",
            "accel=kvm:tcg",
            "-m",
            str(self.config.memory_mb),
            "-kernel",
            str(self.kernel.image),
            "-initrd",
            str(boot_image),
            "-append",
            append,
            "-serial",
            f"file:{self.workspace.console(name)}",
            "-device",
            "virtio-serial-pci",
            "-chardev",
            f"socket,id=debug,path={debug_socket},server=on,wait=off",
            "-device",
            "virtconsole,chardev=debug",
        ]
        for mount in mounts:
            fsdev = f"local,id={mount.tag},path={mount.path},security_model=none"
            if mount.readonly:
                fsdev += ",readonly=on"
            cmd.extend(
                [
                    "-fsdev",
                    fsdev,
                    "-device",
                    f"virtio-9p-pci,fsdev={mount.tag},mount_tag={mount.tag}",
                ]
            )
        for index, switch_id in enumerate(switches, start=1):
            netdev = f"net{index}"
            cmd.extend(
                [
                    "-netdev",
                    f"vde,id={netdev},sock={self.workspace.switch_socket(switch_id)}",
                    "-device",
                    f"virtio-net-pci,netdev={netdev},mac={mac_address(name, switch_id)}",
                ]
            )
        return cmd

    def launch(
        self,
        name: str,
        switches: Sequence[int],
        mounts: Sequence[SharedMount],
        boot_image: Path,
    ) -> VirtualMachine:
        """Start ``name`` detached; its pid record outlives this process."""

        if name in self.machines:
            raise ProvisioningError(f"virtual machine {name} already launched")
        if len(set(switches)) != len(switches):
            raise ProvisioningError(f"{name}: attached twice to the same switch")

        vm = VirtualMachine(name=name, switches=tuple(switches))
        vm.command = self.qemu_command(name, switches, mounts, boot_image)
        self.machines[name] = vm
        vm.process = start_daemon(
            name,
            vm.command,
            self.workspace.pid(name),
            interval=self.config.poll_interval,
        )
        vm.state = VMState.RUNNING
        log_event(
            "vmlab.supervisor.vm.running",
            vm=name,
            switches=list(switches),
            pid=vm.process.pid(),
            console=self.workspace.console(name),
        )
        return vm

    def is_running(self, name: str) -> bool:
        vm = self.machines.get(name)
        if vm is None or vm.process is None:
            return False
        return vm.process.alive()

    def console_tail(self, name: str, lines: int = 30) -> List[str]:
        """Return the last ``lines`` of the guest's console log."""

        path = self.workspace.console(name)
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8", errors="ignore") as handle:
            tail = handle.readlines()[-lines:]
        return [line.rstrip("\n") for line in tail]

    def tracked_processes(self) -> List[TrackedProcess]:
        """Every VM with a pid record, whether or not it booted."""

        return [
            TrackedProcess(name=path.stem, pid_file=path)
            for path in self.workspace.pid_records()
            if not path.name.startswith("switch-")
        ]

    def mark_terminated(self) -> None:
        for vm in self.machines.values():
            vm.state = VMState.TERMINATED

    def teardown_all(self) -> List[str]:
        """Terminate every VM with a pid record."""

        forced = terminate_all(
            self.tracked_processes(),
            grace_seconds=self.config.grace_seconds,
            interval=self.config.poll_interval,
        )
        self.mark_terminated()
        return forced
