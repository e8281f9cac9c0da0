"""Tests for the VM supervisor."""

import re
import sys
from dataclasses import replace
from pathlib import Path

import pytest

from vmlab.config import GuestContext
from vmlab.errors import ProvisioningError
from vmlab.supervisor import (
    PACKAGE_ROOT,
    VirtualMachine,
    VMState,
    VMSupervisor,
    default_mounts,
    mac_address,
)
from vmlab.workspace import Workspace

FAKE_QEMU = """
while [ $# -gt 0 ]; do
  if [ "$1" = "-pidfile" ]; then
    echo $$ > "$2"
  fi
  shift
done
"""


@pytest.fixture
def supervisor(tmp_path, lab_config, kernel_info, fake_bin):
    fake_bin("qemu-system-x86_64", FAKE_QEMU)
    workspace = Workspace.create(tmp_path / "runs")
    return VMSupervisor(lab_config, workspace, kernel_info)


def _append_of(cmd: list[str]) -> str:
    return cmd[cmd.index("-append") + 1]


def test_mac_address_is_reproducible_and_local() -> None:
    first = mac_address("R1", 2)

    assert first == mac_address("R1", 2)
    assert first != mac_address("R1", 3)
    assert first != mac_address("R2", 2)
    assert re.fullmatch(r"52:54:00(:[0-9a-f]{2}){3}", first)


def test_every_guest_gets_four_mounts(supervisor, lab_config, kernel_info) -> None:
    mounts = default_mounts(lab_config, supervisor.workspace, kernel_info)

    assert [(m.tag, m.path, m.readonly) for m in mounts] == [
        ("vmlab-root", Path("/"), True),
        ("vmlab-src", lab_config.source_dir, False),
        ("vmlab-ws", supervisor.workspace.root, False),
        ("vmlab-modules", kernel_info.modules_dir, True),
    ]


def test_qemu_command_carries_guest_context(supervisor, lab_config, kernel_info) -> None:
    mounts = default_mounts(lab_config, supervisor.workspace, kernel_info)
    boot_image = supervisor.workspace.initrd

    cmd = supervisor.qemu_command("R3", (1, 4, 5), mounts, boot_image)

    assert cmd[0] == "qemu-system-x86_64"
    assert "-daemonize" in cmd
    assert cmd[cmd.index("-pidfile") + 1] == str(supervisor.workspace.pid("R3"))
    assert cmd[cmd.index("-initrd") + 1] == str(boot_image)
    assert cmd[cmd.index("-serial") + 1] == f"file:{supervisor.workspace.console('R3')}"
    context = GuestContext.from_cmdline(_append_of(cmd))
    assert context.name == "R3"
    assert context.switches == (1, 4, 5)
    assert context.kernel_version == kernel_info.version
    assert context.python == str(Path(sys.executable).resolve())
    assert context.package_root == str(PACKAGE_ROOT)


def test_qemu_command_orders_nics_by_attachment(supervisor, lab_config, kernel_info) -> None:
    mounts = default_mounts(lab_config, supervisor.workspace, kernel_info)

    cmd = supervisor.qemu_command("R3", (1, 4, 5), mounts, supervisor.workspace.initrd)

    devices = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-device" and "virtio-net" in cmd[i + 1]]
    assert devices == [
        f"virtio-net-pci,netdev=net{index},mac={mac_address('R3', switch)}"
        for index, switch in ((1, 1), (2, 4), (3, 5))
    ]
    netdevs = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-netdev"]
    assert netdevs[1] == f"vde,id=net2,sock={supervisor.workspace.switch_socket(4)}"


def test_qemu_command_marks_readonly_exports(supervisor, lab_config, kernel_info) -> None:
    mounts = default_mounts(lab_config, supervisor.workspace, kernel_info)

    cmd = supervisor.qemu_command("R1", (1,), mounts, supervisor.workspace.initrd)

    fsdevs = [cmd[i + 1] for i, arg in enumerate(cmd) if arg == "-fsdev"]
    assert fsdevs[0] == "local,id=vmlab-root,path=/,security_model=none,readonly=on"
    assert fsdevs[1].endswith("security_model=none")
    assert "readonly=on" in fsdevs[3]


def test_launch_tracks_running_vm(supervisor, lab_config, kernel_info) -> None:
    mounts = default_mounts(lab_config, supervisor.workspace, kernel_info)

    vm = supervisor.launch("R2", (1, 2, 3), mounts, supervisor.workspace.initrd)

    assert vm.state is VMState.RUNNING
    assert vm.process is not None
    assert vm.process.pid_file == supervisor.workspace.pid("R2")
    assert supervisor.machines["R2"] is vm
    assert vm.interface_names() == ["iface1", "iface2", "iface3"]


def test_launch_rejects_duplicates(supervisor, lab_config, kernel_info) -> None:
    mounts = default_mounts(lab_config, supervisor.workspace, kernel_info)
    supervisor.launch("R1", (1,), mounts, supervisor.workspace.initrd)

    with pytest.raises(ProvisioningError, match="already launched"):
        supervisor.launch("R1", (2,), mounts, supervisor.workspace.initrd)
    with pytest.raises(ProvisioningError, match="same switch"):
        supervisor.launch("R2", (1, 1), mounts, supervisor.workspace.initrd)


def test_launch_failure_is_provisioning_error(supervisor, lab_config, kernel_info, fake_bin) -> None:
    fake_bin("qemu-system-x86_64", 'echo "kvm unavailable" >&2\nexit 1')
    mounts = default_mounts(lab_config, supervisor.workspace, kernel_info)

    with pytest.raises(ProvisioningError, match="kvm unavailable"):
        supervisor.launch("R1", (1,), mounts, supervisor.workspace.initrd)


def test_is_running_unknown_vm(supervisor) -> None:
    assert not supervisor.is_running("R9")


def test_console_tail(supervisor) -> None:
    console = supervisor.workspace.console("R1")
    console.write_text("".join(f"line {n}\n" for n in range(50)))

    assert supervisor.console_tail("R1", lines=3) == ["line 47", "line 48", "line 49"]
    assert supervisor.console_tail("R2") == []


def test_teardown_all_targets_vm_records(supervisor, monkeypatch) -> None:
    root = supervisor.workspace.root
    for name in ("R1.pid", "R2.pid", "switch-1.pid"):
        (root / name).write_text("999999\n")
    supervisor.machines["R1"] = VirtualMachine("R1", (1,), state=VMState.RUNNING)
    seen = {}

    def fake_terminate_all(tracked, **kwargs):
        seen["names"] = [process.name for process in tracked]
        return []

    monkeypatch.setattr("vmlab.supervisor.terminate_all", fake_terminate_all)

    assert supervisor.teardown_all() == []
    assert seen["names"] == ["R1", "R2"]
    assert supervisor.machines["R1"].state is VMState.TERMINATED


def test_memory_setting_reaches_qemu(tmp_path, lab_config, kernel_info) -> None:
    supervisor = VMSupervisor(replace(lab_config, memory_mb=512), Workspace(tmp_path), kernel_info)

    cmd = supervisor.qemu_command("R1", (1,), [], tmp_path / "initrd.gz")

    assert cmd[cmd.index("-m") + 1] == "512"
