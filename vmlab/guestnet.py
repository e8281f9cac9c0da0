"""Guest-side network and device bring-up."""

from __future__ import annotations

import os
import re
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .config import GuestContext
from .errors import BootstrapError
from .logging_utils import log_event
from .supervisor import mac_address

_UDEVD_CANDIDATES = (
    "/lib/systemd/systemd-udevd",
    "/usr/lib/systemd/systemd-udevd",
    "/sbin/udevd",
)
_GUEST_INDEX = re.compile(r"(\d+)$")


def _run(cmd: list[str]) -> None:
    """Execute ``cmd``, raising :class:`subprocess.CalledProcessError` on failure."""

    log_event("vmlab.guestnet.command.start", command=cmd)
    result = subprocess.run(cmd, check=False)
    status = "success" if result.returncode == 0 else "error"
    log_event(
        "vmlab.guestnet.command.finished",
        command=cmd,
        status=status,
        returncode=result.returncode,
    )
    if result.returncode != 0:
        raise subprocess.CalledProcessError(result.returncode, cmd)


def start_device_manager() -> str:
    """Start udev, replay coldplug events and wait for the queue to drain."""

    udevd = next((path for path in _UDEVD_CANDIDATES if os.access(path, os.X_OK)), None)
    if udevd is None:
        found = shutil.which("udevd")
        if found is None:
            raise BootstrapError("no udev daemon found in the guest filesystem")
        udevd = found
    _run([udevd, "--daemon"])
    _run(["udevadm", "trigger", "--action=add"])
    _run(["udevadm", "settle"])
    return udevd


def _read_text(path: Path) -> str:
    try:
        return path.read_text().strip()
    except FileNotFoundError:
        return ""


def virtio_interfaces(net_path: Path = Path("/sys/class/net")) -> Dict[str, str]:
    """Map hardware address to current name for every virtio NIC.

    Args:
        net_path: Path to ``/sys/class/net`` (overridable for tests).
    """

    found: Dict[str, str] = {}
    for iface in sorted(net_path.iterdir()):
        driver = iface / "device" / "driver"
        try:
            driver_name = os.path.basename(os.readlink(driver))
        except OSError:
            continue
        if driver_name != "virtio_net":
            continue
        address = _read_text(iface / "address").lower()
        if address:
            found[address] = iface.name
    return found


def plan_renames(context: GuestContext, interfaces: Dict[str, str]) -> List[Tuple[str, str]]:
    """Return ``(current, target)`` pairs in attachment order.

    Targets are ``iface1`` .. ``ifaceN`` following ``context.switches``; the
    kernel's own names play no part in the result.
    """

    plan: List[Tuple[str, str]] = []
    for index, switch_id in enumerate(context.switches, start=1):
        mac = mac_address(context.name, switch_id)
        current = interfaces.get(mac)
        if current is None:
            raise BootstrapError(
                f"{context.name}: no interface with address {mac} for switch {switch_id}"
            )
        plan.append((current, f"iface{index}"))
    return plan


def rename_interfaces(
    context: GuestContext,
    net_path: Path = Path("/sys/class/net"),
) -> List[str]:
    """Rename the guest's NICs to stable names and return them in order."""

    plan = plan_renames(context, virtio_interfaces(net_path))
    log_event(
        "vmlab.guestnet.rename.plan",
        vm=context.name,
        renames=[f"{current}->{target}" for current, target in plan],
    )
    # Go through temporary names so an OS name equal to one of our targets
    # cannot collide halfway through.
    staged: List[Tuple[str, str]] = []
    for position, (current, target) in enumerate(plan):
        if current == target:
            continue
        temporary = f"vmlabtmp{position}"
        _run(["ip", "link", "set", "dev", current, "down"])
        _run(["ip", "link", "set", "dev", current, "name", temporary])
        staged.append((temporary, target))
    for temporary, target in staged:
        _run(["ip", "link", "set", "dev", temporary, "name", target])
    return [target for _, target in plan]


def bring_up(names: List[str]) -> None:
    _run(["ip", "link", "set", "dev", "lo", "up"])
    for name in names:
        _run(["ip", "link", "set", "dev", name, "up"])


def guest_index(name: str) -> int:
    """Return the numeric suffix of a VM name (``R2`` -> ``2``)."""

    match = _GUEST_INDEX.search(name)
    if match is None or int(match.group(1)) == 0:
        raise BootstrapError(f"VM name {name!r} has no positive numeric suffix")
    return int(match.group(1))


def static_addresses(name: str) -> Tuple[str, str]:
    """Return the IPv4 and IPv6 addresses of VM ``name``."""

    index = guest_index(name)
    if index > 254:
        raise BootstrapError(f"VM index {index} does not fit the lab subnet")
    return f"192.0.2.{index}/24", f"2001:db8::{index:x}/64"


def configure_identity(context: GuestContext, interface: Optional[str]) -> None:
    """Set the hostname and pin the static addresses on ``interface``."""

    _run(["hostname", context.name])
    if interface is None:
        return
    ipv4, ipv6 = static_addresses(context.name)
    _run(["ip", "addr", "add", ipv4, "dev", interface])
    _run(["ip", "-6", "addr", "add", ipv6, "dev", interface])


def start_route_monitor(log_path: Path) -> subprocess.Popen:
    """Record route changes to ``log_path`` for the rest of the guest's life."""

    handle = log_path.open("w", encoding="utf-8")
    try:
        process = subprocess.Popen(
            ["ip", "monitor", "route"],
            stdin=subprocess.DEVNULL,
            stdout=handle,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    finally:
        handle.close()
    log_event("vmlab.guestnet.rtmon.started", pid=process.pid, log=log_path)
    return process
