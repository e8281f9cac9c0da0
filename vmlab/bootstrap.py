"""Walk a guest from power-on to the command loop.

The ``vmlab`` executable is the guests' ``/init``. The kernel starts it as
PID 1 inside the initrd; it assembles a root from the host filesystem shared
over 9p, chroots into it and re-executes itself with an explicit stage so
the second run knows the mounts are already in place.
"""

from __future__ import annotations

import enum
import os
import subprocess
import sys
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from . import channel, guestnet
from .config import MODULES_TAG, ROOT_TAG, SOURCE_TAG, WORKSPACE_TAG, GuestContext
from .errors import BootstrapError
from .kernel import EARLY_MODULES
from .logging_utils import GUEST_ENV, log_event
from .workspace import Workspace

STAGING_ROOT = Path("/staging")
SHARED_ROOT = Path("/host")
DEBUG_CONSOLE = Path("/dev/hvc0")

# Top-level trees reused read-only from the host. Everything else in the
# staging root lives on tmpfs.
READONLY_TREES = ("bin", "sbin", "lib", "lib32", "lib64", "libx32", "usr", "etc", "opt")
WRITABLE_DIRS = (
    "dev",
    "proc",
    "sys",
    "tmp",
    "run",
    "root",
    "var/lib",
    "var/log",
    "var/tmp",
    "mnt/lab",
    "mnt/workspace",
)
_NINEP_OPTIONS = "trans=virtio,version=9p2000.L,msize=262144"


class BootstrapStage(enum.IntEnum):
    """How far the guest's init process has progressed. Only moves forward."""

    COLD_START = 0
    INITRD_ENTERED = 1
    CHROOT_ENTERED = 2
    COMMAND_LOOP = 3

    @property
    def slug(self) -> str:
        return self.name.lower().replace("_", "-")

    @classmethod
    def from_slug(cls, text: str) -> "BootstrapStage":
        for stage in cls:
            if stage.slug == text:
                return stage
        raise ValueError(f"unknown bootstrap stage {text!r}")

    def advance(self, target: "BootstrapStage") -> "BootstrapStage":
        """Return ``target`` if it is the next stage, else refuse."""

        if target != self + 1:
            raise BootstrapError(f"cannot move from {self.slug} to {target.slug}")
        log_event("vmlab.bootstrap.stage", previous=self.slug, stage=target.slug)
        return target


def select_path(pid: int, stage: BootstrapStage) -> str:
    """Pick the code path for a process from its pid and stage marker."""

    if pid != 1:
        if stage == BootstrapStage.COLD_START:
            return "host"
        raise BootstrapError(f"stage {stage.slug} only exists inside a guest")
    if stage == BootstrapStage.COLD_START:
        return "initrd"
    if stage == BootstrapStage.CHROOT_ENTERED:
        return "chroot"
    raise BootstrapError(f"init cannot be re-entered at stage {stage.slug}")


def _run(cmd: List[str]) -> None:
    """Execute ``cmd``; any failure abandons the boot."""

    log_event("vmlab.bootstrap.command.start", command=cmd)
    try:
        result = subprocess.run(cmd, check=False)
    except OSError as exc:
        raise BootstrapError(f"unable to run {cmd[0]}: {exc}") from exc
    if result.returncode != 0:
        raise BootstrapError(f"{' '.join(cmd)} failed with status {result.returncode}")


def _mount(fstype: Optional[str], source: str, target: Path, options: Optional[str] = None) -> None:
    target.mkdir(parents=True, exist_ok=True)
    cmd = ["mount"]
    if fstype is not None:
        cmd.extend(["-t", fstype])
    if options:
        cmd.extend(["-o", options])
    cmd.extend([source, str(target)])
    _run(cmd)


def _bind(source: Path, target: Path) -> None:
    target.mkdir(parents=True, exist_ok=True)
    _run(["mount", "--bind", str(source), str(target)])


def mount_kernel_filesystems(root: Path = Path("/")) -> None:
    _mount("proc", "proc", root / "proc")
    _mount("sysfs", "sysfs", root / "sys")
    _mount("devtmpfs", "devtmpfs", root / "dev")


def guest_runtime_trees(context: GuestContext) -> List[str]:
    """Return host directories the re-executed guest needs beyond the base trees.

    The interpreter prefix and the package root may live outside the trees
    every guest gets, for example in a virtualenv under a home directory.
    """

    extras: List[str] = []
    candidates = [context.package_root]
    if context.python:
        candidates.append(str(Path(context.python).parent.parent))
    for candidate in candidates:
        if not candidate or candidate == "/":
            continue
        top = Path(candidate).parts[1] if len(Path(candidate).parts) > 1 else ""
        if top in READONLY_TREES or candidate in extras:
            continue
        extras.append(candidate)
    return extras


def assemble_staging_root(
    context: GuestContext,
    *,
    shared_root: Path = SHARED_ROOT,
    staging: Path = STAGING_ROOT,
) -> None:
    """Build the guest root on tmpfs from the read-only host tree."""

    _mount("9p", ROOT_TAG, shared_root, f"{_NINEP_OPTIONS},ro")
    _mount("tmpfs", "tmpfs", staging, "mode=0755")

    for name in READONLY_TREES:
        source = shared_root / name
        target = staging / name
        if source.is_symlink():
            os.symlink(os.readlink(source), target)
        elif source.is_dir():
            _bind(source, target)
    for relative in WRITABLE_DIRS:
        (staging / relative).mkdir(parents=True, exist_ok=True)
    (staging / "tmp").chmod(0o1777)
    (staging / "var/tmp").chmod(0o1777)
    if not (staging / "var/run").exists():
        os.symlink("../run", staging / "var/run")

    for extra in guest_runtime_trees(context):
        _bind(shared_root / extra.lstrip("/"), staging / extra.lstrip("/"))

    modules = staging / "lib" / "modules" / context.kernel_version
    _mount("9p", MODULES_TAG, modules, f"{_NINEP_OPTIONS},ro")
    _mount("9p", SOURCE_TAG, staging / context.lab_dir.lstrip("/"), _NINEP_OPTIONS)
    _mount("9p", WORKSPACE_TAG, staging / context.workspace_dir.lstrip("/"), _NINEP_OPTIONS)

    for name in ("proc", "sys", "dev"):
        _run(["mount", "--move", f"/{name}", str(staging / name)])


def chroot_command(context: GuestContext, stage: BootstrapStage) -> List[str]:
    python = context.python or sys.executable
    return [python, "-m", "vmlab", "guest", "--stage", stage.slug, "--context", context.to_json()]


def chroot_environment(context: GuestContext) -> dict:
    env = {
        "PATH": "/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin",
        "HOME": "/root",
        "TERM": "dumb",
        GUEST_ENV: context.name,
    }
    if context.package_root:
        env["PYTHONPATH"] = context.package_root
    for key in ("VMLAB_LOG_EVENTS", "VMLAB_LOG_FILE"):
        if key in os.environ:
            env[key] = os.environ[key]
    return env


def enter_initrd(
    cmdline_path: Path = Path("/proc/cmdline"),
    *,
    execve: Callable[[str, Sequence[str], dict], None] = os.execve,
) -> None:
    """Initrd path: mount everything, chroot and re-execute. Never returns."""

    stage = BootstrapStage.COLD_START.advance(BootstrapStage.INITRD_ENTERED)
    mount_kernel_filesystems()
    try:
        context = GuestContext.from_cmdline(cmdline_path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise BootstrapError(f"unable to read guest parameters: {exc}") from exc
    os.environ[GUEST_ENV] = context.name
    log_event("vmlab.bootstrap.initrd", vm=context.name, switches=list(context.switches))

    for module in EARLY_MODULES:
        _run(["modprobe", module])
    assemble_staging_root(context)

    stage = stage.advance(BootstrapStage.CHROOT_ENTERED)
    command = chroot_command(context, stage)
    os.chroot(str(STAGING_ROOT))
    os.chdir("/")
    execve(command[0], command, chroot_environment(context))


def start_debug_shell(device: Path = DEBUG_CONSOLE) -> Optional[subprocess.Popen]:
    """Offer an interactive shell on the virtio debug console when present."""

    if not device.exists():
        return None
    handle = device.open("r+b", buffering=0)
    try:
        process = subprocess.Popen(
            ["/bin/sh", "-i"],
            stdin=handle,
            stdout=handle,
            stderr=handle,
            start_new_session=True,
        )
    finally:
        handle.close()
    log_event("vmlab.bootstrap.debug_shell", device=device, pid=process.pid)
    return process


def enter_chroot(
    context: GuestContext,
    *,
    serve: Callable[..., None] = channel.serve,
) -> None:
    """Post-chroot path: devices, network, then answer commands forever."""

    stage = BootstrapStage.CHROOT_ENTERED
    workspace = Workspace(Path(context.workspace_dir))
    try:
        guestnet.start_device_manager()
        names = guestnet.rename_interfaces(context)
        guestnet.bring_up(names)
        guestnet.configure_identity(context, names[0] if names else None)
    except subprocess.CalledProcessError as exc:
        raise BootstrapError(f"network setup failed: {exc}") from exc
    guestnet.start_route_monitor(workspace.rtmon(context.name))

    stage = stage.advance(BootstrapStage.COMMAND_LOOP)
    start_debug_shell()
    print(f"vmlab: {context.name} ready ({', '.join(names)})", flush=True)
    serve(workspace, context.name, interval=context.poll_interval, cwd=context.lab_dir)


def halt(reason: str) -> None:
    """Report an abandoned boot and park PID 1; the host timeout takes over."""

    sys.stderr.write(f"vmlab: guest boot abandoned: {reason}\n")
    sys.stderr.flush()
    log_event("vmlab.bootstrap.abandoned", reason=reason)
    while True:
        time.sleep(3600)
