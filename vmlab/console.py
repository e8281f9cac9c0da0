"""Interactive access to a guest's debug shell."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Callable, List, Optional

import pexpect

from .errors import EnvironmentCheckError, ProvisioningError
from .logging_utils import log_event
from .workspace import Workspace

ESCAPE_CHARACTER = chr(29)  # Ctrl-]


def bridge_command(socket_path: Path, socat: str = "socat") -> List[str]:
    return [socat, "STDIO,raw,echo=0", f"UNIX-CONNECT:{socket_path}"]


def spawn_console(
    workspace: Workspace,
    vm: str,
    *,
    spawn: Callable[..., "pexpect.spawn"] = pexpect.spawn,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> "pexpect.spawn":
    """Connect to ``vm``'s debug console socket and return the pexpect child."""

    socket_path = workspace.debug_socket(vm)
    if not socket_path.exists():
        raise ProvisioningError(f"{vm}: no debug console at {socket_path}")
    socat = which("socat")
    if socat is None:
        raise EnvironmentCheckError("required executable 'socat' is not available in PATH")
    cmd = bridge_command(socket_path, socat)
    log_event("vmlab.console.spawn", vm=vm, command=cmd)
    child = spawn(cmd[0], cmd[1:], encoding="utf-8", codec_errors="ignore", timeout=30)
    # Wake the shell so the operator lands at a prompt.
    child.sendline("")
    return child


def attach(
    workspace: Workspace,
    vm: str,
    *,
    spawn: Callable[..., "pexpect.spawn"] = pexpect.spawn,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> None:
    """Hand the terminal to ``vm``'s debug shell until Ctrl-] is pressed."""

    child = spawn_console(workspace, vm, spawn=spawn, which=which)
    print(f"Attached to {vm}; press Ctrl-] to detach.")
    log_event("vmlab.console.attached", vm=vm)
    try:
        child.interact(escape_character=ESCAPE_CHARACTER)
    finally:
        if child.isalive():
            child.close(force=True)
        log_event("vmlab.console.detached", vm=vm)
