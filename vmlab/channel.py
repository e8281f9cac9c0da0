"""File-exchange command channel between the host and each guest.

The host writes ``<vm>.command`` into the shared workspace; the guest polls
for it, runs the contents with ``/bin/sh -c``, appends everything the
command printed to ``<vm>.output`` and removes the command file. Removal is
the only completion signal: exit statuses do not travel back.
"""

from __future__ import annotations

import os
import subprocess
import time
from pathlib import Path
from typing import Callable, Optional

from .errors import CommandTimeout, ProtocolError, ProvisioningError
from .logging_utils import log_event
from .workspace import Workspace


class CommandChannel:
    """Host side of the channel: dispatch one command and wait for it."""

    def __init__(
        self,
        workspace: Workspace,
        *,
        poll_interval: float = 0.1,
        poll_attempts: int = 150,
        liveness: Optional[Callable[[str], bool]] = None,
        diagnostics: Optional[Callable[[str], str]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.workspace = workspace
        self.poll_interval = poll_interval
        self.poll_attempts = poll_attempts
        self.liveness = liveness
        self.diagnostics = diagnostics
        self._sleep = sleep

    def pending(self, vm: str) -> bool:
        return self.workspace.command(vm).exists()

    def dispatch(self, vm: str, command: str) -> Path:
        """Publish ``command`` for ``vm``; one outstanding command per guest."""

        path = self.workspace.command(vm)
        if path.exists():
            raise ProtocolError(f"{vm}: a command is already pending in {path}")
        staging = path.with_name(path.name + ".tmp")
        staging.write_text(command + "\n", encoding="utf-8")
        # The guest only looks for the final name, so it never sees a
        # partially written command.
        os.replace(staging, path)
        log_event("vmlab.channel.dispatch", vm=vm, command=command)
        return path

    def wait(self, vm: str, command: str, *, attempts: Optional[int] = None) -> None:
        """Poll until the guest removes the command file.

        Raises :class:`CommandTimeout` after ``attempts`` polls and
        :class:`ProvisioningError` as soon as the guest's VM process is gone.
        """

        limit = attempts if attempts is not None else self.poll_attempts
        path = self.workspace.command(vm)
        for attempt in range(limit):
            if not path.exists():
                log_event("vmlab.channel.completed", vm=vm, command=command, polls=attempt)
                return
            if self.liveness is not None and not self.liveness(vm):
                raise ProvisioningError(
                    f"{vm}: virtual machine died while running: {command}"
                    + self._detail(vm)
                )
            self._sleep(self.poll_interval)
        if not path.exists():
            log_event("vmlab.channel.completed", vm=vm, command=command, polls=limit)
            return
        log_event("vmlab.channel.timeout", vm=vm, command=command, polls=limit)
        detail = self.diagnostics(vm) if self.diagnostics is not None else None
        raise CommandTimeout(vm, command, limit * self.poll_interval, detail or None)

    def run(self, vm: str, command: str, *, attempts: Optional[int] = None) -> None:
        """Dispatch ``command`` to ``vm`` and block until it has completed."""

        self.dispatch(vm, command)
        self.wait(vm, command, attempts=attempts)

    def _detail(self, vm: str) -> str:
        if self.diagnostics is None:
            return ""
        detail = self.diagnostics(vm)
        return "\n" + detail if detail else ""


def serve_one(workspace: Workspace, vm: str, *, cwd: Optional[str] = None) -> bool:
    """Run the pending command for ``vm`` if there is one.

    Returns ``True`` when a command was executed. Once the output log is
    open the command file is removed whatever the command's exit status;
    if the log cannot be opened the command stays pending and the error
    propagates.
    """

    path = workspace.command(vm)
    try:
        command = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return False

    log_event("vmlab.channel.serve.start", vm=vm, command=command)
    handle = workspace.output(vm).open("a", encoding="utf-8")
    try:
        with handle:
            handle.write(f"$ {command}\n")
            handle.flush()
            result = subprocess.run(
                ["/bin/sh", "-c", command],
                stdin=subprocess.DEVNULL,
                stdout=handle,
                stderr=subprocess.STDOUT,
                cwd=cwd,
                check=False,
            )
        log_event(
            "vmlab.channel.serve.finished",
            vm=vm,
            command=command,
            returncode=result.returncode,
        )
    finally:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
    return True


def serve(
    workspace: Workspace,
    vm: str,
    *,
    interval: float = 0.1,
    cwd: Optional[str] = None,
    iterations: Optional[int] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Answer commands for ``vm`` forever (or for ``iterations`` polls)."""

    log_event("vmlab.channel.serve.loop", vm=vm, command_file=workspace.command(vm))
    count = 0
    while iterations is None or count < iterations:
        count += 1
        if not serve_one(workspace, vm, cwd=cwd):
            sleep(interval)
