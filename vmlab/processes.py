"""Detached helper processes tracked through pid record files."""

from __future__ import annotations

import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence

from .errors import ProvisioningError
from .logging_utils import log_event


@dataclass(frozen=True)
class TrackedProcess:
    """A daemonised process known only through its pid record."""

    name: str
    pid_file: Path

    def pid(self) -> Optional[int]:
        return read_pid(self.pid_file)

    def alive(self) -> bool:
        pid = self.pid()
        return pid is not None and is_alive(pid)


def read_pid(path: Path) -> Optional[int]:
    """Return the pid stored in ``path`` or ``None`` when absent or garbled."""

    try:
        text = path.read_text(encoding="utf-8").strip()
    except FileNotFoundError:
        return None
    except OSError:
        return None
    try:
        pid = int(text.split()[0]) if text else 0
    except ValueError:
        return None
    return pid if pid > 0 else None


def is_alive(pid: int) -> bool:
    """Return ``True`` while ``pid`` exists (zombies included)."""

    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def start_daemon(
    name: str,
    cmd: Sequence[str],
    pid_file: Path,
    *,
    attempts: int = 50,
    interval: float = 0.1,
    sleep: Callable[[float], None] = time.sleep,
) -> TrackedProcess:
    """Run a self-daemonising ``cmd`` and wait for its pid record.

    The command is expected to fork into the background (``-daemonize`` for
    QEMU, ``--daemon`` for ``vde_plug``) and to write ``pid_file``.
    """

    log_event("vmlab.processes.start", name=name, command=list(cmd), pid_file=pid_file)
    try:
        result = subprocess.run(
            list(cmd),
            stdin=subprocess.DEVNULL,
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise ProvisioningError(f"{name}: failed to execute {cmd[0]}: {exc}") from exc
    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip()
        log_event(
            "vmlab.processes.start.failed",
            name=name,
            returncode=result.returncode,
            stderr=detail,
        )
        raise ProvisioningError(
            f"{name}: {cmd[0]} exited with status {result.returncode}"
            + (f": {detail}" if detail else "")
        )

    tracked = TrackedProcess(name=name, pid_file=pid_file)
    for _ in range(attempts):
        pid = tracked.pid()
        if pid is not None:
            log_event("vmlab.processes.started", name=name, pid=pid)
            return tracked
        sleep(interval)
    raise ProvisioningError(f"{name}: no pid record appeared at {pid_file}")


def _signal_group(pid: int, sig: int) -> None:
    """Deliver ``sig`` to the process group led by ``pid``.

    Falls back to the single process when it shares our own group, so a
    misbehaving daemon can never take the driver down with it. Delivery
    failures are logged and swallowed so one unreachable pid cannot stop
    the rest of a teardown.
    """

    try:
        pgid = os.getpgid(pid)
        if pgid == os.getpgrp():
            os.kill(pid, sig)
        else:
            os.killpg(pgid, sig)
    except ProcessLookupError:
        return
    except OSError as exc:
        log_event("vmlab.processes.signal.failed", pid=pid, signal=int(sig), error=str(exc))


def terminate_all(
    processes: Iterable[TrackedProcess],
    *,
    grace_seconds: float,
    interval: float = 0.1,
    sleep: Callable[[float], None] = time.sleep,
    monotonic: Callable[[], float] = time.monotonic,
) -> List[str]:
    """Stop every tracked process: SIGTERM, a grace window, then SIGKILL.

    Processes whose pid record is missing or stale are skipped, so this is
    safe to call whatever subset of the lab actually started. Returns the
    names of processes that had to be killed forcibly.
    """

    running: List[tuple[TrackedProcess, int]] = []
    for process in processes:
        pid = process.pid()
        if pid is None or not is_alive(pid):
            continue
        log_event("vmlab.processes.terminate", name=process.name, pid=pid)
        _signal_group(pid, signal.SIGTERM)
        running.append((process, pid))

    deadline = monotonic() + grace_seconds
    while running and monotonic() < deadline:
        running = [(process, pid) for process, pid in running if is_alive(pid)]
        if running:
            sleep(interval)

    forced: List[str] = []
    for process, pid in running:
        if not is_alive(pid):
            continue
        log_event("vmlab.processes.kill", name=process.name, pid=pid)
        _signal_group(pid, signal.SIGKILL)
        forced.append(process.name)
    return forced
