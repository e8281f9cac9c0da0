"""Tests for detached process tracking and teardown."""

import os
import signal

import pytest

from vmlab import processes
from vmlab.errors import ProvisioningError
from vmlab.processes import TrackedProcess, read_pid, start_daemon, terminate_all


def test_read_pid_tolerates_missing_and_garbled(tmp_path) -> None:
    assert read_pid(tmp_path / "absent.pid") is None
    (tmp_path / "bad.pid").write_text("not-a-pid\n")
    assert read_pid(tmp_path / "bad.pid") is None
    (tmp_path / "empty.pid").write_text("")
    assert read_pid(tmp_path / "empty.pid") is None
    (tmp_path / "ok.pid").write_text("4242\n")
    assert read_pid(tmp_path / "ok.pid") == 4242


def test_tracked_process_alive_for_current_process(tmp_path) -> None:
    pid_file = tmp_path / "self.pid"
    pid_file.write_text(f"{os.getpid()}\n")

    assert TrackedProcess("self", pid_file).alive()
    assert not TrackedProcess("ghost", tmp_path / "ghost.pid").alive()


def test_start_daemon_waits_for_pid_record(tmp_path, fake_bin) -> None:
    pid_file = tmp_path / "daemon.pid"
    fake_bin("fake-daemon", f'echo $$ > "{pid_file}"')

    tracked = start_daemon("daemon", ["fake-daemon"], pid_file, sleep=lambda _: None)

    assert tracked.name == "daemon"
    assert tracked.pid() is not None


def test_start_daemon_reports_failure_output(tmp_path, fake_bin) -> None:
    fake_bin("broken-daemon", 'echo "cannot bind socket" >&2\nexit 3')

    with pytest.raises(ProvisioningError, match="status 3: cannot bind socket"):
        start_daemon("broken", ["broken-daemon"], tmp_path / "broken.pid")


def test_start_daemon_missing_executable(tmp_path) -> None:
    with pytest.raises(ProvisioningError, match="failed to execute"):
        start_daemon("missing", [str(tmp_path / "nope")], tmp_path / "missing.pid")


def test_start_daemon_without_pid_record(tmp_path, fake_bin) -> None:
    fake_bin("lazy-daemon", "exit 0")
    sleeps: list[float] = []

    with pytest.raises(ProvisioningError, match="no pid record"):
        start_daemon(
            "lazy",
            ["lazy-daemon"],
            tmp_path / "lazy.pid",
            attempts=3,
            interval=0.5,
            sleep=sleeps.append,
        )
    assert sleeps == [0.5, 0.5, 0.5]


class FakeProcessTable:
    """Pretend processes that exit on SIGTERM unless stubborn."""

    def __init__(self, alive: set[int], stubborn: set[int]) -> None:
        self.alive = set(alive)
        self.stubborn = set(stubborn)
        self.signals: list[tuple[int, int]] = []

    def is_alive(self, pid: int) -> bool:
        return pid in self.alive

    def signal_group(self, pid: int, sig: int) -> None:
        self.signals.append((pid, sig))
        if sig == signal.SIGKILL or pid not in self.stubborn:
            self.alive.discard(pid)


def _tracked(tmp_path, name: str, pid: int) -> TrackedProcess:
    pid_file = tmp_path / f"{name}.pid"
    pid_file.write_text(f"{pid}\n")
    return TrackedProcess(name, pid_file)


def test_terminate_all_escalates_for_survivors(tmp_path, monkeypatch) -> None:
    table = FakeProcessTable(alive={100, 200}, stubborn={200})
    monkeypatch.setattr(processes, "is_alive", table.is_alive)
    monkeypatch.setattr(processes, "_signal_group", table.signal_group)
    clock = iter([0.0, 0.5, 1.0, 1.5, 2.5, 3.0])

    forced = terminate_all(
        [_tracked(tmp_path, "R1", 100), _tracked(tmp_path, "R2", 200)],
        grace_seconds=2.0,
        sleep=lambda _: None,
        monotonic=lambda: next(clock),
    )

    assert forced == ["R2"]
    assert table.signals == [
        (100, signal.SIGTERM),
        (200, signal.SIGTERM),
        (200, signal.SIGKILL),
    ]


def test_terminate_all_skips_missing_and_stale_records(tmp_path, monkeypatch) -> None:
    table = FakeProcessTable(alive=set(), stubborn=set())
    monkeypatch.setattr(processes, "is_alive", table.is_alive)
    monkeypatch.setattr(processes, "_signal_group", table.signal_group)

    forced = terminate_all(
        [
            TrackedProcess("never-started", tmp_path / "never.pid"),
            _tracked(tmp_path, "exited", 300),
        ],
        grace_seconds=1.0,
        sleep=lambda _: None,
    )

    assert forced == []
    assert table.signals == []


def test_signal_group_never_targets_own_group(monkeypatch) -> None:
    calls: list[tuple[str, int, int]] = []
    monkeypatch.setattr(processes.os, "getpgid", lambda pid: 77)
    monkeypatch.setattr(processes.os, "getpgrp", lambda: 77)
    monkeypatch.setattr(processes.os, "kill", lambda pid, sig: calls.append(("kill", pid, sig)))
    monkeypatch.setattr(processes.os, "killpg", lambda pgid, sig: calls.append(("killpg", pgid, sig)))

    processes._signal_group(1234, signal.SIGTERM)

    assert calls == [("kill", 1234, signal.SIGTERM)]


def test_signal_group_targets_daemon_group(monkeypatch) -> None:
    calls: list[tuple[str, int, int]] = []
    monkeypatch.setattr(processes.os, "getpgid", lambda pid: 555)
    monkeypatch.setattr(processes.os, "getpgrp", lambda: 77)
    monkeypatch.setattr(processes.os, "killpg", lambda pgid, sig: calls.append(("killpg", pgid, sig)))

    processes._signal_group(555, signal.SIGKILL)

    assert calls == [("killpg", 555, signal.SIGKILL)]


def test_signal_group_survives_foreign_process(monkeypatch) -> None:
    events = []
    monkeypatch.setattr(processes, "log_event", lambda event, **fields: events.append((event, fields)))
    monkeypatch.setattr(processes.os, "getpgid", lambda pid: pid)
    monkeypatch.setattr(processes.os, "getpgrp", lambda: 77)

    def refuse(pgid, sig):
        raise PermissionError(1, "Operation not permitted")

    monkeypatch.setattr(processes.os, "killpg", refuse)

    processes._signal_group(424242, signal.SIGTERM)

    assert events[0][0] == "vmlab.processes.signal.failed"
    assert events[0][1]["pid"] == 424242


def test_terminate_all_continues_past_undeliverable_signal(tmp_path, monkeypatch) -> None:
    alive = {424242, 424243}
    signalled: list[int] = []

    def fake_killpg(pgid, sig):
        if pgid == 424242:
            raise PermissionError(1, "Operation not permitted")
        signalled.append(pgid)
        alive.discard(pgid)

    monkeypatch.setattr(processes, "is_alive", lambda pid: pid in alive)
    monkeypatch.setattr(processes.os, "getpgid", lambda pid: pid)
    monkeypatch.setattr(processes.os, "getpgrp", lambda: 77)
    monkeypatch.setattr(processes.os, "killpg", fake_killpg)
    clock = iter([0.0, 0.5, 2.0])

    forced = terminate_all(
        [_tracked(tmp_path, "R1", 424242), _tracked(tmp_path, "switch-1", 424243)],
        grace_seconds=1.0,
        sleep=lambda _: None,
        monotonic=lambda: next(clock),
    )

    assert signalled == [424243]
    assert forced == ["R1"]
