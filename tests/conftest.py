from pathlib import Path
import os
import stat
import sys
from typing import Callable

import pytest

# Ensure repository root is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))


@pytest.fixture
def fake_bin(tmp_path, monkeypatch) -> Callable[[str, str], Path]:
    """Return a helper writing executable shell scripts onto ``PATH``."""

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")

    def _write(name: str, body: str) -> Path:
        script = bin_dir / name
        script.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return script

    return _write


@pytest.fixture
def recorded_events(monkeypatch):
    """Collect ``log_event`` calls made by any vmlab module."""

    events: list[tuple[str, dict[str, object]]] = []

    def record_event(event: str, **fields: object) -> None:
        events.append((event, fields))

    for module in (
        "bootstrap",
        "channel",
        "fabric",
        "guestnet",
        "lifecycle",
        "processes",
        "scenario",
        "supervisor",
        "workspace",
    ):
        monkeypatch.setattr(f"vmlab.{module}.log_event", record_event)
    return events


@pytest.fixture
def lab_config(tmp_path):
    """A configuration rooted in ``tmp_path`` with fast polling."""

    from vmlab.config import LabConfig

    source = tmp_path / "src"
    source.mkdir()
    return LabConfig(
        source_dir=source,
        kernel=tmp_path / "vmlinuz",
        output_dir=tmp_path / "out",
        expected=source / "tests" / "vm" / "expected.output",
        initrd_builder=source / "tests" / "vm" / "mkinitrd",
        poll_interval=0.01,
        poll_attempts=5,
        boot_attempts=10,
        grace_seconds=0.1,
    )


@pytest.fixture
def kernel_info(tmp_path):
    from vmlab.kernel import KernelInfo

    modules = tmp_path / "modules" / "6.1.0-test"
    modules.mkdir(parents=True)
    return KernelInfo(image=tmp_path / "vmlinuz", version="6.1.0-test", modules_dir=modules)
