"""Tests for the switch fabric."""

import pytest

from vmlab.errors import ProvisioningError
from vmlab.fabric import SwitchFabric
from vmlab.workspace import Workspace

FAKE_PLUG = """
while [ $# -gt 0 ]; do
  if [ "$1" = "--pidfile" ]; then
    echo $$ > "$2"
  fi
  shift
done
"""


@pytest.fixture
def fabric(tmp_path, lab_config, fake_bin):
    fake_bin("vde_plug", FAKE_PLUG)
    workspace = Workspace.create(tmp_path / "runs")
    return SwitchFabric(lab_config, workspace)


def test_command_binds_socket_and_capture(fabric) -> None:
    root = fabric.workspace.root

    assert fabric.command(3) == [
        "vde_plug",
        "--daemon",
        "--pidfile",
        str(root / "switch-3.pid"),
        f"switch://{root / 'switch-3.sock'}",
        f"pcap://{root / 'switch-3.pcap'}",
    ]


def test_create_switch_records_handle(fabric, recorded_events) -> None:
    switch = fabric.create_switch(1)

    assert switch.switch_id == 1
    assert switch.socket == fabric.workspace.switch_socket(1)
    assert switch.pcap == fabric.workspace.switch_pcap(1)
    assert switch.process.pid() is not None
    assert fabric.get(1) is switch
    assert ("vmlab.fabric.switch.created", {
        "switch": 1,
        "socket": switch.socket,
        "pcap": switch.pcap,
    }) in recorded_events


def test_switches_never_share_a_socket(fabric) -> None:
    sockets = {fabric.create_switch(switch_id).socket for switch_id in (1, 2, 3)}

    assert len(sockets) == 3


def test_duplicate_and_invalid_identifiers_are_fatal(fabric) -> None:
    fabric.create_switch(1)

    with pytest.raises(ProvisioningError, match="already exists"):
        fabric.create_switch(1)
    with pytest.raises(ProvisioningError, match="positive"):
        fabric.create_switch(0)


def test_failed_switch_is_fatal(tmp_path, lab_config, fake_bin) -> None:
    fake_bin("vde_plug", 'echo "pcap plugin missing" >&2\nexit 1')
    fabric = SwitchFabric(lab_config, Workspace.create(tmp_path / "runs"))

    with pytest.raises(ProvisioningError, match="pcap plugin missing"):
        fabric.create_switch(1)
    assert fabric.switches == {}


def test_get_unknown_switch(fabric) -> None:
    with pytest.raises(ProvisioningError, match="never created"):
        fabric.get(9)


def test_teardown_covers_only_switch_records(fabric, monkeypatch) -> None:
    root = fabric.workspace.root
    for name in ("switch-1.pid", "switch-2.pid", "R1.pid"):
        (root / name).write_text("999999\n")
    seen = {}

    def fake_terminate_all(tracked, **kwargs):
        seen["names"] = [process.name for process in tracked]
        seen["grace"] = kwargs["grace_seconds"]
        return ["switch-2"]

    monkeypatch.setattr("vmlab.fabric.terminate_all", fake_terminate_all)

    assert fabric.teardown_all() == ["switch-2"]
    assert seen == {"names": ["switch-1", "switch-2"], "grace": 0.1}
