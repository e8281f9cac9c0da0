"""Virtual Ethernet segments connecting the guests."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

from .config import LabConfig
from .errors import ProvisioningError
from .logging_utils import log_event
from .processes import TrackedProcess, start_daemon, terminate_all
from .workspace import Workspace


@dataclass(frozen=True)
class Switch:
    """Handle on a running segment."""

    switch_id: int
    socket: Path
    pcap: Path
    process: TrackedProcess


class SwitchFabric:
    """Create and tear down the lab's switches.

    Each switch is a detached ``vde_plug`` joining a ``switch://`` endpoint
    (the segment guests attach to) with a ``pcap://`` sink recording every
    frame crossing it.
    """

    def __init__(self, config: LabConfig, workspace: Workspace) -> None:
        self.config = config
        self.workspace = workspace
        self.switches: Dict[int, Switch] = {}

    def command(self, switch_id: int) -> List[str]:
        return [
            self.config.switch_plug,
            "--daemon",
            "--pidfile",
            str(self.workspace.switch_pid(switch_id)),
            f"switch://{self.workspace.switch_socket(switch_id)}",
            f"pcap://{self.workspace.switch_pcap(switch_id)}",
        ]

    def create_switch(self, switch_id: int) -> Switch:
        """Start switch ``switch_id``; any failure is fatal for the run."""

        if switch_id <= 0:
            raise ProvisioningError(f"switch identifiers are positive integers, got {switch_id}")
        if switch_id in self.switches:
            raise ProvisioningError(f"switch {switch_id} already exists")

        process = start_daemon(
            f"switch-{switch_id}",
            self.command(switch_id),
            self.workspace.switch_pid(switch_id),
            interval=self.config.poll_interval,
        )
        switch = Switch(
            switch_id=switch_id,
            socket=self.workspace.switch_socket(switch_id),
            pcap=self.workspace.switch_pcap(switch_id),
            process=process,
        )
        self.switches[switch_id] = switch
        log_event(
            "vmlab.fabric.switch.created",
            switch=switch_id,
            socket=switch.socket,
            pcap=switch.pcap,
        )
        return switch

    def get(self, switch_id: int) -> Switch:
        try:
            return self.switches[switch_id]
        except KeyError:
            raise ProvisioningError(f"switch {switch_id} was never created") from None

    def tracked_processes(self) -> List[TrackedProcess]:
        """Every switch with a pid record, including ones whose start half-failed."""

        return [
            TrackedProcess(name=path.stem, pid_file=path)
            for path in self.workspace.pid_records()
            if path.name.startswith("switch-")
        ]

    def teardown_all(self) -> List[str]:
        """Stop every switch process."""

        forced = terminate_all(
            self.tracked_processes(),
            grace_seconds=self.config.grace_seconds,
            interval=self.config.poll_interval,
        )
        self.switches.clear()
        return forced
