"""The fixed lab topology and the scenario run against it."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence, Tuple, Union

from .channel import CommandChannel
from .config import LabConfig
from .logging_utils import log_event

# VM name -> switches in attachment order (attachment N is ifaceN in the guest).
TOPOLOGY: Dict[str, Tuple[int, ...]] = {
    "R1": (1, 2, 3, 4, 5),
    "R2": (1, 2, 3),
    "R3": (1, 4, 5),
}

CONTROL_SOCKET = "/run/lldpd.socket"


@dataclass(frozen=True)
class Command:
    """Run ``text`` on ``vm`` and wait for it to finish."""

    vm: str
    text: str


@dataclass(frozen=True)
class Delay:
    """Let the daemons converge before the next query."""

    seconds: float


Step = Union[Command, Delay]


def switches_in_use(topology: Dict[str, Tuple[int, ...]] = TOPOLOGY) -> List[int]:
    return sorted({switch for switches in topology.values() for switch in switches})


def build_scenario(config: LabConfig) -> List[Step]:
    """Return the ordered steps for ``config``'s daemon and client."""

    daemon = config.guest_path(config.daemon)
    client = config.guest_path(config.client)
    ctl = f"{client} -u {CONTROL_SOCKET}"

    def query(vm: str, *args: str) -> Command:
        return Command(vm, " ".join([ctl, *args]))

    steps: List[Step] = [
        Command(vm, f"{daemon} -u {CONTROL_SOCKET} -L {client}") for vm in TOPOLOGY
    ]
    steps += [
        Delay(2),
        query("R2", "show neighbors"),
        # VLAN sub-interface on R2's switch-2 attachment, seen from R1.
        Command("R2", "ip link add link iface2 name iface2.100 type vlan id 100"),
        Command("R2", "ip link set dev iface2.100 up"),
        Delay(2),
        query("R1", "show neighbors ports iface2 details"),
        Command("R2", "ip link delete iface2.100"),
        Delay(2),
        query("R1", "show neighbors ports iface2 details"),
        # Bond R3's switch-4 and switch-5 attachments.
        Command("R3", "ip link add bond0 type bond mode active-backup"),
        Command("R3", "ip link set dev iface2 down"),
        Command("R3", "ip link set dev iface3 down"),
        Command("R3", "ip link set dev iface2 master bond0"),
        Command("R3", "ip link set dev iface3 master bond0"),
        Command("R3", "ip link set dev bond0 up"),
        Delay(3),
        query("R1", "show neighbors ports iface4,iface5 details"),
        # Bridge on R2's switch-3 attachment.
        Command("R2", "ip link add br0 type bridge"),
        Command("R2", "ip link set dev iface3 master br0"),
        Command("R2", "ip link set dev br0 up"),
        Delay(2),
        query("R1", "show neighbors ports iface3 details"),
        # TLVs on R1's switch-1 attachment.
        query(
            "R1",
            "configure ports iface1 med location coordinate",
            "latitude 48.85667N longitude 2.2975E altitude 117.47 m datum WGS84",
        ),
        query(
            "R1",
            "configure ports iface1 dot3 power pse supported enabled paircontrol",
            "powerpairs spare class class-3",
        ),
        query("R1", "configure ports iface1 lldp custom-tlv oui 33,44,55 subtype 44"),
        Delay(2),
        query("R2", "show neighbors ports iface1 details"),
        # The configuration must survive a link flap.
        Command("R1", "ip link set dev iface1 down"),
        Delay(2),
        Command("R1", "ip link set dev iface1 up"),
        Delay(5),
        query("R2", "show neighbors ports iface1 details"),
    ]
    return steps


class ScenarioDriver:
    """Execute steps strictly in order; the first failure ends the run."""

    def __init__(
        self,
        channel: CommandChannel,
        *,
        settle_scale: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.channel = channel
        self.settle_scale = settle_scale
        self._sleep = sleep

    def run(self, steps: Sequence[Step]) -> int:
        """Run ``steps`` and return how many commands were executed."""

        executed = 0
        for index, step in enumerate(steps, start=1):
            if isinstance(step, Delay):
                seconds = step.seconds * self.settle_scale
                log_event("vmlab.scenario.delay", step=index, seconds=seconds)
                self._sleep(seconds)
                continue
            log_event("vmlab.scenario.command", step=index, vm=step.vm, command=step.text)
            self.channel.run(step.vm, step.text)
            executed += 1
        log_event("vmlab.scenario.finished", steps=len(steps), commands=executed)
        return executed
