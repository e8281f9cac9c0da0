"""Layout of the per-run workspace shared by the host and every guest."""

from __future__ import annotations

import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from .logging_utils import log_event

_INITRD_FILENAME = "initrd.gz"


@dataclass(frozen=True)
class Workspace:
    """Directory owning every artifact of one run.

    The host sees it under a fresh temporary directory; guests see the same
    tree through a 9p mount, so path helpers only depend on ``root``.
    """

    root: Path

    @classmethod
    def create(cls, parent: Optional[Path] = None) -> "Workspace":
        """Create a brand new workspace; never reuses an existing directory."""

        if parent is not None:
            parent.mkdir(parents=True, exist_ok=True)
        root = Path(tempfile.mkdtemp(prefix="vmlab-", dir=parent))
        log_event("vmlab.workspace.created", root=root)
        return cls(root)

    @property
    def initrd(self) -> Path:
        return self.root / _INITRD_FILENAME

    def switch_socket(self, switch_id: int) -> Path:
        return self.root / f"switch-{switch_id}.sock"

    def switch_pcap(self, switch_id: int) -> Path:
        return self.root / f"switch-{switch_id}.pcap"

    def switch_pid(self, switch_id: int) -> Path:
        return self.root / f"switch-{switch_id}.pid"

    def console(self, vm: str) -> Path:
        return self.root / f"{vm}.console"

    def command(self, vm: str) -> Path:
        return self.root / f"{vm}.command"

    def output(self, vm: str) -> Path:
        return self.root / f"{vm}.output"

    def rtmon(self, vm: str) -> Path:
        return self.root / f"{vm}.rtmon"

    def pid(self, vm: str) -> Path:
        return self.root / f"{vm}.pid"

    def debug_socket(self, vm: str) -> Path:
        return self.root / f"{vm}.debug"

    def pid_records(self) -> List[Path]:
        """Return every process-id record currently in the workspace."""

        if not self.root.is_dir():
            return []
        return sorted(self.root.glob("*.pid"))

    def destroy(self) -> None:
        """Recursively delete the workspace; a missing tree is not an error."""

        shutil.rmtree(self.root, ignore_errors=True)
        log_event("vmlab.workspace.destroyed", root=self.root)
