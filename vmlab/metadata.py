"""Record what a lab run did for later inspection."""

from __future__ import annotations

import datetime
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional


@dataclass
class RunTimings:
    """Wall-clock durations of the lifecycle phases, in seconds."""

    phases: Dict[str, float] = field(default_factory=dict)

    def record(self, phase: str, seconds: float) -> None:
        self.phases[phase] = round(seconds, 3)

    def to_metadata(self) -> Dict[str, float]:
        return dict(self.phases)


def write_run_metadata(
    metadata_path: Path,
    *,
    workspace: Path,
    kernel_version: Optional[str],
    switches: List[int],
    qemu_commands: Dict[str, List[str]],
    outcome: str,
    error: Optional[str] = None,
    started_at: Optional[datetime.datetime] = None,
    completed_at: Optional[datetime.datetime] = None,
    run_timings: Optional[RunTimings] = None,
) -> Path:
    """Persist structured metadata describing one lab run."""

    metadata: Dict[str, object] = {
        "generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        "workspace": str(workspace),
        "kernel_version": kernel_version,
        "switches": switches,
        "qemu": {vm: command for vm, command in sorted(qemu_commands.items())},
        "outcome": outcome,
    }
    if error:
        metadata["error"] = error
    if started_at:
        metadata["timings"] = {
            "start": started_at.isoformat(),
            "end": (completed_at or datetime.datetime.now(datetime.timezone.utc)).isoformat(),
        }
    if run_timings is not None:
        phases = run_timings.to_metadata()
        if phases:
            metadata.setdefault("timings", {})["phases"] = phases

    metadata_path.parent.mkdir(parents=True, exist_ok=True)
    metadata_path.write_text(json.dumps(metadata, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    return metadata_path
