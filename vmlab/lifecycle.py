"""Top-level coordinator of one lab run.

``Validate -> BuildImage -> StartFabric -> StartVMs -> RunScenario -> Collect
-> Diff -> Cleanup``. Validation allocates nothing; once the workspace exists
every exit path goes through :meth:`LabManager.cleanup`.
"""

from __future__ import annotations

import contextlib
import datetime
import os
import shutil
import signal
import sys
import time
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from . import console, golden
from .bootimage import build_boot_image
from .channel import CommandChannel
from .config import LabConfig
from .errors import EnvironmentCheckError, LabError
from .fabric import SwitchFabric
from .kernel import KernelInfo, probe_kernel
from .logging_utils import log_event
from .metadata import RunTimings, write_run_metadata
from .processes import terminate_all
from .scenario import TOPOLOGY, ScenarioDriver, Step, build_scenario, switches_in_use
from .supervisor import VMSupervisor, default_mounts
from .workspace import Workspace

BOOT_PROBE_COMMAND = "true"
COMBINED_OUTPUT = "lab.output"
METADATA_FILENAME = "metadata.json"
CONSOLE_TAIL_LINES = 30


class LabManager:
    """Drive a complete run for ``config`` and always clean up after it."""

    def __init__(
        self,
        config: LabConfig,
        *,
        topology: Optional[Dict[str, Tuple[int, ...]]] = None,
        steps: Optional[Sequence[Step]] = None,
        probe: Callable[[Path], KernelInfo] = probe_kernel,
        build_image: Callable[..., Path] = build_boot_image,
        attach: Callable[[Workspace, str], None] = console.attach,
        which: Callable[[str], Optional[str]] = shutil.which,
        geteuid: Callable[[], int] = os.geteuid,
        sleep: Callable[[float], None] = time.sleep,
        handle_signals: bool = True,
    ) -> None:
        self.config = config
        self.topology = dict(topology if topology is not None else TOPOLOGY)
        self.steps = list(steps) if steps is not None else build_scenario(config)
        self._probe = probe
        self._build_image = build_image
        self._attach = attach
        self._which = which
        self._geteuid = geteuid
        self._sleep = sleep
        self._handle_signals = handle_signals

        self.kernel: Optional[KernelInfo] = None
        self.workspace: Optional[Workspace] = None
        self.fabric: Optional[SwitchFabric] = None
        self.supervisor: Optional[VMSupervisor] = None
        self.channel: Optional[CommandChannel] = None
        self.timings = RunTimings()

    # -- phases ------------------------------------------------------------

    def required_tools(self) -> List[str]:
        tools = [self.config.qemu, self.config.switch_plug, "file"]
        if self.config.debug:
            tools.append("socat")
        return tools

    def validate(self) -> KernelInfo:
        """Check the host before anything is allocated."""

        if self._geteuid() == 0:
            raise EnvironmentCheckError("refusing to run as root; the lab needs no privileges")
        missing = [tool for tool in self.required_tools() if self._which(tool) is None]
        if missing:
            raise EnvironmentCheckError(f"required tools not found in PATH: {', '.join(missing)}")
        builder = self.config.initrd_builder
        if not builder.is_file() or not os.access(builder, os.X_OK):
            raise EnvironmentCheckError(f"initrd builder {builder} is not an executable file")
        if not self.config.update_expected and not self.config.expected.is_file():
            raise EnvironmentCheckError(
                f"expected output {self.config.expected} is missing; rerun with --update-expected"
            )
        self.kernel = self._probe(self.config.kernel)
        return self.kernel

    def build_image(self) -> Path:
        assert self.workspace is not None and self.kernel is not None
        return self._build_image(self.config.initrd_builder, self.workspace.initrd, self.kernel)

    def start_fabric(self) -> None:
        assert self.workspace is not None
        self.fabric = SwitchFabric(self.config, self.workspace)
        for switch_id in switches_in_use(self.topology):
            self.fabric.create_switch(switch_id)

    def start_vms(self, boot_image: Path) -> None:
        assert self.workspace is not None and self.kernel is not None
        self.supervisor = VMSupervisor(self.config, self.workspace, self.kernel)
        mounts = default_mounts(self.config, self.workspace, self.kernel)
        for name, switches in self.topology.items():
            self.supervisor.launch(name, switches, mounts, boot_image)
        self.channel = CommandChannel(
            self.workspace,
            poll_interval=self.config.poll_interval,
            poll_attempts=self.config.poll_attempts,
            liveness=self.supervisor.is_running,
            diagnostics=self.console_report,
            sleep=self._sleep,
        )

    def wait_for_boot(self) -> None:
        """Wait until every guest answers a no-op command."""

        assert self.channel is not None
        for name in self.topology:
            self.channel.run(name, BOOT_PROBE_COMMAND, attempts=self.config.boot_attempts)
            print(f"{name} is ready")

    def run_scenario(self) -> int:
        assert self.channel is not None
        driver = ScenarioDriver(self.channel, settle_scale=self.config.settle_scale, sleep=self._sleep)
        return driver.run(self.steps)

    def collect(self) -> str:
        """Copy each guest's output log to the output directory and return the redacted whole."""

        assert self.workspace is not None
        output_dir = self.config.output_dir
        output_dir.mkdir(parents=True, exist_ok=True)
        collected: Dict[str, Path] = {}
        for name in self.topology:
            target = output_dir / f"{name}.output"
            source = self.workspace.output(name)
            if source.exists():
                shutil.copyfile(source, target)
            else:
                target.write_text("", encoding="utf-8")
            collected[name] = target
        table = golden.redactions(
            [self.config.guest_path(self.config.daemon), self.config.guest_path(self.config.client)]
        )
        combined = golden.redact(golden.combine_outputs(collected), table)
        (output_dir / COMBINED_OUTPUT).write_text(combined, encoding="utf-8")
        log_event("vmlab.lifecycle.collected", output_dir=output_dir, vms=sorted(collected))
        return combined

    def diff(self, combined: str) -> None:
        if self.config.update_expected:
            golden.update_baseline(combined, self.config.expected)
            print(f"Updated {self.config.expected}")
            return
        golden.compare(combined, self.config.expected)

    def console_report(self, vm: str) -> str:
        if self.supervisor is None:
            return ""
        tail = self.supervisor.console_tail(vm, CONSOLE_TAIL_LINES)
        if not tail:
            return ""
        return f"last console lines of {vm}:\n" + "\n".join(f"  {line}" for line in tail)

    def cleanup(self, *, success: bool) -> None:
        """Stop every recorded process, then remove the workspace.

        Safe whatever subset of the lab was started: teardown works from the
        pid records on disk rather than from in-memory handles. VMs and
        switches share one grace window, and the workspace is dealt with even
        when stopping the processes failed.
        """

        if self.workspace is None:
            return
        forced: List[str] = []
        try:
            supervisor = self.supervisor or VMSupervisor(self.config, self.workspace, self.kernel)
            fabric = self.fabric or SwitchFabric(self.config, self.workspace)
            # Guests first, so they are signalled before their links go.
            forced = terminate_all(
                supervisor.tracked_processes() + fabric.tracked_processes(),
                grace_seconds=self.config.grace_seconds,
                interval=self.config.poll_interval,
            )
            supervisor.mark_terminated()
            fabric.switches.clear()
            if forced:
                print(f"Force-killed after {self.config.grace_seconds:g}s: {', '.join(forced)}", file=sys.stderr)
        finally:
            if self.config.keep and success:
                print(f"Workspace kept at {self.workspace.root}")
            else:
                self.workspace.destroy()
            log_event("vmlab.lifecycle.cleanup", workspace=self.workspace.root, forced=forced, success=success)

    # -- driver ------------------------------------------------------------

    @contextlib.contextmanager
    def _phase(self, name: str) -> Iterator[None]:
        log_event("vmlab.lifecycle.phase.start", phase=name)
        started = time.monotonic()
        try:
            yield
        finally:
            elapsed = time.monotonic() - started
            self.timings.record(name, elapsed)
            log_event("vmlab.lifecycle.phase.finished", phase=name, seconds=elapsed)

    @contextlib.contextmanager
    def _signals_as_errors(self) -> Iterator[None]:
        if not self._handle_signals:
            yield
            return

        def _raise(signum, _frame):
            raise LabError(f"interrupted by {signal.Signals(signum).name}")

        previous = {sig: signal.signal(sig, _raise) for sig in (signal.SIGTERM, signal.SIGINT)}
        try:
            yield
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    def _debug_session(self, error: LabError) -> None:
        """Let the operator inspect a guest before cleanup destroys it."""

        assert self.workspace is not None
        vm = getattr(error, "vm", None)
        if vm is None and self.supervisor is not None:
            vm = next((name for name in self.topology if self.supervisor.is_running(name)), None)
        if vm is None:
            print("No running guest to attach to", file=sys.stderr)
            return
        print(f"vmlab: {error}", file=sys.stderr)
        try:
            self._attach(self.workspace, vm)
        except LabError as exc:
            print(f"vmlab: debug console unavailable: {exc}", file=sys.stderr)

    def run(self) -> int:
        """Execute the whole run; raises :class:`LabError` on any failure."""

        started_at = datetime.datetime.now(datetime.timezone.utc)
        with self._phase("validate"):
            kernel = self.validate()
        print(f"Using kernel {kernel.version} from {kernel.image}")

        self.workspace = Workspace.create(self.config.workspace_parent)
        success = False
        error: Optional[str] = None
        try:
            with self._signals_as_errors():
                try:
                    with self._phase("build-image"):
                        boot_image = self.build_image()
                    with self._phase("start-fabric"):
                        self.start_fabric()
                    with self._phase("start-vms"):
                        self.start_vms(boot_image)
                    with self._phase("boot"):
                        self.wait_for_boot()
                    with self._phase("scenario"):
                        self.run_scenario()
                    with self._phase("collect"):
                        combined = self.collect()
                    with self._phase("diff"):
                        self.diff(combined)
                except LabError as exc:
                    error = str(exc)
                    if self.config.debug:
                        self._debug_session(exc)
                    raise
                except Exception as exc:
                    error = repr(exc)
                    raise
                success = True
        finally:
            with self._phase("cleanup"):
                self.cleanup(success=success)
            self._write_metadata(started_at, success, error)
        print("Lab run passed")
        return 0

    def _write_metadata(self, started_at: datetime.datetime, success: bool, error: Optional[str]) -> None:
        """Record the run; a failure here is reported but never replaces the run's own outcome."""

        assert self.workspace is not None
        qemu_commands: Dict[str, List[str]] = {}
        if self.supervisor is not None:
            qemu_commands = {name: vm.command for name, vm in self.supervisor.machines.items()}
        target = self.config.output_dir / METADATA_FILENAME
        try:
            path = write_run_metadata(
                target,
                workspace=self.workspace.root,
                kernel_version=self.kernel.version if self.kernel else None,
                switches=switches_in_use(self.topology),
                qemu_commands=qemu_commands,
                outcome="passed" if success else "failed",
                error=error,
                started_at=started_at,
                run_timings=self.timings,
            )
        except OSError as exc:
            print(f"vmlab: unable to write {target}: {exc}", file=sys.stderr)
            log_event("vmlab.lifecycle.metadata.failed", path=target, error=str(exc))
            return
        log_event("vmlab.lifecycle.metadata", path=path)
