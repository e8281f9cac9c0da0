"""Command line entry point shared by the host driver and guest init."""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Iterable, List, Optional

from . import __version__, bootstrap
from .bootstrap import BootstrapStage
from .config import GuestContext, LabConfig
from .errors import BootstrapError, DivergenceError, EnvironmentCheckError, LabError
from .workspace import Workspace

if TYPE_CHECKING:  # pragma: no cover - type checking only
    from .lifecycle import LabManager

COMMANDS = ("run", "attach", "guest")


def _add_run_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--source-dir",
        type=Path,
        help="Daemon source tree shared with the guests (default: current directory)",
    )
    parser.add_argument("--kernel", type=Path, help="Guest kernel image (default: the running kernel)")
    parser.add_argument("--output-dir", type=Path, help="Where collected outputs and metadata.json go")
    parser.add_argument("--expected", type=Path, help="Baseline the redacted output must match")
    parser.add_argument("--initrd-builder", type=Path, help="Command that assembles the guest initrd")
    parser.add_argument("--workspace-parent", type=Path, help="Directory holding the run workspace")
    parser.add_argument("--qemu", help="QEMU system emulator to launch guests with")
    parser.add_argument("--memory", dest="memory_mb", type=int, help="Guest memory in MiB")
    parser.add_argument(
        "--settle-scale",
        type=float,
        help="Multiplier applied to the settle delays between scenario steps",
    )
    parser.add_argument("--daemon", help="Daemon path relative to the source tree")
    parser.add_argument("--client", help="Client path relative to the source tree")
    parser.add_argument(
        "--keep",
        action="store_true",
        default=None,
        help="Keep the workspace after a successful run",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        default=None,
        help="Attach to the failing guest's debug shell before cleaning up",
    )
    parser.add_argument(
        "--update-expected",
        action="store_true",
        default=None,
        help="Write the redacted output as the new baseline instead of comparing",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vmlab",
        description="Run the virtual network lab scenario against a protocol daemon.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="command")

    run = sub.add_parser("run", help="Provision the lab, run the scenario and compare output")
    _add_run_arguments(run)

    attach = sub.add_parser("attach", help="Open the debug shell of a guest in a kept workspace")
    attach.add_argument("workspace", type=Path)
    attach.add_argument("vm")

    guest = sub.add_parser("guest", help=argparse.SUPPRESS)
    guest.add_argument("--stage", required=True)
    guest.add_argument("--context", required=True)
    return parser


def _normalise_argv(argv: List[str]) -> List[str]:
    if not argv or (argv[0] not in COMMANDS and argv[0] not in {"-h", "--help", "--version"}):
        return ["run", *argv]
    return argv


def config_from_args(args: argparse.Namespace) -> LabConfig:
    overrides = {
        name: getattr(args, name)
        for name in (
            "kernel",
            "output_dir",
            "expected",
            "initrd_builder",
            "workspace_parent",
            "qemu",
            "memory_mb",
            "settle_scale",
            "daemon",
            "client",
            "keep",
            "debug",
            "update_expected",
        )
    }
    for name in ("memory_mb", "settle_scale"):
        if overrides[name] is not None and overrides[name] <= 0:
            raise EnvironmentCheckError(f"{name} must be greater than zero")
    for name in ("kernel", "output_dir", "expected", "initrd_builder", "workspace_parent"):
        if overrides[name] is not None:
            overrides[name] = overrides[name].resolve()
    try:
        return LabConfig.from_environment(args.source_dir, **overrides)
    except ValueError as exc:
        raise EnvironmentCheckError(str(exc)) from exc


def _guest_main(stage: BootstrapStage, context_text: Optional[str]) -> int:
    """Run the guest path for ``stage``; only returns in tests."""

    pid = os.getpid()
    try:
        path = bootstrap.select_path(pid, stage)
    except BootstrapError as exc:
        if pid == 1:
            bootstrap.halt(str(exc))
        print(f"vmlab: {exc}", file=sys.stderr)
        return 2
    if path == "host":
        print("vmlab: the guest entry point only runs as init inside a lab guest", file=sys.stderr)
        return 2

    try:
        if path == "initrd":
            bootstrap.enter_initrd()
        elif path == "chroot":
            if context_text is None:
                raise BootstrapError("missing guest context after chroot")
            try:
                context = GuestContext.from_json(context_text)
            except (KeyError, TypeError, ValueError) as exc:
                raise BootstrapError(f"malformed guest context: {exc}") from exc
            bootstrap.enter_chroot(context)
    except (BootstrapError, OSError) as exc:
        bootstrap.halt(str(exc))
    return 1


def _report(exc: LabError) -> None:
    print(f"vmlab: {exc}", file=sys.stderr)
    if isinstance(exc, DivergenceError) and exc.diff:
        sys.stderr.write(exc.diff)
        if not exc.diff.endswith("\n"):
            sys.stderr.write("\n")


def main(
    argv: Optional[Iterable[str]] = None,
    *,
    manager_factory: Optional[Callable[[LabConfig], "LabManager"]] = None,
) -> int:
    raw = list(sys.argv[1:] if argv is None else argv)
    if os.getpid() == 1 and (not raw or raw[0] != "guest"):
        return _guest_main(BootstrapStage.COLD_START, None)

    args = build_parser().parse_args(_normalise_argv(raw))
    if args.command == "guest":
        try:
            stage = BootstrapStage.from_slug(args.stage)
        except ValueError as exc:
            print(f"vmlab: {exc}", file=sys.stderr)
            return 2
        return _guest_main(stage, args.context)

    # The host side pulls in pexpect; guests never import it.
    from . import console
    from .lifecycle import LabManager

    try:
        if args.command == "attach":
            console.attach(Workspace(args.workspace.resolve()), args.vm)
            return 0
        config = config_from_args(args)
        return (manager_factory or LabManager)(config).run()
    except LabError as exc:
        _report(exc)
        return exc.exit_code


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
