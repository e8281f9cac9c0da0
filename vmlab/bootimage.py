"""Boot image assembly through the external initrd builder."""

from __future__ import annotations

import gzip
import shutil
import subprocess
import sys
import sysconfig
from pathlib import Path
from typing import Iterable, List, Optional, Sequence

from .errors import EnvironmentCheckError, ProvisioningError
from .kernel import EARLY_MODULES, KernelInfo
from .logging_utils import log_event

# Host binaries the initrd stage runs before the host root is reachable.
INITRD_BINARIES = ("mount", "modprobe")

_CPIO_MAGIC = b"070701"
_CPIO_HEADER_LEN = 110
_CPIO_TRAILER = "TRAILER!!!"


PACKAGE_DIR = Path(__file__).resolve().parent

_LAUNCHER = """#!{python}
import sys
sys.path.insert(0, {package_root!r})
from vmlab.cli import main
raise SystemExit(main())
"""


def interpreter() -> Path:
    """Return the real interpreter binary, looking through virtualenv links."""

    return Path(sys.executable).resolve()


def write_init_launcher(path: Path, python: Path, package_root: Path) -> Path:
    """Write the guests' ``/init``: a script run by ``python`` that enters the CLI.

    The shebang names exactly the interpreter handed to the builder, so the
    launcher works whether vmlab was installed system-wide or in a venv.
    """

    path.write_text(_LAUNCHER.format(python=python, package_root=str(package_root)), encoding="utf-8")
    path.chmod(0o755)
    return path


def runtime_trees() -> List[Path]:
    """Directories the initrd must carry at their host paths for ``/init`` to import vmlab."""

    trees: List[Path] = []
    paths = sysconfig.get_paths()
    for key in ("stdlib", "platstdlib"):
        tree = Path(paths[key]).resolve()
        if tree not in trees:
            trees.append(tree)
    trees.append(PACKAGE_DIR)
    return trees


def resolve_binaries(names: Iterable[str]) -> List[Path]:
    """Return absolute paths for ``names``, the interpreter always first."""

    paths = [interpreter()]
    for name in names:
        found = shutil.which(name)
        if found is None:
            raise EnvironmentCheckError(f"required executable '{name}' is not available in PATH")
        paths.append(Path(found))
    return paths


def builder_command(
    builder: Path,
    output: Path,
    init: Path,
    kernel: KernelInfo,
    binaries: Sequence[Path],
    modules: Sequence[str],
    trees: Sequence[Path] = (),
) -> List[str]:
    cmd = [
        str(builder),
        "--output",
        str(output),
        "--init",
        str(init),
        "--kernel-version",
        kernel.version,
    ]
    for module in modules:
        cmd.extend(["--module", module])
    for tree in trees:
        cmd.extend(["--tree", str(tree)])
    cmd.extend(str(path) for path in binaries)
    return cmd


def initrd_members(path: Path) -> List[str]:
    """Return member names of a gzip-compressed ``newc`` cpio archive."""

    names: List[str] = []
    with gzip.open(path, "rb") as handle:
        data = handle.read()
    offset = 0
    while offset + _CPIO_HEADER_LEN <= len(data):
        header = data[offset:offset + _CPIO_HEADER_LEN]
        if header[:6] != _CPIO_MAGIC:
            raise ValueError(f"{path}: bad cpio header at offset {offset}")
        filesize = int(header[54:62], 16)
        namesize = int(header[94:102], 16)
        name_start = offset + _CPIO_HEADER_LEN
        name = data[name_start:name_start + namesize - 1].decode("utf-8", "replace")
        if name == _CPIO_TRAILER:
            break
        if name.startswith("./"):
            name = name[2:]
        names.append(name.lstrip("/") or ".")
        # Name and file data are each padded to a four byte boundary.
        data_start = (name_start + namesize + 3) & ~3
        offset = (data_start + filesize + 3) & ~3
    return names


def build_boot_image(
    builder: Path,
    output: Path,
    kernel: KernelInfo,
    *,
    init: Optional[Path] = None,
    binaries: Optional[Sequence[Path]] = None,
    modules: Sequence[str] = EARLY_MODULES,
    trees: Optional[Sequence[Path]] = None,
) -> Path:
    """Build the guests' initrd at ``output`` and return its path."""

    binary_paths = list(binaries) if binaries is not None else resolve_binaries(INITRD_BINARIES)
    if init is None:
        init = write_init_launcher(output.with_name("init"), interpreter(), PACKAGE_DIR.parent)
    tree_paths = list(trees) if trees is not None else runtime_trees()
    cmd = builder_command(builder, output, init, kernel, binary_paths, modules, tree_paths)
    log_event("vmlab.bootimage.build.start", command=cmd)
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise ProvisioningError(f"failed to run initrd builder {builder}: {exc}") from exc
    if result.returncode != 0:
        detail = (result.stderr or result.stdout or "").strip()
        raise ProvisioningError(
            f"initrd builder exited with status {result.returncode}"
            + (f": {detail}" if detail else "")
        )
    if not output.is_file() or output.stat().st_size == 0:
        raise ProvisioningError(f"initrd builder did not produce {output}")

    try:
        members = initrd_members(output)
    except (OSError, ValueError, EOFError) as exc:
        raise ProvisioningError(f"{output} is not a compressed cpio archive: {exc}") from exc
    if "init" not in members:
        raise ProvisioningError(f"{output} has no /init entry")

    log_event("vmlab.bootimage.build.finished", output=output, members=len(members))
    return output
