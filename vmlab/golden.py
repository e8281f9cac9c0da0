"""Redact collected output and compare it with the checked-in baseline."""

from __future__ import annotations

import difflib
import re
from pathlib import Path
from typing import Iterable, List, Mapping, Pattern, Sequence, Tuple

from .errors import DivergenceError, EnvironmentCheckError
from .logging_utils import log_event

Redaction = Tuple[Pattern[str], str]

_FIXED_REDACTIONS: List[Redaction] = [
    (re.compile(r"Time:\s+\d+ days?, \d{2}:\d{2}:\d{2}"), "Time: <elapsed>"),
    (re.compile(r"(HW|Hardware) ?[Rr]ev(ision)?:\s*.*$", re.MULTILINE), r"\1 revision: <redacted>"),
    (re.compile(r"(FW|Firmware) ?[Rr]ev(ision)?:\s*.*$", re.MULTILINE), r"\1 revision: <redacted>"),
    (re.compile(r"(SW|Software) ?[Rr]ev(ision)?:\s*.*$", re.MULTILINE), r"\1 revision: <redacted>"),
    (re.compile(r"(SysDescr:\s*).*$", re.MULTILINE), r"\1<redacted>"),
    (re.compile(r"\d{4}-\d{2}-\d{2}[T ]\d{2}:\d{2}:\d{2}(\.\d+)?"), "<timestamp>"),
]


def redactions(executables: Iterable[str] = ()) -> List[Redaction]:
    """Return the redaction table, collapsing paths to ``executables`` to basenames."""

    table = list(_FIXED_REDACTIONS)
    for executable in executables:
        name = Path(executable).name
        table.append((re.compile(r"(?<![\w.-])/?(?:[\w.+-]+/)+" + re.escape(name) + r"(?![\w.-])"), name))
    return table


def redact(text: str, table: Sequence[Redaction]) -> str:
    for pattern, replacement in table:
        text = pattern.sub(replacement, text)
    return text


def combine_outputs(outputs: Mapping[str, Path]) -> str:
    """Concatenate per-VM output logs under ``== <vm> ==`` headers, by name."""

    sections: List[str] = []
    for vm in sorted(outputs):
        path = outputs[vm]
        body = path.read_text(encoding="utf-8", errors="replace") if path.exists() else ""
        sections.append(f"== {vm} ==\n{body}")
        if body and not body.endswith("\n"):
            sections[-1] += "\n"
    return "".join(sections)


def unified_diff(expected: str, actual: str, expected_name: str) -> str:
    lines = difflib.unified_diff(
        expected.splitlines(keepends=True),
        actual.splitlines(keepends=True),
        fromfile=expected_name,
        tofile="actual",
    )
    return "".join(lines)


def compare(actual: str, expected_path: Path) -> None:
    """Raise :class:`DivergenceError` unless ``actual`` matches the baseline exactly."""

    if not expected_path.is_file():
        raise EnvironmentCheckError(
            f"expected output {expected_path} is missing; rerun with --update-expected"
        )
    expected = expected_path.read_text(encoding="utf-8")
    if expected == actual:
        log_event("vmlab.golden.match", expected=expected_path)
        return
    diff = unified_diff(expected, actual, str(expected_path))
    log_event("vmlab.golden.diverged", expected=expected_path, diff_lines=diff.count("\n"))
    raise DivergenceError(f"output differs from {expected_path}", diff)


def update_baseline(actual: str, expected_path: Path) -> Path:
    expected_path.parent.mkdir(parents=True, exist_ok=True)
    expected_path.write_text(actual, encoding="utf-8")
    log_event("vmlab.golden.updated", expected=expected_path)
    return expected_path
