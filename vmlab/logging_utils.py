"""Structured logging helpers for the lab orchestrator and its guests."""

from __future__ import annotations

import datetime as _dt
import json
import os
import sys
import tempfile
from pathlib import Path
from typing import Any, Mapping, Sequence


def _serialise(value: Any) -> Any:
    """Return a JSON-friendly representation of *value*."""

    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _serialise(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_serialise(item) for item in value]
    return repr(value)


# Set inside a guest to its VM name so merged logs say where each event ran.
GUEST_ENV = "VMLAB_GUEST"


def _origin() -> str:
    return os.environ.get(GUEST_ENV, "").strip() or "host"


def _logs_enabled() -> bool:
    """Return ``True`` when structured logging is enabled via the environment."""

    value = os.environ.get("VMLAB_LOG_EVENTS")
    if value is None:
        return False
    return value.strip().lower() not in {"", "0", "false", "no"}


def log_event(event: str, **fields: Any) -> None:
    """Emit a structured log entry to ``stderr`` when logging is enabled.

    Host and guest events land in the same format so a run can be replayed by
    merging the host log with the per-guest console logs. Each entry carries
    an ISO-8601 UTC timestamp and an ``origin``: ``host`` on the driver, the
    VM name inside a guest. Non-JSON values are converted via ``repr``.
    """

    if not _logs_enabled():
        return

    record = {
        "timestamp": _dt.datetime.now(_dt.timezone.utc).isoformat(),
        "event": event,
        "origin": _origin(),
    }
    for key, value in fields.items():
        record[str(key)] = _serialise(value)

    message = json.dumps(record, sort_keys=True)

    sys.stderr.write(message + "\n")
    sys.stderr.flush()
    _append_to_log_file(message)


_DEFAULT_LOG_FILE = Path(tempfile.gettempdir()) / "vmlab" / "events.log"


def _log_file_path() -> Path:
    """Return the configured log file path.

    When ``VMLAB_LOG_FILE`` is not set or is empty, fall back to a file under
    the system temporary directory.
    """

    value = os.environ.get("VMLAB_LOG_FILE")
    if value is None or value.strip() == "":
        return _DEFAULT_LOG_FILE
    return Path(value)


def _append_to_log_file(message: str) -> None:
    """Append the given JSON *message* to the configured log file."""

    log_file = _log_file_path()
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(message + "\n")
    except OSError as exc:  # pragma: no cover - read-only guest filesystems
        sys.stderr.write(f"vmlab: failed to write log to {log_file}: {exc}\n")
        sys.stderr.flush()
