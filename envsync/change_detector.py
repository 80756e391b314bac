from __future__ import annotations

import hashlib
from dataclasses import dataclass

from .db import log_event

FILE_OK = "ok"
FILE_MISSING = "missing"
FILE_MISMATCH = "mismatch"
FILE_UNREADABLE = "unreadable"


def digest(content: str | bytes) -> str:
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


@dataclass(frozen=True)
class ChangeResult:
    changed: bool
    digest: str
    state_changed: bool
    file_state: str  # ok|missing|mismatch|unreadable
    disk_digest: str | None = None


def detect_change(service_id: str, path: str, desired_content: str, recorded_hash: str | None) -> ChangeResult:
    """Decide whether ``service_id`` needs to be re-applied.

    Either a recorded-state mismatch or an on-disk mismatch is enough. A missing
    or unreadable file always counts as changed: it is better to recreate a
    container once too often than to skip a required update.
    """
    new_digest = digest(desired_content)
    state_changed = recorded_hash is None or recorded_hash != new_digest

    disk_digest: str | None = None
    try:
        with open(path, "rb") as fh:
            disk_digest = digest(fh.read())
        file_state = FILE_OK if disk_digest == new_digest else FILE_MISMATCH
    except FileNotFoundError:
        file_state = FILE_MISSING
    except OSError as e:
        log_event("WARN", f"Cannot read {path}: {type(e).__name__}: {e}", service=service_id)
        file_state = FILE_UNREADABLE

    changed = state_changed or file_state != FILE_OK

    log_event(
        "DEBUG",
        f"check: new={new_digest[:10]} recorded={(recorded_hash or '-')[:10]} "
        f"state_changed={state_changed} file={file_state} -> {'update' if changed else 'no-op'}",
        service=service_id,
    )
    if changed:
        reasons = []
        if state_changed:
            reasons.append("secret source changed" if recorded_hash else "no recorded state")
        if file_state != FILE_OK:
            reasons.append(f"env file {file_state}")
        log_event("INFO", f"{path} needs update ({', '.join(reasons)})", service=service_id)

    return ChangeResult(
        changed=changed,
        digest=new_digest,
        state_changed=state_changed,
        file_state=file_state,
        disk_digest=disk_digest,
    )
