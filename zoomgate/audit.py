"""
zoomgate/audit.py

Tamper-evident security audit log.

We append one JSON object per line (JSONL). Each event is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Events recorded by the gateway:
  install_issued, callback_denied, callback_upstream_error,
  callback_redirected, context_denied

Secrets never reach this log: access tokens, verifiers and raw context
headers are stored as length + SHA3-256 only.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from starlette.concurrency import run_in_threadpool

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64  # 32 bytes hex

LOG_NAME = "gateway_audit.jsonl"
STATE_NAME = "gateway_audit.state"
LOCK_NAME = "gateway_audit.lock"


# -----------------------------------------------------------------------------
# Canonical JSON
# -----------------------------------------------------------------------------
def canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """
    Deterministic JSON bytes for hashing and logging:
    sorted keys, no whitespace, UTF-8.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def chain_hash(prev_hash: str, event: Dict[str, Any]) -> str:
    """Next chain hash for an event (chain fields are ignored)."""
    e = dict(event)
    e.pop("prev_hash", None)
    e.pop("hash", None)
    return sha3_256_hex(bytes.fromhex(prev_hash) + canonical_json_bytes(e))


def audit_paths(audit_dir: Path) -> Tuple[Path, Path, Path]:
    audit_dir = Path(audit_dir)
    return audit_dir / LOG_NAME, audit_dir / STATE_NAME, audit_dir / LOCK_NAME


def _read_last_hash_unlocked(state_path: Path) -> str:
    """
    Read last hash from the state file. Caller must hold lock.
    Returns GENESIS_HASH if state missing/empty/garbled.
    """
    if not state_path.exists():
        return GENESIS_HASH
    s = state_path.read_text(encoding="utf-8").strip()
    if len(s) != 64:
        return GENESIS_HASH
    try:
        bytes.fromhex(s)
    except ValueError:
        return GENESIS_HASH
    return s.lower()


# -----------------------------------------------------------------------------
# Event construction
# -----------------------------------------------------------------------------
def build_common(
    *,
    path: Optional[str] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
    header_value: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Common audit fields. Keep this "boring" and stable.

    The raw context header is reduced to its length and hash.
    """
    out: Dict[str, Any] = {"ts": int(time.time())}

    if path:
        out["path"] = path
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    if header_value is not None:
        raw = header_value.encode("utf-8", errors="replace")
        out["header_len"] = len(raw)
        out["header_sha3_256"] = sha3_256_hex(raw)

    return out


# -----------------------------------------------------------------------------
# Append / verify
# -----------------------------------------------------------------------------
def append_event(event: Dict[str, Any], audit_dir: Path) -> str:
    """
    Append one event with hash chaining; returns the new chain hash.

    - locks the lock file
    - reads prev hash from the state file
    - writes the JSONL line with prev_hash + hash
    - updates the state file
    """
    log_path, state_path, lock_path = audit_paths(audit_dir)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Lock a dedicated file so it works even if log/state don't exist yet.
    with open(lock_path, "a+", encoding="utf-8") as lockf:
        fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
        try:
            prev_hash = _read_last_hash_unlocked(state_path)

            # Never allow callers to inject their own chain fields.
            stored = dict(event)
            stored.pop("prev_hash", None)
            stored.pop("hash", None)
            next_hash = chain_hash(prev_hash, stored)

            stored["prev_hash"] = prev_hash
            stored["hash"] = next_hash

            with open(log_path, "ab") as f:
                f.write(canonical_json_bytes(stored) + b"\n")
                f.flush()
                os.fsync(f.fileno())

            state_path.write_text(next_hash + "\n", encoding="utf-8")
        finally:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

    return next_hash


def verify_log_chain(path: Path) -> bool:
    """
    Verify the hash chain of an audit log file.
    Returns True if valid (or absent), False otherwise.
    """
    path = Path(path)
    if not path.exists():
        return True

    prev = GENESIS_HASH
    with open(path, "rb") as f:
        for raw_line in f:
            raw_line = raw_line.strip()
            if not raw_line:
                continue
            try:
                obj = json.loads(raw_line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                return False
            if not isinstance(obj, dict) or obj.get("prev_hash") != prev:
                return False
            if chain_hash(prev, obj) != obj.get("hash"):
                return False
            prev = obj["hash"]

    return True


class AuditTrail:
    """
    The gateway's handle on the audit log.

    Audit failures are logged and never turn a request into a 500; the
    security decision has already been made when an event is recorded.
    """

    def __init__(self, audit_dir: Path, enabled: bool = True):
        self.audit_dir = Path(audit_dir)
        self.enabled = enabled

    @property
    def log_path(self) -> Path:
        return audit_paths(self.audit_dir)[0]

    def record(self, event: str, result: str, common: Dict[str, Any], **extra: Any) -> None:
        if not self.enabled:
            return
        entry = {**common, "event": event, "result": result, **extra}
        try:
            append_event(entry, self.audit_dir)
        except OSError:
            logger.exception("audit append failed for event=%s", event)

    async def arecord(self, event: str, result: str, common: Dict[str, Any], **extra: Any) -> None:
        """record() for async callers. flock + fsync run in the threadpool, off the event loop."""
        if not self.enabled:
            return
        await run_in_threadpool(self.record, event, result, common, **extra)
