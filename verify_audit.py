#!/usr/bin/env python3
"""
verify_audit.py: verify the gateway's tamper-evident audit log (JSONL).

Checks:
- every line is a JSON object
- hash chaining: prev_hash links to the previous line, hash recomputes
  (same scheme as zoomgate/audit.py)
- optional state file holds the last hash
- per-event counts (install_issued, callback_denied, context_denied, ...)

Exit codes:
- 0: OK
- 1: Verification failed
"""

from __future__ import annotations

import argparse
import json
import sys
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple

from zoomgate.audit import GENESIS_HASH, chain_hash


@dataclass
class VerifyResult:
    ok: bool
    lines: int
    last_hash: Optional[str]
    message: str
    events: Counter = field(default_factory=Counter)


def _is_hex64(s: Any) -> bool:
    if not isinstance(s, str) or len(s) != 64:
        return False
    try:
        int(s, 16)
        return True
    except ValueError:
        return False


def _iter_jsonl(path: Path) -> Iterable[Tuple[int, Dict[str, Any]]]:
    """
    Yields: (line_number starting at 1, parsed_object)
    """
    with path.open("r", encoding="utf-8") as f:
        for idx, raw in enumerate(f, start=1):
            line = raw.strip()
            if not line:
                continue
            try:
                obj = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{idx}: invalid JSON: {e}") from e
            if not isinstance(obj, dict):
                raise ValueError(f"{path}:{idx}: JSON root must be object/dict")
            yield idx, obj


def verify_audit(
    jsonl_path: Path,
    state_path: Optional[Path] = None,
    *,
    strict: bool = False,
) -> VerifyResult:
    """
    strict: every line must carry an "event" name.
    """
    if not jsonl_path.exists():
        return VerifyResult(False, 0, None, f"Log not found: {jsonl_path}")

    lines = 0
    prev = GENESIS_HASH
    last_hash: Optional[str] = None
    events: Counter = Counter()

    def fail(msg: str) -> VerifyResult:
        return VerifyResult(False, lines, last_hash, msg, events)

    try:
        for lineno, event in _iter_jsonl(jsonl_path):
            lines += 1
            where = f"{jsonl_path}:{lineno}"

            if "hash" not in event or "prev_hash" not in event:
                return fail(f"{where}: chain requires both 'prev_hash' and 'hash'")
            if not _is_hex64(event["prev_hash"]) or not _is_hex64(event["hash"]):
                return fail(f"{where}: chain fields must be 64-hex")

            if event["prev_hash"] != prev:
                return fail(f"{where}: prev_hash mismatch: expected {prev} got {event['prev_hash']}")

            recomputed = chain_hash(prev, event)
            if event["hash"] != recomputed:
                return fail(f"{where}: hash mismatch: expected {recomputed} got {event['hash']}")

            name = event.get("event")
            if not name and strict:
                return fail(f"{where}: missing event name (strict mode)")
            events[name or "<unnamed>"] += 1

            prev = last_hash = event["hash"]
    except ValueError as e:
        return fail(str(e))

    if state_path is not None:
        if not state_path.exists():
            return fail(f"State file not found: {state_path}")
        state_val = state_path.read_text(encoding="utf-8").strip()
        if state_val != (last_hash or ""):
            return fail(f"State mismatch: state={state_val} log_last={last_hash}")

    return VerifyResult(True, lines, last_hash, "OK", events)


def main(argv=None) -> int:
    p = argparse.ArgumentParser(
        description="Verify Zoom App gateway audit log integrity (hash-chained JSONL)."
    )
    p.add_argument(
        "log",
        type=Path,
        help="Path to audit JSONL file (e.g. audit/gateway_audit.jsonl)",
    )
    p.add_argument(
        "--state",
        type=Path,
        default=None,
        help="Optional state file containing last hash (e.g. audit/gateway_audit.state)",
    )
    p.add_argument(
        "--strict",
        action="store_true",
        help="Fail if any entry has no event name.",
    )
    args = p.parse_args(argv)

    res = verify_audit(args.log, state_path=args.state, strict=args.strict)

    out = sys.stdout if res.ok else sys.stderr
    print("OK" if res.ok else "FAIL", file=out)
    if not res.ok:
        print(res.message, file=out)
    print(f"lines={res.lines}", file=out)
    if res.last_hash:
        print(f"last_hash={res.last_hash}", file=out)
    for name, count in sorted(res.events.items()):
        print(f"event.{name}={count}", file=out)

    return 0 if res.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
