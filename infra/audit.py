"""
Audit Log
---------
Append-only, HMAC-chained record of every gated invocation attempt.

Trust Boundary:
- Tamper-evident, NOT tamper-proof
- Assumes the HMAC key is protected at the process boundary
- In-memory only; retention and shipping are an operator concern

Lifecycle:
    pending = audit.create_entry(AuditAction.TOOL_EXECUTE, "sendEmail", "10.0.0.1")
    ...
    audit.log(pending.finish(success=False, reason="...", error_kind="policy_blocked", flagged=True))

Every entry is finished exactly once and appended exactly once.
"""

from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Dict, List, Optional, Set
import hashlib
import hmac
import json
import logging
import os
import platform
import time
import uuid


class AuditAction(str, Enum):
    """What the caller was attempting."""
    TOOL_EXECUTE = "tool_execute"   # Unconfirmed path
    TOOL_CONFIRM = "tool_confirm"   # Confirmed path
    TOOL_BLOCKED = "tool_blocked"   # Gated tool on the unconfirmed path
    TOOL_PROPOSE = "tool_propose"   # Proposal created, nothing executed


class AuditFinalizedError(RuntimeError):
    """An entry was finished or logged a second time."""


@dataclass(frozen=True)
class AuditEntry:
    """
    A finalized audit entry.

    seq, prev_hash and entry_hash are filled in when the entry is appended.
    """
    entry_id: str
    action: str
    tool_name: str
    caller: str
    started_at: datetime
    finished_at: datetime
    duration_ms: float
    success: bool
    reason: Optional[str] = None
    error_kind: Optional[str] = None
    flagged: bool = False
    request_id: Optional[str] = None
    seq: Optional[int] = None
    prev_hash: str = ""
    entry_hash: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat()
        return data


class PendingAuditEntry:
    """An attempt in progress. finish() may be called once."""

    def __init__(
        self,
        action: str,
        tool_name: str,
        caller: str,
        request_id: Optional[str] = None
    ):
        self.entry_id = uuid.uuid4().hex
        self.action = action.value if isinstance(action, AuditAction) else str(action)
        self.tool_name = tool_name
        self.caller = caller
        self.request_id = request_id
        self.started_at = datetime.now(timezone.utc)
        self._started = time.perf_counter()
        self._finished = False

    @property
    def finished(self) -> bool:
        return self._finished

    def finish(
        self,
        success: bool,
        reason: Optional[str] = None,
        error_kind: Optional[str] = None,
        flagged: bool = False
    ) -> AuditEntry:
        if self._finished:
            raise AuditFinalizedError(f"Audit entry {self.entry_id} already finished")
        self._finished = True

        if isinstance(error_kind, Enum):
            error_kind = error_kind.value

        return AuditEntry(
            entry_id=self.entry_id,
            action=self.action,
            tool_name=self.tool_name,
            caller=self.caller,
            started_at=self.started_at,
            finished_at=datetime.now(timezone.utc),
            duration_ms=(time.perf_counter() - self._started) * 1000,
            success=success,
            reason=reason,
            error_kind=error_kind,
            flagged=flagged,
            request_id=self.request_id,
        )


@dataclass
class VerifyResult:
    """Result of chain verification."""
    valid: bool
    entries_checked: int
    broken_at: Optional[int] = None  # seq where the chain broke
    expected_hash: Optional[str] = None
    actual_hash: Optional[str] = None
    error: Optional[str] = None


class AuditLog:
    """
    In-memory append-only audit log with HMAC chain verification.

    Guarantees:
    - Append-only (no update or delete methods)
    - One append per finished entry
    - Chain integrity verifiable with the key
    """

    GENESIS_HASH = "0" * 64

    def __init__(self, key: Optional[bytes] = None, emit: bool = True):
        self._key = key or self._load_key()
        self._entries: List[AuditEntry] = []
        self._logged_ids: Set[str] = set()
        self._lock = Lock()
        self._emit = emit
        self._logger = logging.getLogger("toolgate.audit")

    @staticmethod
    def _load_key() -> bytes:
        """
        HMAC key from TOOLGATE_AUDIT_KEY, else derived from the machine.

        The fallback is deterministic per host, which is enough for
        development but not a secret.
        """
        env_key = os.environ.get("TOOLGATE_AUDIT_KEY")
        if env_key:
            return env_key.encode("utf-8")
        machine_id = f"{platform.node()}-{platform.machine()}-toolgate-audit"
        return hashlib.sha256(machine_id.encode()).digest()

    @property
    def key_id(self) -> str:
        """Key fingerprint, never the key."""
        return hashlib.sha256(self._key).hexdigest()[:16]

    def create_entry(
        self,
        action: str,
        tool_name: Optional[str],
        caller: str,
        request_id: Optional[str] = None
    ) -> PendingAuditEntry:
        return PendingAuditEntry(action, tool_name or "unknown", caller, request_id)

    def _canonical_payload(self, entry: AuditEntry, prev_hash: str) -> bytes:
        payload = entry.to_dict()
        payload["prev_hash"] = prev_hash
        payload.pop("entry_hash", None)
        return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def _compute_hash(self, entry: AuditEntry, prev_hash: str) -> str:
        payload = self._canonical_payload(entry, prev_hash)
        return hmac.new(self._key, payload, hashlib.sha256).hexdigest()

    def log(self, entry: AuditEntry) -> AuditEntry:
        """
        Append a finished entry. Returns the sealed copy.
        """
        with self._lock:
            if entry.entry_id in self._logged_ids:
                raise AuditFinalizedError(f"Audit entry {entry.entry_id} already logged")

            prev_hash = self._entries[-1].entry_hash if self._entries else self.GENESIS_HASH
            sealed = replace(entry, seq=len(self._entries) + 1, prev_hash=prev_hash, entry_hash="")
            sealed = replace(sealed, entry_hash=self._compute_hash(sealed, prev_hash))

            self._entries.append(sealed)
            self._logged_ids.add(entry.entry_id)

        if self._emit:
            level = logging.WARNING if sealed.flagged else logging.INFO
            self._logger.log(level, json.dumps(sealed.to_dict(), sort_keys=True))
        return sealed

    # Read side

    def entries(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._entries)

    def get_entries(
        self,
        tool_name: Optional[str] = None,
        caller: Optional[str] = None,
        action: Optional[str] = None,
        flagged: Optional[bool] = None
    ) -> List[AuditEntry]:
        if isinstance(action, AuditAction):
            action = action.value
        result = []
        for entry in self.entries():
            if tool_name is not None and entry.tool_name != tool_name:
                continue
            if caller is not None and entry.caller != caller:
                continue
            if action is not None and entry.action != action:
                continue
            if flagged is not None and entry.flagged != flagged:
                continue
            result.append(entry)
        return result

    def flagged_entries(self) -> List[AuditEntry]:
        return self.get_entries(flagged=True)

    def verify_chain(self) -> VerifyResult:
        """
        Recompute every link. Detects edits, reordering and removal.
        """
        entries = self.entries()
        expected_prev = self.GENESIS_HASH

        for index, entry in enumerate(entries):
            if entry.prev_hash != expected_prev:
                return VerifyResult(
                    valid=False,
                    entries_checked=index,
                    broken_at=entry.seq,
                    expected_hash=expected_prev,
                    actual_hash=entry.prev_hash,
                    error=f"prev_hash mismatch at entry {entry.seq}",
                )
            computed = self._compute_hash(entry, entry.prev_hash)
            if entry.entry_hash != computed:
                return VerifyResult(
                    valid=False,
                    entries_checked=index,
                    broken_at=entry.seq,
                    expected_hash=computed,
                    actual_hash=entry.entry_hash,
                    error=f"entry_hash mismatch at entry {entry.seq}",
                )
            expected_prev = entry.entry_hash

        return VerifyResult(valid=True, entries_checked=len(entries))

    def export_for_review(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> str:
        """
        JSON bundle with verification metadata (key fingerprint, not key).
        """
        entries = self.entries()
        if start is not None:
            entries = [e for e in entries if e.started_at >= start]
        if end is not None:
            entries = [e for e in entries if e.started_at <= end]

        bundle = {
            "exported_at": datetime.now(timezone.utc).isoformat(),
            "entry_count": len(entries),
            "first_seq": entries[0].seq if entries else None,
            "last_seq": entries[-1].seq if entries else None,
            "final_hash": entries[-1].entry_hash if entries else None,
            "key_id": self.key_id,
            "entries": [e.to_dict() for e in entries],
        }
        return json.dumps(bundle, indent=2, sort_keys=True)

    def get_stats(self) -> Dict[str, Any]:
        entries = self.entries()
        by_action: Dict[str, int] = {}
        by_kind: Dict[str, int] = {}
        for entry in entries:
            by_action[entry.action] = by_action.get(entry.action, 0) + 1
            if entry.error_kind:
                by_kind[entry.error_kind] = by_kind.get(entry.error_kind, 0) + 1

        return {
            "total_entries": len(entries),
            "successes": sum(1 for e in entries if e.success),
            "failures": sum(1 for e in entries if not e.success),
            "flagged": sum(1 for e in entries if e.flagged),
            "by_action": by_action,
            "by_error_kind": by_kind,
            "first_entry": entries[0].started_at.isoformat() if entries else None,
            "last_entry": entries[-1].finished_at.isoformat() if entries else None,
        }

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
