"""Hash-chained audit trail of query outcomes.

Every query that reaches a terminal state (answered, rejected by the
guardrail, failed in retrieval or synthesis) appends one entry to a JSONL
file. Each entry's hash covers the previous entry's hash, so altering
or removing a line breaks the chain for everything after it.
"""

from __future__ import annotations

import hashlib
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from groundwork.core.config import AuditConfig
from groundwork.core.types import AuditEvent

_FIELD_FILTERS = ("query_id", "tenant_id", "actor", "action", "outcome")


class AuditEntry:
    """Wrapper around an AuditEvent with chain hash metadata."""

    def __init__(self, event: AuditEvent, previous_hash: str, entry_hash: str) -> None:
        self.event = event
        self.previous_hash = previous_hash
        self.entry_hash = entry_hash

    def to_dict(self) -> dict[str, Any]:
        return {
            "previous_hash": self.previous_hash,
            "entry_hash": self.entry_hash,
            "event": json.loads(self.event.model_dump_json()),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEntry:
        return cls(
            event=AuditEvent(**data["event"]),
            previous_hash=data["previous_hash"],
            entry_hash=data["entry_hash"],
        )


def _parse_bound(value: str | datetime) -> datetime:
    dt = value if isinstance(value, datetime) else datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


class AuditLogger:
    """Append-only, hash-chained audit logger.

    Args:
        config: AuditConfig instance. Defaults to AuditConfig() which reads
            from environment variables.
        log_file: Override the log file name (default: ``audit.jsonl``).
    """

    def __init__(
        self,
        config: AuditConfig | None = None,
        log_file: str = "audit.jsonl",
    ) -> None:
        self._config = config or AuditConfig()
        self._log_dir = Path(self._config.log_dir)
        self._log_dir.mkdir(parents=True, exist_ok=True)
        self._log_path = self._log_dir / log_file
        self._lock = threading.Lock()
        self._last_hash: str = self._genesis_hash()

        if self._log_path.exists():
            self._recover_last_hash()

    def _digest(self, payload: bytes) -> str:
        return hashlib.new(self._config.hash_algorithm, payload).hexdigest()

    def _genesis_hash(self) -> str:
        return self._digest(b"groundwork-genesis")

    def _recover_last_hash(self) -> None:
        last_line: str | None = None
        with open(self._log_path) as fh:
            for line in fh:
                stripped = line.strip()
                if stripped:
                    last_line = stripped

        if last_line:
            self._last_hash = json.loads(last_line)["entry_hash"]

    def _compute_hash(self, previous_hash: str, entry_json: str) -> str:
        return self._digest((previous_hash + entry_json).encode("utf-8"))

    def _entries(self):
        if not self._log_path.exists():
            return
        with open(self._log_path) as fh:
            for line in fh:
                stripped = line.strip()
                if stripped:
                    yield json.loads(stripped)

    def log(self, event: AuditEvent) -> AuditEntry:
        """Append *event* to the chain and return it with its hashes."""
        event_json = event.model_dump_json()
        with self._lock:
            entry = AuditEntry(
                event=event,
                previous_hash=self._last_hash,
                entry_hash=self._compute_hash(self._last_hash, event_json),
            )
            with open(self._log_path, "a") as fh:
                fh.write(json.dumps(entry.to_dict()) + "\n")
            self._last_hash = entry.entry_hash
        return entry

    def verify_chain(self) -> bool:
        """Recompute every hash; False if any entry was altered, removed or reordered."""
        previous_hash = self._genesis_hash()
        for data in self._entries():
            if data["previous_hash"] != previous_hash:
                return False
            event_json = AuditEvent(**data["event"]).model_dump_json()
            if data["entry_hash"] != self._compute_hash(previous_hash, event_json):
                return False
            previous_hash = data["entry_hash"]
        return True

    def query(self, filters: dict[str, Any] | None = None) -> list[AuditEvent]:
        """Return logged events matching *filters*.

        Supported keys are ``query_id``, ``tenant_id``, ``actor``, ``action``
        and ``outcome`` (exact match) plus ``after`` / ``before`` (ISO
        datetime strings or datetimes, exclusive).
        """
        filters = filters or {}
        after_dt = _parse_bound(filters["after"]) if "after" in filters else None
        before_dt = _parse_bound(filters["before"]) if "before" in filters else None

        results: list[AuditEvent] = []
        for data in self._entries():
            event = AuditEvent(**data["event"])
            if any(
                key in filters and getattr(event, key) != filters[key]
                for key in _FIELD_FILTERS
            ):
                continue
            if after_dt and event.timestamp <= after_dt:
                continue
            if before_dt and event.timestamp >= before_dt:
                continue
            results.append(event)
        return results

    @property
    def log_path(self) -> Path:
        return self._log_path

    @property
    def last_hash(self) -> str:
        """The hash of the most recent entry (or genesis hash if empty)."""
        return self._last_hash
