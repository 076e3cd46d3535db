"""Audit event sinks for kpiscore.

Every successful mutation (indicator created/updated/deactivated, score
submitted/updated/verified) produces one audit event. Sinks are append-only
and fail closed: an IO or serialization problem raises AuditSinkError.
Services decide whether that error is fatal for the request.
"""

from __future__ import annotations

import json
import logging
import os
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

AUDIT_LOG_PATH_ENV = "KPISCORE_AUDIT_LOG_PATH"
DEFAULT_AUDIT_LOG_PATH = "./var/audit/audit_events.jsonl"


class AuditSinkError(Exception):
    """Raised when audit event emission fails."""

    pass


@runtime_checkable
class AuditSink(Protocol):
    """Append-only destination for audit events."""

    def emit(self, event: dict[str, Any]) -> None:
        """Emit an audit event.

        Raises:
            AuditSinkError: If emission fails for any reason
        """
        ...


def build_audit_event(
    *,
    event_type: str,
    org_id: str,
    actor_id: str,
    resource_type: str,
    resource_id: str,
    summary: str,
    details: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Assemble an audit event dict with a fresh id and UTC timestamp."""
    return {
        "event_id": str(uuid.uuid4()),
        "occurred_at": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        "event_type": event_type,
        "org_id": org_id,
        "actor_id": actor_id,
        "request_id": request_id,
        "resource": {"resource_type": resource_type, "resource_id": resource_id},
        "summary": summary,
        "details": details or {},
    }


def _serialize(event: dict[str, Any]) -> str:
    try:
        return json.dumps(event, sort_keys=True, separators=(",", ":"))
    except (TypeError, ValueError) as e:
        raise AuditSinkError(f"Failed to serialize audit event: {e}") from e


class JsonlFileAuditSink:
    """Append-only JSONL file sink.

    One line per event, keys sorted. The path comes from the constructor,
    then KPISCORE_AUDIT_LOG_PATH, then DEFAULT_AUDIT_LOG_PATH. Parent
    directories are created on first write.
    """

    def __init__(self, file_path: str | None = None) -> None:
        if file_path is not None:
            self._file_path = Path(file_path)
        else:
            self._file_path = Path(os.environ.get(AUDIT_LOG_PATH_ENV) or DEFAULT_AUDIT_LOG_PATH)
        self._write_lock = threading.Lock()

    @property
    def file_path(self) -> Path:
        """Return the configured file path."""
        return self._file_path

    def _ensure_parent_directory(self) -> None:
        parent = self._file_path.parent
        if not parent.exists():
            try:
                parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise AuditSinkError(f"Failed to create audit log directory {parent}: {e}") from e

    def emit(self, event: dict[str, Any]) -> None:
        """Append an event as a single JSON line.

        Raises:
            AuditSinkError: If serialization or file write fails
        """
        line = _serialize(event) + "\n"
        self._ensure_parent_directory()

        try:
            with self._write_lock, open(self._file_path, mode="a", encoding="utf-8") as f:
                f.write(line)
        except OSError as e:
            raise AuditSinkError(f"Failed to write audit event to {self._file_path}: {e}") from e


class InMemoryAuditSink:
    """In-memory audit sink for tests (no disk writes)."""

    def __init__(self) -> None:
        self._events: list[dict[str, Any]] = []

    def emit(self, event: dict[str, Any]) -> None:
        # Round-trip through JSON so tests see exactly what a file sink would store
        self._events.append(json.loads(_serialize(event)))

    @property
    def events(self) -> list[dict[str, Any]]:
        """Return all emitted events."""
        return list(self._events)

    def of_type(self, event_type: str) -> list[dict[str, Any]]:
        """Return emitted events with the given event_type."""
        return [e for e in self._events if e.get("event_type") == event_type]

    def clear(self) -> None:
        """Clear all stored events."""
        self._events.clear()


def get_audit_sink() -> AuditSink:
    """Return the configured audit sink (currently JsonlFileAuditSink)."""
    return JsonlFileAuditSink()
