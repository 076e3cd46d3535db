"""Tests for the audit sinks."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from kpiscore.audit.sink import (
    AUDIT_LOG_PATH_ENV,
    AuditSink,
    AuditSinkError,
    InMemoryAuditSink,
    JsonlFileAuditSink,
    build_audit_event,
)


def _event(**overrides) -> dict:
    event = build_audit_event(
        event_type="score.verified",
        org_id="org-acme",
        actor_id="head-sales",
        resource_type="score",
        resource_id="score-1",
        summary="score.verified for subject emp-sales (Jan 2025)",
        details={"final_score": 20.0},
        request_id="req-1",
    )
    event.update(overrides)
    return event


def test_build_audit_event_shape() -> None:
    event = _event()

    assert event["event_type"] == "score.verified"
    assert event["resource"] == {"resource_type": "score", "resource_id": "score-1"}
    assert event["occurred_at"].endswith("Z")
    assert event["event_id"] != _event()["event_id"]


def test_sinks_satisfy_protocol() -> None:
    assert isinstance(InMemoryAuditSink(), AuditSink)
    assert isinstance(JsonlFileAuditSink("/tmp/unused.jsonl"), AuditSink)


class TestJsonlFileAuditSink:
    def test_appends_one_sorted_line_per_event(self, tmp_path: Path) -> None:
        path = tmp_path / "nested" / "audit.jsonl"
        sink = JsonlFileAuditSink(str(path))

        sink.emit(_event())
        sink.emit(_event(event_type="score.updated"))

        lines = path.read_text(encoding="utf-8").splitlines()
        assert len(lines) == 2
        assert json.loads(lines[1])["event_type"] == "score.updated"
        assert lines[0].startswith('{"actor_id":')

    def test_path_from_environment(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv(AUDIT_LOG_PATH_ENV, str(tmp_path / "env.jsonl"))

        assert JsonlFileAuditSink().file_path == tmp_path / "env.jsonl"

    def test_unserializable_event_fails_closed(self, tmp_path: Path) -> None:
        sink = JsonlFileAuditSink(str(tmp_path / "audit.jsonl"))

        with pytest.raises(AuditSinkError):
            sink.emit(_event(details={"bad": object()}))

    def test_unwritable_path_fails_closed(self, tmp_path: Path) -> None:
        blocker = tmp_path / "file"
        blocker.write_text("x", encoding="utf-8")
        sink = JsonlFileAuditSink(str(blocker / "audit.jsonl"))

        with pytest.raises(AuditSinkError):
            sink.emit(_event())


def test_in_memory_sink_filters_by_type() -> None:
    sink = InMemoryAuditSink()
    sink.emit(_event())
    sink.emit(_event(event_type="indicator.created"))

    assert len(sink.of_type("indicator.created")) == 1
    sink.clear()
    assert sink.events == []
