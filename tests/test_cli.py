"""Tests for the kpiscore CLI.

Tests cover:
1. compute: capped score, rejected input (exit 2)
2. distribution: percentile and variance output
3. weights: per-role totals, budget exceeded (exit 2), malformed input
4. db upgrade without a configured database (exit 2)
"""

from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from kpiscore.cli import main
from kpiscore.persistence.db import KPISCORE_DATABASE_ADMIN_URL_ENV


def _run(argv: list[str], capsys: pytest.CaptureFixture[str]) -> tuple[int, dict]:
    exit_code = main(argv)
    return exit_code, json.loads(capsys.readouterr().out)


def _write(tmp_path: Path, data: object) -> str:
    path = tmp_path / "indicators.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return str(path)


class TestCompute:
    def test_capped(self, capsys: pytest.CaptureFixture[str]) -> None:
        exit_code, output = _run(
            ["compute", "--value", "99", "--target", "90", "--weight", "20"], capsys
        )

        assert exit_code == 0
        assert output == {"final_score": 20.0, "pass": True}

    def test_negative_value_rejected(self, capsys: pytest.CaptureFixture[str]) -> None:
        exit_code, output = _run(
            ["compute", "--value", "-1", "--target", "90", "--weight", "20"], capsys
        )

        assert exit_code == 2
        assert output["pass"] is False
        assert output["errors"][0]["code"] == "ScoreValidationError"

    def test_zero_target_rejected(self, capsys: pytest.CaptureFixture[str]) -> None:
        exit_code, output = _run(
            ["compute", "--value", "1", "--target", "0", "--weight", "20"], capsys
        )

        assert exit_code == 2
        assert output["errors"][0]["code"] == "InvalidIndicatorError"


def test_distribution(capsys: pytest.CaptureFixture[str]) -> None:
    exit_code, output = _run(["distribution", "60", "70", "80", "90", "100"], capsys)

    assert exit_code == 0
    assert output == {
        "count": 5,
        "mean": 80.0,
        "variance": 200.0,
        "p25": 70.0,
        "p50": 80.0,
        "p75": 90.0,
        "p90": 100.0,
    }


class TestWeights:
    def test_within_budget(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        path = _write(
            tmp_path,
            [
                {"role": "HQ_STAFF", "weight": 60, "name": "ignored"},
                {"role": "HQ_STAFF", "weight": 40},
                {"role": "FIELD_UNIT", "weight": 30},
                {"role": "FIELD_UNIT", "weight": 90, "active": False},
            ],
        )

        exit_code, output = _run(["weights", "--input", path], capsys)

        assert exit_code == 0
        assert output["pass"] is True
        assert output["roles"]["HQ_STAFF"]["is_fully_allocated"] is True
        assert output["roles"]["FIELD_UNIT"] == {
            "indicator_count": 1,
            "is_fully_allocated": False,
            "remaining_weight": 70.0,
            "total_weight": 30.0,
        }

    def test_exceeded(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        path = _write(tmp_path, [{"role": "HQ_STAFF", "weight": 70}, {"role": "HQ_STAFF", "weight": 40}])

        exit_code, output = _run(["weights", "--input", path], capsys)

        assert exit_code == 2
        assert output["pass"] is False
        assert output["errors"] == [
            {"code": "WEIGHT_EXCEEDED", "message": "Total weight for HQ_STAFF is 110%"}
        ]

    def test_reads_stdin(
        self, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        monkeypatch.setattr("sys.stdin", io.StringIO('[{"role": "DIVISION_HEAD", "weight": 100}]'))

        exit_code, output = _run(["weights"], capsys)

        assert exit_code == 0
        assert output["roles"]["DIVISION_HEAD"]["is_fully_allocated"] is True

    def test_invalid_json(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        path = tmp_path / "bad.json"
        path.write_text("{nope", encoding="utf-8")

        exit_code, output = _run(["weights", "--input", str(path)], capsys)

        assert exit_code == 2
        assert output["errors"][0]["code"] == "INVALID_JSON"

    def test_missing_file(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        exit_code, output = _run(["weights", "--input", str(tmp_path / "none.json")], capsys)

        assert exit_code == 2
        assert "File not found" in output["errors"][0]["message"]

    def test_not_a_list(self, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        exit_code, output = _run(["weights", "--input", _write(tmp_path, {"a": 1})], capsys)

        assert exit_code == 2
        assert output["errors"][0]["code"] == "INVALID_INPUT"

    @pytest.mark.parametrize(
        "entry",
        [{"role": "INTERN", "weight": 10}, {"role": "HQ_STAFF", "weight": 150}, {"weight": 5}],
    )
    def test_invalid_entry(
        self, entry: dict, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        exit_code, output = _run(["weights", "--input", _write(tmp_path, [entry])], capsys)

        assert exit_code == 2
        assert output["errors"][0]["code"] == "INVALID_INDICATOR"
        assert output["errors"][0]["message"].startswith("Entry 0:")


def test_db_upgrade_without_database(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.delenv(KPISCORE_DATABASE_ADMIN_URL_ENV, raising=False)

    exit_code, output = _run(["db", "upgrade"], capsys)

    assert exit_code == 2
    assert output["errors"][0]["code"] == "DATABASE_NOT_CONFIGURED"


def test_no_command_prints_help(capsys: pytest.CaptureFixture[str]) -> None:
    assert main([]) == 0
    assert "compute" in capsys.readouterr().out
