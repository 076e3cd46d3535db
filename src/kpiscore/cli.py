"""kpiscore CLI - deterministic command-line access to the scoring core.

Usage:
    python -m kpiscore compute --value V --target T --weight W
    python -m kpiscore distribution SCORE [SCORE ...]
    python -m kpiscore weights [--input PATH]
    python -m kpiscore db upgrade [--revision REV]

All commands print sorted JSON to stdout.

Exit codes:
    0: Success / all role budgets within 100
    1: Internal error
    2: Invalid input / a role budget exceeds 100
"""

from __future__ import annotations

import argparse
import json
import sys
from collections import defaultdict
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from kpiscore.models.indicator import IndicatorRole
from kpiscore.scoring.aggregation import distribution
from kpiscore.scoring.calculator import compute
from kpiscore.scoring.weight_ledger import check_allocations
from kpiscore.services.errors import KpiServiceError


class WeightEntry(BaseModel):
    """One indicator as read by the weights command; extra fields are ignored."""

    role: IndicatorRole
    weight: float = Field(..., ge=0, le=100, allow_inf_nan=False)
    active: bool = True


def _output_json(data: dict[str, Any]) -> None:
    """Output JSON to stdout with deterministic ordering."""
    print(json.dumps(data, sort_keys=True, indent=2))


def _make_error_result(code: str, message: str) -> dict[str, Any]:
    return {"errors": [{"code": code, "message": message}], "pass": False}


def _load_json_input(input_path: str | None) -> tuple[Any, str | None]:
    """Load JSON from file or stdin.

    Returns:
        Tuple of (parsed_data, error_message). If error_message is not None,
        parsed_data should be ignored.
    """
    try:
        if input_path:
            with open(input_path, encoding="utf-8") as f:
                content = f.read()
        else:
            content = sys.stdin.read()

        if not content.strip():
            return None, "Empty input"

        return json.loads(content), None
    except FileNotFoundError:
        return None, f"File not found: {input_path}"
    except json.JSONDecodeError as e:
        return None, f"Invalid JSON: {e}"
    except OSError as e:
        return None, f"Cannot read input: {e}"


def cmd_compute(args: argparse.Namespace) -> int:
    """Compute one final score.

    Exit codes:
        0: score computed
        2: value, target or weight rejected
    """
    try:
        final_score = compute(args.value, args.target, args.weight)
    except KpiServiceError as e:
        _output_json(_make_error_result(type(e).__name__, str(e)))
        return 2

    _output_json({"final_score": final_score, "pass": True})
    return 0


def cmd_distribution(args: argparse.Namespace) -> int:
    """Print mean, variance and percentiles of the given scores."""
    result = distribution(args.scores)
    _output_json(result.model_dump(mode="json", exclude={"period"}))
    return 0


def cmd_weights(args: argparse.Namespace) -> int:
    """Check per-role weight totals of a JSON list of indicator definitions.

    Inactive entries are ignored, as they are by the weight ledger.

    Exit codes:
        0: every role total is <= 100
        2: invalid input, or some role total exceeds 100
    """
    data, error_msg = _load_json_input(args.input)
    if error_msg is not None:
        _output_json(_make_error_result("INVALID_JSON", error_msg))
        return 2
    if not isinstance(data, list):
        _output_json(_make_error_result("INVALID_INPUT", "Expected a JSON list of indicators"))
        return 2

    weights_by_role: dict[IndicatorRole, list[float]] = defaultdict(list)
    for position, item in enumerate(data):
        try:
            entry = WeightEntry.model_validate(item)
        except ValidationError as e:
            _output_json(
                _make_error_result(
                    "INVALID_INDICATOR", f"Entry {position}: {e.errors()[0].get('msg')}"
                )
            )
            return 2
        if entry.active:
            weights_by_role[entry.role].append(entry.weight)

    allocations = check_allocations(dict(weights_by_role))
    roles = {
        role.value: {
            "indicator_count": a.indicator_count,
            "is_fully_allocated": a.is_fully_allocated,
            "remaining_weight": a.remaining_weight,
            "total_weight": a.total_weight,
        }
        for role, a in allocations.items()
    }
    exceeded = sorted(role.value for role, a in allocations.items() if a.total_weight > 100)
    errors = [
        {
            "code": "WEIGHT_EXCEEDED",
            "message": f"Total weight for {role} is {roles[role]['total_weight']:g}%",
        }
        for role in exceeded
    ]
    _output_json({"errors": errors, "pass": not exceeded, "roles": roles})
    return 2 if exceeded else 0


def cmd_db_upgrade(args: argparse.Namespace) -> int:
    """Apply migrations with the admin connection (KPISCORE_DATABASE_ADMIN_URL)."""
    from kpiscore.persistence.db import DatabaseConfigError
    from kpiscore.persistence.migrate import run_upgrade

    try:
        run_upgrade(revision=args.revision)
    except DatabaseConfigError as e:
        _output_json(_make_error_result("DATABASE_NOT_CONFIGURED", str(e)))
        return 2

    _output_json({"pass": True, "revision": args.revision})
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="kpiscore",
        description="kpiscore - weighted KPI scoring CLI",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    compute_parser = subparsers.add_parser("compute", help="Compute one final score")
    compute_parser.add_argument("--value", type=float, required=True, help="Measured value")
    compute_parser.add_argument("--target", type=float, required=True, help="Indicator target")
    compute_parser.add_argument("--weight", type=float, required=True, help="Indicator weight")

    distribution_parser = subparsers.add_parser(
        "distribution",
        help="Mean, variance and percentiles of a set of scores",
    )
    distribution_parser.add_argument("scores", type=float, nargs="+", metavar="SCORE")

    weights_parser = subparsers.add_parser(
        "weights",
        help="Check per-role weight totals of indicator definitions",
    )
    weights_parser.add_argument(
        "--input",
        required=False,
        default=None,
        metavar="PATH",
        help="Path to a JSON list of indicators (reads from stdin if omitted)",
    )

    db_parser = subparsers.add_parser("db", help="Database operations")
    db_subparsers = db_parser.add_subparsers(dest="db_command", help="Database subcommands")
    upgrade_parser = db_subparsers.add_parser("upgrade", help="Apply Alembic migrations")
    upgrade_parser.add_argument("--revision", default="head", help="Target revision")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point.

    Exit codes:
        0: Success
        1: Internal error (unexpected)
        2: Invalid input / budget exceeded
    """
    try:
        parser = create_parser()
        args = parser.parse_args(argv)

        if args.command is None:
            parser.print_help()
            return 0

        if args.command == "compute":
            return cmd_compute(args)

        if args.command == "distribution":
            return cmd_distribution(args)

        if args.command == "weights":
            return cmd_weights(args)

        if args.command == "db":
            if getattr(args, "db_command", None) == "upgrade":
                return cmd_db_upgrade(args)
            parser.parse_args(["db", "--help"])
            return 0

        return 0

    except Exception as e:
        _output_json(_make_error_result("INTERNAL_ERROR", str(e)))
        return 1


if __name__ == "__main__":
    sys.exit(main())
