"""Scoring core: weight ledger, score calculator, aggregation and visibility."""

from kpiscore.scoring.aggregation import AggregationEngine
from kpiscore.scoring.calculator import compute, compute_for_indicator, indicator_role_for
from kpiscore.scoring.config import AnalyticsConfig, load_analytics_config
from kpiscore.scoring.visibility import VisibilityScope, resolve_members
from kpiscore.scoring.weight_ledger import WeightAllocation, WeightLedger, WeightReservation

__all__ = [
    "AggregationEngine",
    "AnalyticsConfig",
    "VisibilityScope",
    "WeightAllocation",
    "WeightLedger",
    "WeightReservation",
    "compute",
    "compute_for_indicator",
    "indicator_role_for",
    "load_analytics_config",
    "resolve_members",
]
