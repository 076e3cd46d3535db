"""kpiscore - role-scoped weighted KPI scoring and analytics."""

__version__ = "1.0.0"
