"""Run orchestrator and KPI aggregation engine for brand monitoring."""

__version__ = "0.1.0"
